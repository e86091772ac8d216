"""Fixed prompt text used by the memory subsystems."""

from __future__ import annotations

ARCHIVED_HISTORY_FRAMING = (
    "⚠️ **ARCHIVED HISTORY** — The messages below are from PAST sessions, NOT the "
    "current conversation. Timestamps and time references within these messages reflect "
    "when they were originally said, not the current time. Current time is in the "
    '"Current Conditions" block above.'
)

METADATA_PROMPT = """Analyze this conversation session and produce structured metadata as JSON. \
Respond with JSON only.
The JSON must have exactly these fields:

{{
  "title": "short descriptive title (max 10 words)",
  "tags": ["3-7 lowercase topic tags"],
  "one_liner": "one sentence summary (~10 words)",
  "paragraph": "2-4 sentence summary of what happened",
  "detailed": "thorough summary covering all significant topics, in a few paragraphs",
  "key_decisions": ["decisions or conclusions reached"],
  "participants": ["people or agents involved"],
  "session_type": "one of: debugging, architecture, philosophy, casual, planning, operations, creative"
}}

Be accurate. Base everything on what actually happened in the conversation.

Conversation:
{transcript}

JSON:"""

CARRY_FORWARD_HEADER = (
    "Carry-forward note from the previous session (written before it was closed):"
)
