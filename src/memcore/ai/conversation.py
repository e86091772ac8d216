"""Build model messages from an archived session transcript."""

from __future__ import annotations

from typing import Any

from memcore.core.types import Role
from memcore.storage.models import ArchivedMessage

MAX_HISTORY_MESSAGES = 40


def build_messages(
    transcript: list[ArchivedMessage], max_messages: int = MAX_HISTORY_MESSAGES
) -> tuple[list[str], list[dict[str, Any]]]:
    """Split a transcript into system notes and user/assistant turns.

    Tool traffic from earlier turns is not replayed. The returned turn list
    always starts with a user message.
    """
    notes = [m.content for m in transcript if m.role == Role.SYSTEM and m.content.strip()]
    turns = [
        {"role": str(m.role), "content": m.content}
        for m in transcript
        if m.role in (Role.USER, Role.ASSISTANT) and m.content.strip()
    ]
    turns = turns[-max_messages:]
    while turns and turns[0]["role"] != Role.USER:
        turns.pop(0)

    # Merge consecutive same-role turns
    merged: list[dict[str, Any]] = []
    for turn in turns:
        if merged and merged[-1]["role"] == turn["role"]:
            merged[-1]["content"] += "\n\n" + turn["content"]
        else:
            merged.append(dict(turn))
    return notes, merged
