"""Import OpenClaw JSONL session logs into the archive.

Each ``<session-id>.jsonl`` file holds one session: a ``session`` header line
followed by ``message`` lines. Thinking blocks are dropped; text, tool calls
and tool results are kept. Imports are recorded so re-runs skip sessions
that were already imported.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from memcore.core.types import EndReason, Role
from memcore.log import get_logger
from memcore.storage.archive_repo import ArchiveStore
from memcore.storage.models import ArchivedMessage, ArchivedToolCall, short_id

logger = get_logger(__name__)

SOURCE_TYPE = "openclaw"
CONVERSATION_ID = "openclaw-import"
ARCHIVE_REASON = "import"
MAX_LINE_BYTES = 10 * 1024 * 1024
PREAMBLE_TOKENS = 50
PREAMBLE_TEXT = (
    "This conversation occurred in the OpenClaw runtime. Tool calls, file paths, and "
    "environment details reflect that specific environment and may not apply to the "
    "current runtime."
)

_EPOCH = datetime.fromtimestamp(0, timezone.utc)
_FRACTION = re.compile(r"(\.\d{6})\d+")


class ImportParseError(ValueError):
    pass


@dataclass
class ParsedSession:
    id: str
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    messages: list[ArchivedMessage] = field(default_factory=list)
    tool_calls: list[ArchivedToolCall] = field(default_factory=list)


@dataclass
class ImportStats:
    imported: int = 0
    skipped: int = 0
    failed: int = 0


def parse_timestamp(iso: Any, unix_ms: Any = None) -> Optional[datetime]:
    """ISO-8601 first, then unix milliseconds; None when neither parses."""
    if isinstance(iso, str) and iso:
        text = _FRACTION.sub(r"\1", iso.strip())
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
            return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
        except ValueError:
            pass
    if isinstance(unix_ms, (int, float)) and not isinstance(unix_ms, bool) and unix_ms > 0:
        return datetime.fromtimestamp(unix_ms / 1000, timezone.utc)
    return None


def _extract_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    return "\n".join(
        b["text"]
        for b in content
        if isinstance(b, dict) and b.get("type") == "text" and b.get("text")
    )


def _extract_assistant(content: Any) -> tuple[str, list[dict[str, Any]]]:
    if isinstance(content, str):
        return content, []
    if not isinstance(content, list):
        return "", []
    texts, calls = [], []
    for block in content:
        if not isinstance(block, dict):
            continue
        match block.get("type"):
            case "text":
                if block.get("text"):
                    texts.append(block["text"])
            case "toolCall":
                calls.append(block)
            # thinking blocks are internal reasoning, not conversation
    return "\n".join(texts), calls


def _convert(entry: dict[str, Any], session_id: str, ts: datetime) -> tuple[list, list]:
    msg = entry["message"]
    entry_id = str(entry.get("id") or "")
    messages: list[ArchivedMessage] = []
    tool_calls: list[ArchivedToolCall] = []

    def archived(role: Role, text: str, tool_call_id: str = "") -> ArchivedMessage:
        return ArchivedMessage(
            id=entry_id,
            session_id=session_id,
            conversation_id=CONVERSATION_ID,
            role=role,
            content=text,
            timestamp=ts,
            token_count=len(text) // 4,
            tool_call_id=tool_call_id,
            archive_reason=ARCHIVE_REASON,
        )

    match msg.get("role"):
        case "user":
            text = _extract_text(msg.get("content"))
            if text:
                messages.append(archived(Role.USER, text))
        case "assistant":
            text, calls = _extract_assistant(msg.get("content"))
            if text:
                messages.append(archived(Role.ASSISTANT, text))
            for call in calls:
                tool_calls.append(
                    ArchivedToolCall(
                        id=str(call.get("id") or ""),
                        session_id=session_id,
                        conversation_id=CONVERSATION_ID,
                        tool_name=str(call.get("name") or ""),
                        arguments=json.dumps(call.get("arguments") or {}),
                        started_at=ts,
                    )
                )
        case "toolResult":
            text = _extract_text(msg.get("content"))
            messages.append(archived(Role.TOOL, text, str(msg.get("toolCallId") or "")))
    return messages, tool_calls


def parse_session_file(path: Path) -> ParsedSession:
    session = ParsedSession(id=path.name.removesuffix(".jsonl"))
    undated: list[ArchivedMessage | ArchivedToolCall] = []

    with path.open("rb") as f:
        line_num = 0
        while raw := f.readline(MAX_LINE_BYTES + 1):
            line_num += 1
            if len(raw) > MAX_LINE_BYTES:
                raise ImportParseError(f"{path.name}: line {line_num} exceeds {MAX_LINE_BYTES} bytes")
            if not raw.strip():
                continue
            try:
                entry = json.loads(raw)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                logger.debug("malformed_line_skipped", file=path.name, line=line_num, error=str(e))
                continue
            if not isinstance(entry, dict):
                continue

            match entry.get("type"):
                case "session":
                    started = parse_timestamp(entry.get("timestamp"))
                    if started is not None:
                        session.started_at = started
                case "message":
                    msg = entry.get("message")
                    if not isinstance(msg, dict):
                        continue
                    ts = parse_timestamp(entry.get("timestamp"), msg.get("timestamp"))
                    if ts is not None and (session.ended_at is None or ts > session.ended_at):
                        session.ended_at = ts
                    messages, tool_calls = _convert(entry, session.id, ts or _EPOCH)
                    if ts is None:
                        undated.extend(messages)
                        undated.extend(tool_calls)
                    session.messages.extend(messages)
                    session.tool_calls.extend(tool_calls)

    if session.started_at is None:
        undated_ids = {id(r) for r in undated}
        dated = [m.timestamp for m in session.messages if id(m) not in undated_ids]
        session.started_at = min(dated) if dated else (session.ended_at or _EPOCH)
    # Undated records sit at the start of the session rather than at the epoch
    for record in undated:
        if isinstance(record, ArchivedMessage):
            record.timestamp = session.started_at
        else:
            record.started_at = session.started_at
    return session


def find_session_files(openclaw_dir: Path) -> tuple[list[Path], int]:
    """Active ``*.jsonl`` files under agents/main/sessions, plus the deleted count."""
    sessions_dir = openclaw_dir / "agents" / "main" / "sessions"
    if not sessions_dir.is_dir():
        raise FileNotFoundError(f"sessions directory not found: {sessions_dir}")
    files = sorted(sessions_dir.glob("*.jsonl"))
    active = [f for f in files if ".deleted." not in f.name]
    return active, len(files) - len(active)


async def import_session(archive: ArchiveStore, parsed: ParsedSession) -> str:
    """Write one parsed session to the archive and record the mapping. Returns the local id."""
    started = parsed.started_at or _EPOCH
    session = await archive.start_session_at(CONVERSATION_ID, started)

    preamble = ArchivedMessage(
        id=f"preamble-{session.id}",
        session_id=session.id,
        conversation_id=CONVERSATION_ID,
        role=Role.SYSTEM,
        content=PREAMBLE_TEXT,
        timestamp=started,
        token_count=PREAMBLE_TOKENS,
        archive_reason=ARCHIVE_REASON,
    )
    for msg in parsed.messages:
        msg.session_id = session.id
    await archive.archive_messages([preamble, *parsed.messages])

    if parsed.tool_calls:
        results = {
            m.tool_call_id: m.content
            for m in parsed.messages
            if m.role == Role.TOOL and m.tool_call_id
        }
        ended = parsed.ended_at or started
        for tc in parsed.tool_calls:
            tc.session_id = session.id
            if tc.id in results:
                tc.result = results[tc.id]
                tc.completed_at = max(ended, tc.started_at)
        await archive.archive_tool_calls(parsed.tool_calls)

    await archive.end_session_at(session.id, EndReason.IMPORT, parsed.ended_at or started)
    await archive.set_session_message_count(session.id, len(parsed.messages) + 1)
    await archive.set_session_summary(
        session.id, f"[Imported from OpenClaw session {short_id(parsed.id)}]"
    )
    await archive.record_import(parsed.id, SOURCE_TYPE, session.id)

    logger.debug(
        "session_imported",
        openclaw_id=short_id(parsed.id),
        local_id=session.short_id,
        messages=len(parsed.messages),
        tool_calls=len(parsed.tool_calls),
    )
    return session.id


async def import_sessions(archive: ArchiveStore, sessions: list[ParsedSession]) -> ImportStats:
    stats = ImportStats()
    for parsed in sessions:
        if await archive.is_imported(parsed.id, SOURCE_TYPE):
            logger.debug("session_already_imported", openclaw_id=short_id(parsed.id))
            stats.skipped += 1
            continue
        try:
            await import_session(archive, parsed)
        except Exception as e:
            logger.error("session_import_failed", openclaw_id=short_id(parsed.id), error=str(e))
            stats.failed += 1
            continue
        stats.imported += 1
    return stats
