"""Episodic memory: a recency-graded, token-bounded block of recent history.

The block has two parts. Daily notes are read from ``YYYY-MM-DD.md`` files for
the last few days. Recent conversations are rebuilt from the archive, with the
newest closed session shown as a transcript excerpt, the next three as
paragraph summaries and older ones as one-liners.
"""

from __future__ import annotations

from datetime import datetime, timedelta, tzinfo
from pathlib import Path
from typing import Callable, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from memcore.core.types import Role
from memcore.log import get_logger
from memcore.memory.prompts import ARCHIVED_HISTORY_FRAMING
from memcore.storage.models import ArchivedMessage, Session, rfc3339, utcnow

logger = get_logger(__name__)

RECENT_SESSION_LIMIT = 20
EXCERPT_SCAN_LIMIT = 50
EXCERPT_CONTENT_CHARS = 200
PARAGRAPH_TIER_END = 4  # sessions 1..3 get paragraphs

DAILY_NOTES_HEADING = "### Daily Notes"
RECENT_HISTORY_HEADING = "### Recent Conversations"


class ArchiveReader(Protocol):
    async def list_sessions(self, conversation_id: str = "", limit: int = 20) -> list[Session]: ...

    async def get_session_transcript(self, session_id: str) -> list[ArchivedMessage]: ...


def estimate_tokens(text: str) -> int:
    return len(text) // 4


def truncate_content(text: str, limit: int = EXCERPT_CONTENT_CHARS) -> str:
    text = text.replace("\r\n", " ").replace("\n", " ")
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def first_sentence(text: str) -> str:
    idx = text.find(". ")
    if 0 <= idx < 100:
        return text[: idx + 1]
    if len(text) > 80:
        return text[:80] + "..."
    return text


def format_gap(gap: timedelta) -> str:
    hours = gap.total_seconds() / 3600
    if hours >= 24:
        days = int(hours // 24)
        return "1 day" if days == 1 else f"{days} days"
    if hours >= 1:
        return f"{int(hours)}h"
    return f"{int(gap.total_seconds() // 60)}m"


def day_label(offset: int, day: datetime) -> str:
    if offset == 0:
        return "Today"
    if offset == 1:
        return "Yesterday"
    return f"{day:%A}, {day:%B} {day.day}"


def _load_zone(name: str) -> tzinfo:
    """Resolve an IANA zone name, falling back to the local zone."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        logger.warning("timezone_fallback_local", timezone=name, error=str(e))
        return datetime.now().astimezone().tzinfo


class EpisodicProvider:
    def __init__(
        self,
        archive: ArchiveReader,
        timezone: str = "UTC",
        daily_dir: str = "",
        lookback_days: int = 2,
        history_tokens: int = 4000,
        session_gap_minutes: float = 30,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._archive = archive
        self._tz = _load_zone(timezone)
        self._daily_dir = Path(daily_dir).expanduser() if daily_dir else None
        self._lookback_days = lookback_days
        self._history_tokens = history_tokens
        self._gap = timedelta(minutes=session_gap_minutes)
        self._clock = clock

    async def get_context(self) -> str:
        now = self._clock().astimezone(self._tz)
        parts = []

        daily = self._daily_notes(now)
        if daily:
            parts.append(daily)

        try:
            history = await self._recent_history()
        except Exception as e:
            logger.warning("episodic_history_failed", error=str(e))
            history = ""
        if history:
            parts.append(history)

        return "\n\n".join(parts).rstrip()

    # ── daily notes ──────────────────────────────────────────────

    def _daily_notes(self, now: datetime) -> str:
        if self._daily_dir is None:
            return ""
        entries = []
        for offset in range(self._lookback_days):
            day = now - timedelta(days=offset)
            date = day.strftime("%Y-%m-%d")
            path = self._daily_dir / f"{date}.md"
            try:
                content = path.read_text(encoding="utf-8").strip()
            except FileNotFoundError:
                continue
            except (OSError, UnicodeDecodeError) as e:
                logger.warning("daily_note_unreadable", path=str(path), error=str(e))
                continue
            if content:
                entries.append(f"**{day_label(offset, day)} ({date}):**\n{content}")
        if not entries:
            return ""
        return DAILY_NOTES_HEADING + "\n\n" + "\n\n".join(entries)

    # ── recent history ───────────────────────────────────────────

    async def _recent_history(self) -> str:
        sessions = await self._archive.list_sessions("", RECENT_SESSION_LIMIT)
        candidates = [s for s in sessions if s.is_closed and s.has_content()]
        if not candidates:
            return ""

        # Budget in characters; len(block) <= tokens * 4 keeps estimate_tokens within budget.
        preamble = RECENT_HISTORY_HEADING + "\n\n" + ARCHIVED_HISTORY_FRAMING
        remaining = self._history_tokens * 4 - len(preamble)
        if remaining <= 0:
            return ""

        entries: list[str] = []  # newest first
        newer: Session | None = None
        emitted = 0
        for session in candidates:
            gap_note = ""
            if newer is not None and newer.started_at - session.ended_at > self._gap:
                gap_note = f"*({format_gap(newer.started_at - session.ended_at)} gap)*"
                gap_cost = len(gap_note) + 2
                if gap_cost > remaining:
                    break

            available = remaining - (len(gap_note) + 2 if gap_note else 0)
            entry = await self._format_session(session, emitted, available - 2)
            if entry is None:
                break

            if gap_note:
                entries.append(gap_note)
                remaining -= len(gap_note) + 2
            entries.append(entry)
            remaining -= len(entry) + 2
            emitted += 1
            newer = session

        if not entries:
            return ""
        entries.reverse()
        return preamble + "\n\n" + "\n\n".join(entries)

    async def _format_session(self, session: Session, index: int, budget: int) -> str | None:
        """Render one session for its tier, or None when it cannot fit in budget chars."""
        header = self._session_header(session)
        if index == 0:
            excerpt = await self._transcript_excerpt(session, budget - len(header) - 1)
            if excerpt:
                return header + "\n" + excerpt
        if index < PARAGRAPH_TIER_END:
            body = self._paragraph(session)
        else:
            body = self._one_liner(session)
        entry = f"{header} {body}"
        return entry if len(entry) <= budget else None

    def _session_header(self, session: Session) -> str:
        started = rfc3339(session.started_at.astimezone(self._tz))
        if session.title:
            return f"**[{started} — {session.title}]**"
        return f"**[{started}]**"

    async def _transcript_excerpt(self, session: Session, budget: int) -> str:
        if budget <= 0:
            return ""
        messages = await self._archive.get_session_transcript(session.id)
        lines: list[str] = []
        used = 0
        for msg in reversed(messages[-EXCERPT_SCAN_LIMIT:]):
            if msg.role not in (Role.USER, Role.ASSISTANT):
                continue
            ts = rfc3339(msg.timestamp.astimezone(self._tz))
            line = f"[{ts}] **{msg.role}:** {truncate_content(msg.content)}"
            cost = len(line) + (1 if lines else 0)
            if used + cost > budget:
                break
            lines.append(line)
            used += cost
        lines.reverse()
        return "\n".join(lines)

    @staticmethod
    def _paragraph(session: Session) -> str:
        meta = session.metadata
        if meta and meta.paragraph:
            return meta.paragraph
        if session.summary:
            return session.summary
        if meta and meta.one_liner:
            return meta.one_liner
        if session.title:
            return session.title
        return "(no summary available)"

    @staticmethod
    def _one_liner(session: Session) -> str:
        meta = session.metadata
        if meta and meta.one_liner:
            return meta.one_liner
        if session.title:
            return session.title
        if session.summary:
            return first_sentence(session.summary)
        return "(no summary)"
