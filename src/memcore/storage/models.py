"""Data models for the session archive."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from memcore.core.types import Role


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def short_id(session_id: str) -> str:
    return session_id[:8]


def rfc3339(dt: datetime) -> str:
    """Format a datetime as RFC 3339 with second precision ("Z" for UTC)."""
    text = dt.isoformat(timespec="seconds")
    if text.endswith("+00:00"):
        text = text[:-6] + "Z"
    return text


@dataclass
class SessionMetadata:
    one_liner: str = ""
    paragraph: str = ""
    detailed: str = ""
    key_decisions: list[str] = field(default_factory=list)
    participants: list[str] = field(default_factory=list)
    session_type: str = ""
    tools_used: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionMetadata:
        return cls(
            one_liner=str(data.get("one_liner") or ""),
            paragraph=str(data.get("paragraph") or ""),
            detailed=str(data.get("detailed") or ""),
            key_decisions=[str(d) for d in data.get("key_decisions") or []],
            participants=[str(p) for p in data.get("participants") or []],
            session_type=str(data.get("session_type") or ""),
            tools_used={str(k): int(v) for k, v in (data.get("tools_used") or {}).items()},
        )


@dataclass
class Session:
    id: str
    conversation_id: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    end_reason: str = ""
    message_count: int = 0
    title: str = ""
    summary: str = ""
    tags: list[str] = field(default_factory=list)
    metadata: Optional[SessionMetadata] = None

    @property
    def short_id(self) -> str:
        return short_id(self.id)

    @property
    def is_closed(self) -> bool:
        return self.ended_at is not None

    def has_content(self) -> bool:
        """True when any summarization output exists for the session."""
        if self.title or self.summary:
            return True
        meta = self.metadata
        return meta is not None and bool(meta.one_liner or meta.paragraph or meta.detailed)


@dataclass
class ArchivedMessage:
    session_id: str
    conversation_id: str
    role: str  # Role value
    content: str
    timestamp: datetime = field(default_factory=utcnow)
    id: str = ""  # generated when empty
    token_count: int = 0
    tool_call_id: str = ""
    archive_reason: str = ""


@dataclass
class ArchivedToolCall:
    id: str
    session_id: str
    conversation_id: str
    tool_name: str
    arguments: str = "{}"
    result: str = ""
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


@dataclass
class SearchOptions:
    query: str
    conversation_id: str = ""
    session_id: str = ""
    limit: int = 10
    no_context: bool = False
    silence_minutes: Optional[float] = None  # overrides the store default


@dataclass
class SearchResult:
    message: ArchivedMessage
    session_title: str = ""
    session_started_at: Optional[datetime] = None
    # Surrounding messages in chronological order, including the match
    context: list[ArchivedMessage] = field(default_factory=list)

    def _match_index(self) -> int:
        for i, msg in enumerate(self.context):
            if msg.id == self.message.id:
                return i
        return -1

    @property
    def context_before(self) -> list[ArchivedMessage]:
        i = self._match_index()
        return self.context[:i] if i >= 0 else []

    @property
    def context_after(self) -> list[ArchivedMessage]:
        i = self._match_index()
        return self.context[i + 1 :] if i >= 0 else []


@dataclass
class ArchiveStats:
    total_sessions: int = 0
    open_sessions: int = 0
    summarized_sessions: int = 0
    total_messages: int = 0
    total_tool_calls: int = 0
    messages_by_role: dict[str, int] = field(default_factory=dict)
    oldest_message: Optional[datetime] = None
    newest_message: Optional[datetime] = None


VALID_ROLES = frozenset(r.value for r in Role)
