"""Shared fixtures-as-functions for the test suite."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable

from memcore.ai.client import AIClient, AIResponse
from memcore.storage.archive_repo import ArchiveStore
from memcore.storage.database import Database
from memcore.storage.models import ArchivedMessage, Session

T0 = datetime(2026, 2, 10, 12, 0, 0, tzinfo=timezone.utc)


class Clock:
    """Manually advanced clock for injecting into stores and workers."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@asynccontextmanager
async def open_db(tmp_path: Path, fts_enabled: bool = True) -> AsyncIterator[Database]:
    db = Database(str(tmp_path / "archive.db"), fts_enabled=fts_enabled)
    await db.initialize()
    try:
        yield db
    finally:
        await db.close()


@asynccontextmanager
async def open_archive(
    tmp_path: Path, clock: Callable[[], datetime] | None = None, fts_enabled: bool = True, **kwargs: Any
) -> AsyncIterator[ArchiveStore]:
    async with open_db(tmp_path, fts_enabled) as db:
        yield ArchiveStore(db, clock=clock or Clock(), **kwargs)


def message(session: Session, role: str, content: str, at: datetime, **kwargs: Any) -> ArchivedMessage:
    return ArchivedMessage(
        session_id=session.id,
        conversation_id=session.conversation_id,
        role=role,
        content=content,
        timestamp=at,
        **kwargs,
    )


async def add_session(
    archive: ArchiveStore,
    started: datetime,
    ended: datetime | None,
    messages: list[tuple[str, str, datetime]] = (),
    conversation_id: str = "chat",
) -> Session:
    """Create a session with (role, content, timestamp) messages, closed at ``ended``."""
    session = await archive.start_session_at(conversation_id, started)
    await archive.archive_messages([message(session, r, c, t) for r, c, t in messages])
    if ended is not None:
        await archive.end_session_at(session.id, "normal", ended)
    return await archive.get_session(session.id)


class FakeAIClient(AIClient):
    """Returns queued responses in order and records each request."""

    def __init__(self, responses: list[AIResponse | str] | None = None):
        self.responses = list(responses or [])
        self.calls: list[dict[str, Any]] = []

    async def chat(self, system, messages, model="", max_tokens=4096, temperature=0.7, tools=None):
        self.calls.append(
            {
                "system": system,
                "messages": [dict(m) for m in messages],
                "model": model,
                "tools": tools,
            }
        )
        if not self.responses:
            return AIResponse(text="ok", model=model)
        response = self.responses.pop(0)
        if isinstance(response, str):
            return AIResponse(text=response, model=model)
        return response
