"""Session manager mapping conversation IDs to their open archive session."""

from __future__ import annotations

from memcore.core.types import EndReason, Role
from memcore.log import get_logger
from memcore.storage.archive_repo import ArchiveStore
from memcore.storage.models import ArchivedMessage, Session

logger = get_logger(__name__)


class SessionManager:
    """Tracks the current session per conversation and appends messages to it."""

    def __init__(self, archive: ArchiveStore):
        self._archive = archive
        self._active: dict[str, Session] = {}

    @property
    def archive(self) -> ArchiveStore:
        return self._archive

    async def current(self, conversation_id: str) -> Session:
        """Return the open session for a conversation, resuming or starting one."""
        session = self._active.get(conversation_id)
        if session is not None:
            return session
        session = await self._archive.active_session(conversation_id)
        if session is None:
            session = await self._archive.start_session(conversation_id)
        else:
            logger.info("session_resumed", session=session.short_id, conversation=conversation_id)
        self._active[conversation_id] = session
        return session

    async def end(self, conversation_id: str, reason: str = EndReason.NORMAL) -> Session | None:
        session = self._active.pop(conversation_id, None)
        if session is None:
            session = await self._archive.active_session(conversation_id)
        if session is None:
            return None
        await self._archive.end_session(session.id, reason)
        return session

    async def rotate(self, conversation_id: str, reason: str = EndReason.RESET) -> Session:
        """End the current session (if any) and start a fresh one."""
        await self.end(conversation_id, reason)
        return await self.current(conversation_id)

    async def append(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        tool_call_id: str = "",
        archive_reason: str = "",
    ) -> ArchivedMessage:
        session = await self.current(conversation_id)
        msg = ArchivedMessage(
            session_id=session.id,
            conversation_id=conversation_id,
            role=role,
            content=content,
            token_count=len(content) // 4,
            tool_call_id=tool_call_id,
            archive_reason=archive_reason,
        )
        await self._archive.archive_messages([msg])
        await self._archive.increment_message_count(session.id)
        return msg

    async def end_all(self, reason: str = EndReason.NORMAL) -> int:
        """Close every session this manager has open (used on shutdown)."""
        count = 0
        for conversation_id in list(self._active):
            if await self.end(conversation_id, reason):
                count += 1
        return count
