"""Background worker that backfills structured metadata for closed sessions.

On start it closes sessions orphaned by a previous process, summarizes any
backlog immediately, then rescans on a fixed interval driven by APScheduler.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import BaseModel, ValidationError

from memcore.ai.client import AIClient
from memcore.ai.router import (
    HINT_LOCAL_ONLY,
    HINT_MISSION,
    HINT_MODEL_PREFERENCE,
    HINT_QUALITY_FLOOR,
    MISSION_BACKGROUND,
    ModelRouter,
    Priority,
    RouteRequest,
)
from memcore.config import SummarizerConfig
from memcore.core.types import SESSION_TYPES, EndReason, Role
from memcore.log import get_logger
from memcore.memory.prompts import METADATA_PROMPT
from memcore.services.base import Service
from memcore.storage.archive_repo import ArchiveStore
from memcore.storage.models import ArchivedMessage, Session, SessionMetadata, short_id, utcnow

logger = get_logger(__name__)

MAX_TRANSCRIPT_BYTES = 8000
EMPTY_SESSION_TITLE = "(empty session)"


class MetadataReply(BaseModel):
    """Shape the model is asked to return; list fields must be JSON arrays of strings."""

    title: Optional[str] = None
    tags: Optional[list[str]] = None
    one_liner: Optional[str] = None
    paragraph: Optional[str] = None
    detailed: Optional[str] = None
    key_decisions: Optional[list[str]] = None
    participants: Optional[list[str]] = None
    session_type: Optional[str] = None


@dataclass
class ParsedMetadata:
    metadata: SessionMetadata
    title: str = ""
    tags: list[str] = field(default_factory=list)


def build_transcript(messages: list[ArchivedMessage]) -> str:
    """Condensed ``[HH:MM] role: content`` lines, cut off after MAX_TRANSCRIPT_BYTES."""
    parts: list[str] = []
    size = 0
    for msg in messages:
        if msg.role == Role.SYSTEM:
            continue
        line = f"[{msg.timestamp:%H:%M}] {msg.role}: {msg.content}\n"
        parts.append(line)
        size += len(line.encode("utf-8"))
        if size > MAX_TRANSCRIPT_BYTES:
            parts.append("\n... (truncated)\n")
            break
    return "".join(parts)


def parse_metadata_response(content: str, tool_usage: dict[str, int] | None = None) -> ParsedMetadata:
    """Parse the model's JSON reply; unparseable replies become the paragraph."""
    text = content.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    text = text.strip()

    try:
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("metadata is not a JSON object")
        reply = MetadataReply.model_validate(data)
    except (ValidationError, ValueError) as e:
        logger.warning("metadata_parse_failed", error=str(e))
        return ParsedMetadata(metadata=SessionMetadata(paragraph=text, tools_used=dict(tool_usage or {})))

    metadata = SessionMetadata(
        one_liner=reply.one_liner or "",
        paragraph=reply.paragraph or "",
        detailed=reply.detailed or "",
        key_decisions=list(reply.key_decisions or []),
        participants=list(reply.participants or []),
        session_type=reply.session_type or "",
        tools_used=dict(tool_usage or {}),
    )
    if metadata.session_type and metadata.session_type not in SESSION_TYPES:
        logger.warning("unknown_session_type", session_type=metadata.session_type)
    tags = [t.strip().lower() for t in reply.tags or [] if t.strip()]
    return ParsedMetadata(metadata=metadata, title=reply.title or "", tags=tags)


class SummarizerWorker(Service):
    def __init__(
        self,
        archive: ArchiveStore,
        client: AIClient,
        router: ModelRouter,
        config: SummarizerConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._archive = archive
        self._client = client
        self._router = router
        self._config = config or SummarizerConfig()
        self._clock = clock
        # Sessions started before this instant and still open belong to a dead process
        self._start_time = clock()
        self._scheduler: AsyncIOScheduler | None = None
        self._task: asyncio.Task | None = None
        self._wake = asyncio.Event()

    @property
    def service_name(self) -> str:
        return "summarizer"

    @property
    def start_time(self) -> datetime:
        return self._start_time

    async def start(self) -> None:
        if self._task is not None:
            return
        self._wake = asyncio.Event()
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._on_tick,
            IntervalTrigger(seconds=self._config.interval_seconds),
            id="summarizer_scan",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        self._task = asyncio.create_task(self._run(), name="summarizer")
        logger.info(
            "summarizer_started",
            interval=self._config.interval_seconds,
            batch_size=self._config.batch_size,
        )

    async def stop(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("summarizer_stopped")

    async def health_check(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _on_tick(self) -> None:
        self._wake.set()

    async def _run(self) -> None:
        try:
            await self.recover_orphans()
        except Exception as e:
            logger.error("orphan_recovery_failed", error=str(e))
        while True:
            try:
                await self.close_idle_sessions()
                await self.run_once()
            except Exception as e:
                logger.error("summarizer_scan_failed", error=str(e))
            await self._wake.wait()
            self._wake.clear()

    async def recover_orphans(self) -> int:
        return await self._archive.close_orphaned_sessions(self._start_time)

    async def close_idle_sessions(self) -> int:
        """Close open sessions with no activity for idle_timeout_minutes (0 disables)."""
        if self._config.idle_timeout_minutes <= 0:
            return 0
        idle = timedelta(minutes=self._config.idle_timeout_minutes)
        now = self._clock()
        closed = 0
        for session, last_activity in await self._archive.active_sessions_with_last_activity():
            if now - last_activity > idle:
                if await self._archive.end_session_at(session.id, EndReason.IDLE_TIMEOUT, last_activity):
                    closed += 1
        if closed:
            logger.info("idle_sessions_closed", count=closed)
        return closed

    async def run_once(self) -> int:
        """Summarize one batch of pending sessions. Returns how many were attempted."""
        sessions = await self._archive.unsummarized_sessions(self._config.batch_size)
        if not sessions:
            return 0
        logger.info("summarizer_batch", pending=len(sessions))
        for i, session in enumerate(sessions):
            try:
                await self.summarize_session(session)
            except Exception as e:
                # Left unsummarized; the next scan retries it
                logger.warning("session_summary_failed", session=session.short_id, error=str(e))
            if i < len(sessions) - 1 and self._config.pause_between_seconds > 0:
                await asyncio.sleep(self._config.pause_between_seconds)
        return len(sessions)

    async def summarize_session(self, session: Session) -> None:
        messages = await self._archive.get_session_transcript(session.id)
        transcript = build_transcript(messages)
        if not transcript.strip():
            await self._mark_empty(session)
            return

        hints = {
            HINT_MISSION: MISSION_BACKGROUND,
            HINT_LOCAL_ONLY: "true",
            HINT_QUALITY_FLOOR: "7",
        }
        if self._config.model_preference:
            hints[HINT_MODEL_PREFERENCE] = self._config.model_preference
        model = self._router.route(
            RouteRequest(query="session metadata generation", priority=Priority.BACKGROUND, hints=hints)
        )

        tool_calls = await self._archive.get_session_tool_calls(session.id)
        tool_usage = dict(Counter(tc.tool_name for tc in tool_calls))

        prompt = METADATA_PROMPT.format(transcript=transcript)
        response = await asyncio.wait_for(
            self._client.chat(
                system="",
                messages=[{"role": "user", "content": prompt}],
                model=model,
                max_tokens=2048,
                temperature=0.2,
            ),
            timeout=self._config.timeout_seconds,
        )

        parsed = parse_metadata_response(response.text, tool_usage)
        await self._archive.set_session_metadata(session.id, parsed.metadata, parsed.title, parsed.tags)
        logger.info(
            "session_metadata_generated",
            session=session.short_id,
            title=parsed.title,
            model=model,
            tags=len(parsed.tags),
        )

    async def _mark_empty(self, session: Session) -> None:
        metadata = SessionMetadata(one_liner="Empty session (no transcript)", session_type="empty")
        await self._archive.set_session_metadata(session.id, metadata, EMPTY_SESSION_TITLE, [])
        logger.info("empty_session_marked", session=short_id(session.id))
