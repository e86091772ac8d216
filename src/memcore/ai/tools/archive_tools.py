"""Tools that let the model read its own conversation archive."""

from __future__ import annotations

import json
from dataclasses import asdict
from typing import Literal, Optional

from pydantic import BaseModel, Field

from memcore.ai.tools.base import TypedTool
from memcore.ai.tools.registry import ToolRegistry
from memcore.storage.archive_repo import ArchiveStore
from memcore.storage.models import ArchivedMessage, SearchOptions, SearchResult, short_id

MAX_SEARCH_RESULT_BYTES = 16000
MAX_TRANSCRIPT_BYTES = 32000
_CONTEXT_LINE_CHARS = 500


def _cap(text: str, limit: int, note: str) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + note.format(total=len(text), limit=limit)


def format_search_results(results: list[SearchResult]) -> str:
    parts = [f"Found {len(results)} results:\n\n"]
    for i, result in enumerate(results, 1):
        match = result.message
        parts.append(f"--- Result {i} (session {short_id(match.session_id)}) ---\n")
        for msg in result.context or [match]:
            if msg.id == match.id:
                ts = match.timestamp.strftime("%Y-%m-%d %H:%M:%S")
                parts.append(f">>> [{ts}] {match.role}: {match.content}\n")
            else:
                parts.append(_format_context_line(msg))
        parts.append("\n")
    return "".join(parts)


def _format_context_line(msg: ArchivedMessage) -> str:
    content = msg.content
    if len(content) > _CONTEXT_LINE_CHARS:
        content = content[:_CONTEXT_LINE_CHARS] + "..."
    return f"    [{msg.timestamp.strftime('%H:%M:%S')}] {msg.role}: {content}\n"


class ArchiveSearchParams(BaseModel):
    query: str = Field(
        min_length=1, description="Search query: what you're looking for in past conversations"
    )
    conversation_id: str = Field("", description="Optional: filter to a specific conversation ID")
    silence_minutes: Optional[float] = Field(
        None,
        description="Minutes of silence that defines a conversation boundary for context "
        "expansion. Default: 10",
    )
    no_context: bool = Field(
        False,
        description="If true, return only matching messages without surrounding context",
    )
    limit: int = Field(5, ge=1, le=50, description="Maximum number of results. Default: 5")


class ArchiveSearchTool(TypedTool):
    params_model = ArchiveSearchParams

    def __init__(self, store: ArchiveStore):
        self._store = store

    @property
    def name(self) -> str:
        return "archive_search"

    @property
    def description(self) -> str:
        return (
            "Search your conversation archive, your long-term memory of past sessions. "
            "Use this to recall what was discussed previously, find decisions made, look up "
            "things the user told you, or recover context from earlier conversations. "
            "Returns matching messages with surrounding conversation context, bounded by "
            "natural silence gaps in the conversation."
        )

    async def run(self, params: ArchiveSearchParams) -> str:
        results = await self._store.search(
            SearchOptions(
                query=params.query,
                conversation_id=params.conversation_id,
                limit=params.limit,
                no_context=params.no_context,
                silence_minutes=params.silence_minutes,
            )
        )
        if not results:
            return "No results found in conversation archive."
        return _cap(
            format_search_results(results),
            MAX_SEARCH_RESULT_BYTES,
            "\n\n[Truncated: {total} bytes total, showing first {limit} bytes. "
            "Use archive_session_transcript for full context of a specific session.]",
        )


class ArchiveSessionsParams(BaseModel):
    conversation_id: str = Field("", description="Optional: filter to a specific conversation ID")
    limit: int = Field(20, ge=1, le=200, description="Maximum number of sessions to return")


class ArchiveSessionsTool(TypedTool):
    params_model = ArchiveSessionsParams

    def __init__(self, store: ArchiveStore):
        self._store = store

    @property
    def name(self) -> str:
        return "archive_sessions"

    @property
    def description(self) -> str:
        return (
            "List past conversation sessions from the archive. Shows when sessions "
            "started/ended, message counts, and end reasons. Use to understand conversation "
            "history or find a specific session to examine."
        )

    async def run(self, params: ArchiveSessionsParams) -> str:
        sessions = await self._store.list_sessions(params.conversation_id, params.limit)
        if not sessions:
            return "No sessions found in the archive."

        lines = [f"Found {len(sessions)} sessions:\n"]
        for s in sessions:
            if s.ended_at is not None:
                minutes = round((s.ended_at - s.started_at).total_seconds() / 60)
                end_info = f"ended ({s.end_reason}, {minutes}m)"
            else:
                end_info = "active"
            label = s.short_id
            if s.title:
                title = s.title.replace("\n", " ")
                if len(title) > 80:
                    title = title[:80] + "…"
                label = f"{s.short_id}: {title}"
            lines.append(
                f"- **{label}** | {s.started_at.strftime('%Y-%m-%d %H:%M')}, "
                f"{s.message_count} messages, {end_info}"
            )
            if s.summary:
                lines.append(f"  *{s.summary}*")
            if s.tags:
                lines.append(f"  Tags: {', '.join(s.tags)}")
        return "\n".join(lines) + "\n"


class ArchiveTranscriptParams(BaseModel):
    session_id: str = Field(min_length=1, description="Session ID (or first 8 characters)")
    format: Literal["text", "json"] = Field("text", description="Output format. Default: text")


class ArchiveTranscriptTool(TypedTool):
    params_model = ArchiveTranscriptParams

    def __init__(self, store: ArchiveStore):
        self._store = store

    @property
    def name(self) -> str:
        return "archive_session_transcript"

    @property
    def description(self) -> str:
        return (
            "Retrieve the full transcript of a past conversation session. Returns all "
            "messages in chronological order. Use after archive_sessions to read a specific "
            "session, or after archive_search to get full context."
        )

    async def run(self, params: ArchiveTranscriptParams) -> str:
        session = await self._store.resolve_session_id(params.session_id)

        if params.format == "json":
            messages = await self._store.get_session_transcript(session.id)
            data = json.dumps([asdict(m) for m in messages], indent=2, default=str)
            return _cap(
                data,
                MAX_TRANSCRIPT_BYTES,
                "\n\n[Truncated: {total} bytes total. Full transcript has "
                f"{len(messages)} messages.]",
            )

        markdown = await self._store.export_session_markdown(session.id)
        return _cap(
            markdown,
            MAX_TRANSCRIPT_BYTES,
            "\n\n[Truncated: {total} bytes total. Use archive_search to find specific content.]",
        )


def register_archive_tools(registry: ToolRegistry, store: ArchiveStore) -> None:
    registry.register(ArchiveSearchTool(store))
    registry.register(ArchiveSessionsTool(store))
    registry.register(ArchiveTranscriptTool(store))
