"""Injects archive excerpts relevant to the incoming message ("past experience")."""

from __future__ import annotations

from typing import Protocol

from memcore.log import get_logger
from memcore.storage.models import SearchOptions, SearchResult, short_id

logger = get_logger(__name__)

MAX_QUERY_CHARS = 100
MAX_MESSAGE_CHARS = 200
MAX_CONTEXT_EACH_SIDE = 2


class ArchiveSearcher(Protocol):
    async def search(self, opts: SearchOptions) -> list[SearchResult]: ...


def _shorten(text: str) -> str:
    text = text.strip()
    if not text:
        return "(empty)"
    newline = text.find("\n")
    if newline >= 0:
        text = text[:newline] + "..."
    if len(text) > MAX_MESSAGE_CHARS:
        cut = text.rfind(" ", 0, MAX_MESSAGE_CHARS)
        if cut <= MAX_MESSAGE_CHARS // 2:
            cut = MAX_MESSAGE_CHARS
        text = text[:cut] + "..."
    return text


def format_result_block(result: SearchResult) -> str:
    match = result.message
    lines = [f"**{match.timestamp:%Y-%m-%d} — Session {short_id(match.session_id)}:**"]
    for msg in result.context_before[-MAX_CONTEXT_EACH_SIDE:]:
        lines.append(f"> [{msg.role}] {_shorten(msg.content)}")
    lines.append(f"> **[{match.role}] {_shorten(match.content)}**")
    for msg in result.context_after[:MAX_CONTEXT_EACH_SIDE]:
        lines.append(f"> [{msg.role}] {_shorten(msg.content)}")
    return "\n".join(lines) + "\n"


class ArchiveContextProvider:
    def __init__(self, archive: ArchiveSearcher, max_results: int = 3, max_bytes: int = 3000):
        self._archive = archive
        self._max_results = max_results
        self._max_bytes = max_bytes

    async def get_context(self, user_message: str) -> str:
        """Search the archive with a short single-line message; never raises."""
        query = user_message.strip()
        if not query or len(query) > MAX_QUERY_CHARS or "\n" in query or "\r" in query:
            return ""

        try:
            results = await self._archive.search(
                SearchOptions(query=query, limit=self._max_results)
            )
        except Exception as e:
            logger.warning("archive_prewarm_failed", query=query, error=str(e))
            return ""
        if not results:
            return ""

        out = "### Past Experience\n\n"
        included = 0
        for i, result in enumerate(results):
            block = format_result_block(result)
            if i < len(results) - 1:
                block += "\n"
            if len((out + block).encode("utf-8")) > self._max_bytes:
                note = (
                    f"*({len(results) - included} additional result(s) omitted, "
                    "byte budget reached)*\n"
                )
                if len((out + note).encode("utf-8")) <= self._max_bytes:
                    out += note
                break
            out += block
            included += 1

        if included == 0:
            return ""
        logger.debug("archive_prewarm_injected", query=query, results=included)
        return out
