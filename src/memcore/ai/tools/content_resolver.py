"""Expands by-reference tool arguments (``temp:LABEL``, ``kb:path``) into file content."""

from __future__ import annotations

from typing import Any

from memcore.ai.tools.context import current_conversation_id
from memcore.ai.tools.errors import ContentResolveError
from memcore.ai.tools.tempfiles import TempFileStore
from memcore.core.paths import PathResolver
from memcore.log import get_logger

logger = get_logger(__name__)

TEMP_PREFIX = "temp:"


class ContentResolver:
    def __init__(self, temp_files: TempFileStore | None = None, paths: PathResolver | None = None):
        self._temp_files = temp_files
        self._paths = paths

    async def resolve_args(self, args: dict[str, Any]) -> None:
        """Replace top-level string values that are whole prefix references, in place.

        ``temp:`` failures raise ContentResolveError; path-prefix failures leave
        the value untouched.
        """
        for key, value in list(args.items()):
            if not isinstance(value, str) or any(c.isspace() for c in value):
                continue
            if value.startswith(TEMP_PREFIX):
                args[key] = await self._resolve_temp(key, value)
            elif self._paths is not None and self._paths.has_prefix(value):
                args[key] = self._resolve_path(value)

    async def _resolve_temp(self, key: str, value: str) -> str:
        label = value[len(TEMP_PREFIX) :]
        if not label or self._temp_files is None:
            return value

        path = await self._temp_files.lookup(current_conversation_id(), label)
        if path is None:
            raise ContentResolveError(
                f'resolve "{value}" in parameter "{key}": unknown temp label "{label}"'
            )
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise ContentResolveError(
                f'resolve "{value}" in parameter "{key}": read temp file "{path}": {e}'
            ) from e

    def _resolve_path(self, value: str) -> str:
        path = self._paths.resolve(value) if self._paths else None
        if path is None or not path.is_file():
            return value
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.debug("path_reference_unreadable", reference=value, error=str(e))
            return value
        logger.debug("path_reference_resolved", reference=value, bytes=len(content))
        return content
