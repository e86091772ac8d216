"""Per-conversation temp files addressed by short labels (``temp:LABEL``)."""

from __future__ import annotations

import os
import re
import secrets
from pathlib import Path

from memcore.ai.tools.errors import InvalidLabelError
from memcore.log import get_logger
from memcore.storage.opstate import OpStateStore

logger = get_logger(__name__)

LABEL_PATTERN = re.compile(r"[a-zA-Z0-9][a-zA-Z0-9_-]{0,62}")
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")
_MAX_PREFIX_LEN = 64


def sanitize_conversation_id(conversation_id: str) -> str:
    return _UNSAFE_CHARS.sub("_", conversation_id)[:_MAX_PREFIX_LEN]


def _namespace(conversation_id: str) -> str:
    return f"tempfile:{conversation_id}"


class TempFileStore:
    """Owns ``base_dir`` and the label mappings recorded in operational state."""

    def __init__(self, base_dir: str | Path, state: OpStateStore):
        self._base_dir = Path(base_dir)
        self._state = state

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    async def create(self, conversation_id: str, label: str, content: str) -> Path:
        """Write content to a new file and map label to it, replacing any prior file."""
        if not LABEL_PATTERN.fullmatch(label):
            raise InvalidLabelError(label)

        self._base_dir.mkdir(mode=0o755, parents=True, exist_ok=True)
        filename = (
            f"{sanitize_conversation_id(conversation_id)}_{label}_{secrets.token_hex(4)}.md"
        )
        path = (self._base_dir / filename).absolute()
        path.write_text(content, encoding="utf-8")
        os.chmod(path, 0o644)

        ns = _namespace(conversation_id)
        old = await self._state.get(ns, label)
        if old and old != str(path):
            try:
                Path(old).unlink(missing_ok=True)
            except OSError as e:
                logger.warning("temp_file_remove_failed", path=old, error=str(e))

        try:
            await self._state.set(ns, label, str(path))
        except Exception:
            path.unlink(missing_ok=True)
            raise

        logger.debug("temp_file_created", conversation=conversation_id, label=label, path=str(path))
        return path

    async def lookup(self, conversation_id: str, label: str) -> Path | None:
        value = await self._state.get(_namespace(conversation_id), label)
        return Path(value) if value else None

    async def labels(self, conversation_id: str) -> dict[str, str]:
        return await self._state.list(_namespace(conversation_id))

    async def expand_labels(self, conversation_id: str, text: str) -> str:
        """Replace every ``temp:LABEL`` occurrence with the file path it maps to.

        Unknown labels are left as-is. Longer labels are tried first and a label
        only matches when not followed by another label character.
        """
        mappings = await self.labels(conversation_id)
        if not mappings:
            return text
        ordered = sorted(mappings, key=len, reverse=True)
        pattern = re.compile(
            r"temp:(" + "|".join(re.escape(label) for label in ordered) + r")(?![A-Za-z0-9_-])"
        )
        return pattern.sub(lambda m: mappings[m.group(1)], text)

    async def cleanup(self, conversation_id: str) -> int:
        """Remove every file and mapping for the conversation. Returns files removed."""
        ns = _namespace(conversation_id)
        mappings = await self._state.list(ns)
        removed = 0
        for label, path in mappings.items():
            try:
                Path(path).unlink(missing_ok=True)
                removed += 1
            except OSError as e:
                logger.warning("temp_file_remove_failed", label=label, path=path, error=str(e))
        await self._state.delete_namespace(ns)
        if mappings:
            logger.info("temp_files_cleaned", conversation=conversation_id, count=removed)
        return removed
