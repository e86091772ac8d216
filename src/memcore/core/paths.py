"""Maps reference prefixes such as ``kb:`` to directories on disk."""

from __future__ import annotations

from pathlib import Path


class PathResolver:
    def __init__(self, prefixes: dict[str, str] | None = None):
        self._roots: dict[str, Path] = {}
        for prefix, directory in (prefixes or {}).items():
            if not prefix.endswith(":"):
                prefix += ":"
            self._roots[prefix] = Path(directory).expanduser()
        # Longest first so "kb-archive:" wins over "kb:"
        self._ordered = sorted(self._roots, key=len, reverse=True)

    def prefixes(self) -> list[str]:
        return list(self._ordered)

    def has_prefix(self, value: str) -> bool:
        return any(value.startswith(p) for p in self._ordered)

    def resolve(self, value: str) -> Path | None:
        """Turn ``prefix:relative/path`` into an absolute path under the prefix root.

        Returns None when no prefix matches or the path escapes the root.
        """
        for prefix in self._ordered:
            if not value.startswith(prefix):
                continue
            root = self._roots[prefix].resolve()
            rest = value[len(prefix) :].lstrip("/")
            if not rest:
                return root
            target = (root / rest).resolve()
            if target != root and root not in target.parents:
                return None
            return target
        return None
