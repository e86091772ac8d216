"""Storage-layer exceptions."""

from __future__ import annotations


class SessionNotFoundError(LookupError):
    def __init__(self, session_id: str):
        super().__init__(f"session {session_id!r} not found")
        self.session_id = session_id


class AmbiguousSessionIDError(ValueError):
    def __init__(self, prefix: str, matches: int):
        super().__init__(f"session prefix {prefix!r} matches {matches} sessions")
        self.prefix = prefix
        self.matches = matches
