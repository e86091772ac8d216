"""Per-task conversation identity seen by tool handlers."""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

DEFAULT_CONVERSATION_ID = "default"

_conversation_id: ContextVar[str] = ContextVar("conversation_id", default=DEFAULT_CONVERSATION_ID)


def current_conversation_id() -> str:
    return _conversation_id.get() or DEFAULT_CONVERSATION_ID


@contextmanager
def conversation_scope(conversation_id: str) -> Iterator[None]:
    token = _conversation_id.set(conversation_id)
    try:
        yield
    finally:
        _conversation_id.reset(token)
