"""Shared types and enumerations."""

from __future__ import annotations

from enum import StrEnum


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    SYSTEM = "system"


class EndReason(StrEnum):
    NORMAL = "normal"
    TIMEOUT = "timeout"
    IDLE_TIMEOUT = "idle_timeout"
    RESET = "reset"
    CRASH_RECOVERY = "crash_recovery"
    IMPORT = "import"


SESSION_TYPES = frozenset(
    {"debugging", "architecture", "philosophy", "casual", "planning", "operations", "creative"}
)
