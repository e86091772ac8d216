"""Session-control tools."""

from __future__ import annotations

from typing import Protocol

from pydantic import BaseModel, Field

from memcore.ai.tools.base import TypedTool
from memcore.ai.tools.context import current_conversation_id


class ConversationResetter(Protocol):
    async def reset_conversation(self, conversation_id: str, carry_forward: str = "") -> str:
        """Close the current session and open a fresh one; returns the new session id."""
        ...


class ConversationResetParams(BaseModel):
    reason: str = Field("", description="Why the conversation is being reset")
    carry_forward: str = Field(
        "",
        description="Short note to carry into the new session so work can continue "
        "(open tasks, decisions, where you left off)",
    )


class ConversationResetTool(TypedTool):
    params_model = ConversationResetParams

    def __init__(self, resetter: ConversationResetter):
        self._resetter = resetter

    @property
    def name(self) -> str:
        return "conversation_reset"

    @property
    def description(self) -> str:
        return (
            "Close the current session and start a fresh one. The finished session is "
            "archived and summarized in the background. Use when the context is cluttered "
            "or the topic has fully changed. Provide carry_forward to keep continuity."
        )

    async def run(self, params: ConversationResetParams) -> str:
        new_id = await self._resetter.reset_conversation(
            current_conversation_id(), params.carry_forward
        )
        note = f" Reason: {params.reason}." if params.reason else ""
        return f"Conversation reset. New session {new_id[:8]} started.{note}"
