"""Iterative tool execution loop for model tool-call responses."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from memcore.ai.client import AIClient
from memcore.ai.tools.errors import ToolUnavailableError
from memcore.ai.tools.registry import ToolRegistry
from memcore.core.session import SessionManager
from memcore.core.types import Role
from memcore.log import get_logger
from memcore.storage.models import ArchivedToolCall, utcnow

logger = get_logger(__name__)

MAX_TOOL_ROUNDS = 10
CANCELLED_TEXT = "[Request cancelled]"
ROUND_LIMIT_TEXT = "[Stopped after reaching the tool round limit]"


def unavailable_tool_result(name: str) -> str:
    return (
        f'Tool "{name}" is not available in this context. Do not call it again. '
        "Delegate the task or tell the user this cannot be done right now."
    )


@dataclass
class ToolLoopResult:
    text: str
    rounds: int = 0
    tool_calls: list[ArchivedToolCall] = field(default_factory=list)


async def run_tool_loop(
    ai_client: AIClient,
    tool_registry: ToolRegistry,
    sessions: SessionManager,
    conversation_id: str,
    messages: list[dict[str, Any]],
    system: str,
    model: str,
    max_tokens: int = 4096,
    temperature: float = 0.7,
    max_rounds: int = MAX_TOOL_ROUNDS,
    cancel_event: asyncio.Event | None = None,
) -> ToolLoopResult:
    """Run model rounds, dispatching tool calls, until a text-only reply arrives.

    Tool calls and tool results are archived as they happen. When the model
    calls a tool outside the current registry it gets an instruction result
    and the next round is sent without tools.
    """
    tool_defs = tool_registry.definitions()
    tools_enabled = bool(tool_defs)
    result = ToolLoopResult(text="")

    while result.rounds < max_rounds:
        if cancel_event and cancel_event.is_set():
            logger.info("tool_loop_cancelled", conversation=conversation_id, round=result.rounds)
            result.text = CANCELLED_TEXT
            return result

        response = await ai_client.chat(
            system=system,
            messages=messages,
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            tools=tool_defs if tools_enabled else None,
        )
        result.rounds += 1

        if not response.tool_calls:
            messages.append({"role": "assistant", "content": response.text})
            result.text = response.text
            return result

        messages.append(
            {"role": "assistant", "content": response.text, "tool_calls": response.tool_calls}
        )
        if response.text:
            await sessions.append(conversation_id, Role.ASSISTANT, response.text)

        for call in response.tool_calls:
            record = ArchivedToolCall(
                id=call.id,
                session_id="",
                conversation_id=conversation_id,
                tool_name=call.name,
                arguments=call.arguments,
                started_at=utcnow(),
            )
            try:
                output = await tool_registry.execute(call.name, call.arguments)
            except ToolUnavailableError as e:
                logger.warning("tool_unavailable", tool_name=e.tool_name, conversation=conversation_id)
                output = unavailable_tool_result(e.tool_name)
                tools_enabled = False
            except Exception as e:
                logger.warning("tool_failed", tool_name=call.name, error=str(e))
                output = f"Error: {e}"

            record.result = output
            record.completed_at = utcnow()
            # Session may have rotated during the call (conversation_reset)
            session = await sessions.current(conversation_id)
            record.session_id = session.id
            await sessions.archive.archive_tool_calls([record])
            await sessions.append(conversation_id, Role.TOOL, output, tool_call_id=call.id)
            result.tool_calls.append(record)

            messages.append({"role": "tool", "tool_call_id": call.id, "content": output})

    logger.warning("tool_loop_round_limit", conversation=conversation_id, rounds=result.rounds)
    result.text = ROUND_LIMIT_TEXT
    return result
