"""Agent loop: one user turn in, one assistant reply out, with memory and tools."""

from __future__ import annotations

import asyncio

from memcore.ai.client import AIClient
from memcore.ai.conversation import build_messages
from memcore.ai.router import ModelRouter, Priority, RouteRequest
from memcore.ai.tool_runner import run_tool_loop
from memcore.ai.tools.capability import (
    CAPABILITY_TOOL_NAMES,
    CapabilityManifest,
    CapabilitySet,
    register_capability_tools,
    render_capability_manifest,
)
from memcore.ai.tools.context import conversation_scope, current_conversation_id
from memcore.ai.tools.registry import ToolRegistry
from memcore.ai.tools.session_tools import ConversationResetTool
from memcore.ai.tools.tempfiles import TempFileStore
from memcore.config import AgentConfig
from memcore.core.session import SessionManager
from memcore.core.types import EndReason, Role
from memcore.log import get_logger
from memcore.memory.archive_context import ArchiveContextProvider
from memcore.memory.episodic import EpisodicProvider
from memcore.memory.prompts import CARRY_FORWARD_HEADER

logger = get_logger(__name__)


class AgentLoop:
    """Processes user turns, one at a time per conversation.

    Acts as the CapabilityManager for the capability tools (scoped to the
    conversation of the calling task) and as the ConversationResetter for
    ``conversation_reset``.
    """

    def __init__(
        self,
        ai_client: AIClient,
        router: ModelRouter,
        sessions: SessionManager,
        registry: ToolRegistry,
        manifest: list[CapabilityManifest] | None = None,
        episodic: EpisodicProvider | None = None,
        archive_context: ArchiveContextProvider | None = None,
        temp_files: TempFileStore | None = None,
        config: AgentConfig | None = None,
        system_prompt: str = "",
    ):
        self._client = ai_client
        self._router = router
        self._sessions = sessions
        self._registry = registry
        self._manifest = manifest or []
        self._episodic = episodic
        self._archive_context = archive_context
        self._temp_files = temp_files
        self._config = config or AgentConfig()
        self._system_prompt = system_prompt
        self._capabilities: dict[str, CapabilitySet] = {}
        self._locks: dict[str, asyncio.Lock] = {}

        if self._manifest:
            registry.set_tag_index({m.tag: m.tools for m in self._manifest})
            register_capability_tools(registry, self, self._manifest)
        registry.register(ConversationResetTool(self))

    # ── CapabilityManager ────────────────────────────────────────

    def _capability_set(self, conversation_id: str) -> CapabilitySet:
        caps = self._capabilities.get(conversation_id)
        if caps is None:
            caps = CapabilitySet(self._manifest)
            self._capabilities[conversation_id] = caps
        return caps

    def request_capability(self, tag: str) -> None:
        self._capability_set(current_conversation_id()).request_capability(tag)

    def drop_capability(self, tag: str) -> None:
        self._capability_set(current_conversation_id()).drop_capability(tag)

    def active_tags(self) -> set[str]:
        return self._capability_set(current_conversation_id()).active_tags()

    # ── ConversationResetter ─────────────────────────────────────

    async def reset_conversation(self, conversation_id: str, carry_forward: str = "") -> str:
        """Close the current session, clear per-conversation state, open a new session."""
        session = await self._sessions.rotate(conversation_id, EndReason.RESET)
        if self._temp_files is not None:
            await self._temp_files.cleanup(conversation_id)
        caps = self._capabilities.get(conversation_id)
        if caps is not None:
            caps.reset()
        if carry_forward.strip():
            await self._sessions.append(
                conversation_id,
                Role.SYSTEM,
                f"{CARRY_FORWARD_HEADER}\n{carry_forward.strip()}",
                archive_reason="carry_forward",
            )
        logger.info("conversation_reset", conversation=conversation_id, session=session.short_id)
        return session.id

    # ── turns ────────────────────────────────────────────────────

    def turn_registry(self, conversation_id: str) -> ToolRegistry:
        """Tools visible this turn: active tags, untagged tools and capability tools."""
        if not self._manifest:
            return self._registry
        tagged = self._registry.tagged_tool_names() - set(CAPABILITY_TOOL_NAMES)
        active = self._registry.filter_by_tags(sorted(self._capability_set(conversation_id).active_tags()))
        allowed = set(active.all_tool_names())
        allowed.update(n for n in self._registry.all_tool_names() if n not in tagged)
        return self._registry.filtered_copy(sorted(allowed))

    async def handle(
        self, conversation_id: str, text: str, cancel_event: asyncio.Event | None = None
    ) -> str:
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        async with lock:
            with conversation_scope(conversation_id):
                return await self._handle(conversation_id, text, cancel_event)

    async def _handle(self, conversation_id: str, text: str, cancel_event: asyncio.Event | None) -> str:
        # Searched before archiving so the incoming message cannot match itself
        past = await self._archive_context.get_context(text) if self._archive_context else ""
        await self._sessions.append(conversation_id, Role.USER, text)
        session = await self._sessions.current(conversation_id)
        transcript = await self._sessions.archive.get_session_transcript(session.id)
        notes, messages = build_messages(transcript)

        registry = self.turn_registry(conversation_id)
        system = await self._build_system_prompt(conversation_id, past, notes)
        model = self._router.route(
            RouteRequest(query=text, priority=Priority.INTERACTIVE, needs_tools=len(registry) > 0)
        )

        result = await run_tool_loop(
            ai_client=self._client,
            tool_registry=registry,
            sessions=self._sessions,
            conversation_id=conversation_id,
            messages=messages,
            system=system,
            model=model,
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
            max_rounds=self._config.max_tool_rounds,
            cancel_event=cancel_event,
        )
        if result.text:
            await self._sessions.append(conversation_id, Role.ASSISTANT, result.text)
        logger.info(
            "turn_complete",
            conversation=conversation_id,
            model=model,
            rounds=result.rounds,
            tool_calls=len(result.tool_calls),
        )
        return result.text

    async def _build_system_prompt(self, conversation_id: str, past: str, notes: list[str]) -> str:
        parts = []
        if self._system_prompt:
            parts.append(self._system_prompt)
        if self._manifest:
            parts.append(
                render_capability_manifest(
                    self._manifest, self._capability_set(conversation_id).active_tags()
                )
            )
        if self._episodic is not None:
            block = await self._episodic.get_context()
            if block:
                parts.append(block)
        if past:
            parts.append(past)
        parts.extend(notes)
        return "\n\n".join(p.strip() for p in parts if p.strip())
