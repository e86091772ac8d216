"""Capability tags: per-session activation of tool groups, plus the tools that toggle them."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from pydantic import BaseModel, Field

from memcore.ai.tools.base import TypedTool
from memcore.ai.tools.errors import CapabilityError
from memcore.ai.tools.registry import ToolRegistry
from memcore.log import get_logger

logger = get_logger(__name__)

REQUEST_CAPABILITY = "request_capability"
DROP_CAPABILITY = "drop_capability"
CAPABILITY_TOOL_NAMES = (REQUEST_CAPABILITY, DROP_CAPABILITY)


class CapabilityManager(Protocol):
    def request_capability(self, tag: str) -> None: ...

    def drop_capability(self, tag: str) -> None: ...

    def active_tags(self) -> set[str]: ...


@dataclass
class CapabilityManifest:
    tag: str
    description: str = ""
    tools: list[str] = field(default_factory=list)
    always_active: bool = False


def build_capability_manifest(
    tags: dict[str, list[str]],
    descriptions: dict[str, str] | None = None,
    always_active: set[str] | None = None,
) -> list[CapabilityManifest]:
    descriptions = descriptions or {}
    always_active = always_active or set()
    return [
        CapabilityManifest(
            tag=tag,
            description=descriptions.get(tag, ""),
            tools=list(tags[tag]),
            always_active=tag in always_active,
        )
        for tag in sorted(tags)
    ]


class CapabilitySet:
    """Active-tag state for one conversation."""

    def __init__(self, manifest: list[CapabilityManifest]):
        self._manifest = {m.tag: m for m in manifest}
        self._active = {m.tag for m in manifest if m.always_active}

    def request_capability(self, tag: str) -> None:
        if tag not in self._manifest:
            known = ", ".join(sorted(self._manifest)) or "(none)"
            raise CapabilityError(f'unknown capability tag "{tag}" (available: {known})')
        self._active.add(tag)
        logger.info("capability_activated", tag=tag)

    def drop_capability(self, tag: str) -> None:
        entry = self._manifest.get(tag)
        if entry is None:
            raise CapabilityError(f'unknown capability tag "{tag}"')
        if entry.always_active:
            raise CapabilityError(f'capability "{tag}" is always active and cannot be dropped')
        self._active.discard(tag)
        logger.info("capability_dropped", tag=tag)

    def active_tags(self) -> set[str]:
        return set(self._active)

    def reset(self) -> None:
        self._active = {t for t, m in self._manifest.items() if m.always_active}


class CapabilityParams(BaseModel):
    tag: str = Field(min_length=1, description="The capability tag to activate or deactivate")


class RequestCapabilityTool(TypedTool):
    params_model = CapabilityParams

    def __init__(self, manager: CapabilityManager, manifest: list[CapabilityManifest]):
        self._manager = manager
        self._manifest = manifest

    @property
    def name(self) -> str:
        return REQUEST_CAPABILITY

    @property
    def description(self) -> str:
        lines = [
            "Activate a capability tag to gain access to additional tools. "
            "Available capabilities:"
        ]
        for m in self._manifest:
            if m.always_active:
                continue
            lines.append(f"- **{m.tag}**: {m.description} (tools: {', '.join(m.tools)})")
        lines.append(
            "Use drop_capability to deactivate a tag when you no longer need those tools."
        )
        return "\n".join(lines)

    async def run(self, params: CapabilityParams) -> str:
        self._manager.request_capability(params.tag)
        return f"Capability **{params.tag}** activated. Tools for this tag are now available."


class DropCapabilityTool(TypedTool):
    params_model = CapabilityParams

    def __init__(self, manager: CapabilityManager):
        self._manager = manager

    @property
    def name(self) -> str:
        return DROP_CAPABILITY

    @property
    def description(self) -> str:
        return (
            "Deactivate a capability tag to remove its tools from the active set. "
            "Always-active tags cannot be dropped. Use when you no longer need a "
            "capability's tools to keep the tool set focused."
        )

    async def run(self, params: CapabilityParams) -> str:
        self._manager.drop_capability(params.tag)
        return f"Capability **{params.tag}** deactivated. Its tools are no longer available."


def register_capability_tools(
    registry: ToolRegistry, manager: CapabilityManager, manifest: list[CapabilityManifest]
) -> None:
    registry.register(RequestCapabilityTool(manager, manifest))
    registry.register(DropCapabilityTool(manager))


def render_capability_manifest(manifest: list[CapabilityManifest], active: set[str]) -> str:
    """Markdown block listing each tag and whether it is currently active."""
    if not manifest:
        return ""
    lines = ["### Capabilities"]
    for m in manifest:
        if m.always_active:
            state = "always active"
        elif m.tag in active:
            state = "active"
        else:
            state = "inactive"
        lines.append(f"- **{m.tag}** ({state}): {m.description}")
    return "\n".join(lines)
