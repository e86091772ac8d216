"""Tool registry: named tools, tag-filtered subsets and dispatch."""

from __future__ import annotations

import json
from typing import Any

from memcore.ai.tools.base import Tool
from memcore.ai.tools.content_resolver import ContentResolver
from memcore.ai.tools.errors import ToolUnavailableError
from memcore.log import get_logger

logger = get_logger(__name__)


class ToolRegistry:
    """Registry of tools available to one agent loop.

    Filtered copies get their own mapping; Tool instances are shared.
    """

    def __init__(self, resolver: ContentResolver | None = None):
        self._tools: dict[str, Tool] = {}
        self._tag_index: dict[str, list[str]] | None = None
        self._resolver = resolver

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool
        logger.debug("tool_registered", tool_name=tool.name)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def definitions(self) -> list[dict[str, Any]]:
        """Tool definitions in function-schema shape, sorted by name."""
        return [self._tools[name].to_api_dict() for name in sorted(self._tools)]

    def all_tool_names(self) -> list[str]:
        return sorted(self._tools)

    def filtered_copy(self, names: list[str]) -> ToolRegistry:
        wanted = set(names)
        return self._copy({n: t for n, t in self._tools.items() if n in wanted})

    def filtered_copy_excluding(self, names: list[str]) -> ToolRegistry:
        excluded = set(names)
        return self._copy({n: t for n, t in self._tools.items() if n not in excluded})

    def set_tag_index(self, index: dict[str, list[str]] | None) -> None:
        self._tag_index = {tag: list(tools) for tag, tools in index.items()} if index else None

    def filter_by_tags(self, tags: list[str]) -> ToolRegistry:
        """Tools belonging to at least one of tags. No tags or no index yields a full copy."""
        if not tags or self._tag_index is None:
            return self._copy(dict(self._tools))
        allowed: set[str] = set()
        for tag in tags:
            allowed.update(self._tag_index.get(tag, []))
        return self._copy({n: t for n, t in self._tools.items() if n in allowed})

    def tagged_tool_names(self) -> set[str]:
        """Every tool name that appears under some tag."""
        if not self._tag_index:
            return set()
        return {name for tools in self._tag_index.values() for name in tools}

    async def execute(self, name: str, args_json: str) -> str:
        """Decode arguments, resolve references, and run the named tool.

        Raises ToolUnavailableError for names not in this registry; handler
        exceptions propagate unchanged.
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolUnavailableError(name)

        try:
            args = json.loads(args_json) if args_json.strip() else {}
        except json.JSONDecodeError as e:
            raise ValueError(f"invalid arguments for tool {name!r}: {e}") from e
        if not isinstance(args, dict):
            raise ValueError(f"invalid arguments for tool {name!r}: expected a JSON object")

        if self._resolver is not None and not tool.skip_content_resolve:
            await self._resolver.resolve_args(args)

        logger.debug("tool_execute", tool_name=name)
        return await tool.execute(**args)

    def _copy(self, tools: dict[str, Tool]) -> ToolRegistry:
        clone = ToolRegistry(self._resolver)
        clone._tools = tools
        clone.set_tag_index(self._tag_index)
        return clone
