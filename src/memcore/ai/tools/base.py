"""Tool descriptors dispatched by the registry."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, ClassVar

from pydantic import BaseModel

ToolHandler = Callable[[dict[str, Any]], Awaitable[str]]


class Tool(ABC):
    """Base class for all model-callable tools."""

    # Set on tools whose string arguments must reach the handler verbatim
    skip_content_resolve: bool = False

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique tool name sent to the model."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        ...

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """JSON Schema dict describing accepted parameters."""
        ...

    @abstractmethod
    async def execute(self, **kwargs: Any) -> str:
        """Run the tool and return a text result for the model."""
        ...

    def to_api_dict(self) -> dict[str, Any]:
        """Serialize to the function-calling tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class FunctionTool(Tool):
    """A tool backed by a plain async handler taking the raw argument mapping."""

    def __init__(
        self,
        name: str,
        description: str,
        parameters: dict[str, Any],
        handler: ToolHandler,
        skip_content_resolve: bool = False,
    ):
        self._name = name
        self._description = description
        self._parameters = parameters
        self._handler = handler
        self.skip_content_resolve = skip_content_resolve

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def parameters(self) -> dict[str, Any]:
        return self._parameters

    async def execute(self, **kwargs: Any) -> str:
        return await self._handler(kwargs)


class TypedTool(Tool):
    """A tool whose arguments are validated into a pydantic model before running.

    Subclasses set ``params_model`` and implement ``run``. The JSON schema sent
    to the model is derived from the params model.
    """

    params_model: ClassVar[type[BaseModel]]

    @property
    def parameters(self) -> dict[str, Any]:
        schema = self.params_model.model_json_schema()
        schema.pop("title", None)
        for prop in schema.get("properties", {}).values():
            prop.pop("title", None)
        return schema

    async def execute(self, **kwargs: Any) -> str:
        params = self.params_model.model_validate(kwargs)
        return await self.run(params)

    @abstractmethod
    async def run(self, params: Any) -> str:
        ...
