"""Model-facing tool for stashing large content under a temp label."""

from __future__ import annotations

from pydantic import BaseModel, Field

from memcore.ai.tools.base import TypedTool
from memcore.ai.tools.context import current_conversation_id
from memcore.ai.tools.tempfiles import TempFileStore


class CreateTempFileParams(BaseModel):
    label: str = Field(
        description="Short label (letters, digits, '-' or '_'; max 63 chars) to reference "
        "the file later as temp:LABEL"
    )
    content: str = Field(description="Content to store")


class CreateTempFileTool(TypedTool):
    params_model = CreateTempFileParams
    # Content may legitimately contain literal "temp:..." text
    skip_content_resolve = True

    def __init__(self, store: TempFileStore):
        self._store = store

    @property
    def name(self) -> str:
        return "create_temp_file"

    @property
    def description(self) -> str:
        return (
            "Store content in a temporary file and get a short label for it. Pass "
            "temp:LABEL as any tool argument instead of repeating the content; it is "
            "expanded to the file content before the tool runs. Files are removed when "
            "the conversation is reset."
        )

    async def run(self, params: CreateTempFileParams) -> str:
        path = await self._store.create(current_conversation_id(), params.label, params.content)
        return f"Stored {len(params.content)} characters as temp:{params.label} ({path.name})."
