"""Model selection from routing hints."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum

from memcore.config import ModelConfig
from memcore.log import get_logger

logger = get_logger(__name__)

HINT_MISSION = "mission"
HINT_LOCAL_ONLY = "local_only"
HINT_QUALITY_FLOOR = "quality_floor"
HINT_MODEL_PREFERENCE = "model_preference"

MISSION_BACKGROUND = "background"
MISSION_INTERACTIVE = "interactive"


class Priority(IntEnum):
    BACKGROUND = 0
    INTERACTIVE = 1


@dataclass
class RouteRequest:
    query: str = ""
    priority: Priority = Priority.INTERACTIVE
    needs_tools: bool = False
    hints: dict[str, str] = field(default_factory=dict)


class ModelRouter:
    """Chooses a configured model for a request, falling back to the default."""

    def __init__(self, models: list[ModelConfig], default_model: str):
        self._models = {m.name: m for m in models}
        self._default = default_model

    @property
    def default_model(self) -> str:
        return self._default

    def route(self, req: RouteRequest) -> str:
        hints = req.hints
        preference = hints.get(HINT_MODEL_PREFERENCE, "")
        if preference and preference in self._models:
            return preference

        candidates = list(self._models.values())
        if req.needs_tools:
            candidates = [m for m in candidates if m.supports_tools]
        if hints.get(HINT_LOCAL_ONLY, "").lower() == "true":
            candidates = [m for m in candidates if m.provider == "local"]
        try:
            floor = int(hints.get(HINT_QUALITY_FLOOR, "0"))
        except ValueError:
            floor = 0
        candidates = [m for m in candidates if m.quality >= floor]

        if not candidates:
            logger.debug("route_default", hints=hints, model=self._default)
            return self._default

        background = (
            req.priority == Priority.BACKGROUND or hints.get(HINT_MISSION) == MISSION_BACKGROUND
        )
        if background:
            # Cheapest adequate model, then best quality
            best = min(candidates, key=lambda m: (m.cost_tier, -m.quality, m.name))
        else:
            best = max(candidates, key=lambda m: (m.quality, m.speed, -m.cost_tier))
        logger.debug("route_selected", model=best.name, hints=hints)
        return best.name
