from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Union

from audit_narrator.errors import UnknownModel


@dataclass(frozen=True)
class ModelDescriptor:
    model_id: str
    tier: str
    rate_limit_per_minute: int
    min_delay_ms: int
    paid_delay_ms: int = 0


# Free-tier limits; earlier entries are higher quality with tighter quotas.
DEFAULT_MODELS: List[ModelDescriptor] = [
    ModelDescriptor("gemini-2.5-pro", "premium", rate_limit_per_minute=5, min_delay_ms=12000, paid_delay_ms=500),
    ModelDescriptor("gemini-2.5-flash", "standard", rate_limit_per_minute=10, min_delay_ms=6000, paid_delay_ms=200),
    ModelDescriptor("gemini-2.0-flash", "fast", rate_limit_per_minute=15, min_delay_ms=4000),
    ModelDescriptor("gemini-2.0-flash-lite", "lite", rate_limit_per_minute=30, min_delay_ms=2000),
]

ModelRef = Union[ModelDescriptor, str]


class ModelRegistry:
    def __init__(self, models: Sequence[ModelDescriptor]) -> None:
        if not models:
            raise ValueError("ModelRegistry needs at least one model.")
        self._models: List[ModelDescriptor] = list(models)
        self._index: Dict[str, int] = {}
        for position, model in enumerate(self._models):
            if model.model_id in self._index:
                raise ValueError(f"Duplicate model id in registry: {model.model_id}")
            self._index[model.model_id] = position

    @classmethod
    def default(cls) -> "ModelRegistry":
        return cls(DEFAULT_MODELS)

    @classmethod
    def from_ids(cls, model_ids: Iterable[str], rate_limit_per_minute: int = 10) -> "ModelRegistry":
        known = {model.model_id: model for model in DEFAULT_MODELS}
        models: List[ModelDescriptor] = []
        for raw in model_ids:
            model_id = raw.strip()
            if not model_id or any(m.model_id == model_id for m in models):
                continue
            if model_id in known:
                models.append(known[model_id])
                continue
            models.append(
                ModelDescriptor(
                    model_id,
                    "custom",
                    rate_limit_per_minute=rate_limit_per_minute,
                    min_delay_ms=math.ceil(60000 / rate_limit_per_minute),
                )
            )
        return cls(models)

    def rank(self) -> List[ModelDescriptor]:
        return list(self._models)

    def first(self) -> ModelDescriptor:
        return self._models[0]

    def get(self, model: ModelRef) -> ModelDescriptor:
        return self._models[self.position(model)]

    def position(self, model: ModelRef) -> int:
        model_id = model.model_id if isinstance(model, ModelDescriptor) else model
        try:
            return self._index[model_id]
        except KeyError:
            raise UnknownModel(model_id) from None

    def next(self, current: ModelRef) -> Optional[ModelDescriptor]:
        position = self.position(current)
        if position + 1 >= len(self._models):
            return None
        return self._models[position + 1]

    def delay_for(self, model: ModelRef, is_paid_tier: bool = False) -> int:
        descriptor = self.get(model)
        if is_paid_tier:
            return descriptor.paid_delay_ms
        return descriptor.min_delay_ms
