from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from thesis_validator.models import WorkItem


@dataclass(frozen=True)
class PipelineSpec:
    kind: str
    description: str
    parameters_schema: dict[str, Any]
    result_schema: dict[str, Any]
    stages: tuple[str, ...]
    run: Callable[["PipelineContext"], dict[str, Any]]


@dataclass
class PipelineResources:
    """Collaborators a pipeline may read from or write to."""

    evidence: Any
    contradictions: Any
    expert_calls: Any
    metrics: Any


class PipelineContext:
    def __init__(
        self,
        *,
        item: WorkItem,
        resources: PipelineResources,
        emit: Callable[..., Any],
        set_progress: Callable[[int], Any],
    ) -> None:
        self.item = item
        self.resources = resources
        self._emit = emit
        self._set_progress = set_progress
        self._last_progress = item.progress or 0

    @property
    def parameters(self) -> dict[str, Any]:
        return self.item.parameters

    @property
    def engagement_id(self) -> str:
        return self.item.engagement_id

    def emit(
        self,
        message: str,
        *,
        stage: str | None = None,
        progress: int | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        self._emit(message=message, stage=stage, progress=progress, data=data)

    def set_progress(self, progress: int, *, message: str | None = None, stage: str | None = None) -> None:
        value = max(0, min(100, int(progress)))
        if value <= self._last_progress:
            return
        self._set_progress(value)
        self._last_progress = value
        self._emit(message=message or f"progress {value}%", stage=stage, progress=value, data=None)
