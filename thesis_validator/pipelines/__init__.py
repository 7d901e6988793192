from __future__ import annotations

from typing import Any

from jsonschema import ValidationError, validate

from thesis_validator.errors import PipelineFailure, ValidationFailed
from thesis_validator.pipelines import documents, expert_calls, metrics_runs, research, stress_tests
from thesis_validator.pipelines.base import PipelineContext, PipelineResources, PipelineSpec

PIPELINES: dict[str, PipelineSpec] = {
    spec.kind: spec
    for spec in (
        documents.SPEC,
        stress_tests.SPEC,
        expert_calls.SPEC,
        research.SPEC,
        metrics_runs.SPEC,
    )
}


def get_pipeline(kind: str) -> PipelineSpec:
    spec = PIPELINES.get(kind)
    if spec is None:
        raise ValidationFailed(f"unknown work kind: {kind}", code="WORK_KIND_UNKNOWN")
    return spec


def validate_parameters(kind: str, parameters: dict[str, Any]) -> None:
    try:
        validate(instance=parameters, schema=get_pipeline(kind).parameters_schema)
    except ValidationError as exc:
        raise ValidationFailed(f"invalid {kind} parameters: {exc.message}") from exc


def validate_result(kind: str, result: dict[str, Any]) -> None:
    try:
        validate(instance=result, schema=get_pipeline(kind).result_schema)
    except ValidationError as exc:
        raise PipelineFailure(f"{kind} produced an invalid result: {exc.message}", code="RESULT_SCHEMA_INVALID") from exc


__all__ = [
    "PIPELINES",
    "PipelineContext",
    "PipelineResources",
    "PipelineSpec",
    "get_pipeline",
    "validate_parameters",
    "validate_result",
]
