from __future__ import annotations

from typing import Any

from thesis_validator.metrics_service import METRIC_TYPES
from thesis_validator.pipelines.base import PipelineContext, PipelineSpec

PARAMETERS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "source": {"type": "string", "minLength": 1, "maxLength": 64},
    },
    "additionalProperties": False,
}

RESULT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["metrics"],
    "properties": {
        "metrics": {
            "type": "object",
            "required": list(METRIC_TYPES),
            "properties": {t: {"type": "number", "minimum": 0, "maximum": 1} for t in METRIC_TYPES},
        },
    },
}


def run(ctx: PipelineContext) -> dict[str, Any]:
    source = str(ctx.parameters.get("source") or "metrics_run")
    ctx.emit("recalculating research metrics", stage="calculate")
    recorded = ctx.resources.metrics.calculate_and_record(ctx.engagement_id, source=source)
    ctx.emit(f"recorded {len(recorded)} metrics", stage="calculate")
    return {"metrics": {metric_type: row["value"] for metric_type, row in recorded.items()}}


SPEC = PipelineSpec(
    kind="metrics_run",
    description="Recalculate and record every research quality metric.",
    parameters_schema=PARAMETERS_SCHEMA,
    result_schema=RESULT_SCHEMA,
    stages=("calculate", "done"),
    run=run,
)
