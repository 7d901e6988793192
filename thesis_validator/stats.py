from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from thesis_validator.document_parser import DOCUMENT_FORMATS
from thesis_validator.models import WORK_STATUSES, WorkItem
from thesis_validator.pipelines.research import DEPTHS
from thesis_validator.pipelines.stress_tests import INTENSITIES

# Kind-specific grouping: (parameter name, closed value set, default when absent).
DIMENSIONS: dict[str, tuple[str, tuple[str, ...], str]] = {
    "stress_test": ("intensity", INTENSITIES, "moderate"),
    "document": ("format", DOCUMENT_FORMATS, "unknown"),
    "research_run": ("depth", DEPTHS, "standard"),
}


def _dimension_value(item: WorkItem, name: str, default: str) -> str:
    if name == "format" and item.result and item.result.get("format"):
        return str(item.result["format"])
    return str(item.parameters.get(name) or default)


def summarize(items: Iterable[WorkItem], *, kind: str) -> dict[str, Any]:
    rows = list(items)
    by_status = {status: 0 for status in WORK_STATUSES}
    durations: list[int] = []
    risk_scores: list[float] = []
    for item in rows:
        by_status[item.status] = by_status.get(item.status, 0) + 1
        if item.status == "completed":
            duration = item.duration_ms()
            if duration is not None:
                durations.append(duration)
            if kind == "stress_test" and item.result and item.result.get("overall_risk_score") is not None:
                risk_scores.append(float(item.result["overall_risk_score"]))

    out: dict[str, Any] = {
        "kind": kind,
        "total_count": len(rows),
        "by_status": by_status,
        "avg_duration_ms": round(sum(durations) / len(durations)) if durations else None,
        "last_run_at": max((item.created_at for item in rows), default=None),
    }
    if kind in DIMENSIONS:
        name, values, default = DIMENSIONS[kind]
        grouped = {value: 0 for value in values}
        for item in rows:
            value = _dimension_value(item, name, default)
            grouped[value] = grouped.get(value, 0) + 1
        out[f"by_{name}"] = grouped
    if kind == "stress_test":
        out["avg_risk_score"] = round(sum(risk_scores) / len(risk_scores), 2) if risk_scores else None
        out["completed_count"] = by_status["completed"]
    return out
