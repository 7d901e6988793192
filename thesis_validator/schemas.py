from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class StressTestCreateRequest(BaseModel):
    intensity: Literal["light", "moderate", "aggressive"] = "moderate"
    hypothesis_ids: list[str] = Field(default_factory=list)
    devil_advocate_mode: bool = True
    search_contrarian_sources: bool = False


class TranscriptInput(BaseModel):
    text: str = Field(min_length=1)
    filename: str | None = None
    call_date: str | None = None
    interviewee_name: str | None = None
    interviewee_title: str | None = None
    speaker_labels: dict[str, str] = Field(default_factory=dict)


class ExpertCallBatchRequest(BaseModel):
    transcripts: list[TranscriptInput] = Field(min_length=1, max_length=50)
    focus_areas: list[str] = Field(default_factory=list)
    hypothesis_ids: list[str] = Field(default_factory=list)


class ResearchCreateRequest(BaseModel):
    thesis: str = Field(min_length=10, max_length=5000)
    depth: Literal["quick", "standard", "deep"] = "standard"
    focus_areas: list[str] = Field(default_factory=list)
    include_comparables: bool = True
    max_sources: int = Field(default=20, ge=1, le=100)


class MetricRecordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    metric_type: Literal[
        "evidence_credibility_avg",
        "source_diversity_score",
        "hypothesis_coverage",
        "contradiction_resolution_rate",
        "overall_confidence",
        "stress_test_vulnerability",
        "research_completeness",
    ] = Field(alias="metricType")
    value: float = Field(ge=0.0, le=1.0)
    metadata: dict[str, Any] = Field(default_factory=dict)


class MetricsRunRequest(BaseModel):
    source: str = Field(default="api", min_length=1, max_length=64)


class ContradictionResolveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: Literal["explained", "dismissed"]
    resolution_notes: str = Field(alias="resolutionNotes", min_length=1, max_length=5000)


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
