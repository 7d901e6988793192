from __future__ import annotations

from fastapi import APIRouter, Query, Request

from thesis_validator.metrics_service import HISTORY_LIMIT_DEFAULT, HISTORY_LIMIT_MAX
from thesis_validator.routes._deps import (
    authorize,
    created,
    get_work_item,
    ok,
    services_from_request,
    submit_work_item,
)
from thesis_validator.schemas import MetricRecordRequest, MetricsRunRequest

router = APIRouter(prefix="/api/v1/engagements/{engagement_id}", tags=["metrics"])

METRIC_TYPE_PATTERN = (
    "^(evidence_credibility_avg|source_diversity_score|hypothesis_coverage|contradiction_resolution_rate"
    "|overall_confidence|stress_test_vulnerability|research_completeness)$"
)


@router.get("/metrics")
def get_research_quality(engagement_id: str, request: Request):
    authorize(request, engagement_id, minimum="viewer")
    return ok(request, services_from_request(request).metrics.research_quality(engagement_id))


@router.post("/metrics")
def record_metric(engagement_id: str, payload: MetricRecordRequest, request: Request):
    authorize(request, engagement_id, minimum="editor")
    stored = services_from_request(request).metrics.record(
        engagement_id=engagement_id,
        metric_type=payload.metric_type,
        value=payload.value,
        metadata=payload.metadata,
    )
    return created(request, stored)


@router.get("/metrics/history")
def metric_history(
    engagement_id: str,
    request: Request,
    metric_type: str | None = Query(default=None, pattern=METRIC_TYPE_PATTERN),
    limit: int = Query(default=HISTORY_LIMIT_DEFAULT, ge=1, le=HISTORY_LIMIT_MAX),
):
    authorize(request, engagement_id, minimum="viewer")
    items = services_from_request(request).metrics.history(
        engagement_id,
        metric_type=metric_type,
        limit=limit,
    )
    return ok(request, {"items": items, "total": len(items)})


@router.post("/metrics/calculate")
def calculate_metrics(engagement_id: str, request: Request):
    authorize(request, engagement_id, minimum="editor")
    recorded = services_from_request(request).metrics.calculate_and_record(engagement_id, source="api")
    return created(request, {"metrics": {k: v["value"] for k, v in recorded.items()}, "records": list(recorded.values())})


@router.post("/metrics/runs")
def queue_metrics_run(engagement_id: str, request: Request, payload: MetricsRunRequest | None = None):
    return submit_work_item(
        request,
        engagement_id=engagement_id,
        kind="metrics_run",
        parameters=(payload or MetricsRunRequest()).model_dump(),
    )


@router.get("/metrics/runs/{run_id}")
def get_metrics_run(engagement_id: str, run_id: str, request: Request):
    item = get_work_item(request, engagement_id=engagement_id, kind="metrics_run", item_id=run_id)
    return ok(request, item.to_dict())
