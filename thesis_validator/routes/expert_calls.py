from __future__ import annotations

from fastapi import APIRouter, Query, Request

from thesis_validator.routes._deps import (
    authorize,
    delete_work_item,
    get_work_item,
    list_work_items,
    ok,
    services_from_request,
    submit_work_item,
    work_item_stats,
)
from thesis_validator.schemas import ExpertCallBatchRequest

router = APIRouter(prefix="/api/v1/engagements/{engagement_id}", tags=["expert-calls"])

KIND = "expert_call_batch"
STATUS_PATTERN = "^(pending|running|completed|failed)$"


@router.post("/expert-calls/batch")
def create_expert_call_batch(engagement_id: str, payload: ExpertCallBatchRequest, request: Request):
    return submit_work_item(
        request,
        engagement_id=engagement_id,
        kind=KIND,
        parameters=payload.model_dump(),
    )


@router.get("/expert-calls/batch")
def list_expert_call_batches(
    engagement_id: str,
    request: Request,
    status: str | None = Query(default=None, pattern=STATUS_PATTERN),
    limit: int = Query(default=50, ge=1, le=200),
):
    return list_work_items(request, engagement_id=engagement_id, kind=KIND, status=status, limit=limit)


@router.get("/expert-calls/batch/stats")
def expert_call_batch_stats(engagement_id: str, request: Request):
    return work_item_stats(request, engagement_id=engagement_id, kind=KIND)


@router.get("/expert-calls/batch/{batch_id}")
def get_expert_call_batch(engagement_id: str, batch_id: str, request: Request):
    item = get_work_item(request, engagement_id=engagement_id, kind=KIND, item_id=batch_id)
    return ok(request, item.to_dict())


@router.delete("/expert-calls/batch/{batch_id}")
def delete_expert_call_batch(engagement_id: str, batch_id: str, request: Request):
    return delete_work_item(request, engagement_id=engagement_id, kind=KIND, item_id=batch_id)


@router.get("/expert-calls")
def list_expert_calls(
    engagement_id: str,
    request: Request,
    batch_id: str | None = Query(default=None),
):
    authorize(request, engagement_id, minimum="viewer")
    calls = services_from_request(request).expert_calls.list(engagement_id=engagement_id, batch_id=batch_id)
    return ok(request, {"items": calls, "total": len(calls)})
