from __future__ import annotations

from fastapi import APIRouter, Query, Request

from thesis_validator.errors import ConflictError
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
from thesis_validator.schemas import ResearchCreateRequest

router = APIRouter(prefix="/api/v1/engagements/{engagement_id}", tags=["research"])

KIND = "research_run"
STATUS_PATTERN = "^(pending|running|completed|failed)$"


@router.post("/research")
def start_research(engagement_id: str, payload: ResearchCreateRequest, request: Request):
    authorize(request, engagement_id, minimum="editor")
    active = services_from_request(request).status_store.find_active(engagement_id, kind=KIND)
    if active is not None:
        raise ConflictError(
            f"research run {active.id} is already {active.status}",
            code="RESEARCH_ALREADY_ACTIVE",
        )
    return submit_work_item(
        request,
        engagement_id=engagement_id,
        kind=KIND,
        parameters=payload.model_dump(),
    )


@router.get("/research")
def list_research_runs(
    engagement_id: str,
    request: Request,
    status: str | None = Query(default=None, pattern=STATUS_PATTERN),
    limit: int = Query(default=50, ge=1, le=200),
):
    return list_work_items(request, engagement_id=engagement_id, kind=KIND, status=status, limit=limit)


@router.get("/research/stats")
def research_stats(engagement_id: str, request: Request):
    return work_item_stats(request, engagement_id=engagement_id, kind=KIND)


@router.get("/research/{run_id}")
def get_research_run(engagement_id: str, run_id: str, request: Request):
    item = get_work_item(request, engagement_id=engagement_id, kind=KIND, item_id=run_id)
    return ok(request, item.to_dict())


@router.delete("/research/{run_id}")
def delete_research_run(engagement_id: str, run_id: str, request: Request):
    return delete_work_item(request, engagement_id=engagement_id, kind=KIND, item_id=run_id)
