from __future__ import annotations

from fastapi import APIRouter, Query, Request

from thesis_validator.routes._deps import (
    delete_work_item,
    get_work_item,
    list_work_items,
    ok,
    submit_work_item,
    work_item_stats,
)
from thesis_validator.schemas import StressTestCreateRequest

router = APIRouter(prefix="/api/v1/engagements/{engagement_id}", tags=["stress-tests"])

KIND = "stress_test"
STATUS_PATTERN = "^(pending|running|completed|failed)$"


@router.post("/stress-tests")
def create_stress_test(engagement_id: str, payload: StressTestCreateRequest, request: Request):
    return submit_work_item(
        request,
        engagement_id=engagement_id,
        kind=KIND,
        parameters=payload.model_dump(),
    )


@router.get("/stress-tests")
def list_stress_tests(
    engagement_id: str,
    request: Request,
    status: str | None = Query(default=None, pattern=STATUS_PATTERN),
    limit: int = Query(default=50, ge=1, le=200),
):
    return list_work_items(request, engagement_id=engagement_id, kind=KIND, status=status, limit=limit)


@router.get("/stress-tests/stats")
def stress_test_stats(engagement_id: str, request: Request):
    return work_item_stats(request, engagement_id=engagement_id, kind=KIND)


@router.get("/stress-tests/{stress_test_id}")
def get_stress_test(engagement_id: str, stress_test_id: str, request: Request):
    item = get_work_item(request, engagement_id=engagement_id, kind=KIND, item_id=stress_test_id)
    return ok(request, item.to_dict())


@router.delete("/stress-tests/{stress_test_id}")
def delete_stress_test(engagement_id: str, stress_test_id: str, request: Request):
    return delete_work_item(request, engagement_id=engagement_id, kind=KIND, item_id=stress_test_id)
