from __future__ import annotations

from fastapi import APIRouter, Query, Request

from thesis_validator.routes._deps import authorize, ok, services_from_request
from thesis_validator.schemas import ContradictionResolveRequest

router = APIRouter(prefix="/api/v1/engagements/{engagement_id}", tags=["contradictions"])


@router.get("/contradictions")
def list_contradictions(
    engagement_id: str,
    request: Request,
    status: str | None = Query(default=None, pattern="^(unresolved|critical|explained|dismissed)$"),
    severity: str | None = Query(default=None, pattern="^(low|medium|high)$"),
):
    authorize(request, engagement_id, minimum="viewer")
    items = services_from_request(request).contradictions.list(
        engagement_id=engagement_id,
        status=status,
        severity=severity,
    )
    return ok(request, {"items": items, "total": len(items)})


@router.get("/contradictions/stats")
def contradiction_stats(engagement_id: str, request: Request):
    authorize(request, engagement_id, minimum="viewer")
    return ok(request, services_from_request(request).contradictions.stats(engagement_id=engagement_id))


@router.get("/contradictions/{contradiction_id}")
def get_contradiction(engagement_id: str, contradiction_id: str, request: Request):
    authorize(request, engagement_id, minimum="viewer")
    row = services_from_request(request).contradictions.get(
        engagement_id=engagement_id,
        contradiction_id=contradiction_id,
    )
    return ok(request, row)


@router.post("/contradictions/{contradiction_id}/resolve")
def resolve_contradiction(
    engagement_id: str,
    contradiction_id: str,
    payload: ContradictionResolveRequest,
    request: Request,
):
    subject = authorize(request, engagement_id, minimum="editor")
    row = services_from_request(request).contradictions.resolve(
        engagement_id=engagement_id,
        contradiction_id=contradiction_id,
        status=payload.status,
        resolution_notes=payload.resolution_notes,
        resolved_by=subject,
    )
    return ok(request, row)


@router.post("/contradictions/{contradiction_id}/critical")
def mark_contradiction_critical(engagement_id: str, contradiction_id: str, request: Request):
    authorize(request, engagement_id, minimum="editor")
    row = services_from_request(request).contradictions.mark_critical(
        engagement_id=engagement_id,
        contradiction_id=contradiction_id,
    )
    return ok(request, row)
