from __future__ import annotations

import uuid
from collections.abc import Callable
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from thesis_validator.errors import NotFoundError
from thesis_validator.models import WorkItem, kind_from_id
from thesis_validator.schemas import error_envelope, success_envelope
from thesis_validator.security import require_engagement_role
from thesis_validator.services import ServiceContainer
from thesis_validator.stats import summarize


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def subject_from_request(request: Request) -> str:
    return str(getattr(request.state, "auth_subject", "") or "anonymous")


def services_from_request(request: Request) -> ServiceContainer:
    return request.app.state.services


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
        ),
    )


def authorize(request: Request, engagement_id: str, *, minimum: str) -> str:
    subject = subject_from_request(request)
    require_engagement_role(
        engagements=services_from_request(request).engagements,
        engagement_id=engagement_id,
        subject=subject,
        minimum=minimum,
    )
    return subject


def created(request: Request, data: Any) -> JSONResponse:
    return JSONResponse(status_code=201, content=success_envelope(data, trace_id_from_request(request)))


def ok(request: Request, data: Any) -> dict[str, Any]:
    return success_envelope(data, trace_id_from_request(request))


# ---------------------------------------------------------------------------
# Shared work item handlers
# ---------------------------------------------------------------------------


def _require_kind(item_id: str, kind: str) -> None:
    if kind_from_id(item_id) != kind:
        raise NotFoundError(f"work item not found: {item_id}", code="WORK_ITEM_NOT_FOUND")


def submit_work_item(
    request: Request,
    *,
    engagement_id: str,
    kind: str,
    parameters: dict[str, Any],
    present: Callable[[dict[str, Any]], dict[str, Any]] | None = None,
    subject: str | None = None,
) -> JSONResponse:
    if subject is None:
        subject = authorize(request, engagement_id, minimum="editor")
    item = services_from_request(request).submit(
        kind=kind,
        engagement_id=engagement_id,
        parameters=parameters,
        created_by=subject,
    )
    data = item.to_dict()
    return created(request, present(data) if present else data)


def list_work_items(
    request: Request,
    *,
    engagement_id: str,
    kind: str,
    status: str | None,
    limit: int,
) -> dict[str, Any]:
    authorize(request, engagement_id, minimum="viewer")
    items = services_from_request(request).status_store.list_by_engagement(
        engagement_id,
        kind=kind,
        status=status,
        limit=limit,
    )
    return ok(request, {"items": [item.to_dict() for item in items], "total": len(items)})


def work_item_stats(request: Request, *, engagement_id: str, kind: str) -> dict[str, Any]:
    authorize(request, engagement_id, minimum="viewer")
    snapshot = services_from_request(request).status_store.snapshot(engagement_id, kind=kind)
    return ok(request, summarize(snapshot, kind=kind))


def get_work_item(request: Request, *, engagement_id: str, kind: str, item_id: str) -> WorkItem:
    authorize(request, engagement_id, minimum="viewer")
    _require_kind(item_id, kind)
    return services_from_request(request).status_store.get(item_id, engagement_id=engagement_id)


def delete_work_item(request: Request, *, engagement_id: str, kind: str, item_id: str) -> dict[str, Any]:
    authorize(request, engagement_id, minimum="editor")
    _require_kind(item_id, kind)
    services_from_request(request).delete_work_item(item_id, engagement_id=engagement_id)
    return ok(request, {"id": item_id, "deleted": True})
