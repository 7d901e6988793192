from __future__ import annotations

from fastapi import APIRouter, Header, Query, Request

from thesis_validator.errors import ApiError, NotFoundError
from thesis_validator.models import WORK_KINDS
from thesis_validator.routes._deps import ok, services_from_request
from thesis_validator.worker_runtime import create_worker_runtime

router = APIRouter(prefix="/api/v1/internal", tags=["internal"])


def _require_internal_debug(x_internal_debug: str | None) -> None:
    if x_internal_debug != "true":
        raise ApiError(
            code="AUTH_FORBIDDEN",
            message="internal endpoint forbidden",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )


@router.post("/worker/{kind}/drain-once")
def drain_worker_once(
    kind: str,
    request: Request,
    max_messages: int = Query(default=20, ge=1, le=500),
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    _require_internal_debug(x_internal_debug)
    if kind not in WORK_KINDS:
        raise NotFoundError(f"unknown work kind: {kind}", code="WORK_KIND_UNKNOWN")
    runtime = create_worker_runtime(services_from_request(request), kind=kind)
    runtime.max_messages_per_iteration = max_messages
    stats = runtime.run_once()
    return ok(request, {"kind": kind, **stats})


@router.get("/queue/depths")
def queue_depths(
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    _require_internal_debug(x_internal_debug)
    return ok(request, services_from_request(request).work_queue.depths())
