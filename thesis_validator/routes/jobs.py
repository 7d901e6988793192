from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Query, Request, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from thesis_validator.errors import ApiError
from thesis_validator.models import WorkItem
from thesis_validator.routes._deps import authorize, ok, services_from_request
from thesis_validator.security import require_engagement_role, validate_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/engagements/{engagement_id}", tags=["jobs"])

STREAM_WAIT_SECONDS = 1.0


def _job_view(item: WorkItem) -> dict[str, Any]:
    data = item.to_dict()
    data["parameters"] = {k: v for k, v in data["parameters"].items() if k != "content_base64"}
    return data


@router.get("/jobs/{job_id}")
def get_job(engagement_id: str, job_id: str, request: Request):
    authorize(request, engagement_id, minimum="viewer")
    item = services_from_request(request).status_store.get(job_id, engagement_id=engagement_id)
    return ok(request, _job_view(item))


@router.get("/jobs/{job_id}/events")
def list_job_events(
    engagement_id: str,
    job_id: str,
    request: Request,
    after_seq: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=500),
):
    authorize(request, engagement_id, minimum="viewer")
    services = services_from_request(request)
    item = services.status_store.get(job_id, engagement_id=engagement_id)
    events = services.broadcaster.history(job_id, after_seq=after_seq, limit=limit)
    return ok(
        request,
        {
            "job_id": job_id,
            "status": item.status,
            "progress": item.progress,
            "terminal": item.is_terminal,
            "items": [event.to_dict() for event in events],
            "last_seq": events[-1].seq if events else after_seq,
        },
    )


def _ws_subject(websocket: WebSocket, token: str | None) -> str:
    security_cfg = websocket.app.state.security_cfg
    if not security_cfg.enabled:
        return websocket.headers.get("x-subject", "").strip() or "anonymous"
    return validate_token(token or "", cfg=security_cfg).subject


def _admit(websocket: WebSocket, *, engagement_id: str, job_id: str, token: str | None) -> None:
    services = websocket.app.state.services
    require_engagement_role(
        engagements=services.engagements,
        engagement_id=engagement_id,
        subject=_ws_subject(websocket, token),
        minimum="viewer",
    )
    services.status_store.get(job_id, engagement_id=engagement_id)


@router.websocket("/jobs/{job_id}/stream")
async def stream_job(
    websocket: WebSocket,
    engagement_id: str,
    job_id: str,
    token: str | None = Query(default=None),
    after_seq: int = Query(default=0, ge=0),
):
    """Push a job's progress events in order; closes after the terminal event."""
    services = websocket.app.state.services
    try:
        await run_in_threadpool(_admit, websocket, engagement_id=engagement_id, job_id=job_id, token=token)
    except ApiError as exc:
        logger.warning("job_stream_rejected job_id=%s code=%s", job_id, exc.code)
        await websocket.close(code=4000 + exc.http_status, reason=exc.code)
        return

    await websocket.accept()
    subscription = await run_in_threadpool(services.broadcaster.subscribe, job_id, after_seq=after_seq)
    try:
        while True:
            event = await run_in_threadpool(subscription.next_event, STREAM_WAIT_SECONDS)
            if event is not None:
                await websocket.send_json({"type": "progress", "data": event.to_dict()})
                if event.terminal:
                    break
                continue
            # Quiet stream: status is authoritative for completion.
            try:
                item = await run_in_threadpool(services.status_store.get, job_id, engagement_id=engagement_id)
            except ApiError:
                break
            if item.is_terminal:
                await websocket.send_json({"type": "status", "data": _job_view(item)})
                break
        await websocket.close(code=1000)
    except WebSocketDisconnect:
        logger.info("job_stream_disconnected job_id=%s", job_id)
    finally:
        subscription.close()
