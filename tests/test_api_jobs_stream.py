from __future__ import annotations

import threading

import pytest
from starlette.websockets import WebSocketDisconnect

from conftest import ENGAGEMENT_ID, OUTSIDER, VIEWER, issue_token

BASE = f"/api/v1/engagements/{ENGAGEMENT_ID}"


def _submit(services, kind: str = "stress_test", parameters: dict | None = None):
    return services.submit(
        kind=kind,
        engagement_id=ENGAGEMENT_ID,
        parameters=parameters if parameters is not None else {"intensity": "light"},
        created_by="user_editor",
    )


def _stream_url(job_id: str, *, subject: str | None = VIEWER, after_seq: int = 0) -> str:
    url = f"{BASE}/jobs/{job_id}/stream?after_seq={after_seq}"
    if subject is not None:
        url += f"&token={issue_token(subject=subject)}"
    return url


def _collect(ws) -> list[dict]:
    messages = []
    while True:
        message = ws.receive_json()
        messages.append(message)
        if message["type"] == "status" or message["data"].get("terminal"):
            return messages


def test_job_events_endpoint_returns_ordered_history(client, services, drain):
    item = _submit(services)
    drain("stress_test")

    resp = client.get(f"{BASE}/jobs/{item.id}/events", subject=VIEWER)
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["status"] == "completed"
    assert data["terminal"] is True
    seqs = [e["seq"] for e in data["items"]]
    assert seqs == list(range(1, len(seqs) + 1))
    assert data["items"][-1]["terminal"] is True
    assert data["last_seq"] == seqs[-1]

    tail = client.get(f"{BASE}/jobs/{item.id}/events", params={"after_seq": seqs[-2]}).json()["data"]
    assert [e["seq"] for e in tail["items"]] == [seqs[-1]]


def test_job_endpoint_reports_any_kind(client, services):
    item = _submit(services, kind="research_run", parameters={"thesis": "Clinic roll-ups win on procurement scale"})
    data = client.get(f"{BASE}/jobs/{item.id}").json()["data"]
    assert data["kind"] == "research_run"
    assert data["progress"] == 0


def test_unknown_job_is_not_found(client):
    resp = client.get(f"{BASE}/jobs/st_000000000000")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "WORK_ITEM_NOT_FOUND"


def test_stream_replays_finished_job_and_closes(client, services, drain):
    item = _submit(services)
    drain("stress_test")

    with client.websocket_connect(_stream_url(item.id)) as ws:
        messages = _collect(ws)

    events = [m["data"] for m in messages if m["type"] == "progress"]
    assert events[0]["stage"] == "queued"
    assert [e["seq"] for e in events] == list(range(1, len(events) + 1))
    assert events[-1]["terminal"] is True
    assert events[-1]["status"] == "completed"


def test_stream_resumes_after_seq(client, services, drain):
    item = _submit(services)
    drain("stress_test")
    total = len(services.broadcaster.history(item.id))

    with client.websocket_connect(_stream_url(item.id, after_seq=total - 1)) as ws:
        messages = _collect(ws)

    assert [m["data"]["seq"] for m in messages] == [total]


def test_stream_follows_live_job(client, services, drain):
    item = _submit(services)
    worker = threading.Thread(target=drain, args=("stress_test",))

    with client.websocket_connect(_stream_url(item.id)) as ws:
        worker.start()
        messages = _collect(ws)
    worker.join(timeout=10)

    progress = [m["data"] for m in messages if m["type"] == "progress"]
    if progress:
        seqs = [e["seq"] for e in progress]
        assert seqs == sorted(seqs)
        assert len(seqs) == len(set(seqs))
    assert services.status_store.get(item.id).status == "completed"
    final = messages[-1]
    assert final["data"].get("terminal") is True or final["data"].get("status") == "completed"


def test_stream_without_token_is_rejected(client, services):
    item = _submit(services)
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(_stream_url(item.id, subject=None)):
            pass
    assert exc.value.code == 4401


def test_stream_for_non_member_is_forbidden(client, services):
    item = _submit(services)
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(_stream_url(item.id, subject=OUTSIDER)):
            pass
    assert exc.value.code == 4403


def test_stream_for_unknown_job_is_not_found(client):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(_stream_url("st_000000000000")):
            pass
    assert exc.value.code == 4404
