from __future__ import annotations

import threading

import pytest

from thesis_validator.errors import ConflictError, NotFoundError, ValidationFailed
from thesis_validator.models import WORK_KINDS, is_transition_allowed, kind_from_id
from thesis_validator.pipelines import validate_parameters
from thesis_validator.repositories import InMemoryWorkItemsRepository
from thesis_validator.status_store import StatusStore


@pytest.fixture
def store() -> StatusStore:
    return StatusStore(
        repositories={kind: InMemoryWorkItemsRepository() for kind in WORK_KINDS},
        validate_parameters=validate_parameters,
    )


def _stress_test(store: StatusStore, engagement_id: str = "eng_a"):
    return store.create(kind="stress_test", engagement_id=engagement_id, parameters={"intensity": "light"})


def test_create_returns_pending_item_with_kind_prefix(store):
    item = _stress_test(store)
    assert item.status == "pending"
    assert item.id.startswith("st_")
    assert kind_from_id(item.id) == "stress_test"
    assert item.progress is None
    assert item.started_at is None and item.completed_at is None

    research = store.create(
        kind="research_run",
        engagement_id="eng_a",
        parameters={"thesis": "Regional clinics can be consolidated profitably"},
    )
    assert research.id.startswith("rr_")
    assert research.progress == 0


def test_create_rejects_parameters_outside_kind_schema(store):
    with pytest.raises(ValidationFailed, match="invalid stress_test parameters"):
        store.create(kind="stress_test", engagement_id="eng_a", parameters={"intensity": "extreme"})
    with pytest.raises(ValidationFailed):
        store.create(kind="stress_test", engagement_id="eng_a", parameters={"intensity": "light", "extra": 1})
    with pytest.raises(ValidationFailed):
        store.create(kind="payroll", engagement_id="eng_a", parameters={})


def test_transition_table_only_allows_forward_moves():
    assert is_transition_allowed("pending", "running")
    assert is_transition_allowed("running", "completed")
    assert is_transition_allowed("running", "failed")
    assert not is_transition_allowed("pending", "completed")
    assert not is_transition_allowed("completed", "running")
    assert not is_transition_allowed("failed", "pending")


def test_lifecycle_sets_timestamps_and_result(store):
    item = _stress_test(store)
    running = store.transition_to_running(item.id)
    assert running.status == "running"
    assert running.started_at is not None

    done = store.transition_to_completed(item.id, {"overall_risk_score": 40.0})
    assert done.status == "completed"
    assert done.result == {"overall_risk_score": 40.0}
    assert done.completed_at is not None
    assert done.duration_ms() is not None and done.duration_ms() >= 0


def test_illegal_transitions_raise_conflict(store):
    item = _stress_test(store)
    with pytest.raises(ConflictError):
        store.transition_to_completed(item.id, {})
    with pytest.raises(ConflictError):
        store.transition_to_failed(item.id, "boom")

    store.transition_to_running(item.id)
    store.transition_to_failed(item.id, "boom")
    with pytest.raises(ConflictError):
        store.transition_to_running(item.id)
    with pytest.raises(ConflictError):
        store.transition_to_completed(item.id, {})
    assert store.get(item.id).error_message == "boom"


def test_failure_message_is_never_empty(store):
    item = _stress_test(store)
    store.transition_to_running(item.id)
    failed = store.transition_to_failed(item.id, "   ")
    assert failed.error_message == "unknown failure"


def test_concurrent_claims_have_exactly_one_winner(store):
    item = _stress_test(store)
    workers = 8
    barrier = threading.Barrier(workers)
    winners: list[str] = []
    conflicts: list[str] = []
    lock = threading.Lock()

    def _claim(name: str) -> None:
        barrier.wait()
        try:
            store.transition_to_running(item.id)
        except ConflictError:
            with lock:
                conflicts.append(name)
        else:
            with lock:
                winners.append(name)

    threads = [threading.Thread(target=_claim, args=(f"w{i}",)) for i in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert len(winners) == 1
    assert len(conflicts) == workers - 1


def test_progress_only_moves_forward_while_running(store):
    item = store.create(
        kind="research_run",
        engagement_id="eng_a",
        parameters={"thesis": "Regional clinics can be consolidated profitably"},
    )
    with pytest.raises(ConflictError):
        store.update_progress(item.id, 10)

    store.transition_to_running(item.id)
    assert store.update_progress(item.id, 40).progress == 40
    assert store.update_progress(item.id, 20).progress == 40
    assert store.update_progress(item.id, 250).progress == 100

    store.transition_to_completed(item.id, {"verdict": "validated"})
    assert store.get(item.id).progress == 100


def test_completed_research_run_reports_full_progress(store):
    item = store.create(
        kind="research_run",
        engagement_id="eng_a",
        parameters={"thesis": "Regional clinics can be consolidated profitably"},
    )
    store.transition_to_running(item.id)
    store.update_progress(item.id, 55)
    done = store.transition_to_completed(item.id, {})
    assert done.progress == 100


def test_get_is_scoped_to_engagement(store):
    item = _stress_test(store, engagement_id="eng_a")
    assert store.get(item.id, engagement_id="eng_a").id == item.id
    with pytest.raises(NotFoundError):
        store.get(item.id, engagement_id="eng_b")
    with pytest.raises(NotFoundError):
        store.get("zz_unknown")
    with pytest.raises(NotFoundError):
        store.get("st_missing")


def test_delete_is_refused_while_running(store):
    item = _stress_test(store)
    store.transition_to_running(item.id)
    with pytest.raises(ConflictError) as exc:
        store.delete(item.id, engagement_id="eng_a")
    assert exc.value.code == "WORK_ITEM_RUNNING"

    store.transition_to_completed(item.id, {})
    assert store.delete(item.id, engagement_id="eng_a") is True
    with pytest.raises(NotFoundError):
        store.get(item.id)


def test_delete_pending_item_and_other_engagement(store):
    item = _stress_test(store, engagement_id="eng_a")
    with pytest.raises(NotFoundError):
        store.delete(item.id, engagement_id="eng_b")
    assert store.delete(item.id, engagement_id="eng_a") is True
    with pytest.raises(NotFoundError):
        store.delete(item.id, engagement_id="eng_a")


def test_list_by_engagement_filters_by_status_and_engagement(store):
    first = _stress_test(store)
    second = _stress_test(store)
    _stress_test(store, engagement_id="eng_other")
    store.transition_to_running(first.id)

    listed = store.list_by_engagement("eng_a", kind="stress_test")
    assert {x.id for x in listed} == {first.id, second.id}
    assert [x.id for x in store.list_by_engagement("eng_a", kind="stress_test", status="running")] == [first.id]
    assert len(store.list_by_engagement("eng_a", kind="stress_test", limit=1)) == 1
    assert store.find_active("eng_a", kind="stress_test") is not None
    assert store.find_active("eng_a", kind="research_run") is None


def test_snapshot_carries_only_the_fields_stats_reads(store):
    doc = store.create(
        kind="document",
        engagement_id="eng_a",
        parameters={"filename": "memo.html", "content_base64": "PGh0bWw+", "format": "html"},
    )
    store.transition_to_running(doc.id)
    store.transition_to_completed(doc.id, {"format": "html", "evidence_created": 2, "content_sha256": "ab"})

    [row] = store.snapshot("eng_a", kind="document")

    assert row.status == "completed"
    assert row.parameters == {"format": "html"}
    assert row.result == {"format": "html"}
    assert row.completed_at is not None
    assert store.get(doc.id).parameters["content_base64"] == "PGh0bWw+"
