from __future__ import annotations

import dataclasses
import threading
import time

from conftest import ENGAGEMENT_ID

from thesis_validator.errors import PipelineFailure, TransientIOFailure
from thesis_validator.pipelines import PIPELINES
from thesis_validator.repositories import InMemoryProgressEventsRepository
from thesis_validator.worker_runtime import WorkerRunStats, create_worker_pool_from_env, create_worker_runtime


def _submit_stress_test(services, intensity: str = "light"):
    return services.submit(
        kind="stress_test",
        engagement_id=ENGAGEMENT_ID,
        parameters={"intensity": intensity},
        created_by="user_editor",
    )


def _submit_metrics_run(services):
    return services.submit(kind="metrics_run", engagement_id=ENGAGEMENT_ID, parameters={"source": "test"})


def _override(services, kind: str, run):
    services.pipelines = {**services.pipelines, kind: dataclasses.replace(PIPELINES[kind], run=run)}


def test_worker_completes_item_and_publishes_terminal_event(services, drain):
    item = _submit_stress_test(services)

    stats = drain("stress_test")

    assert stats["processed"] == 1
    assert stats["succeeded"] == 1
    assert stats["acked"] == 1
    done = services.status_store.get(item.id)
    assert done.status == "completed"
    assert done.result["scenarios_run"] == 3
    events = services.broadcaster.history(item.id)
    assert events[0].stage == "queued"
    assert events[1].stage == "started"
    assert events[-1].terminal is True
    assert events[-1].status == "completed"
    assert sum(1 for e in events if e.terminal) == 1
    assert services.work_queue.depths()["stress_test"] == {"pending": 0, "inflight": 0}


def test_redelivered_message_is_acked_without_reprocessing(services, drain):
    item = _submit_stress_test(services)
    services.work_queue.enqueue("stress_test", item.id)

    stats = drain("stress_test")

    assert stats == {"processed": 2, "succeeded": 1, "failed": 0, "skipped": 1, "acked": 2, "requeued": 0}
    events = services.broadcaster.history(item.id)
    assert sum(1 for e in events if e.stage == "started") == 1


def test_delivery_for_deleted_item_is_skipped(services, drain):
    item = _submit_stress_test(services)
    services.delete_work_item(item.id, engagement_id=ENGAGEMENT_ID)

    stats = drain("stress_test")
    assert stats["skipped"] == 1
    assert stats["succeeded"] == 0


def test_crashing_pipeline_fails_item_and_loop_continues(services, drain):
    def _boom(ctx):
        raise RuntimeError("calculator exploded")

    _override(services, "metrics_run", _boom)
    first = _submit_metrics_run(services)
    second = _submit_metrics_run(services)

    stats = drain("metrics_run")

    assert stats["processed"] == 2
    assert stats["failed"] == 2
    failed = services.status_store.get(first.id)
    assert failed.status == "failed"
    assert failed.error_message == "RuntimeError: calculator exploded"
    assert failed.completed_at is not None
    assert services.status_store.get(second.id).status == "failed"
    terminal = services.broadcaster.history(first.id)[-1]
    assert terminal.terminal is True
    assert terminal.status == "failed"


def test_transient_pipeline_failure_is_retried(services, drain):
    calls = {"n": 0}
    original = PIPELINES["metrics_run"].run

    def _flaky(ctx):
        calls["n"] += 1
        if calls["n"] == 1:
            raise TransientIOFailure("evidence store timed out")
        return original(ctx)

    _override(services, "metrics_run", _flaky)
    item = _submit_metrics_run(services)

    stats = drain("metrics_run")

    assert stats["succeeded"] == 1
    assert calls["n"] == 2
    assert services.status_store.get(item.id).status == "completed"
    assert any(e.stage == "retry" for e in services.broadcaster.history(item.id))


def test_retry_budget_is_bounded(services, drain):
    calls = {"n": 0}

    def _down(ctx):
        calls["n"] += 1
        raise TransientIOFailure("evidence store down")

    _override(services, "metrics_run", _down)
    item = _submit_metrics_run(services)

    drain("metrics_run")

    assert calls["n"] == services.settings.pipeline_retry_max + 1
    failed = services.status_store.get(item.id)
    assert failed.status == "failed"
    assert failed.error_message == "evidence store down"


def test_permanent_pipeline_failure_is_not_retried(services, drain):
    calls = {"n": 0}

    def _bad(ctx):
        calls["n"] += 1
        raise PipelineFailure("document has no text", code="DOC_EMPTY")

    _override(services, "metrics_run", _bad)
    item = _submit_metrics_run(services)
    drain("metrics_run")

    assert calls["n"] == 1
    assert services.status_store.get(item.id).error_message == "document has no text"


def test_result_outside_schema_fails_item(services, drain):
    _override(services, "metrics_run", lambda ctx: {"metrics": {"overall_confidence": 7}})
    item = _submit_metrics_run(services)

    drain("metrics_run")

    failed = services.status_store.get(item.id)
    assert failed.status == "failed"
    assert "invalid result" in failed.error_message


def test_worker_only_consumes_its_own_kind(services, drain):
    _submit_stress_test(services)
    assert drain("metrics_run")["processed"] == 0
    assert services.work_queue.depths()["stress_test"]["pending"] == 1


def test_run_once_respects_message_budget(services):
    for _ in range(3):
        _submit_stress_test(services)
    runtime = create_worker_runtime(services, kind="stress_test")
    runtime.max_messages_per_iteration = 2

    assert runtime.run_once()["processed"] == 2
    assert runtime.run_once()["processed"] == 1
    assert runtime.process_one() is None


def test_run_forever_stops_after_iterations(services):
    _submit_stress_test(services)
    sleeps: list[float] = []
    runtime = create_worker_runtime(services, kind="stress_test")
    runtime._sleep = sleeps.append

    stats = runtime.run_forever(stop_after_iterations=2)

    assert stats["processed"] == 1
    assert stats["succeeded"] == 1


def test_worker_run_stats_accumulate():
    stats = WorkerRunStats()
    stats.add({"processed": 2, "succeeded": 1, "failed": 1})
    stats.add({"processed": 1, "skipped": 1})
    assert stats.as_dict() == {
        "processed": 3,
        "succeeded": 1,
        "failed": 1,
        "skipped": 1,
        "acked": 0,
        "requeued": 0,
    }


def test_worker_pool_processes_items_until_stopped(services):
    items = [_submit_stress_test(services) for _ in range(3)]
    pool = create_worker_pool_from_env(
        services,
        environ={"WORKER_CONCURRENCY_STRESS_TEST": "2", "WORKER_POLL_INTERVAL_MS": "10"},
        kinds=["stress_test"],
    )
    assert len(pool.runtimes) == 2

    pool.start()
    try:
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            if all(services.status_store.get(i.id).status == "completed" for i in items):
                break
            time.sleep(0.02)
    finally:
        pool.stop()

    assert pool.running is False
    assert all(services.status_store.get(i.id).status == "completed" for i in items)


def test_concurrent_workers_claim_each_item_once(services):
    items = [_submit_stress_test(services) for _ in range(6)]
    for item in items:
        services.work_queue.enqueue("stress_test", item.id)

    runtimes = [create_worker_runtime(services, kind="stress_test") for _ in range(3)]
    results: list[dict[str, int]] = []
    lock = threading.Lock()

    def _work(runtime):
        stats = runtime.run_once()
        with lock:
            results.append(stats)

    threads = [threading.Thread(target=_work, args=(rt,)) for rt in runtimes]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert sum(r["succeeded"] for r in results) == 6
    assert sum(r["skipped"] for r in results) == 6
    for item in items:
        started = [e for e in services.broadcaster.history(item.id) if e.stage == "started"]
        assert len(started) == 1


class StageFailingEvents(InMemoryProgressEventsRepository):
    def __init__(self, *, stage: str, error: Exception):
        super().__init__()
        self.stage = stage
        self.error = error

    def append(self, *, event):
        if event.get("stage") == self.stage:
            raise self.error
        return super().append(event=event)


def _fail_events_on(services, stage: str, error: Exception) -> None:
    services.broadcaster._events_repo = StageFailingEvents(stage=stage, error=error)


def test_lost_started_event_does_not_strand_item(services, drain):
    _fail_events_on(services, "started", TransientIOFailure("event store timed out"))
    item = _submit_stress_test(services)

    stats = drain("stress_test")

    assert stats["succeeded"] == 1
    done = services.status_store.get(item.id)
    assert done.status == "completed"
    assert done.result["scenarios_run"] == 3
    stages = [e.stage for e in services.broadcaster.history(item.id)]
    assert "started" not in stages
    assert stages[-1] == "done"


def test_unexpected_claim_error_requeues_delivery(services, drain, monkeypatch):
    item = _submit_stress_test(services)
    original = services.status_store.transition_to_running
    calls = {"n": 0}

    def _flaky_claim(item_id):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("integrity error")
        return original(item_id)

    monkeypatch.setattr(services.status_store, "transition_to_running", _flaky_claim)

    stats = drain("stress_test")

    assert stats["requeued"] == 1
    assert stats["succeeded"] == 1
    assert services.status_store.get(item.id).status == "completed"


def test_worker_thread_survives_failing_terminal_event(services):
    _fail_events_on(services, "done", RuntimeError("integrity error"))
    first = _submit_stress_test(services)
    second = _submit_stress_test(services)
    runtime = create_worker_runtime(services, kind="stress_test")
    stop = threading.Event()
    thread = threading.Thread(target=runtime.run_forever, kwargs={"stop_event": stop}, daemon=True)
    thread.start()
    try:
        deadline = time.monotonic() + 5.0
        while time.monotonic() < deadline:
            statuses = {services.status_store.get(i.id).status for i in (first, second)}
            if statuses == {"completed"}:
                break
            time.sleep(0.02)
        assert statuses == {"completed"}
        assert thread.is_alive()
    finally:
        stop.set()
        thread.join(timeout=2.0)
    assert not any(e.terminal for e in services.broadcaster.history(first.id))
