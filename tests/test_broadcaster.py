from __future__ import annotations

import threading

import pytest

from thesis_validator.broadcaster import ProgressBroadcaster
from thesis_validator.repositories import InMemoryProgressEventsRepository


@pytest.fixture
def events_repo() -> InMemoryProgressEventsRepository:
    return InMemoryProgressEventsRepository()


@pytest.fixture
def broadcaster(events_repo) -> ProgressBroadcaster:
    return ProgressBroadcaster(events_repo=events_repo, tail_limit=100, poll_interval_ms=10)


def _publish(broadcaster: ProgressBroadcaster, message: str, *, job_id: str = "st_1", terminal: bool = False):
    return broadcaster.publish(
        job_id=job_id,
        engagement_id="eng_a",
        message=message,
        stage="done" if terminal else "run_scenarios",
        status="completed" if terminal else "running",
        terminal=terminal,
    )


def test_publish_assigns_increasing_seq_per_job(broadcaster):
    assert [_publish(broadcaster, f"step {i}").seq for i in range(3)] == [1, 2, 3]
    assert _publish(broadcaster, "other job", job_id="st_2").seq == 1
    assert [e.message for e in broadcaster.history("st_1")] == ["step 0", "step 1", "step 2"]
    assert [e.seq for e in broadcaster.history("st_1", after_seq=1)] == [2, 3]
    assert len(broadcaster.history("st_1", limit=1)) == 1


def test_late_subscriber_replays_history_including_terminal(broadcaster):
    _publish(broadcaster, "started")
    _publish(broadcaster, "halfway")
    _publish(broadcaster, "completed", terminal=True)

    with broadcaster.subscribe("st_1") as subscription:
        events = list(subscription.events(idle_timeout=0.5))

    assert [e.seq for e in events] == [1, 2, 3]
    assert events[-1].terminal is True
    assert subscription.finished is True


def test_subscriber_resumes_after_seq(broadcaster):
    for i in range(4):
        _publish(broadcaster, f"step {i}")
    with broadcaster.subscribe("st_1", after_seq=2) as subscription:
        first = subscription.next_event(timeout=0.2)
    assert first is not None
    assert first.seq == 3


def test_live_events_arrive_in_tail_order(broadcaster):
    subscription = broadcaster.subscribe("st_1")
    received = []

    def _consume():
        for event in subscription.events(idle_timeout=2.0):
            received.append(event)

    consumer = threading.Thread(target=_consume)
    consumer.start()
    for i in range(5):
        _publish(broadcaster, f"step {i}")
    _publish(broadcaster, "done", terminal=True)
    consumer.join(timeout=5)
    subscription.close()

    assert [e.seq for e in received] == [1, 2, 3, 4, 5, 6]
    assert [e.seq for e in received] == [e.seq for e in broadcaster.history("st_1")]


def test_subscriber_backfills_events_written_by_another_process(broadcaster, events_repo):
    subscription = broadcaster.subscribe("st_1")
    _publish(broadcaster, "local 1")
    assert subscription.next_event(timeout=0.5).seq == 1

    # Appended straight to the durable tail, as a worker in another process would.
    events_repo.append(event={"job_id": "st_1", "engagement_id": "eng_a", "message": "remote 2"})
    _publish(broadcaster, "local 3")

    second = subscription.next_event(timeout=1.0)
    third = subscription.next_event(timeout=1.0)
    subscription.close()
    assert (second.seq, second.message) == (2, "remote 2")
    assert (third.seq, third.message) == (3, "local 3")


def test_quiet_subscription_polls_the_tail(broadcaster, events_repo):
    subscription = broadcaster.subscribe("st_1")
    events_repo.append(event={"job_id": "st_1", "engagement_id": "eng_a", "message": "remote only"})
    event = subscription.next_event(timeout=1.0)
    subscription.close()
    assert event is not None
    assert event.message == "remote only"


def test_next_event_times_out_with_none(broadcaster):
    with broadcaster.subscribe("st_idle") as subscription:
        assert subscription.next_event(timeout=0.05) is None


def test_close_unsubscribes_and_purge_drops_tail(broadcaster):
    subscription = broadcaster.subscribe("st_1")
    assert broadcaster.subscriber_count("st_1") == 1
    subscription.close()
    subscription.close()
    assert broadcaster.subscriber_count("st_1") == 0
    assert subscription.next_event(timeout=0.05) is None

    _publish(broadcaster, "one")
    _publish(broadcaster, "two")
    assert broadcaster.purge("st_1") == 2
    assert broadcaster.history("st_1") == []
