from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from collections.abc import Iterator
from typing import Any

from thesis_validator.models import ProgressEvent, utcnow_iso

logger = logging.getLogger(__name__)


class Subscription:
    """Ordered event stream for one job.

    Live events arrive through an in-process queue; when it stays quiet the durable tail is
    polled so events appended by other processes still reach the subscriber. Events are only
    handed out in seq order, so what a subscriber sees always matches the tail.
    """

    def __init__(
        self,
        *,
        broadcaster: "ProgressBroadcaster",
        job_id: str,
        after_seq: int,
        poll_interval_s: float,
    ) -> None:
        self._broadcaster = broadcaster
        self.job_id = job_id
        self.last_seq = max(0, int(after_seq))
        self._poll_interval_s = max(0.01, poll_interval_s)
        self._live: queue.Queue[ProgressEvent] = queue.Queue()
        self._ready: deque[ProgressEvent] = deque()
        self.closed = False
        self.finished = False

    def _offer(self, event: ProgressEvent) -> None:
        self._live.put(event)

    def _preload(self, events: list[ProgressEvent]) -> None:
        self._ready.extend(events)

    def _backfill(self) -> None:
        self._ready.extend(self._broadcaster.history(self.job_id, after_seq=self.last_seq))

    def _take_ready(self) -> ProgressEvent | None:
        while self._ready:
            event = self._ready.popleft()
            if event.seq <= self.last_seq:
                continue
            if event.seq > self.last_seq + 1:
                self._ready.clear()
                self._backfill()
                if not self._ready:
                    self._ready.append(event)
                first_seq = self._ready[0].seq
                if first_seq > self.last_seq + 1:
                    # Tail no longer holds the missing events; accept the gap.
                    self.last_seq = first_seq - 1
                continue
            self.last_seq = event.seq
            if event.terminal:
                self.finished = True
            return event
        return None

    def next_event(self, timeout: float | None = None) -> ProgressEvent | None:
        deadline = None if timeout is None else time.monotonic() + max(0.0, timeout)
        while not self.closed:
            event = self._take_ready()
            if event is not None:
                return event
            wait = self._poll_interval_s
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._backfill()
                    return self._take_ready()
                wait = min(wait, remaining)
            try:
                self._ready.append(self._live.get(timeout=wait))
            except queue.Empty:
                self._backfill()
        return None

    def events(self, *, idle_timeout: float | None = None) -> Iterator[ProgressEvent]:
        while not self.closed and not self.finished:
            event = self.next_event(timeout=idle_timeout)
            if event is None:
                return
            yield event

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._broadcaster.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class ProgressBroadcaster:
    """Per-job pub/sub with a durable event tail."""

    def __init__(
        self,
        *,
        events_repo: Any,
        tail_limit: int = 500,
        poll_interval_ms: int = 250,
    ) -> None:
        self._events_repo = events_repo
        self._tail_limit = max(1, int(tail_limit))
        self._poll_interval_s = max(1, int(poll_interval_ms)) / 1000.0
        self._lock = threading.RLock()
        self._subscribers: dict[str, list[Subscription]] = {}

    def publish(
        self,
        *,
        job_id: str,
        engagement_id: str,
        message: str,
        stage: str | None = None,
        progress: int | None = None,
        status: str | None = None,
        terminal: bool = False,
        data: dict[str, Any] | None = None,
    ) -> ProgressEvent:
        with self._lock:
            stored = self._events_repo.append(
                event={
                    "job_id": job_id,
                    "engagement_id": engagement_id,
                    "timestamp": utcnow_iso(),
                    "message": message,
                    "stage": stage,
                    "progress": progress,
                    "status": status,
                    "terminal": terminal,
                    "data": dict(data or {}),
                }
            )
            event = ProgressEvent.from_row(stored)
            for subscription in self._subscribers.get(job_id, []):
                subscription._offer(event)
        return event

    def subscribe(self, job_id: str, *, after_seq: int = 0) -> Subscription:
        subscription = Subscription(
            broadcaster=self,
            job_id=job_id,
            after_seq=after_seq,
            poll_interval_s=self._poll_interval_s,
        )
        with self._lock:
            subscription._preload(self.history(job_id, after_seq=after_seq))
            self._subscribers.setdefault(job_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            current = self._subscribers.get(subscription.job_id, [])
            remaining = [s for s in current if s is not subscription]
            if remaining:
                self._subscribers[subscription.job_id] = remaining
            else:
                self._subscribers.pop(subscription.job_id, None)

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(job_id, []))

    def history(self, job_id: str, *, after_seq: int = 0, limit: int | None = None) -> list[ProgressEvent]:
        rows = self._events_repo.list_after(
            job_id=job_id,
            after_seq=after_seq,
            limit=self._tail_limit if limit is None else min(int(limit), self._tail_limit),
        )
        return [ProgressEvent.from_row(row) for row in rows]

    def purge(self, job_id: str) -> int:
        removed = int(self._events_repo.purge(job_id=job_id))
        logger.info("progress_events_purged job_id=%s removed=%s", job_id, removed)
        return removed
