from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from thesis_validator.errors import ApiError, ConflictError, NotFoundError, PipelineFailure, TransientIOFailure
from thesis_validator.models import PROGRESS_KINDS, WORK_KINDS, WorkItem
from thesis_validator.pipelines import PipelineContext, PipelineResources, PipelineSpec, validate_result
from thesis_validator.queue_backend import Delivery
from thesis_validator.runtime_profile import RuntimeSettings

logger = logging.getLogger(__name__)


@dataclass
class WorkerRunStats:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    acked: int = 0
    requeued: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "acked": self.acked,
            "requeued": self.requeued,
        }

    def add(self, other: dict[str, int]) -> None:
        for key, value in other.items():
            setattr(self, key, getattr(self, key) + int(value))


class WorkerRuntime:
    """Worker loop for one work kind.

    The guarded pending -> running transition is the claim; a delivery whose item is no
    longer pending is acknowledged without touching the item. Pipeline errors are recorded
    on the item. Progress events are best effort, and any other error around a delivery is
    logged and the delivery handed back to the queue so the loop keeps running.
    """

    def __init__(
        self,
        *,
        kind: str,
        status_store: Any,
        work_queue: Any,
        broadcaster: Any,
        pipelines: Mapping[str, PipelineSpec],
        resources: PipelineResources,
        pipeline_retry_max: int = 2,
        max_messages_per_iteration: int = 20,
        poll_interval_ms: int = 200,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if kind not in pipelines:
            raise ValueError(f"no pipeline registered for kind: {kind}")
        self.kind = kind
        self.status_store = status_store
        self.work_queue = work_queue
        self.broadcaster = broadcaster
        self.pipeline = pipelines[kind]
        self.resources = resources
        self.pipeline_retry_max = max(0, int(pipeline_retry_max))
        self.max_messages_per_iteration = max(1, int(max_messages_per_iteration))
        self.poll_interval_ms = max(1, int(poll_interval_ms))
        self._sleep = sleep

    def _publish(self, item: WorkItem, **fields: Any) -> None:
        # Events are best effort; the item status stays authoritative.
        try:
            self.broadcaster.publish(job_id=item.id, engagement_id=item.engagement_id, **fields)
        except Exception:
            logger.exception(
                "worker_publish_failed kind=%s item_id=%s stage=%s",
                self.kind,
                item.id,
                fields.get("stage"),
            )

    def _context(self, item: WorkItem) -> PipelineContext:
        def emit(*, message: str, stage: str | None, progress: int | None, data: dict[str, Any] | None) -> None:
            self._publish(item, message=message, stage=stage, progress=progress, status="running", data=data)

        def set_progress(value: int) -> None:
            if item.kind in PROGRESS_KINDS:
                self.status_store.update_progress(item.id, value)

        return PipelineContext(item=item, resources=self.resources, emit=emit, set_progress=set_progress)

    def _run_pipeline(self, item: WorkItem) -> tuple[dict[str, Any] | None, str | None]:
        attempt = 0
        while True:
            try:
                result = self.pipeline.run(self._context(item))
                validate_result(self.kind, result)
                return result, None
            except (TransientIOFailure, PipelineFailure) as exc:
                if not exc.retryable or attempt >= self.pipeline_retry_max:
                    logger.warning(
                        "worker_pipeline_failed kind=%s item_id=%s code=%s error=%s",
                        self.kind,
                        item.id,
                        exc.code,
                        exc.message,
                    )
                    return None, exc.message
                attempt += 1
                delay_ms = self.work_queue.backoff_ms(attempt - 1)
                logger.warning(
                    "worker_pipeline_retry kind=%s item_id=%s attempt=%s delay_ms=%s",
                    self.kind,
                    item.id,
                    attempt,
                    delay_ms,
                )
                self._publish(
                    item,
                    message=f"retrying after transient failure ({attempt}/{self.pipeline_retry_max}): {exc.message}",
                    stage="retry",
                    status="running",
                )
                self._sleep(delay_ms / 1000.0)
            except ApiError as exc:
                logger.warning("worker_pipeline_failed kind=%s item_id=%s code=%s", self.kind, item.id, exc.code)
                return None, exc.message
            except Exception as exc:
                logger.exception("worker_pipeline_crashed kind=%s item_id=%s", self.kind, item.id)
                return None, f"{type(exc).__name__}: {exc}"

    def _finalize(self, item: WorkItem, result: dict[str, Any] | None, error: str | None) -> WorkItem:
        if error is None and result is not None:
            try:
                return self.status_store.transition_to_completed(item.id, result)
            except ApiError:
                raise
            except Exception as exc:
                logger.exception("worker_complete_failed kind=%s item_id=%s", self.kind, item.id)
                error = f"could not record result: {type(exc).__name__}: {exc}"
        return self.status_store.transition_to_failed(item.id, error or "unknown failure")

    def _finish(self, item: WorkItem, result: dict[str, Any] | None, error: str | None) -> WorkItem | None:
        try:
            final = self._finalize(item, result, error)
        except ApiError as exc:
            logger.error("worker_finalize_failed kind=%s item_id=%s code=%s", self.kind, item.id, exc.code)
            return None
        if final.status == "completed":
            message = f"{self.kind} completed"
        else:
            message = f"{self.kind} failed: {final.error_message}"
        self._publish(
            final,
            message=message,
            stage="done",
            progress=final.progress,
            status=final.status,
            terminal=True,
        )
        return final

    def _handle(self, delivery: Delivery, stats: WorkerRunStats) -> None:
        if not delivery.work_item_id:
            self.work_queue.ack(delivery.receipt)
            stats.acked += 1
            stats.skipped += 1
            return
        try:
            item = self.status_store.transition_to_running(delivery.work_item_id)
        except (ConflictError, NotFoundError) as exc:
            logger.info(
                "worker_claim_skipped kind=%s item_id=%s attempt=%s reason=%s",
                self.kind,
                delivery.work_item_id,
                delivery.attempt,
                exc.code,
            )
            self.work_queue.ack(delivery.receipt)
            stats.acked += 1
            stats.skipped += 1
            return
        except TransientIOFailure:
            delay_ms = self.work_queue.backoff_ms(delivery.attempt)
            logger.warning("worker_claim_retry kind=%s item_id=%s delay_ms=%s", self.kind, delivery.work_item_id, delay_ms)
            self.work_queue.nack(delivery.receipt, retry_after_ms=delay_ms)
            stats.requeued += 1
            return

        logger.info("worker_claimed kind=%s item_id=%s attempt=%s", self.kind, item.id, delivery.attempt)
        self._publish(item, message=f"{self.kind} started", stage="started", progress=item.progress, status="running")
        result, error = self._run_pipeline(item)
        final = self._finish(item, result, error)
        self.work_queue.ack(delivery.receipt)
        stats.acked += 1
        if final is not None and final.status == "completed":
            stats.succeeded += 1
        else:
            stats.failed += 1

    def process_one(self) -> dict[str, int] | None:
        """Handle at most one delivery; returns None when the queue is empty."""
        delivery = self.work_queue.dequeue(self.kind)
        if delivery is None:
            return None
        stats = WorkerRunStats(processed=1)
        try:
            self._handle(delivery, stats)
        except Exception:
            logger.exception(
                "worker_delivery_crashed kind=%s item_id=%s attempt=%s",
                self.kind,
                delivery.work_item_id,
                delivery.attempt,
            )
            self._release(delivery, stats)
        return stats.as_dict()

    def _release(self, delivery: Delivery, stats: WorkerRunStats) -> None:
        """Hand a delivery back to the queue after an unexpected error; expiry covers a failed nack."""
        try:
            self.work_queue.nack(delivery.receipt, retry_after_ms=self.work_queue.backoff_ms(delivery.attempt))
        except Exception:
            logger.exception("worker_release_failed kind=%s receipt=%s", self.kind, delivery.receipt)
            return
        stats.requeued += 1

    def run_once(self) -> dict[str, int]:
        stats = WorkerRunStats()
        while stats.processed < self.max_messages_per_iteration:
            try:
                current = self.process_one()
            except TransientIOFailure as exc:
                logger.warning("worker_dequeue_unavailable kind=%s error=%s", self.kind, exc.message)
                break
            except Exception:
                logger.exception("worker_dequeue_crashed kind=%s", self.kind)
                break
            if current is None:
                break
            stats.add(current)
        return stats.as_dict()

    def run_forever(
        self,
        *,
        stop_after_iterations: int | None = None,
        stop_event: threading.Event | None = None,
    ) -> dict[str, int]:
        aggregate = WorkerRunStats()
        iterations = 0
        while stop_event is None or not stop_event.is_set():
            current = self.run_once()
            aggregate.add(current)
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            if int(current["processed"]) == 0:
                if stop_event is not None:
                    stop_event.wait(self.poll_interval_ms / 1000.0)
                else:
                    self._sleep(self.poll_interval_ms / 1000.0)
        return aggregate.as_dict()


class WorkerPool:
    """Runs each runtime on its own thread until stopped."""

    def __init__(self, runtimes: Iterable[WorkerRuntime]) -> None:
        self.runtimes = list(runtimes)
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        if self._threads:
            return
        self._stop_event.clear()
        for idx, runtime in enumerate(self.runtimes):
            thread = threading.Thread(
                target=runtime.run_forever,
                kwargs={"stop_event": self._stop_event},
                name=f"worker-{runtime.kind}-{idx}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info("worker_pool_started workers=%s", len(self._threads))

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        logger.info("worker_pool_stopped workers=%s", len(self._threads))
        self._threads = []

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)


def create_worker_runtime(services: Any, *, kind: str, settings: RuntimeSettings | None = None) -> WorkerRuntime:
    cfg = settings or services.settings
    return WorkerRuntime(
        kind=kind,
        status_store=services.status_store,
        work_queue=services.work_queue,
        broadcaster=services.broadcaster,
        pipelines=services.pipelines,
        resources=services.resources,
        pipeline_retry_max=cfg.pipeline_retry_max,
        max_messages_per_iteration=cfg.worker_max_messages_per_iteration,
        poll_interval_ms=cfg.worker_poll_interval_ms,
    )


def create_worker_pool_from_env(
    services: Any,
    *,
    environ: Mapping[str, str] | None = None,
    kinds: Iterable[str] | None = None,
) -> WorkerPool:
    settings = RuntimeSettings.from_env(environ) if environ is not None else services.settings
    selected = list(kinds) if kinds is not None else list(WORK_KINDS)
    unknown = [k for k in selected if k not in WORK_KINDS]
    if unknown:
        raise ValueError(f"unknown work kinds: {unknown}")
    runtimes = [
        create_worker_runtime(services, kind=kind, settings=settings)
        for kind in selected
        for _ in range(settings.worker_concurrency.get(kind, 1))
    ]
    return WorkerPool(runtimes)
