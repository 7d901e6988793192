from __future__ import annotations

import hashlib
import logging
import os
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from thesis_validator.broadcaster import ProgressBroadcaster
from thesis_validator.contradictions import ContradictionService
from thesis_validator.db.postgres import PostgresTxRunner
from thesis_validator.db.schema import WORK_ITEM_TABLES
from thesis_validator.errors import TransientIOFailure
from thesis_validator.metrics_service import MetricsService
from thesis_validator.models import WORK_KINDS, WorkItem, utcnow_iso
from thesis_validator.pipelines import PIPELINES, PipelineResources, PipelineSpec, validate_parameters
from thesis_validator.queue_backend import InMemoryQueueBackend, WorkQueue, create_queue_from_env
from thesis_validator.repositories import (
    InMemoryContradictionsRepository,
    InMemoryEngagementsRepository,
    InMemoryEvidenceRepository,
    InMemoryExpertCallsRepository,
    InMemoryMetricsRepository,
    InMemoryProgressEventsRepository,
    InMemoryWorkItemsRepository,
    PostgresContradictionsRepository,
    PostgresEngagementsRepository,
    PostgresEvidenceRepository,
    PostgresExpertCallsRepository,
    PostgresMetricsRepository,
    PostgresProgressEventsRepository,
    PostgresWorkItemsRepository,
)
from thesis_validator.runtime_profile import RuntimeSettings
from thesis_validator.status_store import StatusStore

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Everything a request handler or worker needs, passed explicitly."""

    settings: RuntimeSettings
    engagements: Any
    evidence: Any
    expert_calls: Any
    status_store: StatusStore
    work_queue: WorkQueue
    broadcaster: ProgressBroadcaster
    contradictions: ContradictionService
    metrics: MetricsService
    pipelines: Mapping[str, PipelineSpec] = field(default_factory=lambda: dict(PIPELINES))

    @property
    def resources(self) -> PipelineResources:
        return PipelineResources(
            evidence=self.evidence,
            contradictions=self.contradictions,
            expert_calls=self.expert_calls,
            metrics=self.metrics,
        )

    def submit(
        self,
        *,
        kind: str,
        engagement_id: str,
        parameters: dict[str, Any],
        created_by: str | None = None,
    ) -> WorkItem:
        """Create a pending item, announce it and enqueue its id.

        If the queue stays unavailable after retries the pending record is removed so no
        orphan is left behind, and the caller sees QUEUE_UNAVAILABLE.
        """
        item = self.status_store.create(
            kind=kind,
            engagement_id=engagement_id,
            parameters=parameters,
            created_by=created_by,
        )
        self.broadcaster.publish(
            job_id=item.id,
            engagement_id=engagement_id,
            message=f"{kind} queued",
            stage="queued",
            progress=item.progress,
            status="pending",
        )
        try:
            self.work_queue.enqueue(kind, item.id)
        except TransientIOFailure as exc:
            logger.warning("work_item_enqueue_failed kind=%s item_id=%s error=%s", kind, item.id, exc.message)
            self.status_store.delete(item.id, engagement_id=engagement_id)
            self.broadcaster.purge(item.id)
            raise TransientIOFailure(
                f"work queue unavailable, {kind} was not submitted",
                code="QUEUE_UNAVAILABLE",
            ) from exc
        return item

    def delete_work_item(self, item_id: str, *, engagement_id: str) -> bool:
        deleted = self.status_store.delete(item_id, engagement_id=engagement_id)
        self.broadcaster.purge(item_id)
        return deleted

    def seed_engagement(
        self,
        *,
        name: str,
        owner: str,
        thesis: str | None = None,
        engagement_id: str | None = None,
        members: Mapping[str, str] | None = None,
    ) -> dict[str, Any]:
        engagement = self.engagements.create(
            engagement={
                "id": engagement_id or f"eng_{uuid.uuid4().hex[:12]}",
                "name": name,
                "thesis": thesis,
                "created_by": owner,
                "created_at": utcnow_iso(),
            }
        )
        self.engagements.set_member(engagement_id=engagement["id"], subject=owner, role="owner")
        for subject, role in (members or {}).items():
            self.engagements.set_member(engagement_id=engagement["id"], subject=subject, role=role)
        return engagement

    def seed_hypothesis(self, *, engagement_id: str, statement: str, confidence: float | None = None) -> dict[str, Any]:
        return self.evidence.create_hypothesis(
            hypothesis={
                "id": f"hyp_{uuid.uuid4().hex[:12]}",
                "engagement_id": engagement_id,
                "statement": statement,
                "confidence": confidence,
                "created_at": utcnow_iso(),
            }
        )

    def seed_evidence(
        self,
        *,
        engagement_id: str,
        content: str,
        source_type: str = "web",
        credibility: float = 0.6,
        sentiment: str = "neutral",
        hypothesis_ids: list[str] | None = None,
    ) -> dict[str, Any] | None:
        normalized = " ".join(content.lower().split())
        return self.evidence.add_evidence(
            evidence={
                "id": f"ev_{uuid.uuid4().hex[:12]}",
                "engagement_id": engagement_id,
                "content": content,
                "content_hash": hashlib.sha256(normalized.encode("utf-8")).hexdigest(),
                "source_type": source_type,
                "source_title": None,
                "credibility": credibility,
                "sentiment": sentiment,
                "document_id": None,
                "created_at": utcnow_iso(),
            },
            hypothesis_ids=hypothesis_ids or [],
        )


def _build_work_queue(settings: RuntimeSettings, env: Mapping[str, str]) -> WorkQueue:
    return WorkQueue(
        backend=create_queue_from_env(env),
        visibility_timeout_ms=settings.queue_visibility_timeout_ms,
        enqueue_retry_max=settings.queue_enqueue_retry_max,
        retry_backoff_base_ms=settings.queue_retry_backoff_base_ms,
        retry_backoff_max_ms=settings.queue_retry_backoff_max_ms,
    )


def _assemble(
    *,
    settings: RuntimeSettings,
    work_queue: WorkQueue,
    engagements: Any,
    evidence: Any,
    expert_calls: Any,
    work_items: Mapping[str, Any],
    events: Any,
    contradictions: Any,
    metrics: Any,
) -> ServiceContainer:
    status_store = StatusStore(repositories=work_items, validate_parameters=validate_parameters)
    contradiction_service = ContradictionService(repo=contradictions)
    return ServiceContainer(
        settings=settings,
        engagements=engagements,
        evidence=evidence,
        expert_calls=expert_calls,
        status_store=status_store,
        work_queue=work_queue,
        broadcaster=ProgressBroadcaster(
            events_repo=events,
            tail_limit=settings.event_tail_limit,
            poll_interval_ms=settings.event_poll_interval_ms,
        ),
        contradictions=contradiction_service,
        metrics=MetricsService(
            repo=metrics,
            evidence=evidence,
            contradictions=contradiction_service,
            status_store=status_store,
        ),
    )


def build_in_memory_services(
    *,
    settings: RuntimeSettings | None = None,
    work_queue: WorkQueue | None = None,
) -> ServiceContainer:
    cfg = settings or RuntimeSettings.from_env({})
    queue = work_queue or WorkQueue(
        backend=InMemoryQueueBackend(),
        visibility_timeout_ms=cfg.queue_visibility_timeout_ms,
        enqueue_retry_max=cfg.queue_enqueue_retry_max,
        retry_backoff_base_ms=cfg.queue_retry_backoff_base_ms,
        retry_backoff_max_ms=cfg.queue_retry_backoff_max_ms,
    )
    return _assemble(
        settings=cfg,
        work_queue=queue,
        engagements=InMemoryEngagementsRepository(),
        evidence=InMemoryEvidenceRepository(),
        expert_calls=InMemoryExpertCallsRepository(),
        work_items={kind: InMemoryWorkItemsRepository() for kind in WORK_KINDS},
        events=InMemoryProgressEventsRepository(),
        contradictions=InMemoryContradictionsRepository(),
        metrics=InMemoryMetricsRepository(),
    )


def build_postgres_services(*, settings: RuntimeSettings, work_queue: WorkQueue) -> ServiceContainer:
    if not settings.postgres_dsn:
        raise ValueError("POSTGRES_DSN must be set when TV_STORE_BACKEND=postgres")
    tx_runner = PostgresTxRunner(settings.postgres_dsn)
    return _assemble(
        settings=settings,
        work_queue=work_queue,
        engagements=PostgresEngagementsRepository(tx_runner=tx_runner),
        evidence=PostgresEvidenceRepository(tx_runner=tx_runner),
        expert_calls=PostgresExpertCallsRepository(tx_runner=tx_runner),
        work_items={
            kind: PostgresWorkItemsRepository(tx_runner=tx_runner, table_name=WORK_ITEM_TABLES[kind])
            for kind in WORK_KINDS
        },
        events=PostgresProgressEventsRepository(tx_runner=tx_runner),
        contradictions=PostgresContradictionsRepository(tx_runner=tx_runner),
        metrics=PostgresMetricsRepository(tx_runner=tx_runner),
    )


def build_services_from_env(environ: Mapping[str, str] | None = None) -> ServiceContainer:
    env = os.environ if environ is None else environ
    settings = RuntimeSettings.from_env(env)
    work_queue = _build_work_queue(settings, env)
    if settings.store_backend == "postgres":
        services = build_postgres_services(settings=settings, work_queue=work_queue)
    elif settings.store_backend == "memory":
        if settings.require_truestack:
            raise RuntimeError("in-memory store backend is not allowed when TV_REQUIRE_TRUESTACK=true")
        services = build_in_memory_services(settings=settings, work_queue=work_queue)
    else:
        raise RuntimeError(f"unsupported store backend: {settings.store_backend}")
    logger.info(
        "services_built store_backend=%s queue_backend=%s",
        settings.store_backend,
        type(work_queue.backend).__name__,
    )
    return services
