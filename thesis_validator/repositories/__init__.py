from thesis_validator.repositories.contradictions import (
    InMemoryContradictionsRepository,
    PostgresContradictionsRepository,
)
from thesis_validator.repositories.engagements import InMemoryEngagementsRepository, PostgresEngagementsRepository
from thesis_validator.repositories.evidence import InMemoryEvidenceRepository, PostgresEvidenceRepository
from thesis_validator.repositories.expert_calls import InMemoryExpertCallsRepository, PostgresExpertCallsRepository
from thesis_validator.repositories.metrics import InMemoryMetricsRepository, PostgresMetricsRepository
from thesis_validator.repositories.progress_events import (
    InMemoryProgressEventsRepository,
    PostgresProgressEventsRepository,
)
from thesis_validator.repositories.work_items import InMemoryWorkItemsRepository, PostgresWorkItemsRepository

__all__ = [
    "InMemoryContradictionsRepository",
    "PostgresContradictionsRepository",
    "InMemoryEngagementsRepository",
    "PostgresEngagementsRepository",
    "InMemoryEvidenceRepository",
    "PostgresEvidenceRepository",
    "InMemoryExpertCallsRepository",
    "PostgresExpertCallsRepository",
    "InMemoryMetricsRepository",
    "PostgresMetricsRepository",
    "InMemoryProgressEventsRepository",
    "PostgresProgressEventsRepository",
    "InMemoryWorkItemsRepository",
    "PostgresWorkItemsRepository",
]
