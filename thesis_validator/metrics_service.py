from __future__ import annotations

import logging
import uuid
from typing import Any

from thesis_validator.errors import ValidationFailed
from thesis_validator.models import utcnow_iso

logger = logging.getLogger(__name__)

METRIC_TYPES: tuple[str, ...] = (
    "evidence_credibility_avg",
    "source_diversity_score",
    "hypothesis_coverage",
    "contradiction_resolution_rate",
    "overall_confidence",
    "stress_test_vulnerability",
    "research_completeness",
)
SOURCE_TYPES: tuple[str, ...] = ("web", "document", "expert", "data", "filing", "financial")
HISTORY_LIMIT_MAX = 200
HISTORY_LIMIT_DEFAULT = 50


def _unit(value: float) -> float:
    return round(max(0.0, min(1.0, float(value))), 4)


def _mean(values: list[float]) -> float | None:
    return sum(values) / len(values) if values else None


class MetricsService:
    """Derived research quality metrics; each calculation appends one record per metric type."""

    def __init__(self, *, repo: Any, evidence: Any, contradictions: Any, status_store: Any) -> None:
        self._repo = repo
        self._evidence = evidence
        self._contradictions = contradictions
        self._status_store = status_store

    def record(
        self,
        *,
        engagement_id: str,
        metric_type: str,
        value: float,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if metric_type not in METRIC_TYPES:
            raise ValidationFailed(f"unknown metric type: {metric_type}")
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValidationFailed("metric value must be a number") from None
        if not 0.0 <= number <= 1.0:
            raise ValidationFailed("metric value must be between 0 and 1")
        return self._repo.append(
            metric={
                "id": f"met_{uuid.uuid4().hex[:12]}",
                "engagement_id": engagement_id,
                "metric_type": metric_type,
                "value": number,
                "metadata": dict(metadata or {}),
                "recorded_at": utcnow_iso(),
            }
        )

    def compute(self, engagement_id: str) -> dict[str, float]:
        evidence = self._evidence.list_evidence(engagement_id=engagement_id)
        hypotheses = self._evidence.list_hypotheses(engagement_id=engagement_id)
        links = self._evidence.list_links(engagement_id=engagement_id)
        contradictions = self._contradictions.list(engagement_id=engagement_id)

        credibility = _mean([float(e["credibility"]) for e in evidence if e.get("credibility") is not None])
        diversity = len({e["source_type"] for e in evidence} & set(SOURCE_TYPES)) / len(SOURCE_TYPES)

        hypothesis_ids = {str(h["id"]) for h in hypotheses}
        covered = {hypothesis_id for _, hypothesis_id in links if hypothesis_id in hypothesis_ids}
        coverage = len(covered) / len(hypothesis_ids) if hypothesis_ids else 0.0

        resolved = sum(1 for c in contradictions if c["status"] in {"explained", "dismissed"})
        resolution_rate = resolved / len(contradictions) if contradictions else 1.0

        confidence = _mean([float(h["confidence"]) for h in hypotheses if h.get("confidence") is not None])

        vulnerability = 0.0
        for item in self._status_store.list_by_engagement(engagement_id, kind="stress_test", status="completed"):
            score = (item.result or {}).get("overall_risk_score")
            if score is not None:
                vulnerability = float(score) / 100.0
                break

        return {
            "evidence_credibility_avg": _unit(credibility if credibility is not None else 0.0),
            "source_diversity_score": _unit(diversity),
            "hypothesis_coverage": _unit(coverage),
            "contradiction_resolution_rate": _unit(resolution_rate),
            "overall_confidence": _unit(confidence if confidence is not None else 0.5),
            "stress_test_vulnerability": _unit(vulnerability),
            "research_completeness": _unit((coverage + diversity + resolution_rate) / 3.0),
        }

    def calculate_and_record(self, engagement_id: str, *, source: str = "manual") -> dict[str, dict[str, Any]]:
        values = self.compute(engagement_id)
        recorded: dict[str, dict[str, Any]] = {}
        for metric_type in METRIC_TYPES:
            recorded[metric_type] = self.record(
                engagement_id=engagement_id,
                metric_type=metric_type,
                value=values[metric_type],
                metadata={"source": source},
            )
        logger.info("metrics_recorded engagement_id=%s source=%s", engagement_id, source)
        return recorded

    def history(
        self,
        engagement_id: str,
        *,
        metric_type: str | None = None,
        limit: int = HISTORY_LIMIT_DEFAULT,
    ) -> list[dict[str, Any]]:
        if not 1 <= int(limit) <= HISTORY_LIMIT_MAX:
            raise ValidationFailed(f"limit must be between 1 and {HISTORY_LIMIT_MAX}")
        if metric_type is None:
            latest = self._repo.latest_by_type(engagement_id=engagement_id)
            return [latest[t] for t in METRIC_TYPES if t in latest][: int(limit)]
        if metric_type not in METRIC_TYPES:
            raise ValidationFailed(f"unknown metric type: {metric_type}")
        return self._repo.history(engagement_id=engagement_id, metric_type=metric_type, limit=int(limit))

    def current(self, engagement_id: str) -> dict[str, float | None]:
        latest = self._repo.latest_by_type(engagement_id=engagement_id)
        return {t: (float(latest[t]["value"]) if t in latest else None) for t in METRIC_TYPES}

    def research_quality(self, engagement_id: str) -> dict[str, Any]:
        evidence = self._evidence.list_evidence(engagement_id=engagement_id)
        hypotheses = self._evidence.list_hypotheses(engagement_id=engagement_id)
        contradictions = self._contradictions.list(engagement_id=engagement_id)
        latest = self._repo.latest_by_type(engagement_id=engagement_id)
        recorded_at = max((str(row["recorded_at"]) for row in latest.values()), default=None)
        return {
            "metrics": self.current(engagement_id),
            "last_calculated_at": recorded_at,
            "evidence_count": len(evidence),
            "hypothesis_count": len(hypotheses),
            "contradiction_count": len(contradictions),
            "unresolved_contradiction_count": sum(
                1 for c in contradictions if c["status"] in {"unresolved", "critical"}
            ),
        }
