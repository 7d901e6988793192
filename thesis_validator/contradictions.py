from __future__ import annotations

import logging
import uuid
from typing import Any

from thesis_validator.errors import ConflictError, NotFoundError, ValidationFailed
from thesis_validator.models import utcnow_iso

logger = logging.getLogger(__name__)

SEVERITIES: tuple[str, ...] = ("low", "medium", "high")
CONTRADICTION_STATUSES: tuple[str, ...] = ("unresolved", "critical", "explained", "dismissed")
RESOLUTION_STATUSES = frozenset({"explained", "dismissed"})
OPEN_STATUSES: tuple[str, ...] = ("unresolved", "critical")
MIN_RESOLUTION_NOTES = 10


class ContradictionService:
    """Contradiction lifecycle: unresolved -> critical, {unresolved, critical} -> explained | dismissed."""

    def __init__(self, *, repo: Any) -> None:
        self._repo = repo

    def create(
        self,
        *,
        engagement_id: str,
        description: str,
        severity: str,
        hypothesis_id: str | None = None,
        evidence_id: str | None = None,
        bear_case_theme: str | None = None,
    ) -> dict[str, Any]:
        if severity not in SEVERITIES:
            raise ValidationFailed(f"invalid severity: {severity}")
        if not description.strip():
            raise ValidationFailed("description must not be empty")
        return self._repo.create(
            contradiction={
                "id": f"ctr_{uuid.uuid4().hex[:12]}",
                "engagement_id": engagement_id,
                "hypothesis_id": hypothesis_id,
                "evidence_id": evidence_id,
                "description": description.strip(),
                "severity": severity,
                "status": "unresolved",
                "bear_case_theme": bear_case_theme,
                "resolution_notes": None,
                "resolved_by": None,
                "found_at": utcnow_iso(),
                "resolved_at": None,
            }
        )

    def get(self, *, engagement_id: str, contradiction_id: str) -> dict[str, Any]:
        row = self._repo.get(engagement_id=engagement_id, contradiction_id=contradiction_id)
        if row is None:
            raise NotFoundError(f"contradiction not found: {contradiction_id}", code="CONTRADICTION_NOT_FOUND")
        return row

    def list(
        self,
        *,
        engagement_id: str,
        status: str | None = None,
        severity: str | None = None,
    ) -> list[dict[str, Any]]:
        return self._repo.list(engagement_id=engagement_id, status=status, severity=severity)

    def resolve(
        self,
        *,
        engagement_id: str,
        contradiction_id: str,
        status: str,
        resolution_notes: str,
        resolved_by: str | None = None,
    ) -> dict[str, Any]:
        if status not in RESOLUTION_STATUSES:
            raise ValidationFailed(f"resolution status must be explained or dismissed, got {status}")
        notes = (resolution_notes or "").strip()
        if len(notes) < MIN_RESOLUTION_NOTES:
            raise ValidationFailed(f"resolution notes must be at least {MIN_RESOLUTION_NOTES} characters")
        updated = self._repo.compare_and_set(
            engagement_id=engagement_id,
            contradiction_id=contradiction_id,
            expected_statuses=OPEN_STATUSES,
            changes={
                "status": status,
                "resolution_notes": notes,
                "resolved_by": resolved_by,
                "resolved_at": utcnow_iso(),
            },
        )
        if updated is None:
            current = self.get(engagement_id=engagement_id, contradiction_id=contradiction_id)
            raise ConflictError(
                f"contradiction {contradiction_id} already {current['status']}",
                code="CONTRADICTION_ALREADY_RESOLVED",
            )
        logger.info("contradiction_resolved id=%s status=%s", contradiction_id, status)
        return updated

    def mark_critical(self, *, engagement_id: str, contradiction_id: str) -> dict[str, Any]:
        updated = self._repo.compare_and_set(
            engagement_id=engagement_id,
            contradiction_id=contradiction_id,
            expected_statuses=("unresolved",),
            changes={"status": "critical"},
        )
        if updated is None:
            current = self.get(engagement_id=engagement_id, contradiction_id=contradiction_id)
            raise ConflictError(
                f"contradiction {contradiction_id} cannot be escalated from {current['status']}",
                code="CONTRADICTION_STATE_CONFLICT",
            )
        return updated

    def stats(self, *, engagement_id: str) -> dict[str, Any]:
        rows = self.list(engagement_id=engagement_id)
        by_severity = {severity: 0 for severity in SEVERITIES}
        by_status = {status: 0 for status in CONTRADICTION_STATUSES}
        for row in rows:
            by_severity[str(row["severity"])] = by_severity.get(str(row["severity"]), 0) + 1
            by_status[str(row["status"])] = by_status.get(str(row["status"]), 0) + 1
        total = len(rows)
        resolved = by_status["explained"] + by_status["dismissed"]
        return {
            "total_count": total,
            "by_severity": by_severity,
            "by_status": by_status,
            "resolution_rate": round(resolved / total, 4) if total else 0.0,
        }
