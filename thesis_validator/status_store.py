from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from thesis_validator.errors import ConflictError, NotFoundError, ValidationFailed
from thesis_validator.models import (
    PROGRESS_KINDS,
    WORK_KINDS,
    WorkItem,
    kind_from_id,
    new_work_item_id,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("pending", "running")


class StatusStore:
    """Durable work item records, one repository per work kind.

    Every status change is a conditional update on the expected current status, so two
    racing callers on the same id produce one winner and one ConflictError.
    """

    def __init__(
        self,
        *,
        repositories: Mapping[str, Any],
        validate_parameters: Callable[[str, dict[str, Any]], None] | None = None,
    ) -> None:
        missing = [kind for kind in WORK_KINDS if kind not in repositories]
        if missing:
            raise ValueError(f"missing work item repositories: {missing}")
        self._repositories = dict(repositories)
        self._validate_parameters = validate_parameters

    def _repo_for_kind(self, kind: str) -> Any:
        repo = self._repositories.get(kind)
        if repo is None:
            raise ValidationFailed(f"unknown work kind: {kind}")
        return repo

    def _repo_for_id(self, item_id: str) -> Any:
        kind = kind_from_id(item_id)
        if kind is None:
            raise NotFoundError(f"work item not found: {item_id}", code="WORK_ITEM_NOT_FOUND")
        return self._repositories[kind]

    def create(
        self,
        *,
        kind: str,
        engagement_id: str,
        parameters: dict[str, Any],
        created_by: str | None = None,
    ) -> WorkItem:
        repo = self._repo_for_kind(kind)
        if not isinstance(parameters, dict):
            raise ValidationFailed("parameters must be an object")
        if self._validate_parameters is not None:
            self._validate_parameters(kind, parameters)
        item = WorkItem(
            id=new_work_item_id(kind),
            engagement_id=engagement_id,
            kind=kind,
            status="pending",
            parameters=dict(parameters),
            created_at=utcnow_iso(),
            progress=0 if kind in PROGRESS_KINDS else None,
            created_by=created_by,
        )
        repo.insert(item=item.to_dict())
        logger.info("work_item_created kind=%s item_id=%s engagement_id=%s", kind, item.id, engagement_id)
        return item

    def get(self, item_id: str, *, engagement_id: str | None = None) -> WorkItem:
        row = self._repo_for_id(item_id).get(item_id=item_id, engagement_id=engagement_id)
        if row is None:
            raise NotFoundError(f"work item not found: {item_id}", code="WORK_ITEM_NOT_FOUND")
        return WorkItem.from_row(row)

    def list_by_engagement(
        self,
        engagement_id: str,
        *,
        kind: str,
        status: str | None = None,
        limit: int | None = 50,
    ) -> list[WorkItem]:
        rows = self._repo_for_kind(kind).list_by_engagement(
            engagement_id=engagement_id,
            statuses=[status] if status else None,
            limit=limit,
        )
        return [WorkItem.from_row(row) for row in rows]

    def snapshot(self, engagement_id: str, *, kind: str) -> list[WorkItem]:
        """Every item of a kind, trimmed to the fields stats reads."""
        rows = self._repo_for_kind(kind).list_stat_rows(engagement_id=engagement_id)
        return [WorkItem.from_row(row) for row in rows]

    def find_active(self, engagement_id: str, *, kind: str) -> WorkItem | None:
        rows = self._repo_for_kind(kind).list_by_engagement(
            engagement_id=engagement_id,
            statuses=list(ACTIVE_STATUSES),
            limit=1,
        )
        return WorkItem.from_row(rows[0]) if rows else None

    def _transition(self, item_id: str, *, expected: str, target: str, changes: dict[str, Any]) -> WorkItem:
        repo = self._repo_for_id(item_id)
        row = repo.compare_and_set(item_id=item_id, expected_status=expected, changes=changes)
        if row is not None:
            return WorkItem.from_row(row)
        current = repo.get(item_id=item_id)
        if current is None:
            raise NotFoundError(f"work item not found: {item_id}", code="WORK_ITEM_NOT_FOUND")
        raise ConflictError(
            f"cannot transition {item_id} from {current.get('status')} to {target}",
        )

    def transition_to_running(self, item_id: str) -> WorkItem:
        return self._transition(
            item_id,
            expected="pending",
            target="running",
            changes={"status": "running", "started_at": utcnow_iso()},
        )

    def transition_to_completed(self, item_id: str, result: dict[str, Any]) -> WorkItem:
        if not isinstance(result, dict):
            raise ValidationFailed("result must be an object")
        changes: dict[str, Any] = {
            "status": "completed",
            "result": dict(result),
            "completed_at": utcnow_iso(),
        }
        if kind_from_id(item_id) in PROGRESS_KINDS:
            changes["progress"] = 100
        return self._transition(item_id, expected="running", target="completed", changes=changes)

    def transition_to_failed(self, item_id: str, error_message: str) -> WorkItem:
        message = str(error_message or "").strip() or "unknown failure"
        return self._transition(
            item_id,
            expected="running",
            target="failed",
            changes={"status": "failed", "error_message": message, "completed_at": utcnow_iso()},
        )

    def update_progress(self, item_id: str, progress: int) -> WorkItem:
        value = max(0, min(100, int(progress)))
        repo = self._repo_for_id(item_id)
        row = repo.advance_progress(item_id=item_id, progress=value)
        if row is not None:
            return WorkItem.from_row(row)
        current = self.get(item_id)
        if current.status != "running":
            raise ConflictError(f"cannot update progress of {item_id} in status {current.status}")
        return current

    def delete(self, item_id: str, *, engagement_id: str) -> bool:
        outcome = self._repo_for_id(item_id).delete_unless_running(
            item_id=item_id,
            engagement_id=engagement_id,
        )
        if outcome == "missing":
            raise NotFoundError(f"work item not found: {item_id}", code="WORK_ITEM_NOT_FOUND")
        if outcome == "running":
            raise ConflictError(f"cannot delete {item_id} while running", code="WORK_ITEM_RUNNING")
        logger.info("work_item_deleted item_id=%s engagement_id=%s", item_id, engagement_id)
        return True
