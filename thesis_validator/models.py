from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

WorkKind = Literal["document", "stress_test", "expert_call_batch", "research_run", "metrics_run"]
WorkStatus = Literal["pending", "running", "completed", "failed"]

WORK_KINDS: tuple[str, ...] = (
    "document",
    "stress_test",
    "expert_call_batch",
    "research_run",
    "metrics_run",
)
WORK_STATUSES: tuple[str, ...] = ("pending", "running", "completed", "failed")
TERMINAL_STATUSES = frozenset({"completed", "failed"})

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running"}),
    "running": frozenset({"completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}

ID_PREFIXES: dict[str, str] = {
    "document": "doc",
    "stress_test": "st",
    "expert_call_batch": "ecb",
    "research_run": "rr",
    "metrics_run": "mr",
}

# Kinds that expose a continuous 0-100 progress counter on the record itself.
PROGRESS_KINDS = frozenset({"research_run"})


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def iso_or_none(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC).isoformat(timespec="microseconds")
    return str(value)


def new_work_item_id(kind: str) -> str:
    return f"{ID_PREFIXES[kind]}_{uuid.uuid4().hex[:12]}"


def kind_from_id(item_id: str) -> str | None:
    prefix, sep, _ = item_id.partition("_")
    if not sep:
        return None
    for kind, candidate in ID_PREFIXES.items():
        if candidate == prefix:
            return kind
    return None


def is_transition_allowed(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass
class WorkItem:
    id: str
    engagement_id: str
    kind: str
    status: str
    parameters: dict[str, Any]
    created_at: str
    result: dict[str, Any] | None = None
    error_message: str | None = None
    progress: int | None = None
    started_at: str | None = None
    completed_at: str | None = None
    created_by: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def duration_ms(self) -> int | None:
        started = parse_iso(self.started_at)
        completed = parse_iso(self.completed_at)
        if started is None or completed is None:
            return None
        return max(0, int((completed - started).total_seconds() * 1000))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "engagement_id": self.engagement_id,
            "kind": self.kind,
            "status": self.status,
            "parameters": dict(self.parameters),
            "result": dict(self.result) if self.result is not None else None,
            "error_message": self.error_message,
            "progress": self.progress,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "created_by": self.created_by,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "WorkItem":
        progress = row.get("progress")
        return cls(
            id=str(row["id"]),
            engagement_id=str(row["engagement_id"]),
            kind=str(row["kind"]),
            status=str(row["status"]),
            parameters=dict(row.get("parameters") or {}),
            created_at=str(iso_or_none(row.get("created_at")) or ""),
            result=dict(row["result"]) if isinstance(row.get("result"), dict) else None,
            error_message=row.get("error_message"),
            progress=int(progress) if progress is not None else None,
            started_at=iso_or_none(row.get("started_at")),
            completed_at=iso_or_none(row.get("completed_at")),
            created_by=row.get("created_by"),
        )


@dataclass
class ProgressEvent:
    job_id: str
    engagement_id: str
    seq: int
    timestamp: str
    message: str
    stage: str | None = None
    progress: int | None = None
    status: str | None = None
    terminal: bool = False
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "engagement_id": self.engagement_id,
            "seq": self.seq,
            "timestamp": self.timestamp,
            "message": self.message,
            "stage": self.stage,
            "progress": self.progress,
            "status": self.status,
            "terminal": self.terminal,
            "data": dict(self.data),
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ProgressEvent":
        progress = row.get("progress")
        return cls(
            job_id=str(row["job_id"]),
            engagement_id=str(row.get("engagement_id") or ""),
            seq=int(row["seq"]),
            timestamp=str(iso_or_none(row.get("timestamp")) or ""),
            message=str(row.get("message") or ""),
            stage=row.get("stage"),
            progress=int(progress) if progress is not None else None,
            status=row.get("status"),
            terminal=bool(row.get("terminal", False)),
            data=dict(row.get("data") or {}),
        )
