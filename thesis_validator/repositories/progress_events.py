from __future__ import annotations

import json
import re
import threading
from collections.abc import Sequence
from typing import Any

from thesis_validator.db.postgres import PostgresTxRunner

_COLUMNS = ("job_id", "seq", "engagement_id", "timestamp", "message", "stage", "progress", "status", "terminal", "data")


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryProgressEventsRepository:
    """Append-only per-job event tail; seq is assigned here."""

    def __init__(self) -> None:
        self._events: dict[str, list[dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def append(self, *, event: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            tail = self._events.setdefault(str(event["job_id"]), [])
            stored = dict(event)
            stored["seq"] = len(tail) + 1
            tail.append(stored)
            return dict(stored)

    def list_after(self, *, job_id: str, after_seq: int = 0, limit: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            rows = [dict(row) for row in self._events.get(job_id, []) if int(row["seq"]) > after_seq]
        if limit is not None:
            rows = rows[: max(0, int(limit))]
        return rows

    def purge(self, *, job_id: str) -> int:
        with self._lock:
            removed = self._events.pop(job_id, [])
            return len(removed)


class PostgresProgressEventsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "progress_events") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    @staticmethod
    def _row_to_dict(row: Sequence[Any]) -> dict[str, Any]:
        out = dict(zip(_COLUMNS, row))
        if isinstance(out.get("data"), str):
            out["data"] = json.loads(out["data"])
        return out

    def append(self, *, event: dict[str, Any]) -> dict[str, Any]:
        sql = f"""
            INSERT INTO {self._table_name} (
                job_id, seq, engagement_id, timestamp, message, stage, progress, status, terminal, data
            )
            SELECT %s, COALESCE(MAX(seq), 0) + 1, %s, %s, %s, %s, %s, %s, %s, %s::jsonb
            FROM {self._table_name}
            WHERE job_id = %s
            RETURNING seq
        """
        params = (
            event["job_id"],
            event.get("engagement_id", ""),
            event.get("timestamp"),
            event.get("message", ""),
            event.get("stage"),
            event.get("progress"),
            event.get("status"),
            bool(event.get("terminal", False)),
            json.dumps(event.get("data") or {}, ensure_ascii=True, sort_keys=True),
            event["job_id"],
        )

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            stored = dict(event)
            stored["seq"] = int(row[0])
            return stored

        return self._tx_runner.run_in_tx(engagement_id=event.get("engagement_id") or None, fn=_op)

    def list_after(self, *, job_id: str, after_seq: int = 0, limit: int | None = None) -> list[dict[str, Any]]:
        sql = f"""
            SELECT {', '.join(_COLUMNS)}
            FROM {self._table_name}
            WHERE job_id = %s AND seq > %s
            ORDER BY seq ASC
        """
        params: tuple[Any, ...] = (job_id, after_seq)
        if limit is not None:
            sql += " LIMIT %s"
            params = (job_id, after_seq, max(0, int(limit)))

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            return [self._row_to_dict(row) for row in rows]

        return self._tx_runner.run_in_tx(engagement_id=None, fn=_op)

    def purge(self, *, job_id: str) -> int:
        sql = f"DELETE FROM {self._table_name} WHERE job_id = %s"

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, (job_id,))
                return int(cur.rowcount or 0)

        return self._tx_runner.run_in_tx(engagement_id=None, fn=_op)
