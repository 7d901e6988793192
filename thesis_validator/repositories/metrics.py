from __future__ import annotations

import json
import re
import threading
from typing import Any

from thesis_validator.db.postgres import PostgresTxRunner
from thesis_validator.models import iso_or_none


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryMetricsRepository:
    """Append-only metric series; insertion order breaks ties between equal timestamps."""

    def __init__(self) -> None:
        self._rows: list[dict[str, Any]] = []
        self._lock = threading.RLock()

    def append(self, *, metric: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            stored = dict(metric)
            stored["seq"] = len(self._rows) + 1
            self._rows.append(stored)
            return dict(stored)

    def history(
        self,
        *,
        engagement_id: str,
        metric_type: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        with self._lock:
            rows = [
                dict(row)
                for row in self._rows
                if row["engagement_id"] == engagement_id
                and (metric_type is None or row["metric_type"] == metric_type)
            ]
        rows.sort(key=lambda r: int(r["seq"]), reverse=True)
        return rows[: max(0, int(limit))]

    def latest_by_type(self, *, engagement_id: str) -> dict[str, dict[str, Any]]:
        latest: dict[str, dict[str, Any]] = {}
        for row in self.history(engagement_id=engagement_id, limit=len(self._rows) or 1):
            latest.setdefault(str(row["metric_type"]), row)
        return latest


class PostgresMetricsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "research_metrics") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    @staticmethod
    def _row_to_dict(row: Any) -> dict[str, Any]:
        metadata = row[5]
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return {
            "id": row[0],
            "seq": int(row[1]),
            "engagement_id": row[2],
            "metric_type": row[3],
            "value": float(row[4]),
            "metadata": metadata if isinstance(metadata, dict) else {},
            "recorded_at": iso_or_none(row[6]),
        }

    def append(self, *, metric: dict[str, Any]) -> dict[str, Any]:
        sql = f"""
            INSERT INTO {self._table_name} (id, engagement_id, metric_type, value, metadata, recorded_at)
            VALUES (%s, %s, %s, %s, %s::jsonb, %s)
            RETURNING seq
        """
        engagement_id = str(metric["engagement_id"])

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        metric["id"],
                        engagement_id,
                        metric["metric_type"],
                        float(metric["value"]),
                        json.dumps(metric.get("metadata") or {}, ensure_ascii=True, sort_keys=True),
                        metric["recorded_at"],
                    ),
                )
                row = cur.fetchone()
            stored = dict(metric)
            stored["seq"] = int(row[0])
            return stored

        return self._tx_runner.run_in_tx(engagement_id=engagement_id, fn=_op)

    def history(
        self,
        *,
        engagement_id: str,
        metric_type: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        sql = f"""
            SELECT id, seq, engagement_id, metric_type, value, metadata, recorded_at
            FROM {self._table_name}
            WHERE engagement_id = %s
        """
        params: list[Any] = [engagement_id]
        if metric_type is not None:
            sql += " AND metric_type = %s"
            params.append(metric_type)
        sql += " ORDER BY seq DESC LIMIT %s"
        params.append(max(0, int(limit)))

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall()
            return [self._row_to_dict(row) for row in rows]

        return self._tx_runner.run_in_tx(engagement_id=engagement_id, fn=_op)

    def latest_by_type(self, *, engagement_id: str) -> dict[str, dict[str, Any]]:
        sql = f"""
            SELECT DISTINCT ON (metric_type) id, seq, engagement_id, metric_type, value, metadata, recorded_at
            FROM {self._table_name}
            WHERE engagement_id = %s
            ORDER BY metric_type, seq DESC
        """

        def _op(conn: Any) -> dict[str, dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (engagement_id,))
                rows = cur.fetchall()
            out: dict[str, dict[str, Any]] = {}
            for row in rows:
                item = self._row_to_dict(row)
                out[str(item["metric_type"])] = item
            return out

        return self._tx_runner.run_in_tx(engagement_id=engagement_id, fn=_op)
