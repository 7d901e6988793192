from __future__ import annotations

import re
import threading
from collections.abc import Sequence
from typing import Any

from thesis_validator.db.postgres import PostgresTxRunner
from thesis_validator.models import iso_or_none

_COLUMNS = (
    "id",
    "engagement_id",
    "hypothesis_id",
    "evidence_id",
    "description",
    "severity",
    "status",
    "bear_case_theme",
    "resolution_notes",
    "resolved_by",
    "found_at",
    "resolved_at",
)
_MUTABLE_COLUMNS = frozenset({"status", "resolution_notes", "resolved_by", "resolved_at"})


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryContradictionsRepository:
    def __init__(self) -> None:
        self._rows: dict[str, dict[str, Any]] = {}
        self._lock = threading.RLock()

    def create(self, *, contradiction: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self._rows[str(contradiction["id"])] = dict(contradiction)
            return dict(contradiction)

    def get(self, *, engagement_id: str, contradiction_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._rows.get(contradiction_id)
            if row is None or row.get("engagement_id") != engagement_id:
                return None
            return dict(row)

    def list(
        self,
        *,
        engagement_id: str,
        status: str | None = None,
        severity: str | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            rows = [
                dict(row)
                for row in self._rows.values()
                if row.get("engagement_id") == engagement_id
                and (status is None or row.get("status") == status)
                and (severity is None or row.get("severity") == severity)
            ]
        rows.sort(key=lambda r: (str(r.get("found_at") or ""), str(r["id"])), reverse=True)
        return rows

    def compare_and_set(
        self,
        *,
        engagement_id: str,
        contradiction_id: str,
        expected_statuses: Sequence[str],
        changes: dict[str, Any],
    ) -> dict[str, Any] | None:
        if set(changes) - _MUTABLE_COLUMNS:
            raise ValueError("immutable contradiction columns")
        with self._lock:
            row = self._rows.get(contradiction_id)
            if row is None or row.get("engagement_id") != engagement_id:
                return None
            if row.get("status") not in expected_statuses:
                return None
            row.update(changes)
            return dict(row)


class PostgresContradictionsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "contradictions") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    @staticmethod
    def _row_to_dict(row: Sequence[Any]) -> dict[str, Any]:
        out = dict(zip(_COLUMNS, row))
        out["found_at"] = iso_or_none(out.get("found_at"))
        out["resolved_at"] = iso_or_none(out.get("resolved_at"))
        return out

    def create(self, *, contradiction: dict[str, Any]) -> dict[str, Any]:
        sql = f"""
            INSERT INTO {self._table_name} ({', '.join(_COLUMNS)})
            VALUES ({', '.join(['%s'] * len(_COLUMNS))})
        """
        engagement_id = str(contradiction["engagement_id"])

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(contradiction.get(c) for c in _COLUMNS))
            return dict(contradiction)

        return self._tx_runner.run_in_tx(engagement_id=engagement_id, fn=_op)

    def get(self, *, engagement_id: str, contradiction_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {', '.join(_COLUMNS)}
            FROM {self._table_name}
            WHERE engagement_id = %s AND id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (engagement_id, contradiction_id))
                row = cur.fetchone()
            return self._row_to_dict(row) if row is not None else None

        return self._tx_runner.run_in_tx(engagement_id=engagement_id, fn=_op)

    def list(
        self,
        *,
        engagement_id: str,
        status: str | None = None,
        severity: str | None = None,
    ) -> list[dict[str, Any]]:
        sql = f"SELECT {', '.join(_COLUMNS)} FROM {self._table_name} WHERE engagement_id = %s"
        params: list[Any] = [engagement_id]
        if status is not None:
            sql += " AND status = %s"
            params.append(status)
        if severity is not None:
            sql += " AND severity = %s"
            params.append(severity)
        sql += " ORDER BY found_at DESC, id DESC"

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall()
            return [self._row_to_dict(row) for row in rows]

        return self._tx_runner.run_in_tx(engagement_id=engagement_id, fn=_op)

    def compare_and_set(
        self,
        *,
        engagement_id: str,
        contradiction_id: str,
        expected_statuses: Sequence[str],
        changes: dict[str, Any],
    ) -> dict[str, Any] | None:
        if set(changes) - _MUTABLE_COLUMNS:
            raise ValueError("immutable contradiction columns")
        columns = sorted(changes)
        sql = f"""
            UPDATE {self._table_name}
            SET {', '.join(f'{c} = %s' for c in columns)}
            WHERE engagement_id = %s AND id = %s AND status = ANY(%s)
            RETURNING {', '.join(_COLUMNS)}
        """
        params = tuple(changes[c] for c in columns) + (
            engagement_id,
            contradiction_id,
            list(expected_statuses),
        )

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            return self._row_to_dict(row) if row is not None else None

        return self._tx_runner.run_in_tx(engagement_id=engagement_id, fn=_op)
