from __future__ import annotations

import json
import re
import threading
from collections.abc import Sequence
from typing import Any

from thesis_validator.db.postgres import PostgresTxRunner

_COLUMNS = (
    "id",
    "engagement_id",
    "kind",
    "status",
    "parameters",
    "result",
    "error_message",
    "progress",
    "created_by",
    "created_at",
    "started_at",
    "completed_at",
)
_JSON_COLUMNS = frozenset({"parameters", "result"})
_MUTABLE_COLUMNS = frozenset({"status", "result", "error_message", "progress", "started_at", "completed_at"})
# Stats only group and average on these; large upload payloads never leave the table.
STATS_PARAMETER_KEYS = ("intensity", "format", "depth")
STATS_RESULT_KEYS = ("format", "overall_risk_score")
_STATS_COLUMNS = ("id", "engagement_id", "kind", "status", "parameters", "result", "created_at", "started_at", "completed_at")


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _check_changes(changes: dict[str, Any]) -> None:
    unknown = set(changes) - _MUTABLE_COLUMNS
    if unknown:
        raise ValueError(f"immutable work item columns: {sorted(unknown)}")


def _pick(source: Any, keys: Sequence[str]) -> dict[str, Any] | None:
    if not isinstance(source, dict):
        return None
    return {key: source[key] for key in keys if source.get(key) is not None}


def _stat_row(row: dict[str, Any]) -> dict[str, Any]:
    out = {column: row.get(column) for column in _STATS_COLUMNS}
    out["parameters"] = _pick(row.get("parameters"), STATS_PARAMETER_KEYS) or {}
    out["result"] = _pick(row.get("result"), STATS_RESULT_KEYS)
    return out


class InMemoryWorkItemsRepository:
    """Dict-backed work item table; compare-and-set runs under one lock."""

    def __init__(self, items: dict[str, dict[str, Any]] | None = None) -> None:
        self._items = {} if items is None else items
        self._lock = threading.RLock()

    def insert(self, *, item: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            item_id = str(item["id"])
            if item_id in self._items:
                raise ValueError(f"duplicate work item id: {item_id}")
            self._items[item_id] = dict(item)
            return dict(item)

    def get(self, *, item_id: str, engagement_id: str | None = None) -> dict[str, Any] | None:
        with self._lock:
            row = self._items.get(item_id)
            if row is None:
                return None
            if engagement_id is not None and row.get("engagement_id") != engagement_id:
                return None
            return dict(row)

    def list_by_engagement(
        self,
        *,
        engagement_id: str,
        statuses: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            rows = [
                dict(row)
                for row in self._items.values()
                if row.get("engagement_id") == engagement_id
                and (not statuses or row.get("status") in statuses)
            ]
        rows.sort(key=lambda r: (str(r.get("created_at") or ""), str(r["id"])), reverse=True)
        if limit is not None:
            rows = rows[: max(0, int(limit))]
        return rows

    def list_stat_rows(self, *, engagement_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [_stat_row(row) for row in self._items.values() if row.get("engagement_id") == engagement_id]

    def compare_and_set(
        self,
        *,
        item_id: str,
        expected_status: str,
        changes: dict[str, Any],
    ) -> dict[str, Any] | None:
        _check_changes(changes)
        with self._lock:
            row = self._items.get(item_id)
            if row is None or row.get("status") != expected_status:
                return None
            row.update(changes)
            return dict(row)

    def advance_progress(self, *, item_id: str, progress: int) -> dict[str, Any] | None:
        with self._lock:
            row = self._items.get(item_id)
            if row is None or row.get("status") != "running":
                return None
            current = row.get("progress")
            if current is not None and int(current) >= progress:
                return None
            row["progress"] = progress
            return dict(row)

    def delete_unless_running(self, *, item_id: str, engagement_id: str) -> str:
        with self._lock:
            row = self._items.get(item_id)
            if row is None or row.get("engagement_id") != engagement_id:
                return "missing"
            if row.get("status") == "running":
                return "running"
            del self._items[item_id]
            return "deleted"


class PostgresWorkItemsRepository:
    """Work item table on postgres; every transition is a single guarded UPDATE."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str) -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    @staticmethod
    def _decode_json(out: dict[str, Any]) -> dict[str, Any]:
        for column in _JSON_COLUMNS:
            value = out.get(column)
            if isinstance(value, str):
                out[column] = json.loads(value)
        return out

    @classmethod
    def _row_to_dict(cls, row: Sequence[Any]) -> dict[str, Any]:
        out = cls._decode_json(dict(zip(_COLUMNS, row)))
        if out.get("parameters") is None:
            out["parameters"] = {}
        return out

    @staticmethod
    def _encode(column: str, value: Any) -> Any:
        if column in _JSON_COLUMNS and value is not None:
            return json.dumps(value, ensure_ascii=True, sort_keys=True)
        return value

    def insert(self, *, item: dict[str, Any]) -> dict[str, Any]:
        placeholders = ", ".join("%s::jsonb" if c in _JSON_COLUMNS else "%s" for c in _COLUMNS)
        sql = f"INSERT INTO {self._table_name} ({', '.join(_COLUMNS)}) VALUES ({placeholders})"
        params = tuple(self._encode(c, item.get(c)) for c in _COLUMNS)

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
            return dict(item)

        return self._tx_runner.run_in_tx(engagement_id=str(item["engagement_id"]), fn=_op)

    def get(self, *, item_id: str, engagement_id: str | None = None) -> dict[str, Any] | None:
        sql = f"SELECT {', '.join(_COLUMNS)} FROM {self._table_name} WHERE id = %s"
        params: tuple[Any, ...] = (item_id,)
        if engagement_id is not None:
            sql += " AND engagement_id = %s"
            params = (item_id, engagement_id)
        sql += " LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            return self._row_to_dict(row) if row is not None else None

        return self._tx_runner.run_in_tx(engagement_id=engagement_id, fn=_op)

    def list_by_engagement(
        self,
        *,
        engagement_id: str,
        statuses: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        sql = f"SELECT {', '.join(_COLUMNS)} FROM {self._table_name} WHERE engagement_id = %s"
        params: list[Any] = [engagement_id]
        if statuses:
            sql += " AND status = ANY(%s)"
            params.append(list(statuses))
        sql += " ORDER BY created_at DESC, id DESC"
        if limit is not None:
            sql += " LIMIT %s"
            params.append(max(0, int(limit)))

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall()
            return [self._row_to_dict(row) for row in rows]

        return self._tx_runner.run_in_tx(engagement_id=engagement_id, fn=_op)

    def list_stat_rows(self, *, engagement_id: str) -> list[dict[str, Any]]:
        params_json = ", ".join(f"'{key}', parameters -> '{key}'" for key in STATS_PARAMETER_KEYS)
        result_json = ", ".join(f"'{key}', result -> '{key}'" for key in STATS_RESULT_KEYS)
        sql = f"""
            SELECT id, engagement_id, kind, status,
                   jsonb_strip_nulls(jsonb_build_object({params_json})),
                   CASE WHEN result IS NULL THEN NULL ELSE jsonb_strip_nulls(jsonb_build_object({result_json})) END,
                   created_at, started_at, completed_at
            FROM {self._table_name}
            WHERE engagement_id = %s
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (engagement_id,))
                rows = cur.fetchall()
            return [_stat_row(self._decode_json(dict(zip(_STATS_COLUMNS, row)))) for row in rows]

        return self._tx_runner.run_in_tx(engagement_id=engagement_id, fn=_op)

    def compare_and_set(
        self,
        *,
        item_id: str,
        expected_status: str,
        changes: dict[str, Any],
    ) -> dict[str, Any] | None:
        _check_changes(changes)
        columns = sorted(changes)
        assignments = ", ".join(
            f"{c} = %s::jsonb" if c in _JSON_COLUMNS else f"{c} = %s" for c in columns
        )
        sql = f"""
            UPDATE {self._table_name}
            SET {assignments}
            WHERE id = %s AND status = %s
            RETURNING {', '.join(_COLUMNS)}
        """
        params = tuple(self._encode(c, changes[c]) for c in columns) + (item_id, expected_status)

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            return self._row_to_dict(row) if row is not None else None

        return self._tx_runner.run_in_tx(engagement_id=None, fn=_op)

    def advance_progress(self, *, item_id: str, progress: int) -> dict[str, Any] | None:
        sql = f"""
            UPDATE {self._table_name}
            SET progress = %s
            WHERE id = %s AND status = 'running' AND (progress IS NULL OR progress < %s)
            RETURNING {', '.join(_COLUMNS)}
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (progress, item_id, progress))
                row = cur.fetchone()
            return self._row_to_dict(row) if row is not None else None

        return self._tx_runner.run_in_tx(engagement_id=None, fn=_op)

    def delete_unless_running(self, *, item_id: str, engagement_id: str) -> str:
        delete_sql = f"""
            DELETE FROM {self._table_name}
            WHERE id = %s AND engagement_id = %s AND status <> 'running'
            RETURNING id
        """
        status_sql = f"SELECT status FROM {self._table_name} WHERE id = %s AND engagement_id = %s"

        def _op(conn: Any) -> str:
            with conn.cursor() as cur:
                cur.execute(delete_sql, (item_id, engagement_id))
                if cur.fetchone() is not None:
                    return "deleted"
                cur.execute(status_sql, (item_id, engagement_id))
                row = cur.fetchone()
            return "missing" if row is None else "running"

        return self._tx_runner.run_in_tx(engagement_id=engagement_id, fn=_op)
