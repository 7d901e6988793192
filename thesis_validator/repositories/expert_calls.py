from __future__ import annotations

import json
import re
import threading
from typing import Any

from thesis_validator.db.postgres import PostgresTxRunner
from thesis_validator.models import iso_or_none

_COLUMNS = (
    "id",
    "engagement_id",
    "batch_id",
    "transcript_hash",
    "interviewee_name",
    "interviewee_title",
    "call_date",
    "insights",
    "action_items",
    "created_at",
)
_JSON_COLUMNS = frozenset({"insights", "action_items"})


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryExpertCallsRepository:
    def __init__(self) -> None:
        self._rows: dict[str, dict[str, Any]] = {}
        self._lock = threading.RLock()

    def create_if_new(self, *, call: dict[str, Any]) -> dict[str, Any] | None:
        with self._lock:
            for row in self._rows.values():
                if (
                    row["engagement_id"] == call["engagement_id"]
                    and row["transcript_hash"] == call["transcript_hash"]
                ):
                    return None
            self._rows[str(call["id"])] = dict(call)
            return dict(call)

    def list(self, *, engagement_id: str, batch_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            rows = [
                dict(row)
                for row in self._rows.values()
                if row["engagement_id"] == engagement_id and (batch_id is None or row["batch_id"] == batch_id)
            ]
        rows.sort(key=lambda r: (str(r.get("created_at") or ""), str(r["id"])))
        return rows


class PostgresExpertCallsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "expert_calls") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def create_if_new(self, *, call: dict[str, Any]) -> dict[str, Any] | None:
        placeholders = ", ".join("%s::jsonb" if c in _JSON_COLUMNS else "%s" for c in _COLUMNS)
        sql = f"""
            INSERT INTO {self._table_name} ({', '.join(_COLUMNS)})
            VALUES ({placeholders})
            ON CONFLICT (engagement_id, transcript_hash) DO NOTHING
            RETURNING id
        """
        params = tuple(
            json.dumps(call.get(c) or [], ensure_ascii=True) if c in _JSON_COLUMNS else call.get(c)
            for c in _COLUMNS
        )
        engagement_id = str(call["engagement_id"])

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            return dict(call) if row is not None else None

        return self._tx_runner.run_in_tx(engagement_id=engagement_id, fn=_op)

    def list(self, *, engagement_id: str, batch_id: str | None = None) -> list[dict[str, Any]]:
        sql = f"SELECT {', '.join(_COLUMNS)} FROM {self._table_name} WHERE engagement_id = %s"
        params: list[Any] = [engagement_id]
        if batch_id is not None:
            sql += " AND batch_id = %s"
            params.append(batch_id)
        sql += " ORDER BY created_at ASC, id ASC"

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall()
            out = []
            for row in rows:
                item = dict(zip(_COLUMNS, row))
                for column in _JSON_COLUMNS:
                    if isinstance(item.get(column), str):
                        item[column] = json.loads(item[column])
                item["created_at"] = iso_or_none(item["created_at"])
                out.append(item)
            return out

        return self._tx_runner.run_in_tx(engagement_id=engagement_id, fn=_op)
