from __future__ import annotations

import re
import threading
from typing import Any

from thesis_validator.db.postgres import PostgresTxRunner
from thesis_validator.models import iso_or_none


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryEngagementsRepository:
    def __init__(self) -> None:
        self._engagements: dict[str, dict[str, Any]] = {}
        self._members: dict[str, dict[str, str]] = {}
        self._lock = threading.RLock()

    def create(self, *, engagement: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            engagement_id = str(engagement["id"])
            self._engagements[engagement_id] = dict(engagement)
            self._members.setdefault(engagement_id, {})
            return dict(engagement)

    def get(self, *, engagement_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._engagements.get(engagement_id)
            return dict(row) if row is not None else None

    def set_member(self, *, engagement_id: str, subject: str, role: str) -> None:
        with self._lock:
            self._members.setdefault(engagement_id, {})[subject] = role

    def member_role(self, *, engagement_id: str, subject: str) -> str | None:
        with self._lock:
            return self._members.get(engagement_id, {}).get(subject)


class PostgresEngagementsRepository:
    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        table_name: str = "engagements",
        members_table: str = "engagement_members",
    ) -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)
        self._members_table = _validate_identifier(members_table)

    def create(self, *, engagement: dict[str, Any]) -> dict[str, Any]:
        sql = f"""
            INSERT INTO {self._table_name} (id, name, thesis, created_by, created_at)
            VALUES (%s, %s, %s, %s, %s)
        """
        engagement_id = str(engagement["id"])

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        engagement_id,
                        engagement.get("name", ""),
                        engagement.get("thesis"),
                        engagement.get("created_by"),
                        engagement.get("created_at"),
                    ),
                )
            return dict(engagement)

        return self._tx_runner.run_in_tx(engagement_id=engagement_id, fn=_op)

    def get(self, *, engagement_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT id, name, thesis, created_by, created_at
            FROM {self._table_name}
            WHERE id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (engagement_id,))
                row = cur.fetchone()
            if row is None:
                return None
            return {
                "id": row[0],
                "name": row[1],
                "thesis": row[2],
                "created_by": row[3],
                "created_at": iso_or_none(row[4]),
            }

        return self._tx_runner.run_in_tx(engagement_id=engagement_id, fn=_op)

    def set_member(self, *, engagement_id: str, subject: str, role: str) -> None:
        sql = f"""
            INSERT INTO {self._members_table} (engagement_id, subject, role)
            VALUES (%s, %s, %s)
            ON CONFLICT (engagement_id, subject) DO UPDATE SET role = EXCLUDED.role
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql, (engagement_id, subject, role))

        self._tx_runner.run_in_tx(engagement_id=engagement_id, fn=_op)

    def member_role(self, *, engagement_id: str, subject: str) -> str | None:
        sql = f"""
            SELECT role FROM {self._members_table}
            WHERE engagement_id = %s AND subject = %s
            LIMIT 1
        """

        def _op(conn: Any) -> str | None:
            with conn.cursor() as cur:
                cur.execute(sql, (engagement_id, subject))
                row = cur.fetchone()
            return str(row[0]) if row is not None else None

        return self._tx_runner.run_in_tx(engagement_id=engagement_id, fn=_op)
