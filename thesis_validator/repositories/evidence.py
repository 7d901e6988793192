from __future__ import annotations

import re
import threading
from collections.abc import Sequence
from typing import Any

from thesis_validator.db.postgres import PostgresTxRunner
from thesis_validator.models import iso_or_none

_HYPOTHESIS_COLUMNS = ("id", "engagement_id", "statement", "confidence", "created_at")
_EVIDENCE_COLUMNS = (
    "id",
    "engagement_id",
    "content",
    "content_hash",
    "source_type",
    "source_title",
    "credibility",
    "sentiment",
    "document_id",
    "created_at",
)


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryEvidenceRepository:
    """Hypotheses, evidence and the evidence-hypothesis links of every engagement."""

    def __init__(self) -> None:
        self._hypotheses: dict[str, dict[str, Any]] = {}
        self._evidence: dict[str, dict[str, Any]] = {}
        self._links: set[tuple[str, str]] = set()
        self._lock = threading.RLock()

    def create_hypothesis(self, *, hypothesis: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self._hypotheses[str(hypothesis["id"])] = dict(hypothesis)
            return dict(hypothesis)

    def list_hypotheses(self, *, engagement_id: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = [dict(h) for h in self._hypotheses.values() if h["engagement_id"] == engagement_id]
        rows.sort(key=lambda r: (str(r.get("created_at") or ""), str(r["id"])))
        return rows

    def add_evidence(
        self,
        *,
        evidence: dict[str, Any],
        hypothesis_ids: Sequence[str] = (),
    ) -> dict[str, Any] | None:
        with self._lock:
            for row in self._evidence.values():
                if (
                    row["engagement_id"] == evidence["engagement_id"]
                    and row["content_hash"] == evidence["content_hash"]
                ):
                    return None
            self._evidence[str(evidence["id"])] = dict(evidence)
            known = {
                h_id
                for h_id, h in self._hypotheses.items()
                if h["engagement_id"] == evidence["engagement_id"]
            }
            for hypothesis_id in hypothesis_ids:
                if hypothesis_id in known:
                    self._links.add((str(evidence["id"]), hypothesis_id))
            return dict(evidence)

    def list_evidence(self, *, engagement_id: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = [dict(e) for e in self._evidence.values() if e["engagement_id"] == engagement_id]
        rows.sort(key=lambda r: (str(r.get("created_at") or ""), str(r["id"])))
        return rows

    def list_links(self, *, engagement_id: str) -> list[tuple[str, str]]:
        with self._lock:
            return sorted(
                (evidence_id, hypothesis_id)
                for evidence_id, hypothesis_id in self._links
                if self._evidence.get(evidence_id, {}).get("engagement_id") == engagement_id
            )


class PostgresEvidenceRepository:
    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        hypotheses_table: str = "hypotheses",
        evidence_table: str = "evidence",
        links_table: str = "evidence_hypotheses",
    ) -> None:
        self._tx_runner = tx_runner
        self._hypotheses_table = _validate_identifier(hypotheses_table)
        self._evidence_table = _validate_identifier(evidence_table)
        self._links_table = _validate_identifier(links_table)

    def create_hypothesis(self, *, hypothesis: dict[str, Any]) -> dict[str, Any]:
        sql = f"""
            INSERT INTO {self._hypotheses_table} ({', '.join(_HYPOTHESIS_COLUMNS)})
            VALUES (%s, %s, %s, %s, %s)
        """
        engagement_id = str(hypothesis["engagement_id"])

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(hypothesis.get(c) for c in _HYPOTHESIS_COLUMNS))
            return dict(hypothesis)

        return self._tx_runner.run_in_tx(engagement_id=engagement_id, fn=_op)

    def list_hypotheses(self, *, engagement_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT {', '.join(_HYPOTHESIS_COLUMNS)}
            FROM {self._hypotheses_table}
            WHERE engagement_id = %s
            ORDER BY created_at ASC, id ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (engagement_id,))
                rows = cur.fetchall()
            out = []
            for row in rows:
                item = dict(zip(_HYPOTHESIS_COLUMNS, row))
                item["confidence"] = float(item["confidence"]) if item["confidence"] is not None else None
                item["created_at"] = iso_or_none(item["created_at"])
                out.append(item)
            return out

        return self._tx_runner.run_in_tx(engagement_id=engagement_id, fn=_op)

    def add_evidence(
        self,
        *,
        evidence: dict[str, Any],
        hypothesis_ids: Sequence[str] = (),
    ) -> dict[str, Any] | None:
        insert_sql = f"""
            INSERT INTO {self._evidence_table} ({', '.join(_EVIDENCE_COLUMNS)})
            VALUES ({', '.join(['%s'] * len(_EVIDENCE_COLUMNS))})
            ON CONFLICT (engagement_id, content_hash) DO NOTHING
            RETURNING id
        """
        link_sql = f"""
            INSERT INTO {self._links_table} (evidence_id, hypothesis_id)
            SELECT %s, id FROM {self._hypotheses_table}
            WHERE id = ANY(%s) AND engagement_id = %s
            ON CONFLICT DO NOTHING
        """
        engagement_id = str(evidence["engagement_id"])

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(insert_sql, tuple(evidence.get(c) for c in _EVIDENCE_COLUMNS))
                if cur.fetchone() is None:
                    return None
                if hypothesis_ids:
                    cur.execute(link_sql, (evidence["id"], list(hypothesis_ids), engagement_id))
            return dict(evidence)

        return self._tx_runner.run_in_tx(engagement_id=engagement_id, fn=_op)

    def list_evidence(self, *, engagement_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT {', '.join(_EVIDENCE_COLUMNS)}
            FROM {self._evidence_table}
            WHERE engagement_id = %s
            ORDER BY created_at ASC, id ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (engagement_id,))
                rows = cur.fetchall()
            out = []
            for row in rows:
                item = dict(zip(_EVIDENCE_COLUMNS, row))
                item["credibility"] = float(item["credibility"]) if item["credibility"] is not None else None
                item["created_at"] = iso_or_none(item["created_at"])
                out.append(item)
            return out

        return self._tx_runner.run_in_tx(engagement_id=engagement_id, fn=_op)

    def list_links(self, *, engagement_id: str) -> list[tuple[str, str]]:
        sql = f"""
            SELECT l.evidence_id, l.hypothesis_id
            FROM {self._links_table} l
            JOIN {self._evidence_table} e ON e.id = l.evidence_id
            WHERE e.engagement_id = %s
            ORDER BY l.evidence_id, l.hypothesis_id
        """

        def _op(conn: Any) -> list[tuple[str, str]]:
            with conn.cursor() as cur:
                cur.execute(sql, (engagement_id,))
                rows = cur.fetchall()
            return [(str(row[0]), str(row[1])) for row in rows]

        return self._tx_runner.run_in_tx(engagement_id=engagement_id, fn=_op)
