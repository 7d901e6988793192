from __future__ import annotations

import re
from typing import Any

from thesis_validator.db.postgres import _import_psycopg

WORK_ITEM_TABLES: dict[str, str] = {
    "document": "documents",
    "stress_test": "stress_tests",
    "expert_call_batch": "expert_call_batches",
    "research_run": "research_runs",
    "metrics_run": "metrics_runs",
}


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _work_item_ddl(table: str) -> list[str]:
    return [
        f"""
        CREATE TABLE IF NOT EXISTS {table} (
            id TEXT PRIMARY KEY,
            engagement_id TEXT NOT NULL REFERENCES engagements(id) ON DELETE CASCADE,
            kind TEXT NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'running', 'completed', 'failed')),
            parameters JSONB NOT NULL DEFAULT '{{}}',
            result JSONB,
            error_message TEXT,
            progress INTEGER CHECK (progress IS NULL OR (progress >= 0 AND progress <= 100)),
            created_by TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            started_at TIMESTAMPTZ,
            completed_at TIMESTAMPTZ,
            CHECK ((status = 'completed') = (result IS NOT NULL)),
            CHECK ((status = 'failed') = (error_message IS NOT NULL))
        )
        """,
        f"CREATE INDEX IF NOT EXISTS idx_{table}_engagement ON {table}(engagement_id, created_at DESC)",
        f"CREATE INDEX IF NOT EXISTS idx_{table}_status ON {table}(status)",
    ]


_BASE_DDL: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS engagements (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        thesis TEXT,
        created_by TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS engagement_members (
        engagement_id TEXT NOT NULL REFERENCES engagements(id) ON DELETE CASCADE,
        subject TEXT NOT NULL,
        role VARCHAR(20) NOT NULL CHECK (role IN ('viewer', 'editor', 'owner')),
        PRIMARY KEY (engagement_id, subject)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS hypotheses (
        id TEXT PRIMARY KEY,
        engagement_id TEXT NOT NULL REFERENCES engagements(id) ON DELETE CASCADE,
        statement TEXT NOT NULL,
        confidence DOUBLE PRECISION CHECK (confidence >= 0 AND confidence <= 1),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS evidence (
        id TEXT PRIMARY KEY,
        engagement_id TEXT NOT NULL REFERENCES engagements(id) ON DELETE CASCADE,
        content TEXT NOT NULL,
        content_hash TEXT NOT NULL,
        source_type VARCHAR(20) NOT NULL
            CHECK (source_type IN ('web', 'document', 'expert', 'data', 'filing', 'financial')),
        source_title TEXT,
        credibility DOUBLE PRECISION CHECK (credibility >= 0 AND credibility <= 1),
        sentiment VARCHAR(20) NOT NULL DEFAULT 'neutral'
            CHECK (sentiment IN ('supporting', 'neutral', 'contradicting')),
        document_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (engagement_id, content_hash)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS evidence_hypotheses (
        evidence_id TEXT NOT NULL REFERENCES evidence(id) ON DELETE CASCADE,
        hypothesis_id TEXT NOT NULL REFERENCES hypotheses(id) ON DELETE CASCADE,
        PRIMARY KEY (evidence_id, hypothesis_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS contradictions (
        id TEXT PRIMARY KEY,
        engagement_id TEXT NOT NULL REFERENCES engagements(id) ON DELETE CASCADE,
        hypothesis_id TEXT,
        evidence_id TEXT,
        description TEXT NOT NULL,
        severity VARCHAR(10) NOT NULL CHECK (severity IN ('low', 'medium', 'high')),
        status VARCHAR(20) NOT NULL DEFAULT 'unresolved'
            CHECK (status IN ('unresolved', 'explained', 'dismissed', 'critical')),
        bear_case_theme TEXT,
        resolution_notes TEXT,
        resolved_by TEXT,
        found_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        resolved_at TIMESTAMPTZ,
        CHECK ((resolution_notes IS NULL) = (resolved_at IS NULL))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS expert_calls (
        id TEXT PRIMARY KEY,
        engagement_id TEXT NOT NULL REFERENCES engagements(id) ON DELETE CASCADE,
        batch_id TEXT NOT NULL,
        transcript_hash TEXT NOT NULL,
        interviewee_name TEXT,
        interviewee_title TEXT,
        call_date TEXT,
        insights JSONB NOT NULL DEFAULT '[]',
        action_items JSONB NOT NULL DEFAULT '[]',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (engagement_id, transcript_hash)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS research_metrics (
        id TEXT PRIMARY KEY,
        seq BIGSERIAL,
        engagement_id TEXT NOT NULL REFERENCES engagements(id) ON DELETE CASCADE,
        metric_type VARCHAR(50) NOT NULL,
        value DOUBLE PRECISION NOT NULL CHECK (value >= 0 AND value <= 1),
        metadata JSONB NOT NULL DEFAULT '{}',
        recorded_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_research_metrics_lookup ON research_metrics(engagement_id, metric_type, seq DESC)",
    """
    CREATE TABLE IF NOT EXISTS progress_events (
        job_id TEXT NOT NULL,
        seq INTEGER NOT NULL,
        engagement_id TEXT NOT NULL,
        timestamp TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        message TEXT NOT NULL,
        stage TEXT,
        progress INTEGER,
        status TEXT,
        terminal BOOLEAN NOT NULL DEFAULT FALSE,
        data JSONB NOT NULL DEFAULT '{}',
        PRIMARY KEY (job_id, seq)
    )
    """,
)


class PostgresSchemaManager:
    """Create the engagement, evidence, work item and event tables on PostgreSQL."""

    def __init__(self, dsn: str, *, work_item_tables: dict[str, str] | None = None) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        tables = dict(WORK_ITEM_TABLES if work_item_tables is None else work_item_tables)
        if not tables:
            raise ValueError("work_item_tables must not be empty")
        self._work_item_tables = {kind: _validate_identifier(name) for kind, name in tables.items()}

    def statements(self) -> list[str]:
        out = list(_BASE_DDL)
        for table in self._work_item_tables.values():
            out.extend(_work_item_ddl(table))
        return out

    def apply(self) -> list[str]:
        psycopg = _import_psycopg()
        statements = self.statements()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                for statement in statements:
                    cur.execute(statement)
            conn.commit()
        return ["engagements", *self._work_item_tables.values(), "progress_events"]


def apply_schema(dsn: str) -> list[str]:
    return PostgresSchemaManager(dsn).apply()
