from __future__ import annotations

import json

import pytest

from thesis_validator.db.schema import WORK_ITEM_TABLES, PostgresSchemaManager
from thesis_validator.repositories import (
    PostgresContradictionsRepository,
    PostgresProgressEventsRepository,
    PostgresWorkItemsRepository,
)


class FakeCursor:
    def __init__(self, conn: "FakeConnection"):
        self._conn = conn
        self.rowcount = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, query: str, params=None):
        self._conn.statements.append((" ".join(query.split()), params))
        self.rowcount = self._conn.rowcount

    def fetchone(self):
        return self._conn.rows.pop(0) if self._conn.rows else None

    def fetchall(self):
        rows, self._conn.rows = list(self._conn.rows), []
        return rows


class FakeConnection:
    def __init__(self, rows: list | None = None, rowcount: int = 0):
        self.rows = list(rows or [])
        self.rowcount = rowcount
        self.statements: list[tuple[str, tuple | None]] = []

    def cursor(self):
        return FakeCursor(self)


class FakeRunner:
    def __init__(self, conn: FakeConnection):
        self.conn = conn
        self.engagements: list[str | None] = []

    def run_in_tx(self, *, engagement_id, fn):
        self.engagements.append(engagement_id)
        return fn(self.conn)


def _work_item_row(status: str = "running") -> tuple:
    return (
        "st_abc",
        "eng_a",
        "stress_test",
        status,
        json.dumps({"intensity": "light"}),
        None,
        None,
        None,
        "user_a",
        "2026-03-01T10:00:00+00:00",
        "2026-03-01T10:00:01+00:00",
        None,
    )


@pytest.mark.parametrize(
    "factory",
    [
        lambda runner: PostgresWorkItemsRepository(tx_runner=runner, table_name="stress_tests;drop table x"),
        lambda runner: PostgresProgressEventsRepository(tx_runner=runner, table_name="events--"),
        lambda runner: PostgresContradictionsRepository(tx_runner=runner, table_name="1contradictions"),
    ],
)
def test_repositories_reject_invalid_table_names(factory):
    with pytest.raises(ValueError, match="invalid SQL identifier"):
        factory(FakeRunner(FakeConnection()))


def test_work_item_compare_and_set_is_one_guarded_update():
    conn = FakeConnection(rows=[_work_item_row("running")])
    runner = FakeRunner(conn)
    repo = PostgresWorkItemsRepository(tx_runner=runner, table_name="stress_tests")

    row = repo.compare_and_set(
        item_id="st_abc",
        expected_status="pending",
        changes={"status": "running", "started_at": "2026-03-01T10:00:01+00:00"},
    )

    assert row["status"] == "running"
    assert row["parameters"] == {"intensity": "light"}
    sql, params = conn.statements[0]
    assert sql.startswith("UPDATE stress_tests SET started_at = %s, status = %s")
    assert "WHERE id = %s AND status = %s" in sql
    assert params[-2:] == ("st_abc", "pending")


def test_work_item_compare_and_set_lost_race_returns_none():
    repo = PostgresWorkItemsRepository(tx_runner=FakeRunner(FakeConnection()), table_name="stress_tests")
    assert repo.compare_and_set(item_id="st_abc", expected_status="pending", changes={"status": "running"}) is None


def test_work_item_changes_cannot_touch_identity_columns():
    repo = PostgresWorkItemsRepository(tx_runner=FakeRunner(FakeConnection()), table_name="stress_tests")
    with pytest.raises(ValueError, match="immutable"):
        repo.compare_and_set(item_id="st_abc", expected_status="pending", changes={"engagement_id": "eng_b"})


def test_work_item_result_is_encoded_as_jsonb():
    conn = FakeConnection(rows=[_work_item_row("completed")])
    repo = PostgresWorkItemsRepository(tx_runner=FakeRunner(conn), table_name="stress_tests")
    repo.compare_and_set(item_id="st_abc", expected_status="running", changes={"status": "completed", "result": {"b": 1, "a": 2}})

    sql, params = conn.statements[0]
    assert "result = %s::jsonb" in sql
    assert params[0] == '{"a": 2, "b": 1}'


def test_work_item_insert_scopes_transaction_to_engagement():
    conn = FakeConnection()
    runner = FakeRunner(conn)
    repo = PostgresWorkItemsRepository(tx_runner=runner, table_name=WORK_ITEM_TABLES["stress_test"])
    repo.insert(
        item={
            "id": "st_abc",
            "engagement_id": "eng_a",
            "kind": "stress_test",
            "status": "pending",
            "parameters": {"intensity": "light"},
            "created_at": "2026-03-01T10:00:00+00:00",
        }
    )
    assert runner.engagements == ["eng_a"]
    sql, params = conn.statements[0]
    assert sql.startswith("INSERT INTO stress_tests")
    assert params[0] == "st_abc"
    assert params[4] == '{"intensity": "light"}'


def test_work_item_list_filters_and_limits():
    conn = FakeConnection(rows=[_work_item_row("pending"), _work_item_row("running")])
    repo = PostgresWorkItemsRepository(tx_runner=FakeRunner(conn), table_name="stress_tests")
    rows = repo.list_by_engagement(engagement_id="eng_a", statuses=["pending", "running"], limit=10)

    assert [r["status"] for r in rows] == ["pending", "running"]
    sql, params = conn.statements[0]
    assert "status = ANY(%s)" in sql
    assert sql.endswith("ORDER BY created_at DESC, id DESC LIMIT %s")
    assert params == ("eng_a", ["pending", "running"], 10)


def test_delete_unless_running_outcomes():
    deleted = FakeConnection(rows=[("st_abc",)])
    repo = PostgresWorkItemsRepository(tx_runner=FakeRunner(deleted), table_name="stress_tests")
    assert repo.delete_unless_running(item_id="st_abc", engagement_id="eng_a") == "deleted"
    assert "status <> 'running'" in deleted.statements[0][0]

    # The guarded delete matched nothing; the status lookup finds the row still running.
    running = FakeConnection(rows=[None, ("running",)])
    repo = PostgresWorkItemsRepository(tx_runner=FakeRunner(running), table_name="stress_tests")
    assert repo.delete_unless_running(item_id="st_abc", engagement_id="eng_a") == "running"

    missing = FakeConnection()
    repo = PostgresWorkItemsRepository(tx_runner=FakeRunner(missing), table_name="stress_tests")
    assert repo.delete_unless_running(item_id="st_abc", engagement_id="eng_a") == "missing"
    assert len(missing.statements) == 2


def test_progress_event_seq_is_assigned_in_the_insert():
    conn = FakeConnection(rows=[(4,)])
    repo = PostgresProgressEventsRepository(tx_runner=FakeRunner(conn))
    stored = repo.append(event={"job_id": "st_abc", "engagement_id": "eng_a", "message": "halfway", "data": {"n": 1}})

    assert stored["seq"] == 4
    sql, params = conn.statements[0]
    assert "COALESCE(MAX(seq), 0) + 1" in sql
    assert params[0] == "st_abc"
    assert params[-1] == "st_abc"
    assert params[-2] == '{"n": 1}'


def test_progress_event_list_after_and_purge():
    conn = FakeConnection(
        rows=[("st_abc", 2, "eng_a", "2026-03-01T10:00:00+00:00", "two", "run", None, "running", False, '{"k": 1}')],
        rowcount=3,
    )
    repo = PostgresProgressEventsRepository(tx_runner=FakeRunner(conn))
    events = repo.list_after(job_id="st_abc", after_seq=1, limit=5)
    assert events[0]["seq"] == 2
    assert events[0]["data"] == {"k": 1}
    assert conn.statements[0][1] == ("st_abc", 1, 5)

    assert repo.purge(job_id="st_abc") == 3


def test_contradiction_compare_and_set_guards_on_open_statuses():
    conn = FakeConnection()
    repo = PostgresContradictionsRepository(tx_runner=FakeRunner(conn))
    result = repo.compare_and_set(
        engagement_id="eng_a",
        contradiction_id="ctr_1",
        expected_statuses=("unresolved", "critical"),
        changes={"status": "explained"},
    )
    assert result is None
    sql, params = conn.statements[0]
    assert "status = ANY(%s)" in sql
    assert params == ("explained", "eng_a", "ctr_1", ["unresolved", "critical"])


def test_schema_manager_statements_cover_every_work_item_table():
    manager = PostgresSchemaManager("postgresql://localhost/thesis")
    ddl = "\n".join(manager.statements())
    for table in WORK_ITEM_TABLES.values():
        assert f"CREATE TABLE IF NOT EXISTS {table}" in ddl
    assert "CREATE TABLE IF NOT EXISTS progress_events" in ddl


def test_schema_manager_rejects_bad_input():
    with pytest.raises(ValueError):
        PostgresSchemaManager("  ")
    with pytest.raises(ValueError, match="invalid SQL identifier"):
        PostgresSchemaManager("postgresql://localhost/thesis", work_item_tables={"stress_test": "bad name"})


def test_stat_rows_select_grouping_fields_instead_of_whole_documents():
    conn = FakeConnection(
        rows=[
            (
                "doc_1",
                "eng_a",
                "document",
                "completed",
                '{"format": "html"}',
                '{"format": "html"}',
                "2026-03-01T10:00:00+00:00",
                "2026-03-01T10:00:01+00:00",
                "2026-03-01T10:00:03+00:00",
            )
        ]
    )
    repo = PostgresWorkItemsRepository(tx_runner=FakeRunner(conn), table_name=WORK_ITEM_TABLES["document"])

    rows = repo.list_stat_rows(engagement_id="eng_a")

    assert rows[0]["parameters"] == {"format": "html"}
    assert rows[0]["result"] == {"format": "html"}
    sql, params = conn.statements[0]
    assert "parameters -> 'format'" in sql
    assert "result -> 'overall_risk_score'" in sql
    assert "status, parameters," not in sql
    assert params == ("eng_a",)
