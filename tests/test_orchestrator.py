from __future__ import annotations

import asyncio
import sqlite3
import time

import pytest

from conftest import make_row
from tallman_dashboard import database
from tallman_dashboard.backends import SimulatedExecutor
from tallman_dashboard.orchestrator import RowStoreError, RunOrchestrator
from tallman_dashboard.run_session import RunAlreadyActiveError
from tallman_dashboard.schemas import RunStatus


class StoppingExecutor:
    """Requests a stop while the first row is in flight."""

    def __init__(self, orchestrator_ref: list):
        self.orchestrator_ref = orchestrator_ref
        self.calls: list[str] = []
        self.status_during_stop = None

    def execute(self, server_name, sql_expression):
        self.calls.append(sql_expression)
        if len(self.calls) == 1:
            orchestrator = self.orchestrator_ref[0]
            orchestrator.stop()
            self.status_during_stop = orchestrator.session.status
        return str(len(self.calls))


class SlowExecutor:
    def __init__(self, delay: float, slow_sql: str | None = None):
        self.delay = delay
        self.slow_sql = slow_sql

    def execute(self, server_name, sql_expression):
        if self.slow_sql is None or sql_expression == self.slow_sql:
            time.sleep(self.delay)
        return "5"


def test_empty_run_never_sets_active_row(orchestrator, session, monkeypatch):
    seen = []
    original = session.mark_active
    monkeypatch.setattr(session, "mark_active", lambda row_id: (seen.append(row_id), original(row_id)))

    result = asyncio.run(orchestrator.run([]))

    assert result["status"] == "completed"
    assert result["results"] == []
    assert seen == []
    assert session.status is RunStatus.IDLE
    assert session.active_row_id is None


def test_valid_row_gets_value(orchestrator, session, db_path):
    row = make_row(6, "P21", "SELECT COUNT(*) as value FROM oe_hdr", error="stale", errorType="unknown")

    result = asyncio.run(orchestrator.run([row]))

    updated = result["results"][0]
    assert updated["value"] == "42"
    assert updated["error"] is None
    assert updated["errorType"] is None
    assert updated["lastUpdated"]
    stored = database.get_row("6", db_path)
    assert stored["value"] == "42"
    assert stored["error"] is None
    assert session.status is RunStatus.IDLE
    assert session.active_row_id is None


def test_missing_table_keeps_previous_value(orchestrator, db_path):
    database.upsert_rows(
        [make_row(30, "POR", "SELECT Count(*) as value FROM NonexistentTable", value="17")],
        db_path,
    )

    result = asyncio.run(orchestrator.run())

    updated = result["results"][0]
    assert updated["errorType"] == "execution"
    assert updated["error"]
    assert updated["value"] == "17"
    stored = database.get_row("30", db_path)
    assert stored["value"] == "17"
    assert stored["errorType"] == "execution"
    assert stored["lastUpdated"] == updated["lastUpdated"]
    assert result["failed"] == 1


def test_row_failures_do_not_stop_the_run(orchestrator):
    rows = [
        make_row(1, "POR", "SELECT Count(*) FROM Missing"),
        make_row(2, "MYSQL", "SELECT 1"),
        make_row(3, "P21", ""),
        make_row(4, "P21", "SELECT COUNT(*) FROM oe_hdr"),
    ]

    result = asyncio.run(orchestrator.run(rows))

    types = [r["errorType"] for r in result["results"]]
    assert types == ["execution", "unknown", "syntax", None]
    assert result["results"][3]["value"] == "42"
    assert (result["succeeded"], result["failed"]) == (1, 3)


def test_rows_processed_in_given_order(orchestrator, p21):
    rows = [
        make_row(10, sql="SELECT COUNT(*) FROM customer"),
        make_row(2, sql="SELECT COUNT(*) FROM oe_hdr"),
        make_row(7, sql="SELECT total FROM invoice_hdr"),
    ]

    result = asyncio.run(orchestrator.run(rows))

    assert [r["id"] for r in result["results"]] == ["10", "2", "7"]
    assert [sql.split("FROM ")[1] for sql in p21.executed] == [
        "dbo.customer", "dbo.oe_hdr", "dbo.invoice_hdr",
    ]


def test_stop_halts_after_in_flight_row(session, db_path):
    ref: list = []
    executor = StoppingExecutor(ref)
    orchestrator = RunOrchestrator(session, executor, db_path)
    ref.append(orchestrator)
    rows = [make_row(i) for i in range(1, 4)]

    result = asyncio.run(orchestrator.run(rows))

    assert len(executor.calls) == 1
    assert executor.status_during_stop is RunStatus.STOPPED
    assert result["status"] == "stopped"
    assert [r["id"] for r in result["results"]] == ["1"]
    assert session.status is RunStatus.IDLE
    assert session.active_row_id is None
    assert database.get_recent_runs(db_path=db_path)[0]["outcome"] == "stopped"


def test_stop_when_idle_is_a_no_op(orchestrator, session):
    assert orchestrator.stop() is False
    assert session.status is RunStatus.IDLE


def test_second_start_is_rejected(session, db_path):
    orchestrator = RunOrchestrator(session, SlowExecutor(0.05), db_path)
    rows = [make_row(1), make_row(2)]

    async def both():
        return await asyncio.gather(
            orchestrator.run(rows), orchestrator.run(rows), return_exceptions=True
        )

    first, second = asyncio.run(both())

    assert first["status"] == "completed"
    assert isinstance(second, RunAlreadyActiveError)
    assert session.status is RunStatus.IDLE


def test_start_while_running_fails_fast(orchestrator, session):
    session.begin()
    with pytest.raises(RunAlreadyActiveError):
        asyncio.run(orchestrator.run([make_row(1)]))
    assert session.status is RunStatus.RUNNING


def test_timeout_is_connection_error(session, db_path):
    slow_sql = "SELECT COUNT(*) FROM slow_view"
    orchestrator = RunOrchestrator(
        session, SlowExecutor(0.5, slow_sql=slow_sql), db_path, query_timeout=0.05
    )
    rows = [make_row(1, sql=slow_sql, value="9"), make_row(2, "POR")]

    result = asyncio.run(orchestrator.run(rows))

    timed_out, after = result["results"]
    assert timed_out["errorType"] == "connection"
    assert "timed out" in timed_out["error"]
    assert timed_out["value"] == "9"
    assert after["value"] == "5"
    assert after["error"] is None


def test_rerun_is_idempotent(orchestrator, db_path):
    rows = [
        make_row(1, sql="SELECT COUNT(*) FROM oe_hdr"),
        make_row(2, "POR", "SELECT Count(*) FROM [PurchaseOrder]"),
    ]
    database.upsert_rows(rows, db_path)

    first = asyncio.run(orchestrator.run())
    second = asyncio.run(orchestrator.run())

    assert [r["value"] for r in first["results"]] == ["42", "7"]
    assert [r["value"] for r in second["results"]] == ["42", "7"]
    assert [r["value"] for r in database.get_all_rows(db_path)] == ["42", "7"]


def test_run_from_store_leaves_definitions_alone(orchestrator, db_path):
    database.upsert_rows([make_row(1, chartName="Orders")], db_path)

    asyncio.run(orchestrator.run([make_row(1, chartName="Changed in flight")]))

    stored = database.get_row("1", db_path)
    assert stored["chartName"] == "Orders"
    assert stored["value"] == "42"


def test_store_failure_aborts_run(orchestrator, session, db_path, monkeypatch):
    def broken(row, db_path=None):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(database, "save_row_result", broken)

    with pytest.raises(RowStoreError):
        asyncio.run(orchestrator.run([make_row(1), make_row(2)]))

    assert session.status is RunStatus.IDLE
    assert "database is locked" in session.last_error
    history = database.get_recent_runs(db_path=db_path)
    assert history[0]["outcome"] == "failed"
    assert history[0]["rows_total"] == 2


def test_test_mode_never_touches_backends(orchestrator, p21, por):
    rows = [
        make_row(1, sql="SELECT COUNT(*) FROM oe_hdr"),
        make_row(2, "POR", "SELECT Count(*) FROM [PurchaseOrder]"),
    ]

    result = asyncio.run(orchestrator.run(rows, is_production=False))

    assert p21.connections == [] and por.connections == []
    sim = SimulatedExecutor()
    assert [r["value"] for r in result["results"]] == [
        sim.execute("P21", rows[0]["sqlExpression"]),
        sim.execute("POR", rows[1]["sqlExpression"]),
    ]
    assert database.get_recent_runs(db_path=orchestrator.db_path)[0]["mode"] == "test"


def test_poll_sees_updated_rows_once(orchestrator, session):
    asyncio.run(orchestrator.run([make_row(1), make_row(2)]))

    snapshot = session.snapshot()
    assert snapshot["status"] == "idle"
    assert snapshot["activeRowId"] is None
    assert [r["id"] for r in snapshot["updatedData"]] == ["1", "2"]
    assert session.snapshot()["updatedData"] == []


def test_history_records_totals(orchestrator, db_path):
    asyncio.run(orchestrator.run([make_row(1), make_row(2, "POR", "SELECT Count(*) FROM Gone")]))

    run = database.get_recent_runs(db_path=db_path)[0]
    assert run["outcome"] == "completed"
    assert run["mode"] == "production"
    assert (run["rows_total"], run["rows_succeeded"], run["rows_failed"]) == (2, 1, 1)
    assert run["finished_at"] >= run["started_at"]


def test_failed_row_without_value_keeps_cached_value(orchestrator, db_path):
    database.upsert_rows(
        [make_row(30, "POR", "SELECT Count(*) as value FROM NonexistentTable", value="17")],
        db_path,
    )
    # The caller sends the definition only; value defaults to None.
    row = make_row(30, "POR", "SELECT Count(*) as value FROM NonexistentTable")

    result = asyncio.run(orchestrator.run([row]))

    assert result["results"][0]["errorType"] == "execution"
    assert result["results"][0]["value"] == "17"
    assert database.get_row("30", db_path)["value"] == "17"


def test_values_are_formatted_for_their_chart(session, db_path):
    class FixedExecutor:
        def execute(self, server_name, sql_expression):
            return sql_expression

    orchestrator = RunOrchestrator(session, FixedExecutor(), db_path)
    rows = [
        make_row(8, sql="1234.56", chartGroup="AR Aging", variableName="1-30"),
        make_row(4, sql="98765", chartGroup="Key Metrics", variableName="Daily Revenue"),
        make_row(50, sql="0.125", chartGroup="Margins", variableName="Gross Margin"),
        make_row(1, sql="2", chartGroup="Accounts", variableName="Payable"),
        make_row(2, sql="12.6", chartGroup="Key Metrics", variableName="Total Orders"),
    ]

    result = asyncio.run(orchestrator.run(rows))

    assert [r["value"] for r in result["results"]] == [
        "$1,235", "$98,765", "12.5%", "2", "13",
    ]
    assert database.get_row("8", db_path)["value"] == "$1,235"


def test_same_backend_waits_for_timed_out_query(session, db_path):
    slow_sql = "SELECT COUNT(*) FROM slow_view"
    orchestrator = RunOrchestrator(
        session, SlowExecutor(0.15, slow_sql=slow_sql), db_path, query_timeout=0.12
    )

    result = asyncio.run(orchestrator.run([make_row(1, sql=slow_sql), make_row(2)]))

    timed_out, after = result["results"]
    assert timed_out["errorType"] == "connection"
    assert after["error"] is None
    assert after["value"] == "5"


def test_same_backend_still_busy_fails_fast(session, db_path):
    slow_sql = "SELECT COUNT(*) FROM slow_view"
    calls = []

    class RecordingSlowExecutor(SlowExecutor):
        def execute(self, server_name, sql_expression):
            calls.append(sql_expression)
            return super().execute(server_name, sql_expression)

    orchestrator = RunOrchestrator(
        session, RecordingSlowExecutor(0.5, slow_sql=slow_sql), db_path, query_timeout=0.05
    )

    result = asyncio.run(orchestrator.run([make_row(1, sql=slow_sql), make_row(2)]))

    blocked = result["results"][1]
    assert blocked["errorType"] == "connection"
    assert "still running" in blocked["error"]
    assert calls == [slow_sql]


def test_unchanged_rows_are_not_reported_again(orchestrator, session, db_path):
    database.upsert_rows([make_row(1), make_row(2, "POR", "SELECT Count(*) FROM Gone")], db_path)

    asyncio.run(orchestrator.run())
    assert len(session.snapshot()["updatedData"]) == 2

    asyncio.run(orchestrator.run())
    assert session.snapshot()["updatedData"] == []
