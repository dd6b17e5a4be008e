from __future__ import annotations

import re
import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from tallman_dashboard.backends import BackendExecutor
from tallman_dashboard.config import DEFAULT_SEED_FILE, Settings
from tallman_dashboard.database import init_db
from tallman_dashboard.main import create_app
from tallman_dashboard.orchestrator import RunOrchestrator
from tallman_dashboard.run_session import RunSession
from tallman_dashboard.schemas import ServerName


class FakeDriverError(Exception):
    """Shaped like pyodbc.Error: args are (sqlstate, message)."""


_FROM_RE = re.compile(r"\bfrom\s+(?:dbo\.)?\[?(\w+)\]?", re.IGNORECASE)


class FakeBackend:
    """In-memory stand-in for one ODBC data source.

    ``tables`` maps a table name to its rows (tuples). ``COUNT(`` queries
    return the row count; anything else returns the first row.
    """

    def __init__(self, tables=None, delay: float = 0.0, missing_message: str | None = None):
        self.tables = tables or {}
        self.delay = delay
        self.missing_message = missing_message or "Invalid object name '{name}'."
        self.executed: list[str] = []
        self.connections: list[FakeConnection] = []

    def connect(self):
        conn = FakeConnection(self)
        self.connections.append(conn)
        return conn

    def respond(self, sql: str):
        self.executed.append(sql)
        if self.delay:
            time.sleep(self.delay)
        if sql.strip().upper().startswith("SELECT 1"):
            return (1,)
        match = _FROM_RE.search(sql)
        if not match:
            raise FakeDriverError("42000", "Incorrect syntax near the keyword 'SELECT'.")
        name = match.group(1)
        if name not in self.tables:
            raise FakeDriverError("42S02", self.missing_message.format(name=name))
        rows = self.tables[name]
        if "count(" in sql.lower():
            return (len(rows),)
        return rows[0] if rows else None


class FakeConnection:
    def __init__(self, backend: FakeBackend):
        self.backend = backend
        self.closed = False

    def cursor(self):
        return FakeCursor(self.backend)

    def close(self):
        self.closed = True


class FakeCursor:
    def __init__(self, backend: FakeBackend):
        self.backend = backend
        self._row = None

    def execute(self, sql):
        self._row = self.backend.respond(sql)
        return self

    def fetchone(self):
        return self._row


def make_row(row_id, server="P21", sql="SELECT COUNT(*) AS value FROM oe_hdr", **extra) -> dict:
    row = {
        "id": str(row_id),
        "chartGroup": "Key Metrics",
        "chartName": "Key Metrics",
        "variableName": f"Metric {row_id}",
        "serverName": server,
        "tableName": None,
        "sqlExpression": sql,
        "value": None,
        "lastUpdated": None,
        "error": None,
        "errorType": None,
    }
    row.update(extra)
    return row


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    path = tmp_path / "data" / "dashboard.db"
    init_db(path)
    return path


@pytest.fixture()
def settings(db_path: Path) -> Settings:
    return Settings(
        db_path=db_path,
        query_timeout=5.0,
        poll_interval=0.1,
        seed_file=DEFAULT_SEED_FILE,
    )


@pytest.fixture()
def p21() -> FakeBackend:
    return FakeBackend({
        "oe_hdr": [(i,) for i in range(42)],
        "invoice_hdr": [(1234.5,)],
        "customer": [],
    })


@pytest.fixture()
def por() -> FakeBackend:
    return FakeBackend(
        {"PurchaseOrder": [(i,) for i in range(7)]},
        missing_message=(
            "[Microsoft][ODBC Microsoft Access Driver] The Microsoft Access "
            "database engine cannot find the input table or query '{name}'."
        ),
    )


@pytest.fixture()
def executor(settings: Settings, p21: FakeBackend, por: FakeBackend) -> BackendExecutor:
    return BackendExecutor(
        settings, connectors={ServerName.P21: p21.connect, ServerName.POR: por.connect}
    )


@pytest.fixture()
def session() -> RunSession:
    return RunSession(poll_interval=0.1)


@pytest.fixture()
def orchestrator(session: RunSession, executor: BackendExecutor, db_path: Path) -> RunOrchestrator:
    return RunOrchestrator(session, executor, db_path, query_timeout=5.0)


@pytest.fixture()
def client(settings: Settings, executor: BackendExecutor):
    app = create_app(settings, executor)
    with TestClient(app) as test_client:
        yield test_client
