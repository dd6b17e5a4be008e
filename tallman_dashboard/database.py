"""SQLite row store for the metrics dashboard.

One ``chart_data`` record per dashboard data point, plus a ``run_history``
table summarising each orchestrator run.
"""

import sqlite3
from pathlib import Path

DB_PATH = Path("data/dashboard.db")

# (column, API key) pairs; the API speaks camelCase.
ROW_COLUMNS = [
    ("id", "id"),
    ("chart_group", "chartGroup"),
    ("chart_name", "chartName"),
    ("variable_name", "variableName"),
    ("server_name", "serverName"),
    ("db_table_name", "tableName"),
    ("sql_expression", "sqlExpression"),
    ("value", "value"),
    ("last_updated", "lastUpdated"),
    ("error", "error"),
    ("error_type", "errorType"),
]


def get_db(db_path: Path | str | None = None) -> sqlite3.Connection:
    """Get a database connection with row factory."""
    conn = sqlite3.connect(str(db_path or DB_PATH))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def init_db(db_path: Path | str | None = None) -> None:
    """Create tables if they don't exist."""
    path = Path(db_path or DB_PATH)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = get_db(path)
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS chart_data (
            id TEXT PRIMARY KEY,
            chart_group TEXT NOT NULL DEFAULT '',
            chart_name TEXT NOT NULL DEFAULT '',
            variable_name TEXT NOT NULL DEFAULT '',
            server_name TEXT NOT NULL,
            db_table_name TEXT,
            sql_expression TEXT NOT NULL DEFAULT '',
            value TEXT,
            last_updated TEXT,
            error TEXT,
            error_type TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_chart_data_group
            ON chart_data(chart_group);

        -- One summary row per orchestrator run.
        CREATE TABLE IF NOT EXISTS run_history (
            run_id TEXT PRIMARY KEY,
            mode TEXT NOT NULL,
            started_at TEXT NOT NULL,
            finished_at TEXT,
            outcome TEXT,
            rows_total INTEGER DEFAULT 0,
            rows_succeeded INTEGER DEFAULT 0,
            rows_failed INTEGER DEFAULT 0,
            error TEXT
        );
    """)
    conn.commit()
    conn.close()


def _to_row(record: sqlite3.Row) -> dict:
    return {key: record[column] for column, key in ROW_COLUMNS}


def _to_params(row: dict) -> tuple:
    params = []
    for _, key in ROW_COLUMNS:
        value = row.get(key)
        if key == "id" and value is not None:
            value = str(value)
        params.append(value)
    return tuple(params)


# Numeric ids sort numerically; anything else falls after them by text.
_ORDER_BY = (
    "ORDER BY CASE WHEN id GLOB '[0-9]*' AND id NOT GLOB '*[^0-9]*' "
    "THEN 0 ELSE 1 END, CAST(id AS INTEGER), id"
)


def get_all_rows(db_path: Path | str | None = None) -> list[dict]:
    """Return every row in display order."""
    conn = get_db(db_path)
    records = conn.execute(f"SELECT * FROM chart_data {_ORDER_BY}").fetchall()
    conn.close()
    return [_to_row(r) for r in records]


def get_row(row_id: str, db_path: Path | str | None = None) -> dict | None:
    conn = get_db(db_path)
    record = conn.execute(
        "SELECT * FROM chart_data WHERE id = ?", (str(row_id),)
    ).fetchone()
    conn.close()
    return _to_row(record) if record else None


def count_rows(db_path: Path | str | None = None) -> int:
    conn = get_db(db_path)
    count = conn.execute("SELECT COUNT(*) FROM chart_data").fetchone()[0]
    conn.close()
    return count


def upsert_rows(rows: list[dict], db_path: Path | str | None = None) -> int:
    """Insert or fully replace the given rows by id.

    Every column is written from the supplied dict, so callers send complete
    rows (the admin spreadsheet always does). Returns the number written.
    """
    columns = [c for c, _ in ROW_COLUMNS]
    placeholders = ", ".join("?" for _ in columns)
    updates = ",\n                    ".join(
        f"{c} = excluded.{c}" for c in columns if c != "id"
    )
    conn = get_db(db_path)
    try:
        conn.executemany(
            f"""INSERT INTO chart_data ({", ".join(columns)})
               VALUES ({placeholders})
               ON CONFLICT(id) DO UPDATE SET
                    {updates}
            """,
            [_to_params(r) for r in rows],
        )
        conn.commit()
    finally:
        conn.close()
    return len(rows)


_RESULT_UPDATES = """
                    value        = excluded.value,
                    last_updated = excluded.last_updated,
                    error        = excluded.error,
                    error_type   = excluded.error_type"""

# A failed execution never touches the cached value.
_ERROR_UPDATES = """
                    last_updated = excluded.last_updated,
                    error        = excluded.error,
                    error_type   = excluded.error_type"""


def save_row_result(row: dict, db_path: Path | str | None = None) -> str | None:
    """Persist the outcome of one execution and return the stored value.

    Only the result columns are overwritten for an existing row, so edits to
    the row definition made while a run is in progress survive. When the row
    carries an error its stored value is left as it was. Rows that are not
    in the store yet are inserted whole.
    """
    updates = _ERROR_UPDATES if row.get("error") else _RESULT_UPDATES
    columns = [c for c, _ in ROW_COLUMNS]
    conn = get_db(db_path)
    try:
        conn.execute(
            f"""INSERT INTO chart_data ({", ".join(columns)})
               VALUES ({", ".join("?" for _ in columns)})
               ON CONFLICT(id) DO UPDATE SET{updates}
            """,
            _to_params(row),
        )
        stored = conn.execute(
            "SELECT value FROM chart_data WHERE id = ?", (str(row["id"]),)
        ).fetchone()
        conn.commit()
    finally:
        conn.close()
    return stored["value"]


def delete_all_rows(db_path: Path | str | None = None) -> None:
    conn = get_db(db_path)
    conn.execute("DELETE FROM chart_data")
    conn.commit()
    conn.close()


# ── Run history ─────────────────────────────────────────────────────

def record_run(run: dict, db_path: Path | str | None = None) -> None:
    """Insert or update a run_history entry."""
    conn = get_db(db_path)
    try:
        conn.execute(
            """INSERT INTO run_history
                   (run_id, mode, started_at, finished_at, outcome,
                    rows_total, rows_succeeded, rows_failed, error)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(run_id) DO UPDATE SET
                    finished_at    = excluded.finished_at,
                    outcome        = excluded.outcome,
                    rows_total     = excluded.rows_total,
                    rows_succeeded = excluded.rows_succeeded,
                    rows_failed    = excluded.rows_failed,
                    error          = excluded.error
            """,
            (
                run["run_id"], run["mode"], run["started_at"],
                run.get("finished_at"), run.get("outcome"),
                run.get("rows_total", 0), run.get("rows_succeeded", 0),
                run.get("rows_failed", 0), run.get("error"),
            ),
        )
        conn.commit()
    finally:
        conn.close()


def get_recent_runs(limit: int = 20, db_path: Path | str | None = None) -> list[dict]:
    """Return the most recent runs, newest first."""
    conn = get_db(db_path)
    rows = conn.execute(
        "SELECT * FROM run_history ORDER BY started_at DESC LIMIT ?", (limit,)
    ).fetchall()
    conn.close()
    return [dict(r) for r in rows]
