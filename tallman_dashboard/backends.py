"""Backend query execution for the P21 ERP and the POR rental database.

Both backends are reached over ODBC:
    P21  → SQL Server through a configured DSN (Windows or SQL auth)
    POR  → the Point-of-Rental .MDB file through the Access ODBC driver

Every call opens a fresh connection, runs one read-only query, and returns
the first column of the first row as a display string. Failures are raised
as ``QueryError`` with a coarse classification for the admin spreadsheet.
"""

import logging
import math
import os
import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable

from tallman_dashboard.config import Settings
from tallman_dashboard.schemas import ErrorType, ServerName

logger = logging.getLogger(__name__)

EMPTY_RESULT = "0"


class ConfigurationError(ValueError):
    """Raised for a server tag no backend is configured for."""


class QueryError(Exception):
    """A backend query failed; carries the error classification."""

    def __init__(self, error_type: ErrorType, message: str):
        super().__init__(message)
        self.error_type = ErrorType(error_type)
        self.message = message


def normalize_server(server_name: str | None) -> ServerName:
    """Map a row's server tag onto a supported backend or fail fast."""
    tag = (server_name or "").strip().upper()
    try:
        return ServerName(tag)
    except ValueError:
        raise ConfigurationError(f"Unsupported server {server_name!r}") from None


# ── P21 schema qualification ────────────────────────────────────────

P21_TABLES = [
    "oe_hdr", "oe_line", "invoice_hdr", "invoice_line",
    "customer", "inv_mast", "ar_open_items", "ap_open_items",
]

_P21_TABLE_RE = re.compile(
    r"(?<![.\w\[])(" + "|".join(P21_TABLES) + r")\b", re.IGNORECASE
)


def qualify_p21_tables(sql: str) -> str:
    """Prefix bare references to the common P21 tables with ``dbo.``.

    Leaves the SQL alone once it mentions ``dbo.`` anywhere.
    """
    if "dbo." in sql.lower():
        return sql
    return _P21_TABLE_RE.sub(lambda m: f"dbo.{m.group(1)}", sql)


# ── Error classification ────────────────────────────────────────────

# SQLSTATE values (or prefixes) reported by the ODBC drivers.
_SQLSTATE_TYPES = [
    ("08", ErrorType.CONNECTION),      # connection exceptions
    ("28", ErrorType.CONNECTION),      # invalid authorization
    ("IM", ErrorType.CONNECTION),      # driver manager: DSN / driver missing
    ("HYT", ErrorType.CONNECTION),     # timeout expired
    ("42S", ErrorType.EXECUTION),      # base table / column not found
    ("42000", ErrorType.SYNTAX),       # syntax error or access violation
    ("37000", ErrorType.SYNTAX),       # ODBC 2.x syntax error
    ("22", ErrorType.EXECUTION),       # data exception
    ("23", ErrorType.EXECUTION),       # constraint violation
    ("07", ErrorType.EXECUTION),       # dynamic SQL error (e.g. missing parameter)
]

_SQLSTATE_RE = re.compile(r"^[0-9A-Z]{5}$")

_OBJECT_MISSING_HINTS = (
    "invalid object name", "invalid column name", "cannot find the input table",
    "could not find", "no such table", "does not exist", "not found",
)

# Best-effort fallback for errors that carry no SQLSTATE.
_MESSAGE_HINTS = [
    (ErrorType.CONNECTION, (
        "could not connect", "connection", "econnrefused", "login failed",
        "network", "timeout", "timed out", "data source name not found",
        "not found at configured path", "unable to open",
    )),
    (ErrorType.SYNTAX, (
        "syntax", "incorrect syntax", "missing operator", "reserved word",
    )),
    (ErrorType.EXECUTION, _OBJECT_MISSING_HINTS + (
        "too few parameters", "divide by zero",
    )),
]


def _sqlstate(exc: BaseException) -> str | None:
    args = getattr(exc, "args", ())
    if args and isinstance(args[0], str) and _SQLSTATE_RE.match(args[0]):
        return args[0]
    return None


def error_message(exc: BaseException) -> str:
    """Human-readable message; pyodbc puts (sqlstate, message) in args."""
    args = getattr(exc, "args", ())
    if len(args) >= 2 and _sqlstate(exc):
        return str(args[1])
    return str(exc) or exc.__class__.__name__


def classify_error(exc: BaseException) -> ErrorType:
    """Classify a backend failure, preferring the driver's SQLSTATE."""
    if isinstance(exc, QueryError):
        return exc.error_type
    if isinstance(exc, (TimeoutError, ConnectionError, FileNotFoundError)):
        return ErrorType.CONNECTION

    state = _sqlstate(exc)
    if state:
        for prefix, error_type in _SQLSTATE_TYPES:
            if state.startswith(prefix):
                # 42000 also covers "object not found" on some drivers.
                if error_type is ErrorType.SYNTAX and _matches(
                    error_message(exc), _OBJECT_MISSING_HINTS
                ):
                    return ErrorType.EXECUTION
                return error_type

    message = error_message(exc).lower()
    for error_type, hints in _MESSAGE_HINTS:
        if _matches(message, hints):
            return error_type
    return ErrorType.UNKNOWN


def _matches(message: str, hints: tuple) -> bool:
    lowered = message.lower()
    return any(h in lowered for h in hints)


# ── Result coercion ─────────────────────────────────────────────────

def to_display_value(value: Any) -> str:
    """Coerce a scalar result into the text stored on the row."""
    if value is None:
        return EMPTY_RESULT
    if isinstance(value, bool):
        return str(int(value))
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (float, Decimal)):
        if not math.isfinite(value):
            return EMPTY_RESULT
        if value == int(value):
            return str(int(value))
        return f"{value:.2f}"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value).strip()


_CURRENCY_GROUPS = ("account", "aging")
_CURRENCY_KEY_METRICS = ("sales", "revenue", "profit")
_PERCENT_WORDS = ("percent", "rate", "margin")
_COUNT_WORDS = ("count", "number", "orders", "customers")
# Small integers some queries return as status markers rather than amounts.
_DIAGNOSTIC_CODES = (1, 2, 3)


def format_for_chart(value: str, chart_group: str | None, variable_name: str | None) -> str:
    """Format a numeric display value the way its chart shows it.

    Account and aging groups, and sales/revenue/profit key metrics, become
    whole dollars ("$1,235"). Rate-like variables become percentages with
    fractions below 1 scaled up ("0.125" -> "12.5%"). Count-like variables
    are rounded. Non-numeric values and diagnostic codes pass through.
    """
    try:
        number = float(value)
    except (TypeError, ValueError):
        return value
    if not math.isfinite(number) or number in _DIAGNOSTIC_CODES:
        return value

    group = (chart_group or "").lower()
    variable = (variable_name or "").lower()

    if any(g in group for g in _CURRENCY_GROUPS) or (
        "key metric" in group and any(w in variable for w in _CURRENCY_KEY_METRICS)
    ):
        sign = "-" if number < 0 else ""
        return f"{sign}${_round_half_up(abs(number)):,}"
    if any(w in variable for w in _PERCENT_WORDS):
        percentage = number * 100 if number < 1 else number
        return f"{percentage:.1f}%"
    if any(w in variable for w in _COUNT_WORDS):
        return str(math.floor(number + 0.5))
    return value


def _round_half_up(number: float) -> int:
    return int(Decimal(str(number)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# ── Executor ────────────────────────────────────────────────────────

Connector = Callable[[], Any]


class BackendExecutor:
    """Dispatch SQL to the backend named by a row's server tag.

    ``connectors`` maps a ``ServerName`` to a zero-argument callable that
    returns an open DB-API connection; by default these are the ODBC
    connectors below.
    """

    def __init__(self, settings: Settings, connectors: dict[ServerName, Connector] | None = None):
        self.settings = settings
        self.connectors = connectors or {
            ServerName.P21: self._connect_p21,
            ServerName.POR: self._connect_por,
        }

    def _connect_p21(self):
        import pyodbc

        dsn = self.settings.p21_dsn
        if not dsn:
            raise EnvironmentError("P21_DSN environment variable is required for P21 queries.")
        conn_str = f"DSN={dsn};"
        if self.settings.p21_username and self.settings.p21_password:
            conn_str += f"UID={self.settings.p21_username};PWD={self.settings.p21_password};"
        else:
            conn_str += "Trusted_Connection=Yes;"
        conn = pyodbc.connect(
            conn_str, autocommit=True, timeout=int(self.settings.connect_timeout)
        )
        conn.timeout = int(self.settings.query_timeout)
        return conn

    def _connect_por(self):
        import pyodbc

        path = self.settings.por_file_path
        if not path:
            raise EnvironmentError("POR_FILE_PATH environment variable is required for POR queries.")
        if not os.path.exists(path):
            raise FileNotFoundError(f"POR database file not found at configured path: {path}")
        conn_str = (
            "Driver={Microsoft Access Driver (*.mdb, *.accdb)};"
            f"Dbq={path};ReadOnly=1;"
        )
        conn = pyodbc.connect(
            conn_str, autocommit=True, timeout=int(self.settings.connect_timeout)
        )
        conn.timeout = int(self.settings.query_timeout)
        return conn

    def connect(self, server: ServerName):
        connector = self.connectors.get(server)
        if connector is None:
            raise ConfigurationError(f"No connector configured for server {server.value}")
        try:
            return connector()
        except Exception as exc:
            logger.warning("Could not connect to %s: %s", server.value, exc)
            raise QueryError(ErrorType.CONNECTION, error_message(exc)) from exc

    def execute(self, server_name: str, sql_expression: str) -> str:
        """Run one query and return its first scalar as text.

        Raises ConfigurationError for an unknown server tag and QueryError
        for anything the backend rejects.
        """
        server = normalize_server(server_name)
        sql = (sql_expression or "").strip()
        if not sql:
            raise QueryError(ErrorType.SYNTAX, "No SQL expression defined")
        if server is ServerName.P21:
            sql = qualify_p21_tables(sql)

        conn = self.connect(server)
        try:
            cursor = conn.cursor()
            cursor.execute(sql)
            first = cursor.fetchone()
        except Exception as exc:
            error_type = classify_error(exc)
            logger.debug("%s query failed (%s): %s", server.value, error_type.value, sql)
            raise QueryError(error_type, error_message(exc)) from exc
        finally:
            conn.close()

        if first is None or len(first) == 0:
            return EMPTY_RESULT
        return to_display_value(first[0])

    def test_connection(self, server_name: str) -> str:
        """Open a connection and run a trivial probe query."""
        return self.execute(server_name, "SELECT 1 AS value")


class SimulatedExecutor:
    """Stand-in executor for test mode; never touches a backend.

    Values are derived from the server tag and SQL text so that repeated
    runs over unchanged rows produce identical numbers.
    """

    def execute(self, server_name: str, sql_expression: str) -> str:
        server = normalize_server(server_name)
        sql = (sql_expression or "").strip()
        if not sql:
            raise QueryError(ErrorType.SYNTAX, "No SQL expression defined")

        base = sum(ord(ch) for ch in sql) % 900 + 100
        if server is ServerName.P21:
            base = round(base * 1.2)
        else:
            base = round(base * 0.8)
        lowered = sql.lower()
        if "sum(" in lowered:
            base *= 10
        elif "count(" in lowered:
            base = round(base / 10)
        return str(min(max(base, 1), 100000))

    def test_connection(self, server_name: str) -> str:
        normalize_server(server_name)
        return "1"
