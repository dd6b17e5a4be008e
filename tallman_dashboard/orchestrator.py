"""Run orchestration: execute each row's SQL and cache the result.

Rows are processed strictly in the order given, one at a time. Each backend
call runs in a worker thread under a timeout so a hung query cannot stall
the run, and a stop request is honoured between rows. Per-row failures are
recorded on the row; only a Row Store failure ends a run early.
"""

import asyncio
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from tallman_dashboard import database
from tallman_dashboard.backends import (
    ConfigurationError,
    QueryError,
    SimulatedExecutor,
    format_for_chart,
)
from tallman_dashboard.run_session import RunSession
from tallman_dashboard.schemas import ErrorType

logger = logging.getLogger(__name__)


class RowStoreError(RuntimeError):
    """The row store could not be read or written during a run."""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _result_state(row: dict) -> tuple:
    return (row.get("value"), row.get("error"), row.get("errorType"))


def _abandoned_call_done(row_id: str, server: str):
    def done(call: asyncio.Future) -> None:
        if call.cancelled():
            return
        exc = call.exception()
        if exc is not None:
            logger.debug("Timed-out query for row %s on %s failed: %s", row_id, server, exc)
        else:
            logger.debug("Timed-out query for row %s on %s finished late", row_id, server)
    return done


class RunOrchestrator:
    def __init__(
        self,
        session: RunSession,
        executor,
        db_path: Path | str | None = None,
        *,
        test_executor=None,
        query_timeout: float | None = 30.0,
        row_delay: float = 0.0,
    ):
        self.session = session
        self.executor = executor
        self.test_executor = test_executor or SimulatedExecutor()
        self.db_path = db_path
        self.query_timeout = query_timeout or None
        self.row_delay = row_delay
        # Server tag -> worker call left running after a timeout.
        self._in_flight: dict[str, asyncio.Future] = {}

    def stop(self) -> bool:
        """Request cooperative cancellation of the current run."""
        stopped = self.session.request_stop()
        if stopped:
            logger.info("Stop requested for run %s", self.session.run_id)
        return stopped

    async def run(self, rows: list[dict] | None = None, is_production: bool = True) -> dict:
        """Execute rows in order and return the per-row results.

        With ``rows`` omitted the full row list is read from the store.
        Raises RunAlreadyActiveError if the session is not idle and
        RowStoreError if the store fails mid-run.
        """
        run_id = self.session.begin()
        self._in_flight = {}
        mode = "production" if is_production else "test"
        executor = self.executor if is_production else self.test_executor

        results: list[dict] = []
        succeeded = 0
        failed = 0
        outcome = "completed"
        run_error = None
        total = 0

        try:
            if rows is None:
                rows = await self._load_rows()
            total = len(rows)
            logger.info("Starting %s run %s over %d rows", mode, run_id, total)

            for i, row in enumerate(rows, 1):
                if self.session.stop_requested:
                    outcome = "stopped"
                    logger.info("Run %s stopped before row %d/%d", run_id, i, total)
                    break

                row_id = str(row["id"])
                self.session.mark_active(row_id)
                before = _result_state(row)
                updated = await self._execute_row(executor, dict(row, id=row_id))
                updated["value"] = await self._save(updated)
                if _result_state(updated) != before:
                    self.session.record_row(updated)
                results.append(updated)

                if updated.get("error"):
                    failed += 1
                    logger.warning(
                        "  [%d/%d] Row %s (%s) FAILED [%s]: %s",
                        i, total, row_id, updated.get("serverName"),
                        updated.get("errorType"), updated.get("error"),
                    )
                else:
                    succeeded += 1
                    logger.info(
                        "  [%d/%d] Row %s (%s) = %s",
                        i, total, row_id, updated.get("serverName"), updated.get("value"),
                    )

                if self.row_delay and i < total:
                    await asyncio.sleep(self.row_delay)
        except RowStoreError as exc:
            outcome = "failed"
            run_error = str(exc)
            logger.error("Run %s aborted: %s", run_id, exc)
            raise
        finally:
            try:
                self._record_history(
                    run_id, mode, outcome, total, succeeded, failed, run_error
                )
            finally:
                self.session.finish(error=run_error)

        logger.info(
            "Run %s %s: %d succeeded, %d failed out of %d rows",
            run_id, outcome, succeeded, failed, total,
        )
        return {
            "runId": run_id,
            "status": outcome,
            "succeeded": succeeded,
            "failed": failed,
            "results": results,
        }

    async def _load_rows(self) -> list[dict]:
        try:
            return await asyncio.to_thread(database.get_all_rows, self.db_path)
        except sqlite3.Error as exc:
            raise RowStoreError(f"Could not read rows: {exc}") from exc

    async def _save(self, row: dict) -> str | None:
        """Persist the row's result and return the value now cached for it."""
        try:
            return await asyncio.to_thread(database.save_row_result, row, self.db_path)
        except sqlite3.Error as exc:
            raise RowStoreError(f"Could not save row {row['id']}: {exc}") from exc

    async def _backend_free(self, server: str) -> bool:
        """Wait for a timed-out call still running on ``server``.

        Returns False if it is still running after another timeout period.
        """
        pending = self._in_flight.get(server)
        if pending is not None and not pending.done():
            logger.info("Waiting for the timed-out %s query to finish", server)
            await asyncio.wait({pending}, timeout=self.query_timeout)
            if not pending.done():
                return False
        self._in_flight.pop(server, None)
        return True

    async def _call_executor(self, executor, row: dict) -> str:
        server = (row.get("serverName") or "").strip().upper()
        if not await self._backend_free(server):
            raise QueryError(
                ErrorType.CONNECTION, f"Previous {server} query is still running"
            )

        call = asyncio.ensure_future(
            asyncio.to_thread(executor.execute, row.get("serverName"), row.get("sqlExpression"))
        )
        try:
            return await asyncio.wait_for(asyncio.shield(call), timeout=self.query_timeout)
        except asyncio.TimeoutError:
            # The worker thread cannot be interrupted; remember it so the
            # next query on this backend waits for it.
            self._in_flight[server] = call
            call.add_done_callback(_abandoned_call_done(row["id"], server))
            logger.warning(
                "Row %s timed out; its %s query is still running in the background",
                row["id"], server,
            )
            raise

    async def _execute_row(self, executor, row: dict) -> dict:
        """Execute one row and return it with result or error fields set."""
        error_type = None
        message = None
        value = None
        try:
            value = await self._call_executor(executor, row)
        except asyncio.TimeoutError:
            error_type = ErrorType.CONNECTION
            message = f"Query timed out after {self.query_timeout:g} seconds"
        except QueryError as exc:
            error_type = exc.error_type
            message = exc.message
        except ConfigurationError as exc:
            error_type = ErrorType.UNKNOWN
            message = str(exc)
        except Exception as exc:
            logger.error("Unexpected error executing row %s", row["id"], exc_info=True)
            error_type = ErrorType.UNKNOWN
            message = str(exc) or exc.__class__.__name__

        row["lastUpdated"] = _now()
        if error_type is None:
            row["value"] = format_for_chart(value, row.get("chartGroup"), row.get("variableName"))
            row["error"] = None
            row["errorType"] = None
        else:
            row["error"] = message
            row["errorType"] = error_type.value
        return row

    def _record_history(
        self,
        run_id: str,
        mode: str,
        outcome: str,
        total: int,
        succeeded: int,
        failed: int,
        error: str | None,
    ) -> None:
        try:
            database.record_run(
                {
                    "run_id": run_id,
                    "mode": mode,
                    "started_at": self.session.started_at,
                    "finished_at": _now(),
                    "outcome": outcome,
                    "rows_total": total,
                    "rows_succeeded": succeeded,
                    "rows_failed": failed,
                    "error": error,
                },
                self.db_path,
            )
        except sqlite3.Error:
            logger.error("Could not record history for run %s", run_id, exc_info=True)
