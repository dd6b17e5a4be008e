"""Shared run-state observed by the orchestrator and the status endpoint."""

import threading
import uuid
from datetime import datetime, timezone

from tallman_dashboard.schemas import RunStatus


class RunAlreadyActiveError(RuntimeError):
    """A run was started while another one is still in progress."""


class RunSession:
    """Status and per-row progress of the current run.

    One instance per application; tests create their own. ``begin`` is the
    only way into the running state and fails if the session is not idle.
    """

    def __init__(self, poll_interval: float = 1.0):
        self.poll_interval = poll_interval
        self._lock = threading.Lock()
        self._status = RunStatus.IDLE
        self._active_row_id: str | None = None
        self._run_id: str | None = None
        self._started_at: str | None = None
        self._stop_requested = False
        self._updated: dict[str, dict] = {}
        self._last_error: str | None = None

    @property
    def status(self) -> RunStatus:
        return self._status

    @property
    def active_row_id(self) -> str | None:
        return self._active_row_id

    @property
    def run_id(self) -> str | None:
        return self._run_id

    @property
    def started_at(self) -> str | None:
        return self._started_at

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    @property
    def last_error(self) -> str | None:
        return self._last_error

    def begin(self) -> str:
        """Atomically move idle → running and return the new run id."""
        with self._lock:
            if self._status is not RunStatus.IDLE:
                raise RunAlreadyActiveError("A run is already in progress.")
            self._status = RunStatus.RUNNING
            self._run_id = uuid.uuid4().hex
            self._started_at = datetime.now(timezone.utc).isoformat()
            self._active_row_id = None
            self._stop_requested = False
            self._updated = {}
            self._last_error = None
            return self._run_id

    def request_stop(self) -> bool:
        """Ask the running loop to halt after the in-flight row.

        Returns False when there is nothing to stop.
        """
        with self._lock:
            if self._status is not RunStatus.RUNNING:
                return False
            self._stop_requested = True
            self._status = RunStatus.STOPPED
            return True

    def mark_active(self, row_id: str) -> None:
        with self._lock:
            self._active_row_id = row_id

    def record_row(self, row: dict) -> None:
        with self._lock:
            self._updated[str(row["id"])] = dict(row)

    def finish(self, error: str | None = None) -> None:
        with self._lock:
            self._status = RunStatus.IDLE
            self._active_row_id = None
            self._stop_requested = False
            self._last_error = error

    def snapshot(self, drain: bool = True) -> dict:
        """Current run-state for pollers.

        ``updatedData`` holds rows whose cached result changed since the
        previous drained snapshot. Rows a run left unchanged are not
        reported.
        """
        with self._lock:
            updated = list(self._updated.values())
            if drain:
                self._updated = {}
            return {
                "status": self._status.value,
                "activeRowId": self._active_row_id,
                "updatedData": updated,
                "runId": self._run_id,
                "startedAt": self._started_at,
                "error": self._last_error,
                "pollInterval": self.poll_interval,
            }
