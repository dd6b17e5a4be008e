"""FastAPI routes for the admin spreadsheet: row CRUD and run control."""

from __future__ import annotations

import asyncio
import logging
import sqlite3

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from tallman_dashboard.backends import ConfigurationError, QueryError, classify_error
from tallman_dashboard.database import get_all_rows, get_recent_runs, upsert_rows
from tallman_dashboard.orchestrator import RowStoreError
from tallman_dashboard.run_session import RunAlreadyActiveError
from tallman_dashboard.schemas import (
    BulkRowsPayload,
    ConnectionTestRequest,
    ErrorType,
    RunRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin")


def _db_path(request: Request):
    return request.app.state.settings.db_path


# ── Row CRUD ────────────────────────────────────────────────────────

@router.get("/data")
async def admin_get_rows(request: Request):
    """Full row list in display order."""
    try:
        rows = await asyncio.to_thread(get_all_rows, _db_path(request))
    except sqlite3.Error as exc:
        logger.error("Could not read rows", exc_info=True)
        return JSONResponse(
            {"status": "error", "message": f"Could not read rows: {exc}"},
            status_code=500,
        )
    return JSONResponse(rows)


@router.post("/data")
async def admin_save_rows(request: Request, payload: BulkRowsPayload):
    """Bulk upsert of edited rows from the spreadsheet."""
    rows = [row.to_row() for row in payload.data]
    try:
        count = await asyncio.to_thread(upsert_rows, rows, _db_path(request))
    except sqlite3.Error as exc:
        logger.error("Could not save rows", exc_info=True)
        return JSONResponse(
            {"status": "error", "message": f"Could not save rows: {exc}"},
            status_code=500,
        )
    logger.info("Saved %d rows from admin", count)
    return JSONResponse({"status": "ok", "message": f"Saved {count} rows.", "count": count})


# ── Run control ─────────────────────────────────────────────────────

@router.post("/run")
async def admin_start_run(request: Request, payload: RunRequest | None = None):
    """Start a run and wait for it to finish.

    Status polls on ``GET /api/admin/run`` are served while this request is
    in flight. A second start while a run is active gets 409.
    """
    payload = payload or RunRequest()
    orchestrator = request.app.state.orchestrator
    rows = [row.to_row() for row in payload.rows] if payload.rows is not None else None

    try:
        result = await orchestrator.run(rows, is_production=payload.is_production)
    except RunAlreadyActiveError as exc:
        return JSONResponse(
            {"status": "busy", "message": str(exc)},
            status_code=409,
        )
    except RowStoreError as exc:
        return JSONResponse(
            {"status": "error", "message": f"Run failed: {exc}"},
            status_code=500,
        )
    return JSONResponse(result)


@router.get("/run")
def admin_run_state(request: Request):
    """Run-state for the status poller; drains ``updatedData``."""
    return JSONResponse(request.app.state.run_session.snapshot())


@router.post("/run/stop")
def admin_stop_run(request: Request):
    stopped = request.app.state.orchestrator.stop()
    session = request.app.state.run_session
    if not stopped:
        return JSONResponse({
            "status": session.status.value,
            "message": "No run in progress.",
        })
    return JSONResponse({
        "status": session.status.value,
        "message": "Stop requested; the current row will finish first.",
    })


@router.get("/runs")
async def admin_recent_runs(request: Request, limit: int = Query(20, ge=1, le=200)):
    runs = await asyncio.to_thread(get_recent_runs, limit, _db_path(request))
    return JSONResponse(runs)


# ── Connection test ─────────────────────────────────────────────────

@router.post("/test-connection")
async def admin_test_connection(request: Request, payload: ConnectionTestRequest):
    """Probe a backend with a trivial query."""
    executor = request.app.state.executor
    timeout = request.app.state.settings.query_timeout or None
    try:
        await asyncio.wait_for(
            asyncio.to_thread(executor.test_connection, payload.server),
            timeout=timeout,
        )
    except ConfigurationError as exc:
        return JSONResponse(
            {"success": False, "message": str(exc), "errorType": ErrorType.UNKNOWN.value},
            status_code=400,
        )
    except asyncio.TimeoutError:
        return JSONResponse({
            "success": False,
            "message": f"Connection test timed out after {timeout:g} seconds",
            "errorType": ErrorType.CONNECTION.value,
        })
    except QueryError as exc:
        return JSONResponse({
            "success": False,
            "message": exc.message,
            "errorType": exc.error_type.value,
        })
    except Exception as exc:
        logger.error("Connection test failed for %s", payload.server, exc_info=True)
        return JSONResponse({
            "success": False,
            "message": str(exc),
            "errorType": classify_error(exc).value,
        })

    return JSONResponse({
        "success": True,
        "message": f"Connected to {payload.server.upper()}.",
        "errorType": None,
    })
