"""FastAPI app for the Tallman metrics dashboard."""

import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tallman_dashboard.backends import BackendExecutor, ConfigurationError, QueryError
from tallman_dashboard.config import Settings
from tallman_dashboard.dashboard import get_dashboard_data
from tallman_dashboard.database import init_db
from tallman_dashboard.orchestrator import RunOrchestrator
from tallman_dashboard.routes_admin import router as admin_router
from tallman_dashboard.run_session import RunSession
from tallman_dashboard.schemas import ErrorType, QueryRequest
from tallman_dashboard.seed import seed_if_empty

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, executor=None) -> FastAPI:
    """Build the app with its own run session and executor.

    Tests pass their own settings and an executor backed by fake connectors.
    """
    settings = settings or Settings.from_env()
    executor = executor or BackendExecutor(settings)
    session = RunSession(poll_interval=settings.poll_interval)

    app = FastAPI(title="Tallman Metrics Dashboard")
    app.state.settings = settings
    app.state.executor = executor
    app.state.run_session = session
    app.state.orchestrator = RunOrchestrator(
        session,
        executor,
        settings.db_path,
        query_timeout=settings.query_timeout,
        row_delay=settings.row_delay,
    )
    app.include_router(admin_router)

    @app.on_event("startup")
    def startup() -> None:
        init_db(settings.db_path)
        seeded = seed_if_empty(settings.db_path, settings.seed_file)
        if seeded:
            logger.info("Row store was empty; seeded %d rows", seeded)

    @app.get("/api/dashboard/data")
    async def api_dashboard_data():
        """Rows grouped by chart group, with numeric values."""
        data = await asyncio.to_thread(get_dashboard_data, settings.db_path)
        return JSONResponse(data)

    @app.post("/api/executeQuery")
    async def api_execute_query(request: Request, payload: QueryRequest):
        """Run one ad-hoc expression, e.g. from the admin "test SQL" button."""
        timeout = settings.query_timeout or None
        try:
            value = await asyncio.wait_for(
                asyncio.to_thread(
                    request.app.state.executor.execute, payload.server, payload.query
                ),
                timeout=timeout,
            )
        except ConfigurationError as exc:
            return JSONResponse(
                {"success": False, "error": str(exc), "errorType": ErrorType.UNKNOWN.value},
                status_code=400,
            )
        except asyncio.TimeoutError:
            return JSONResponse({
                "success": False,
                "error": f"Query timed out after {timeout:g} seconds",
                "errorType": ErrorType.CONNECTION.value,
            })
        except QueryError as exc:
            return JSONResponse({
                "success": False,
                "error": exc.message,
                "errorType": exc.error_type.value,
            })
        return JSONResponse({"success": True, "value": value})

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = app.state.settings
    logging.basicConfig(
        level=_settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host="127.0.0.1", port=8501)
