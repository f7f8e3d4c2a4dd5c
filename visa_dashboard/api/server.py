"""
FastAPI server for the dashboard API. run_api_server(app) serves it with uvicorn.
Routers come from visa_dashboard.api.<module>.get_router(dashboard_app); each handler
reaches services through the DashboardApp it was built with.
Docs when enabled: http://<host>:<port>/docs
"""
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from visa_dashboard.api import activity, monitoring, notifications, realtime, system
from visa_dashboard.core.errors import DashboardError

logger = logging.getLogger(__name__)


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for item in exc.errors():
        location = ".".join(str(p) for p in item.get("loc", ()) if p != "body")
        parts.append(f"{location}: {item.get('msg')}" if location else str(item.get("msg")))
    return "Invalid request: " + "; ".join(parts)


def create_app(dashboard_app: Any) -> FastAPI:
    """Create FastAPI app with routes that use the given DashboardApp instance."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await dashboard_app.broadcaster.close_all()

    app = FastAPI(
        title="Visa Appointment Dashboard API",
        description="Appointment monitoring, settings, activity and notifications",
        lifespan=lifespan,
    )

    @app.exception_handler(DashboardError)
    async def handle_dashboard_error(request: Request, exc: DashboardError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": _validation_message(exc)})

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=500, content={"error": str(exc) or "Unknown error"})

    app.include_router(monitoring.get_router(dashboard_app), prefix="/api/monitoring")
    app.include_router(activity.get_router(dashboard_app), prefix="/api/activity-logs")
    app.include_router(system.get_router(dashboard_app), prefix="/api/system")
    app.include_router(notifications.get_router(dashboard_app), prefix="/api/notifications")
    app.include_router(realtime.get_router(dashboard_app))

    return app


def run_api_server(dashboard_app: Any) -> None:
    """
    Serve the API in the calling thread until interrupted.
    Reads api.host (default 127.0.0.1) and api.port (default 5000) from config.
    """
    import uvicorn

    api_config = dashboard_app.config.data.get("api") or {}
    host = api_config.get("host", "127.0.0.1")
    port = int(api_config.get("port", 5000))
    fastapi_app = create_app(dashboard_app)
    logger.info(f"API server listening at http://{host}:{port} (docs at /docs)")
    uvicorn.run(fastapi_app, host=host, port=port, log_config=None)
