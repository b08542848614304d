"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, Sentry,
lifespan events for database initialization and the meeting workers, and
the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.requests import Request
from fastapi.responses import Response

from src.meetsync.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.meetsync.api.v1.router import router as v1_router
from src.meetsync.config import get_settings
from src.meetsync.core.database import close_db, get_session, init_db
from src.meetsync.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.meetsync.meetings.sync.manager import MeetingsManager


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and workers on startup, stop them on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    manager = MeetingsManager(settings=settings, session_factory=get_session)
    app.state.meetings_manager = manager
    app.state.meetings_repository = manager.repository
    manager.start()
    log.info("meetings.workers_started", zoom_enabled=settings.zoom_enabled)

    yield

    await manager.stop()
    await close_db()
    log.info("meetings.shutdown_complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Meeting Sync API",
        version="0.1.0",
        description="Keeps provider-hosted meetings in sync with events and sessions",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
