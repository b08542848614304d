"""Structlog setup and per-request logging for the meetings service.

Every HTTP request gets a request id, bound through structlog contextvars so
that webhook and repository log lines emitted while serving it carry the same
id. One ``http.request_completed`` line is written per request, extended with
the fields handlers leave in ``request.state.log_fields`` (the Zoom webhook
records its event type and a redacted meeting id there).

The worker processes share configure_structlog but not the middleware.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.meetsync.config import Environment, get_settings

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# Health checks and metric scrapes; logged at debug level
QUIET_PATHS = frozenset({"/health", "/health/ready", "/metrics"})


def configure_structlog() -> None:
    """Configure structlog for the API and the worker processes.

    JSON lines in production, console rendering elsewhere. Context bound with
    ``structlog.contextvars`` is merged into every entry.
    """
    settings = get_settings()

    logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL.upper())

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
    ]
    if settings.ENVIRONMENT == Environment.production:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def add_log_fields(request: Request, **fields: Any) -> None:
    """Attach extra fields to the request's completion log line."""
    existing = getattr(request.state, "log_fields", None) or {}
    request.state.log_fields = {**existing, **fields}


class LoggingMiddleware(BaseHTTPMiddleware):
    """Bind a request id, time the request and log its outcome.

    An incoming X-Request-ID is reused so Zoom retries and proxy logs can be
    correlated; otherwise a UUID is generated. The id is echoed back on the
    response.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start_time = time.monotonic()

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "http.request_failed",
                method=request.method,
                path=request.url.path,
                duration_ms=_elapsed_ms(start_time),
                request_id=request_id,
                **_log_fields(request),
            )
            raise
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers[REQUEST_ID_HEADER] = request_id

        if response.status_code >= 500:
            log_method = logger.error
        elif response.status_code >= 400:
            log_method = logger.warning
        elif request.url.path in QUIET_PATHS:
            log_method = logger.debug
        else:
            log_method = logger.info

        log_method(
            "http.request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=_elapsed_ms(start_time),
            request_id=request_id,
            **_log_fields(request),
        )
        return response


def _elapsed_ms(start_time: float) -> float:
    return round((time.monotonic() - start_time) * 1000, 2)


def _log_fields(request: Request) -> dict[str, Any]:
    return dict(getattr(request.state, "log_fields", None) or {})
