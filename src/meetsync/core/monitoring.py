"""Prometheus metrics, Sentry integration, and provider call tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- Meeting sync counters updated by the workers and the host allocator
- track_provider_call(): Context manager for provider request metrics
- init_sentry(): Initialize Sentry for the API and the workers
- get_metrics_response(): Prometheus exposition for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Meeting Sync Metrics ─────────────────────────────────────────────────────

meeting_sync_total = Counter(
    "meeting_sync_total",
    "Reconciliation units processed by the sync workers",
    ["action", "outcome"],
)

meeting_auto_end_checks_total = Counter(
    "meeting_auto_end_checks_total",
    "Auto-end checks recorded for overdue meetings",
    ["outcome"],
)

meeting_host_allocations_total = Counter(
    "meeting_host_allocations_total",
    "Host allocation decisions",
    ["result"],
)

meeting_provider_request_duration_seconds = Histogram(
    "meeting_provider_request_duration_seconds",
    "Meeting provider request duration in seconds",
    ["provider", "operation", "status"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0),
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        endpoint = request.url.path

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Provider Metrics Helper ──────────────────────────────────────────────────


@asynccontextmanager
async def track_provider_call(provider: str, operation: str) -> AsyncGenerator[None, None]:
    """Context manager that records the duration of one provider request.

    Usage:
        async with track_provider_call("zoom", "create_meeting"):
            meeting = await provider.create_meeting(unit, host)
    """
    start_time = time.perf_counter()
    status = "success"

    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        meeting_provider_request_duration_seconds.labels(
            provider=provider,
            operation=operation,
            status=status,
        ).observe(time.perf_counter() - start_time)


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.starlette import StarletteIntegration

    traces_sample_rate = 0.1 if environment == "production" else 1.0

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
