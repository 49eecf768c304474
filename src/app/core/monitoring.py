"""Prometheus metrics, Sentry integration, and sync run tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- Sync metrics: per-record outcomes, run durations, mapping reassignments, repairs
- track_sync_run(): Context manager recording run duration and status
- init_sentry(): Initialize Sentry with entity-aware before_send callback
- get_metrics_response(): Prometheus exposition for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import sentry_sdk
from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
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

# ── Sync Metrics ─────────────────────────────────────────────────────────────

sync_records_total = Counter(
    "sync_records_total",
    "Records processed by sync workers",
    ["entity_type", "outcome"],
)

sync_run_duration_seconds = Histogram(
    "sync_run_duration_seconds",
    "Sync run duration in seconds",
    ["entity_type"],
    buckets=(1.0, 5.0, 15.0, 30.0, 60.0, 300.0, 900.0, 1800.0, 3600.0),
)

sync_runs_total = Counter(
    "sync_runs_total",
    "Sync runs by final status",
    ["entity_type", "status"],
)

sync_mapping_reassignments_total = Counter(
    "sync_mapping_reassignments_total",
    "Mappings deleted because another source id claimed the same destination id",
    ["entity_type"],
)

sync_repairs_total = Counter(
    "sync_repairs_total",
    "Inline dependency repair attempts",
    ["result"],
)

sync_active_runs = Gauge(
    "sync_active_runs",
    "Sync runs currently executing in this process",
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        # Route pattern keeps label cardinality bounded (/runs/{run_id}/logs)
        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or request.url.path

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


# ── Sync Run Helper ──────────────────────────────────────────────────────────


@asynccontextmanager
async def track_sync_run(entity_type: str) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks one sync run.

    Usage:
        async with track_sync_run("client") as tracker:
            result = await worker.run(...)
            tracker["status"] = "partial"

    Records duration, active run gauge and the final status ("error" when
    the body raises, otherwise tracker["status"], default "completed").
    """
    tracker: dict[str, Any] = {"status": "completed"}
    start_time = time.perf_counter()
    sync_active_runs.inc()

    try:
        yield tracker
    except Exception:
        tracker["status"] = "error"
        raise
    finally:
        sync_active_runs.dec()
        sync_run_duration_seconds.labels(entity_type=entity_type).observe(
            time.perf_counter() - start_time
        )
        sync_runs_total.labels(entity_type=entity_type, status=tracker["status"]).inc()


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Promote sync context (entity type, run id) from structlog extras to tags."""
        extra = event.get("extra") or {}
        tags = event.setdefault("tags", {})
        for key in ("entity_type", "run_id", "job_id"):
            if key in extra:
                tags[key] = str(extra[key])
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=before_send,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
