"""Structured request logging middleware.

Every request is logged once with method, path, status and duration. The
request id (from X-Request-ID, or generated) and, for sync control
endpoints, the sync route are bound into structlog's context vars, so
lines logged by a job triggered from the request carry them too.

Health-check and scrape traffic (/health*, /metrics) is logged at debug level only.
"""

from __future__ import annotations

import logging
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.app.config import Environment, get_settings

logger = structlog.get_logger(__name__)

SYNC_PREFIX = "/api/v1/sync/"
QUIET_PREFIXES = ("/health", "/metrics")

# Chatty at INFO; their useful signal already reaches us as RemoteAPIError
NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler.executors.default")


def configure_structlog() -> None:
    """Configure stdlib logging and structlog for the current environment."""
    settings = get_settings()
    logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL.upper())
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if settings.ENVIRONMENT == Environment.production:
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _sync_route(path: str) -> str | None:
    """``client/c1/repair`` for ``/api/v1/sync/client/c1/repair``."""
    if path.startswith(SYNC_PREFIX):
        return path[len(SYNC_PREFIX):] or None
    return None


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request with timing and echoes X-Request-ID."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        context = {"request_id": request_id}
        sync_route = _sync_route(path)
        if sync_route:
            context["sync_route"] = sync_route

        start_time = time.monotonic()
        structlog.contextvars.bind_contextvars(**context)
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "request_error",
                method=request.method,
                path=path,
                duration_ms=round((time.monotonic() - start_time) * 1000, 2),
            )
            raise
        finally:
            structlog.contextvars.unbind_contextvars(*context)

        duration_ms = round((time.monotonic() - start_time) * 1000, 2)
        response.headers["X-Request-ID"] = request_id

        if path.startswith(QUIET_PREFIXES) and response.status_code < 500:
            log_method = logger.debug
        elif response.status_code >= 500:
            log_method = logger.error
        elif response.status_code >= 400:
            log_method = logger.warning
        else:
            log_method = logger.info

        log_method(
            "request_completed",
            method=request.method,
            path=path,
            status_code=response.status_code,
            duration_ms=duration_ms,
            request_id=request_id,
            sync_route=sync_route,
        )
        return response
