"""
FastAPI middleware: correlation ids, access logging and request timeouts.

Every request gets a correlation id (taken from X-Request-ID when the
caller sends one) that flows into log records of the engine calls it makes.
"""
import asyncio
import time
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from core.config import config
from core.observability import (
    generate_correlation_id,
    get_correlation_id,
    get_logger,
    set_correlation_id,
)

logger = get_logger(__name__)

# Manual recompute and job runs can scan whole months of raw rows
ADMIN_PATH_PREFIXES = ("/api/stats/recompute", "/api/stats/jobs/")

# Polled by Docker/load balancers; not logged, never timed out
HEALTH_PATHS = ("/api/health", "/health")


def timeout_for(path: str) -> float:
    if path.startswith(ADMIN_PATH_PREFIXES):
        return config.web.admin_request_timeout
    return config.web.request_timeout


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Assign a correlation id and log each request with its duration."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get("X-Request-ID") or generate_correlation_id()
        set_correlation_id(correlation_id)

        path = request.url.path
        quiet = path in HEALTH_PATHS
        fields = {
            "method": request.method,
            "path": path,
            "query": str(request.query_params),
            "client_ip": request.client.host if request.client else "unknown",
        }

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"{request.method} {path} raised {type(e).__name__}",
                extra={**fields, "duration_ms": round((time.perf_counter() - started) * 1000, 2), "error": str(e)}
            )
            raise

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        response.headers["X-Request-ID"] = correlation_id
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

        if not quiet:
            log = logger.info if response.status_code < 400 else logger.warning
            log(
                f"{request.method} {path} -> {response.status_code}",
                extra={**fields, "status_code": response.status_code, "duration_ms": duration_ms}
            )

        return response


class RequestTimeoutMiddleware(BaseHTTPMiddleware):
    """Answer 504 when a request outlives its timeout."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in HEALTH_PATHS:
            return await call_next(request)

        timeout = timeout_for(path)
        try:
            return await asyncio.wait_for(call_next(request), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Request timeout: {request.method} {path}",
                extra={"method": request.method, "path": path, "timeout": timeout}
            )
            return JSONResponse(
                status_code=504,
                content={
                    "error": "Request Timeout",
                    "detail": f"Request exceeded {timeout}s timeout",
                    "path": path,
                    "correlation_id": get_correlation_id(),
                }
            )
