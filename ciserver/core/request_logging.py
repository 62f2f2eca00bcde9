"""
Request logging middleware.
One structured line per request; never logs bodies or auth headers.
"""
import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ciserver.core.logging import set_request_id
from ciserver.core.metrics import COUNTERS, metrics

logger = logging.getLogger("ciserver.request")

# Polled constantly by probes and scrapers
QUIET_PATHS = frozenset(["/health", "/metrics"])


def client_address(request: Request) -> str:
    """Caller address, preferring the first X-Forwarded-For hop."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id, times it and counts it by status class."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = set_request_id(request.headers.get("x-request-id"))
        started = time.perf_counter()

        response: Response = await call_next(request)

        duration_ms = int((time.perf_counter() - started) * 1000)
        response.headers["X-Request-Id"] = request_id

        metrics.inc("requests_total")
        by_class = f"requests_{response.status_code // 100}xx"
        if by_class in COUNTERS:
            metrics.inc(by_class)

        if request.url.path in QUIET_PATHS:
            return response

        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(
            level,
            "request",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                "client_ip": client_address(request),
            },
        )
        return response
