"""
Request middleware: request IDs, access logging and HTTP metrics.

The caller's X-Request-ID is reused when present so a request can be
followed from the book site through to these logs.
"""

import re
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from .logging import get_logger, request_id_scope
from .metrics import (
    http_request_duration_seconds,
    http_requests_in_progress,
    http_requests_total,
)

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
SLOW_REQUEST_SECONDS = 2.0
QUIET_PREFIXES = ("/health", "/metrics")

# Identifier segments collapsed so metric label cardinality stays bounded
_ENDPOINT_PATTERNS = (
    (re.compile(r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE), "/{uuid}"),
    (re.compile(r"/\d+(?=/|$)"), "/{id}"),
    (re.compile(r"^/codes/[^/]+/redeem$"), "/codes/{code}/redeem"),
)


def sanitize_path(path: str) -> str:
    """/admin/receipts/3f0c.../verify -> /admin/receipts/{uuid}/verify"""
    for pattern, replacement in _ENDPOINT_PATTERNS:
        path = pattern.sub(replacement, path)
    return path


class ObservabilityMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        endpoint = sanitize_path(request.url.path)
        method = request.method
        quiet = request.url.path.startswith(QUIET_PREFIXES)

        with request_id_scope(request.headers.get(REQUEST_ID_HEADER)) as request_id:
            request.state.request_id = request_id
            in_progress = http_requests_in_progress.labels(method=method, endpoint=endpoint)
            in_progress.inc()
            started = time.perf_counter()
            status = 500
            try:
                response = await call_next(request)
                status = response.status_code
                response.headers[REQUEST_ID_HEADER] = request_id
                return response
            except Exception:
                logger.error(
                    "Request raised",
                    extra={"method": method, "path": endpoint},
                    exc_info=True,
                )
                raise
            finally:
                elapsed = time.perf_counter() - started
                in_progress.dec()
                http_requests_total.labels(method=method, endpoint=endpoint, status=status).inc()
                http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(elapsed)

                if not quiet:
                    log = logger.warning if elapsed > SLOW_REQUEST_SECONDS else logger.info
                    log(
                        "%s %s -> %s",
                        method,
                        endpoint,
                        status,
                        extra={"status_code": status, "duration_ms": round(elapsed * 1000, 1)},
                    )
