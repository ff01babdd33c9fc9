"""Request logging middleware with request_id propagation.

Logs every HTTP request with method, path, status code and latency.
Honours an incoming X-Request-ID and echoes it on the response.
"""

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from catalog_scraper.core.logging import request_id_var

logger = logging.getLogger(__name__)

# Polled by dashboards and load balancers
SKIP_PATHS = frozenset({"/api/health", "/api/version", "/api/scraper/status"})


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log HTTP requests with structured metadata."""

    async def dispatch(self, request: Request, call_next) -> Response:
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_var.set(rid)
        try:
            start = time.perf_counter()
            response = await call_next(request)
            latency_ms = round((time.perf_counter() - start) * 1000, 1)

            if request.url.path not in SKIP_PATHS:
                logger.info(
                    "http_request",
                    extra={
                        "request_id": rid,
                        "method": request.method,
                        "path": request.url.path,
                        "status_code": response.status_code,
                        "latency_ms": latency_ms,
                    },
                )
        finally:
            request_id_var.reset(token)

        response.headers["X-Request-ID"] = rid
        return response
