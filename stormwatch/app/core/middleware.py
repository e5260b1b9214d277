"""
Request middleware: correlation id, timing and one access log line per request.

    X-Request-ID     echoed from the caller or generated
    X-Process-Time   handler wall time in ms
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from stormwatch.app.core.logging_config import log_context

logger = logging.getLogger(__name__)

_UNLOGGED_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health/live")


class RequestLoggingMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        path = request.url.path

        with log_context(request_id=request_id):
            started = time.perf_counter()
            try:
                response = await call_next(request)
            except Exception:
                elapsed = (time.perf_counter() - started) * 1000
                logger.error(
                    "%s %s crashed after %.1fms", request.method, path, elapsed,
                    extra={"duration_ms": elapsed, "status_code": 500, "endpoint": path},
                )
                raise
            elapsed = (time.perf_counter() - started) * 1000

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = f"{elapsed:.1f}ms"
            if not path.startswith(_UNLOGGED_PREFIXES):
                logger.log(
                    logging.WARNING if response.status_code >= 400 else logging.INFO,
                    "%s %s → %d (%.1fms)", request.method, path, response.status_code, elapsed,
                    extra={"duration_ms": elapsed, "status_code": response.status_code, "endpoint": path},
                )
        return response
