"""
Request middleware — correlation IDs and one access line per request.

    X-Request-ID     echoed from the sender (FMS retries keep theirs) or generated
    X-Process-Time   handler time in ms

The request id is put in the log context so the ingestion and error logs
of one webhook call share it. Probe traffic (``/healthz``) and API docs
are not logged.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

QUIET_PATHS = ("/healthz", "/docs", "/redoc", "/openapi", "/favicon")


def _access_level(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag the request with an id, time it, log one line unless it is probe traffic."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        source = request.client.host if request.client else "unknown"
        path = request.url.path
        set_request_context(request_id=request_id, client_ip=source)

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = f"{(time.perf_counter() - started) * 1000:.1f}ms"
            return response
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000
            if not path.startswith(QUIET_PATHS):
                logger.log(
                    _access_level(status_code),
                    "%s %s → %d (%.1fms) from %s",
                    request.method, path, status_code, elapsed_ms, source,
                    extra={"duration_ms": elapsed_ms, "status_code": status_code, "endpoint": path},
                )
            set_request_context()
