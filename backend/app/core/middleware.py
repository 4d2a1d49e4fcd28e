"""
HTTP middleware: correlation ids, actor-aware access log, timing headers.

Every request runs inside ``log_context(request_id, actor_id, ...)`` so
alert, dispatch and storage logs emitted while serving it carry the
same request id that is returned to the caller in ``X-Request-ID``.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import log_context

logger = logging.getLogger(__name__)

# Health checks and docs are polled constantly; only log them when they fail
_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One access-log line per request, tagged with the upstream actor."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        path = request.url.path
        quiet = path.startswith(_QUIET_PREFIXES)

        with log_context(
            request_id=request_id,
            actor_id=request.headers.get("X-Actor-Id"),
            actor_role=request.headers.get("X-Actor-Role"),
            endpoint=path,
            method=request.method,
        ):
            start = time.perf_counter()
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "%s %s failed after %.1fms", request.method, path,
                    (time.perf_counter() - start) * 1000,
                    extra={"status_code": 500, "endpoint": path},
                )
                raise
            duration_ms = (time.perf_counter() - start) * 1000

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"

            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            if not quiet or level > logging.INFO:
                logger.log(
                    level, "%s %s → %d (%.1fms)",
                    request.method, path, response.status_code, duration_ms,
                    extra={"duration_ms": round(duration_ms, 1), "status_code": response.status_code, "endpoint": path},
                )
        return response
