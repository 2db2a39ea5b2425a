"""
Request middleware — access log, timing, correlation IDs.

Every HTTP request gets:
    • an X-Request-ID (taken from the caller or generated) echoed back
    • an X-Process-Time header
    • one access-log line, WARNING for 4xx/5xx, tagged with the alert id
      when the path addresses a single alert

WebSocket traffic bypasses this middleware (BaseHTTPMiddleware only sees
the ``http`` scope); the stream route logs its own session lifecycle.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Any, Dict

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from alerthub.app.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health/live")
_ALERT_PATH = re.compile(r"^/api/v1/alerts/(?P<alert_id>[^/]+)")


class RequestLoggingMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        client_ip = request.client.host if request.client else "unknown"
        path = request.url.path

        context: Dict[str, Any] = {
            "request_id": request_id,
            "client_ip": client_ip,
            "endpoint": path,
            "method": request.method,
        }
        match = _ALERT_PATH.match(path)
        if match:
            context["alert_id"] = match.group("alert_id")
        set_request_context(**context)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._log(request, path, 500, start, client_ip, context)
            raise
        finally:
            set_request_context()

        duration_ms = self._log(request, path, response.status_code, start, client_ip, context)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"
        return response

    @staticmethod
    def _log(
        request: Request,
        path: str,
        status_code: int,
        start: float,
        client_ip: str,
        context: Dict[str, Any],
    ) -> float:
        duration_ms = (time.perf_counter() - start) * 1000
        if path.startswith(_QUIET_PREFIXES):
            return duration_ms
        level = logging.WARNING if status_code >= 400 else logging.INFO
        extra: Dict[str, Any] = {
            "duration_ms": duration_ms,
            "status_code": status_code,
            "endpoint": path,
        }
        if "alert_id" in context:
            extra["alert_id"] = context["alert_id"]
        logger.log(
            level,
            "%s %s → %d (%.1fms) [%s]",
            request.method, path, status_code, duration_ms, client_ip,
            extra=extra,
        )
        return duration_ms
