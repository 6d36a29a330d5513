"""
Gatekeeper — Request Logging Middleware
=========================================

What:  One access-log line per request with method, path, status, duration,
       client IP, request id and the resolved auth source.
How:   Measures from middleware entry to response return; reads the principal
       that the gatekeeper dependency attached to request.state (if any).
When:  Inside RequestIDMiddleware, so the request id is available.

What we log vs what we don't:
    Logged: method, path, status, duration, IP, request ID, auth source, user id
    Not logged: bodies, cookies, Authorization or CSRF header values
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from gatekeeper.audit import client_ip
from gatekeeper.middleware.request_id import request_id_var

logger = logging.getLogger("gatekeeper.access")

SKIP_PATHS = frozenset({"/health", "/favicon.ico"})


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path in SKIP_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000

        status = response.status_code
        if status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO

        principal = getattr(request.state, "principal", None)
        auth_source = principal.auth_source.value if principal else "anonymous"
        user_id = principal.id if principal else None
        rid = request_id_var.get("") or getattr(request.state, "request_id", "")
        ip = client_ip(request)

        logger.log(
            log_level,
            "%s %s %d %.1fms [%s] from %s (%s)",
            request.method,
            request.url.path,
            status,
            duration_ms,
            rid,
            ip,
            auth_source,
            extra={
                "request_id": rid,
                "method": request.method,
                "path": request.url.path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
                "client_ip": ip,
                "auth_source": auth_source,
                "user_id": user_id,
            },
        )

        return response
