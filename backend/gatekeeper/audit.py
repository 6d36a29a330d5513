"""
Gatekeeper — Security Audit Trail
===================================

What:  Structured security events (rate-limit violations, CSRF failures,
       unauthorized and forbidden access) emitted before a rejection is sent,
       plus administrative counter resets.
How:   `SecurityAuditSink.log(event_type, fields)`; the default sink writes one
       JSON-serialisable record per event to the `gatekeeper.security` logger.
Who:   RateLimitEngine, CSRFGuard and the guard dependencies.

Event types:
    RATE_LIMIT_EXCEEDED, BURST_RATE_LIMIT_EXCEEDED, CSRF_VIOLATION,
    UNAUTHORIZED_ACCESS, FORBIDDEN_ACCESS, RATE_LIMITER_UNAVAILABLE,
    RATE_LIMIT_RESET

Audit failures never affect the request: `emit()` logs and drops them.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Tuple

from starlette.requests import Request

from gatekeeper.middleware.request_id import request_id_var

logger = logging.getLogger(__name__)

RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
BURST_RATE_LIMIT_EXCEEDED = "BURST_RATE_LIMIT_EXCEEDED"
CSRF_VIOLATION = "CSRF_VIOLATION"
UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
FORBIDDEN_ACCESS = "FORBIDDEN_ACCESS"
RATE_LIMITER_UNAVAILABLE = "RATE_LIMITER_UNAVAILABLE"
RATE_LIMIT_RESET = "RATE_LIMIT_RESET"


def client_ip(request: Request) -> str:
    """
    Peer address of the request.

    Behind a reverse proxy, run uvicorn with --proxy-headers and
    --forwarded-allow-ips so `request.client` already holds the real client.
    """
    if request.client and request.client.host:
        host = request.client.host
        if host.startswith("::ffff:"):
            host = host[len("::ffff:"):]
        return host
    return "unknown"


def user_agent(request: Request) -> str:
    return request.headers.get("user-agent", "unknown")


def request_fields(request: Request) -> Dict[str, Any]:
    """Fields every security event carries."""
    return {
        "ip": client_ip(request),
        "userAgent": user_agent(request),
        "path": request.url.path,
        "method": request.method,
    }


class SecurityAuditSink(ABC):
    @abstractmethod
    async def log(self, event_type: str, fields: Mapping[str, Any]) -> None:
        """Record one security event."""


class LoggingAuditSink(SecurityAuditSink):
    """Writes security events to the `gatekeeper.security` logger at WARNING."""

    def __init__(self, logger_name: str = "gatekeeper.security"):
        self._logger = logging.getLogger(logger_name)

    async def log(self, event_type: str, fields: Mapping[str, Any]) -> None:
        record = {
            "event": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "request_id": request_id_var.get(""),
            **fields,
        }
        self._logger.warning(
            "%s %s",
            event_type,
            json.dumps(record, default=str, sort_keys=True),
            extra={"security_event": event_type, "security_fields": record},
        )


class RecordingAuditSink(SecurityAuditSink):
    """Keeps events in memory. Used by tests and the local debug setup."""

    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    async def log(self, event_type: str, fields: Mapping[str, Any]) -> None:
        self.events.append((event_type, dict(fields)))

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [fields for name, fields in self.events if name == event_type]


async def emit(sink: SecurityAuditSink, event_type: str, fields: Mapping[str, Any]) -> None:
    try:
        await sink.log(event_type, fields)
    except Exception as e:
        logger.error("Failed to record security event %s: %s", event_type, str(e))
