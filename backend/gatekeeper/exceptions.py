"""
Gatekeeper — Custom Exception Hierarchy
=========================================

What:  Application-specific exceptions for every gatekeeping outcome.
How:   Each exception class carries a message and optional context dict.
       Global exception handlers (registered in main.py) catch these and
       return structured JSON error responses with the correct status code.
Who:   Raised by the composer, guards and rate-limit engine.

Exception Hierarchy:
    GatekeeperError (base)
    ├── AuthenticationIndeterminate  (internal; the resolver always swallows it)
    ├── UnauthorizedError            → 401 Unauthorized
    ├── ForbiddenError               → 403 Forbidden
    │   └── CSRFTokenError           → 403 Invalid CSRF token
    ├── RateLimitExceededError       → 429 Too Many Requests
    ├── RateLimiterUnavailableError  → 503 Service Unavailable (fail-closed policies)
    ├── CounterStoreError            (backend failure; handled inside the engine)
    └── UnknownPolicyError           (programming error: unnamed policy requested)
"""

from typing import Any, Dict, Optional


class GatekeeperError(Exception):
    """
    Base exception for all gatekeeping errors.

    Attributes:
        message:  Client-facing error description (safe to return in a response)
        context:  Additional debug info (logged, NOT returned to the client)
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class AuthenticationIndeterminate(GatekeeperError):
    """
    Identity could not be established because a collaborator failed.

    Never surfaces to clients: the resolver logs it and continues as anonymous.
    """

    def __init__(
        self,
        message: str = "Identity could not be determined",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class UnauthorizedError(GatekeeperError):
    """No principal where a guard requires one. HTTP 401."""

    def __init__(
        self,
        message: str = "Unauthorized",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class ForbiddenError(GatekeeperError):
    """A principal is present but not allowed (role mismatch). HTTP 403."""

    def __init__(
        self,
        message: str = "Forbidden",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class CSRFTokenError(ForbiddenError):
    """
    Double-submit token check failed. HTTP 403.

    The reason (missing_header, missing_cookie, mismatch) goes into the
    audit trail only; the response body is always the same.
    """

    def __init__(
        self,
        reason: str = "mismatch",
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["reason"] = reason
        super().__init__(message="Invalid CSRF token", context=ctx)
        self.reason = reason


class RateLimitExceededError(GatekeeperError):
    """
    A rate-limit policy rejected the request. HTTP 429.

    Carries the machine-readable code (RATE_LIMIT_EXCEEDED or
    BURST_RATE_LIMIT_EXCEEDED) and the X-RateLimit-* headers computed for
    the rejection, so the handler can echo them on the 429 response.
    """

    def __init__(
        self,
        message: str = "Too many requests",
        code: str = "RATE_LIMIT_EXCEEDED",
        headers: Optional[Dict[str, str]] = None,
        retry_after: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.code = code
        self.headers = dict(headers or {})
        self.retry_after = retry_after


class RateLimiterUnavailableError(GatekeeperError):
    """
    The counter store failed while evaluating a fail-closed policy. HTTP 503.
    """

    code = "RATE_LIMITER_UNAVAILABLE"

    def __init__(
        self,
        message: str = "Rate limiting is temporarily unavailable. Please try again later.",
        retry_after: int = 30,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after


class CounterStoreError(GatekeeperError):
    """Wraps a counter-store backend failure (connection refused, timeout, ...)."""

    def __init__(
        self,
        message: str = "Counter store operation failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class UnknownPolicyError(GatekeeperError, KeyError):
    """Raised when a route asks the catalog for a policy name it does not hold."""

    def __init__(self, name: str):
        super().__init__(
            message=f"No rate-limit policy named '{name}'",
            context={"policy": name},
        )
        self.name = name

    def __str__(self) -> str:
        return self.message
