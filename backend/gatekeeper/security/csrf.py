"""
Gatekeeper — CSRF Protection (double-submit cookie)
=====================================================

What:  Rejects cookie-authenticated state-changing requests whose X-CSRF-Token
       header does not equal the XSRF-TOKEN cookie.
How:   Stateless comparison with hmac.compare_digest; no store, no network.

Exemptions (the only two):
    1. The principal authenticated with a bearer token (jwt or test). Browsers
       never attach Authorization headers on their own.
    2. ALLOW_NO_CSRF=true, a development switch refused in production.

Token issuing:
    - CSRFCookieMiddleware sets the cookie on responses under configured path
      prefixes when the request arrived without one.
    - GET /api/csrf-token (routes/session.py) hands out a fresh token.
The cookie is deliberately readable from JavaScript (no HttpOnly): the
frontend copies it into the header.
"""

import hmac
import logging
import secrets
from typing import Iterable, Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from gatekeeper.audit import CSRF_VIOLATION, SecurityAuditSink, emit, request_fields
from gatekeeper.exceptions import CSRFTokenError
from gatekeeper.security.principal import Principal

logger = logging.getLogger(__name__)

CSRF_COOKIE = "XSRF-TOKEN"
CSRF_HEADER = "X-CSRF-Token"


def issue_token() -> str:
    """32 random bytes, URL-safe base64 without padding."""
    return secrets.token_urlsafe(32)


def set_csrf_cookie(
    response: Response,
    token: str,
    *,
    cookie_name: str = CSRF_COOKIE,
    secure: bool = False,
    max_age: int = 86400,
) -> None:
    response.set_cookie(
        key=cookie_name,
        value=token,
        max_age=max_age,
        path="/",
        secure=secure,
        httponly=False,
        samesite="lax",
    )


class CSRFGuard:
    """
    Double-submit token check.

    Args:
        audit_sink: Receives a CSRF_VIOLATION event before every rejection.
        allow_bypass: Development flag (ALLOW_NO_CSRF).
    """

    def __init__(
        self,
        audit_sink: SecurityAuditSink,
        *,
        allow_bypass: bool = False,
        cookie_name: str = CSRF_COOKIE,
        header_name: str = CSRF_HEADER,
    ):
        self.audit_sink = audit_sink
        self.allow_bypass = allow_bypass
        self.cookie_name = cookie_name
        self.header_name = header_name
        if allow_bypass:
            logger.warning("CSRF protection is bypassed (ALLOW_NO_CSRF=true)")

    def is_exempt(self, principal: Optional[Principal]) -> bool:
        if principal is not None and principal.auth_source.is_bearer:
            return True
        return self.allow_bypass

    def failure_reason(self, request: Request) -> Optional[str]:
        """Return why the token pair is invalid, or None when it matches."""
        header_token = request.headers.get(self.header_name)
        cookie_token = request.cookies.get(self.cookie_name)
        if not header_token:
            return "missing_header"
        if not cookie_token:
            return "missing_cookie"
        if not hmac.compare_digest(header_token.encode("utf-8"), cookie_token.encode("utf-8")):
            return "mismatch"
        return None

    async def enforce(self, request: Request, principal: Optional[Principal]) -> None:
        """
        Pass silently or raise CSRFTokenError (403).

        The audit event records which half of the pair was wrong, never the
        token values.
        """
        if self.is_exempt(principal):
            return

        reason = self.failure_reason(request)
        if reason is None:
            return

        fields = request_fields(request)
        fields["reason"] = reason
        fields["userId"] = principal.id if principal else None
        await emit(self.audit_sink, CSRF_VIOLATION, fields)
        raise CSRFTokenError(reason=reason, context={"path": request.url.path})


class CSRFCookieMiddleware(BaseHTTPMiddleware):
    """
    Issues an XSRF-TOKEN cookie on responses under `paths` when the request
    carried none, so login/register pages can submit their first POST.
    """

    def __init__(
        self,
        app,
        paths: Iterable[str] = ("/api/auth",),
        cookie_name: str = CSRF_COOKIE,
        secure: bool = False,
        max_age: int = 86400,
    ):
        super().__init__(app)
        self.paths = tuple(paths)
        self.cookie_name = cookie_name
        self.secure = secure
        self.max_age = max_age

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        needs_cookie = (
            self.cookie_name not in request.cookies
            and any(request.url.path.startswith(p) for p in self.paths)
        )
        response = await call_next(request)

        if needs_cookie:
            set_csrf_cookie(
                response,
                issue_token(),
                cookie_name=self.cookie_name,
                secure=self.secure,
                max_age=self.max_age,
            )
        return response
