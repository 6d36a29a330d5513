"""
Gatekeeper — Pydantic Response Schemas
========================================

What:  Response models for the routes shipped with the package.
How:   FastAPI validates and serializes handler return values through these
       and renders them in the OpenAPI docs.

Secret user fields never reach these models: PrincipalResponse is built from
a Principal, which is itself built from a stripped user record.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class PrincipalResponse(BaseModel):
    """Returned by GET /api/auth/me."""

    id: str = Field(description="User identifier")
    email: Optional[str] = Field(default=None)
    name: Optional[str] = Field(default=None)
    role: Optional[str] = Field(default=None)
    auth_source: str = Field(description="How the caller authenticated: jwt, session, test")


class CSRFTokenResponse(BaseModel):
    csrfToken: str = Field(description="Copy into the X-CSRF-Token header")


class RateLimitStatusResponse(BaseModel):
    """Current window usage without consuming a request."""

    policy: str
    count: int = Field(ge=0)
    limit: int = Field(ge=0)
    remaining: int = Field(ge=0)
    reset_at: Optional[datetime] = Field(default=None, description="End of the current window (UTC)")
    available: bool = Field(
        default=True,
        description="False when the counter store could not be read",
    )


class RateLimitResetResponse(BaseModel):
    policy: str
    key: str = Field(description="Counter key that was deleted")


class PolicyResponse(BaseModel):
    name: str
    window_ms: int
    max_requests: int
    message: str
    header_style: str
    scope: str
    fail_closed: bool


class PolicyListResponse(BaseModel):
    """Returned by GET /api/admin/rate-limit-policies."""

    policies: List[PolicyResponse]
    authenticated_policy: str
    anonymous_policy: str


class HealthResponse(BaseModel):
    """
    What:  Health check response showing service and dependency status.
    Who:   Returned by GET /health for monitoring and load balancer probes.
    """
    status: str = Field(description="Overall service status: healthy, degraded, unhealthy")
    version: str = Field(description="Application version")
    counter_store: str = Field(description="Counter store: connected, disconnected")
    user_store: str = Field(description="User store: connected, disconnected")
    uptime_seconds: float = Field(description="Seconds since service started")
