"""
Gatekeeper — Session & Diagnostics Routes
===========================================

What:  The small set of HTTP endpoints that belong to the gatekeeping layer
       itself rather than to any product feature.

Route Inventory:
    GET /api/csrf-token                  fresh double-submit token (cookie + JSON)
    GET /api/auth/me                     the resolved principal (401 when anonymous)
    GET /api/auth/rate-limit-status      current window usage, not counted
    GET /api/admin/rate-limit-policies   policy catalog listing (admins only)
    DELETE /api/admin/rate-limits/{name} clear one rate-limit counter (admins only)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from gatekeeper.audit import RATE_LIMIT_RESET, emit, request_fields
from gatekeeper.composer import (
    current_principal,
    get_gatekeeper,
    protect,
    require_admin,
    require_user,
)
from gatekeeper.schemas.security import (
    CSRFTokenResponse,
    PolicyListResponse,
    PolicyResponse,
    PrincipalResponse,
    RateLimitResetResponse,
    RateLimitStatusResponse,
)
from gatekeeper.security.csrf import issue_token, set_csrf_cookie
from gatekeeper.security.principal import Principal

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Session"])


@router.get(
    "/csrf-token",
    response_model=CSRFTokenResponse,
    dependencies=[Depends(protect("general"))],
    summary="Issue a CSRF token",
)
async def csrf_token(request: Request, response: Response) -> CSRFTokenResponse:
    """
    Set a new XSRF-TOKEN cookie and return the same value.

    The frontend echoes it in X-CSRF-Token on every state-changing request
    made with the session cookie.
    """
    config = request.app.state.settings
    token = issue_token()
    set_csrf_cookie(
        response,
        token,
        cookie_name=config.csrf_cookie_name,
        secure=config.is_production,
        max_age=config.csrf_cookie_max_age,
    )
    return CSRFTokenResponse(csrfToken=token)


@router.get(
    "/auth/me",
    response_model=PrincipalResponse,
    dependencies=[Depends(protect(dynamic=True))],
    summary="Current user",
)
async def me(principal: Principal = Depends(require_user)) -> PrincipalResponse:
    return PrincipalResponse(**principal.to_dict())


@router.get(
    "/auth/rate-limit-status",
    response_model=RateLimitStatusResponse,
    summary="Rate-limit usage for the caller",
)
async def rate_limit_status(
    request: Request,
    route: str = Query(
        ...,
        description="Route template to inspect, e.g. /api/auth/me",
    ),
    principal: Optional[Principal] = Depends(current_principal),
) -> RateLimitStatusResponse:
    """Reads the dynamic policy's counter for the caller without incrementing it."""
    gatekeeper = get_gatekeeper(request)
    policy = gatekeeper.catalog.select_dynamic(principal)
    status = await gatekeeper.engine.status(request, policy, principal, template=route)

    if status is None:
        return RateLimitStatusResponse(
            policy=policy.name,
            count=0,
            limit=policy.max_requests,
            remaining=policy.max_requests,
            available=False,
        )
    return RateLimitStatusResponse(
        policy=policy.name,
        count=status.count,
        limit=status.limit,
        remaining=status.remaining,
        reset_at=status.reset_at,
    )


@router.get(
    "/admin/rate-limit-policies",
    response_model=PolicyListResponse,
    dependencies=[Depends(protect("api"))],
    summary="List rate-limit policies",
)
async def list_policies(
    request: Request,
    admin: Principal = Depends(require_admin),
) -> PolicyListResponse:
    catalog = get_gatekeeper(request).catalog
    logger.info("Policy catalog listed by %s", admin.id)
    return PolicyListResponse(
        policies=[
            PolicyResponse(
                name=policy.name,
                window_ms=policy.window_ms,
                max_requests=policy.max_requests,
                message=policy.message,
                header_style=policy.header_style.value,
                scope=policy.scope,
                fail_closed=policy.fail_closed,
            )
            for policy in (catalog[name] for name in catalog.names())
        ],
        authenticated_policy=catalog.authenticated_policy,
        anonymous_policy=catalog.anonymous_policy,
    )


@router.delete(
    "/admin/rate-limits/{name}",
    response_model=RateLimitResetResponse,
    dependencies=[Depends(protect("api", csrf=True))],
    summary="Clear a rate-limit counter",
)
async def reset_rate_limit(
    request: Request,
    name: str,
    route: str = Query(..., description="Route template the counter belongs to"),
    subject: str = Query(
        ...,
        description="Key subject, e.g. 203.0.113.7 or user:<id> for per-user policies",
    ),
    admin: Principal = Depends(require_admin),
) -> RateLimitResetResponse:
    """
    Unlock a client by deleting its counter for the current window.

    Unknown policy names → 404.
    """
    gatekeeper = get_gatekeeper(request)
    policy = gatekeeper.catalog[name]
    key = await gatekeeper.engine.reset(request, policy, template=route, subject=subject)

    fields = request_fields(request)
    fields.update({"userId": admin.id, "policy": policy.name, "key": key})
    await emit(gatekeeper.audit_sink, RATE_LIMIT_RESET, fields)
    return RateLimitResetResponse(policy=policy.name, key=key)
