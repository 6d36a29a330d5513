"""
Gatekeeper — Composer
=======================

What:  Wires identity, CSRF and rate limiting into FastAPI dependencies.
How:   One `Gatekeeper` instance per app, stored on `app.state.gatekeeper` by
       create_app(). Route-level dependencies look it up from the request, so
       tests can inject stores, catalogs and clocks without touching globals.

Order inside protect() (always the same):
    1. identity attach     (never fails; may leave the request anonymous)
    2. CSRF                (only when csrf=True; 403 on failure)
    3. rate limit          (burst first, then the policy; 429 / 503)
       skipped for allowlisted IPs and when neither a policy nor a burst is set

Usage:
    @router.post("/api/auth/login", dependencies=[Depends(protect("login", csrf=True))])
    async def login(...): ...

    @router.get("/api/items")
    async def items(principal: Optional[Principal] = Depends(protect(dynamic=True))): ...

    @router.delete("/api/admin/users/{user_id}")
    async def delete_user(admin: Principal = Depends(require_admin)): ...
"""

import logging
from typing import Callable, Iterable, Optional, Union

from fastapi import Request, Response

from gatekeeper.audit import (
    FORBIDDEN_ACCESS,
    UNAUTHORIZED_ACCESS,
    LoggingAuditSink,
    SecurityAuditSink,
    client_ip,
    emit,
    request_fields,
)
from gatekeeper.config import Settings, settings as default_settings
from gatekeeper.exceptions import (
    ForbiddenError,
    RateLimitExceededError,
    UnauthorizedError,
)
from gatekeeper.ratelimit.engine import RateLimitDecision, RateLimitEngine
from gatekeeper.ratelimit.policies import (
    MINUTE_MS,
    BurstPolicy,
    PolicyCatalog,
    RateLimitPolicy,
    user_id_key,
)
from gatekeeper.ratelimit.store import CounterStore, create_counter_store
from gatekeeper.security.csrf import CSRFGuard
from gatekeeper.security.identity import IdentityResolver, development_test_tokens
from gatekeeper.security.principal import Principal
from gatekeeper.services.user_store import InMemoryUserStore, SqlUserStore, UserStore

logger = logging.getLogger(__name__)


class Gatekeeper:
    """Holds the collaborators shared by every protected route."""

    def __init__(
        self,
        resolver: IdentityResolver,
        csrf_guard: CSRFGuard,
        engine: RateLimitEngine,
        catalog: PolicyCatalog,
        audit_sink: SecurityAuditSink,
        ip_allowlist: Iterable[str] = (),
    ):
        self.resolver = resolver
        self.csrf_guard = csrf_guard
        self.engine = engine
        self.catalog = catalog
        self.audit_sink = audit_sink
        self.ip_allowlist = frozenset(ip_allowlist)

    @property
    def counter_store(self) -> CounterStore:
        return self.engine.store

    @property
    def user_store(self) -> UserStore:
        return self.resolver.user_store

    def is_allowlisted(self, request: Request) -> bool:
        return client_ip(request) in self.ip_allowlist

    async def limit(
        self,
        request: Request,
        response: Response,
        policy: Optional[RateLimitPolicy],
        burst: Optional[BurstPolicy] = None,
        principal: Optional[Principal] = None,
    ) -> Optional[RateLimitDecision]:
        """Apply the burst pair then the policy; set headers or raise."""
        if policy is None and burst is None:
            return None
        if self.is_allowlisted(request):
            logger.debug("Rate limit skipped for allowlisted %s", client_ip(request))
            return None

        decision = None
        if burst is not None:
            decision = await self.engine.admit_burst(request, burst, principal)
            self._raise_if_rejected(decision)
        if policy is not None:
            decision = await self.engine.admit(request, policy, principal)
            self._raise_if_rejected(decision)

        response.headers.update(decision.headers())
        return decision

    def _raise_if_rejected(self, decision: RateLimitDecision) -> None:
        if decision.admitted:
            return
        raise RateLimitExceededError(
            message=decision.message or "Too many requests",
            code=decision.code or "RATE_LIMIT_EXCEEDED",
            headers=decision.headers(),
            retry_after=decision.retry_after(self.engine.clock()),
            context={"key": decision.key, "count": decision.count},
        )

    async def close(self) -> None:
        await self.engine.store.close()


def _create_user_store(config: Settings) -> UserStore:
    if config.user_store_backend == "memory":
        logger.warning("User store: in-memory (no users until added)")
        return InMemoryUserStore()
    return SqlUserStore()


def build_gatekeeper(
    config: Optional[Settings] = None,
    *,
    user_store: Optional[UserStore] = None,
    counter_store: Optional[CounterStore] = None,
    catalog: Optional[PolicyCatalog] = None,
    audit_sink: Optional[SecurityAuditSink] = None,
    clock: Optional[Callable[[], int]] = None,
) -> Gatekeeper:
    """
    Assemble a Gatekeeper from settings, with every collaborator overridable.

    Fail-closed policy names from RATE_LIMIT_FAIL_CLOSED_POLICIES are applied
    to the catalog here, so an unknown name fails at startup.
    """
    config = config or default_settings
    audit_sink = audit_sink or LoggingAuditSink()
    user_store = user_store or _create_user_store(config)
    counter_store = counter_store or create_counter_store(config.counter_backend)

    catalog = catalog or PolicyCatalog()
    if config.fail_closed_policies:
        catalog = catalog.with_fail_closed(config.fail_closed_policies)

    test_tokens = None
    if config.enable_test_tokens and not config.is_production:
        test_tokens = development_test_tokens()

    resolver = IdentityResolver(
        user_store,
        jwt_secret=config.jwt_secret,
        algorithms=(config.jwt_algorithm,),
        test_tokens=test_tokens,
    )
    csrf_guard = CSRFGuard(
        audit_sink,
        allow_bypass=config.allow_no_csrf and not config.is_production,
        cookie_name=config.csrf_cookie_name,
        header_name=config.csrf_header_name,
    )
    engine_kwargs = {"clock": clock} if clock is not None else {}
    engine = RateLimitEngine(counter_store, audit_sink, **engine_kwargs)

    return Gatekeeper(
        resolver=resolver,
        csrf_guard=csrf_guard,
        engine=engine,
        catalog=catalog,
        audit_sink=audit_sink,
        ip_allowlist=config.ip_allowlist,
    )


def get_gatekeeper(request: Request) -> Gatekeeper:
    return request.app.state.gatekeeper


# ══════════════════════════════════════════════════════════════════════════
# Route dependencies
# ══════════════════════════════════════════════════════════════════════════

def protect(
    policy: Optional[str] = "general",
    *,
    csrf: bool = False,
    dynamic: bool = False,
    burst: Union[BurstPolicy, bool, None] = None,
    **overrides,
):
    """
    Build a dependency that identifies, CSRF-checks and rate-limits a route.

    Args:
        policy: Catalog policy name; unknown names get the `general` limits.
            None disables the single-window limit.
        csrf: Enforce the double-submit token for cookie-authenticated callers.
        dynamic: Choose `authenticated` or `general` from the resolved identity
            instead of `policy`.
        burst: A BurstPolicy, or True for the default 10 s / 5 + 60 s / 10 pair.
        **overrides: RateLimitPolicy fields replaced for this route
            (window_ms, max_requests, message, key_generator, header_style, ...).

    The dependency returns the Principal (or None).
    """
    burst_policy = BurstPolicy.create() if burst is True else (burst or None)

    async def dependency(request: Request, response: Response) -> Optional[Principal]:
        gatekeeper = get_gatekeeper(request)
        principal = await gatekeeper.resolver.attach(request)

        if csrf:
            await gatekeeper.csrf_guard.enforce(request, principal)

        if dynamic:
            resolved = gatekeeper.catalog.select_dynamic(principal).with_overrides(**overrides)
        elif policy is None:
            resolved = None
        else:
            resolved = gatekeeper.catalog.endpoint(policy, **overrides)

        await gatekeeper.limit(request, response, resolved, burst_policy, principal)
        return principal

    return dependency


def user_limit(
    window_ms: int = 15 * MINUTE_MS,
    max_requests: int = 100,
    message: str = "Too many requests for user",
):
    """Per-user limiter; anonymous callers pass through untouched."""
    policy = RateLimitPolicy(
        name="user",
        window_ms=window_ms,
        max_requests=max_requests,
        message=message,
        key_generator=user_id_key,
        scope="user_rate_limit",
    )

    async def dependency(request: Request, response: Response) -> Optional[Principal]:
        gatekeeper = get_gatekeeper(request)
        principal = await gatekeeper.resolver.attach(request)
        if principal is not None:
            await gatekeeper.limit(request, response, policy, principal=principal)
        return principal

    return dependency


async def current_principal(request: Request) -> Optional[Principal]:
    return await get_gatekeeper(request).resolver.attach(request)


async def _unauthorized(gatekeeper: Gatekeeper, request: Request) -> UnauthorizedError:
    await emit(gatekeeper.audit_sink, UNAUTHORIZED_ACCESS, request_fields(request))
    return UnauthorizedError(context={"path": request.url.path})


async def _forbidden(
    gatekeeper: Gatekeeper, request: Request, principal: Principal, required: str
) -> ForbiddenError:
    fields = request_fields(request)
    fields.update({"userId": principal.id, "role": principal.role, "requiredRole": required})
    await emit(gatekeeper.audit_sink, FORBIDDEN_ACCESS, fields)
    return ForbiddenError(context={"path": request.url.path, "user_id": principal.id})


async def require_user(request: Request) -> Principal:
    gatekeeper = get_gatekeeper(request)
    principal = await gatekeeper.resolver.attach(request)
    if principal is None:
        raise await _unauthorized(gatekeeper, request)
    return principal


require_session = require_user


def require_role(role: str):
    """401 when anonymous, 403 unless the principal's role is exactly `role`."""

    async def dependency(request: Request) -> Principal:
        gatekeeper = get_gatekeeper(request)
        principal = await gatekeeper.resolver.attach(request)
        if principal is None:
            raise await _unauthorized(gatekeeper, request)
        if principal.role != role:
            raise await _forbidden(gatekeeper, request, principal, role)
        return principal

    return dependency


async def require_admin(request: Request) -> Principal:
    gatekeeper = get_gatekeeper(request)
    principal = await gatekeeper.resolver.attach(request)
    if principal is None:
        raise await _unauthorized(gatekeeper, request)
    if not principal.is_admin:
        raise await _forbidden(gatekeeper, request, principal, "admin")
    return principal
