"""
Gatekeeper — Rate-Limit Engine (fixed window counter)
=======================================================

What:  Decides whether a request fits within a policy's window and produces
       the X-RateLimit-* headers either way.
How:   Clock-aligned fixed windows against a CounterStore:

    1. window_index = floor(now_ms / window_ms)
    2. key = {scope}:{subject}:{route_template}:{window_index}
    3. count = store.get(key)   (missing/unparseable → 0)
    4. count >= max  → reject (429), audit event, Remaining=0
    5. otherwise      → new = store.incr(key, ttl=window_ms)
                        new > max → a concurrent request took the last slot,
                                    reject as in 4
                        else admit, Remaining = max - new

    Requests at a window boundary can see up to 2×max admissions across
    two adjacent windows; fixed windows accept that approximation.

Burst variant:
    Two independent counters (short burst window, longer regular window).
    Both must admit and the first violated names the rejection code. Neither
    counter is incremented when the pre-check rejects. When the regular window
    loses a race after both increments, the burst increment stays counted.

Failure policy:
    Store errors fail open (request admitted, error logged, decision.degraded)
    unless the policy is fail_closed: a RATE_LIMITER_UNAVAILABLE audit event is
    emitted and RateLimiterUnavailableError raised (503).
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from starlette.requests import Request

from gatekeeper.audit import (
    BURST_RATE_LIMIT_EXCEEDED,
    RATE_LIMIT_EXCEEDED,
    RATE_LIMITER_UNAVAILABLE,
    SecurityAuditSink,
    emit,
    request_fields,
)
from gatekeeper.exceptions import RateLimiterUnavailableError
from gatekeeper.ratelimit.policies import BurstPolicy, HeaderStyle, RateLimitPolicy
from gatekeeper.ratelimit.store import CounterStore, parse_count
from gatekeeper.security.principal import Principal

logger = logging.getLogger(__name__)


def route_template(request: Request) -> str:
    """Matched route path (e.g. /api/items/{item_id}); raw path when unrouted."""
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    return path or request.url.path


@dataclass(frozen=True)
class RateLimitDecision:
    admitted: bool
    limit: int
    remaining: int
    reset_at_ms: int
    count: int
    key: str
    window_ms: int
    header_style: HeaderStyle = HeaderStyle.STANDARD
    code: Optional[str] = None
    message: Optional[str] = None
    degraded: bool = False

    @property
    def reset_at(self) -> datetime:
        return datetime.fromtimestamp(self.reset_at_ms / 1000.0, tz=timezone.utc)

    def retry_after(self, now_ms: int) -> int:
        """Whole seconds until the current window closes (at least 1)."""
        return max(1, -(-(self.reset_at_ms - now_ms) // 1000))

    def headers(self) -> Dict[str, str]:
        if self.header_style == HeaderStyle.LEGACY:
            reset = str(-(-self.reset_at_ms // 1000))
        else:
            reset = self.reset_at.isoformat().replace("+00:00", "Z")
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": reset,
        }


@dataclass(frozen=True)
class RateLimitStatus:
    count: int
    limit: int
    remaining: int
    reset_at: datetime
    key: str


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


class RateLimitEngine:
    """
    Fixed-window admission control.

    Args:
        store: Shared counter store.
        audit_sink: Receives a RATE_LIMIT_EXCEEDED, BURST_RATE_LIMIT_EXCEEDED or
            RATE_LIMITER_UNAVAILABLE event before every rejection.
        clock: Returns the current wall-clock time in epoch milliseconds.
    """

    def __init__(
        self,
        store: CounterStore,
        audit_sink: SecurityAuditSink,
        clock: Callable[[], int] = _wall_clock_ms,
    ):
        self.store = store
        self.audit_sink = audit_sink
        self.clock = clock
        if not store.atomic_increment:
            logger.warning(
                "%s has no atomic increment; concurrent requests in one window "
                "may be under-counted",
                type(store).__name__,
            )

    # ── Key derivation ────────────────────────────────────────────────────

    @staticmethod
    def window_index(now_ms: int, window_ms: int) -> int:
        return now_ms // window_ms

    def key_for(
        self,
        request: Request,
        policy: RateLimitPolicy,
        principal: Optional[Principal] = None,
        now_ms: Optional[int] = None,
        template: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> str:
        """`subject` replaces the policy's key generator (admin tooling)."""
        now_ms = self.clock() if now_ms is None else now_ms
        if subject is None:
            subject = policy.key_generator(request, principal)
        template = template if template is not None else route_template(request)
        return f"{policy.scope}:{subject}:{template}:{self.window_index(now_ms, policy.window_ms)}"

    @staticmethod
    def _window_end_ms(now_ms: int, window_ms: int) -> int:
        return (now_ms // window_ms + 1) * window_ms

    # ── Admission ─────────────────────────────────────────────────────────

    async def admit(
        self,
        request: Request,
        policy: RateLimitPolicy,
        principal: Optional[Principal] = None,
    ) -> RateLimitDecision:
        now_ms = self.clock()
        key = self.key_for(request, policy, principal, now_ms)
        reset_at_ms = self._window_end_ms(now_ms, policy.window_ms)

        try:
            count = parse_count(await self.store.get(key))
            if count < policy.max_requests:
                new_count = await self.store.incr(key, policy.window_ms)
            else:
                new_count = None
        except Exception as e:
            return await self._store_failure(request, policy, key, reset_at_ms, e)

        if new_count is not None and new_count <= policy.max_requests:
            return RateLimitDecision(
                admitted=True,
                limit=policy.max_requests,
                remaining=max(0, policy.max_requests - new_count),
                reset_at_ms=reset_at_ms,
                count=new_count,
                key=key,
                window_ms=policy.window_ms,
                header_style=policy.header_style,
            )

        observed = count if new_count is None else new_count - 1
        return await self._reject(
            request, policy, key, reset_at_ms, observed, RATE_LIMIT_EXCEEDED, policy.message
        )

    async def admit_burst(
        self,
        request: Request,
        burst: BurstPolicy,
        principal: Optional[Principal] = None,
    ) -> RateLimitDecision:
        now_ms = self.clock()
        # Burst counters are per subject, not per route.
        burst_key = self.key_for(request, burst.burst, principal, now_ms, template="burst")
        regular_key = self.key_for(request, burst.regular, principal, now_ms, template="regular")
        burst_reset = self._window_end_ms(now_ms, burst.burst.window_ms)
        regular_reset = self._window_end_ms(now_ms, burst.regular.window_ms)

        try:
            burst_count = parse_count(await self.store.get(burst_key))
            regular_count = parse_count(await self.store.get(regular_key))
        except Exception as e:
            return await self._store_failure(
                request, burst.regular, regular_key, regular_reset, e
            )

        if burst_count >= burst.burst.max_requests:
            return await self._reject(
                request, burst.burst, burst_key, burst_reset, burst_count,
                BURST_RATE_LIMIT_EXCEEDED, burst.burst.message,
            )
        if regular_count >= burst.regular.max_requests:
            return await self._reject(
                request, burst.regular, regular_key, regular_reset, regular_count,
                RATE_LIMIT_EXCEEDED, burst.regular.message,
            )

        try:
            new_burst = await self.store.incr(burst_key, burst.burst.window_ms)
            new_regular = await self.store.incr(regular_key, burst.regular.window_ms)
        except Exception as e:
            return await self._store_failure(
                request, burst.regular, regular_key, regular_reset, e
            )

        # Lost a race for the last slot in either window
        if new_burst > burst.burst.max_requests:
            return await self._reject(
                request, burst.burst, burst_key, burst_reset, new_burst - 1,
                BURST_RATE_LIMIT_EXCEEDED, burst.burst.message,
            )
        if new_regular > burst.regular.max_requests:
            return await self._reject(
                request, burst.regular, regular_key, regular_reset, new_regular - 1,
                RATE_LIMIT_EXCEEDED, burst.regular.message,
            )

        return RateLimitDecision(
            admitted=True,
            limit=burst.regular.max_requests,
            remaining=max(0, burst.regular.max_requests - new_regular),
            reset_at_ms=regular_reset,
            count=new_regular,
            key=regular_key,
            window_ms=burst.regular.window_ms,
            header_style=burst.regular.header_style,
        )

    # ── Diagnostics ───────────────────────────────────────────────────────

    async def status(
        self,
        request: Request,
        policy: RateLimitPolicy,
        principal: Optional[Principal] = None,
        template: Optional[str] = None,
    ) -> Optional[RateLimitStatus]:
        """
        Current window's count without incrementing; None if the store fails.

        `template` reads the counter of another route (defaults to this one).
        """
        now_ms = self.clock()
        key = self.key_for(request, policy, principal, now_ms, template=template)
        try:
            count = parse_count(await self.store.get(key))
        except Exception as e:
            logger.error("Rate-limit status lookup failed for %s: %s", key, str(e))
            return None
        reset_at_ms = self._window_end_ms(now_ms, policy.window_ms)
        return RateLimitStatus(
            count=count,
            limit=policy.max_requests,
            remaining=max(0, policy.max_requests - count),
            reset_at=datetime.fromtimestamp(reset_at_ms / 1000.0, tz=timezone.utc),
            key=key,
        )

    async def reset(
        self,
        request: Request,
        policy: RateLimitPolicy,
        principal: Optional[Principal] = None,
        template: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> str:
        """
        Delete the current window's counter; returns the key.

        The counter belongs to the caller unless `subject` names another one
        (an IP for client_ip policies, `user:<id>` for per-user policies).
        """
        key = self.key_for(request, policy, principal, template=template, subject=subject)
        await self.store.delete(key)
        logger.info("Rate-limit counter cleared: %s", key)
        return key

    # ── Outcomes ──────────────────────────────────────────────────────────

    async def _reject(
        self,
        request: Request,
        policy: RateLimitPolicy,
        key: str,
        reset_at_ms: int,
        count: int,
        code: str,
        message: str,
    ) -> RateLimitDecision:
        fields = request_fields(request)
        fields.update(
            {
                "limit": policy.max_requests,
                "window": policy.window_ms,
                "count": count,
                "policy": policy.name,
            }
        )
        await emit(self.audit_sink, code, fields)
        return RateLimitDecision(
            admitted=False,
            limit=policy.max_requests,
            remaining=0,
            reset_at_ms=reset_at_ms,
            count=count,
            key=key,
            window_ms=policy.window_ms,
            header_style=policy.header_style,
            code=code,
            message=message,
        )

    async def _store_failure(
        self,
        request: Request,
        policy: RateLimitPolicy,
        key: str,
        reset_at_ms: int,
        error: Exception,
    ) -> RateLimitDecision:
        if policy.fail_closed:
            logger.error(
                "Counter store failed for fail-closed policy '%s' (%s): %s",
                policy.name, key, str(error),
            )
            fields = request_fields(request)
            fields.update({"policy": policy.name, "key": key})
            await emit(self.audit_sink, RATE_LIMITER_UNAVAILABLE, fields)
            raise RateLimiterUnavailableError(context={"policy": policy.name}) from error

        logger.error(
            "Counter store failed for policy '%s' (%s), admitting request: %s",
            policy.name, key, str(error),
        )
        return RateLimitDecision(
            admitted=True,
            limit=policy.max_requests,
            remaining=policy.max_requests,
            reset_at_ms=reset_at_ms,
            count=0,
            key=key,
            window_ms=policy.window_ms,
            header_style=policy.header_style,
            degraded=True,
        )
