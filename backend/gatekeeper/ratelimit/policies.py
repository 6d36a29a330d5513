"""
Gatekeeper — Rate-Limit Policies
==================================

What:  Immutable rate-limit profiles and the catalog that names them.
How:   `RateLimitPolicy` is a frozen dataclass; call-site overrides produce a new
       policy via `with_overrides()`. `PolicyCatalog` is a read-only mapping
       built once at startup and injected into the Gatekeeper.

Default profiles:
    ┌────────────────────┬─────────┬─────┬─────────────────────────────────────┐
    │ name               │ window  │ max │ keyed by                            │
    ├────────────────────┼─────────┼─────┼─────────────────────────────────────┤
    │ login              │ 15 min  │  30 │ client IP                           │
    │ register           │ 60 min  │   3 │ client IP                           │
    │ password-reset     │ 60 min  │   3 │ client IP                           │
    │ email-verification │ 60 min  │   5 │ client IP                           │
    │ oauth              │ 15 min  │  50 │ client IP                           │
    │ api                │ 15 min  │ 100 │ client IP                           │
    │ translation        │  1 min  │  20 │ user id + IP, else client IP        │
    │ general            │ 15 min  │ 200 │ client IP (anonymous dynamic tier)  │
    │ authenticated      │ 15 min  │ 500 │ user id (authenticated dynamic tier)│
    └────────────────────┴─────────┴─────┴─────────────────────────────────────┘

Key generators are plain functions `(Request, Principal | None) -> str`.
"""

from dataclasses import dataclass, replace
from enum import Enum
from types import MappingProxyType
from typing import Callable, Iterable, Iterator, List, Mapping, Optional

from starlette.requests import Request

from gatekeeper.audit import client_ip
from gatekeeper.exceptions import UnknownPolicyError
from gatekeeper.security.principal import Principal

KeyGenerator = Callable[[Request, Optional[Principal]], str]

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS


def client_ip_key(request: Request, principal: Optional[Principal] = None) -> str:
    return client_ip(request)


def user_id_key(request: Request, principal: Optional[Principal] = None) -> str:
    """Per-user counter; anonymous callers fall back to their IP."""
    if principal is not None:
        return f"user:{principal.id}"
    return f"ip:{client_ip(request)}"


def user_or_ip_key(request: Request, principal: Optional[Principal] = None) -> str:
    """user:IP composite for authenticated callers, ip:IP otherwise."""
    ip = client_ip(request)
    if principal is not None:
        return f"user:{principal.id}:{ip}"
    return f"ip:{ip}"


class HeaderStyle(str, Enum):
    STANDARD = "standard"  # X-RateLimit-Reset as ISO-8601
    LEGACY = "legacy"      # X-RateLimit-Reset as epoch seconds


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    window_ms: int
    max_requests: int
    message: str = "Too many requests"
    key_generator: KeyGenerator = client_ip_key
    header_style: HeaderStyle = HeaderStyle.STANDARD
    scope: str = "rate_limit"
    # Reject with 503 instead of admitting when the counter store fails
    fail_closed: bool = False

    def __post_init__(self):
        if self.window_ms <= 0:
            raise ValueError(f"policy '{self.name}': window_ms must be positive")
        if self.max_requests < 0:
            raise ValueError(f"policy '{self.name}': max_requests must not be negative")

    def with_overrides(self, **overrides) -> "RateLimitPolicy":
        return replace(self, **overrides) if overrides else self

    @property
    def window_seconds(self) -> float:
        return self.window_ms / 1000.0


@dataclass(frozen=True)
class BurstPolicy:
    """A short burst window and a longer regular window; both must admit."""

    burst: RateLimitPolicy
    regular: RateLimitPolicy

    @classmethod
    def create(
        cls,
        window_ms: int = MINUTE_MS,
        max_requests: int = 10,
        burst_window_ms: int = 10 * 1000,
        burst_max: int = 5,
        message: str = "Too many requests in burst",
        key_generator: KeyGenerator = client_ip_key,
        name: str = "burst",
    ) -> "BurstPolicy":
        return cls(
            burst=RateLimitPolicy(
                name=f"{name}:burst",
                window_ms=burst_window_ms,
                max_requests=burst_max,
                message=message,
                key_generator=key_generator,
                scope="burst",
            ),
            regular=RateLimitPolicy(
                name=f"{name}:regular",
                window_ms=window_ms,
                max_requests=max_requests,
                message="Too many requests",
                key_generator=key_generator,
                scope="burst",
            ),
        )


DEFAULT_POLICIES = (
    RateLimitPolicy("login", 15 * MINUTE_MS, 30, "Too many login attempts"),
    RateLimitPolicy("register", HOUR_MS, 3, "Too many registration attempts"),
    RateLimitPolicy("password-reset", HOUR_MS, 3, "Too many password reset attempts"),
    RateLimitPolicy("email-verification", HOUR_MS, 5, "Too many email verification attempts"),
    RateLimitPolicy("oauth", 15 * MINUTE_MS, 50, "Too many OAuth attempts"),
    RateLimitPolicy("api", 15 * MINUTE_MS, 100, "Too many API requests"),
    RateLimitPolicy(
        "translation",
        MINUTE_MS,
        20,
        "Too many translation requests",
        key_generator=user_or_ip_key,
    ),
    RateLimitPolicy("general", 15 * MINUTE_MS, 200, "Too many requests"),
    RateLimitPolicy(
        "authenticated",
        15 * MINUTE_MS,
        500,
        "Too many requests for authenticated user",
        key_generator=user_id_key,
    ),
)


class PolicyCatalog(Mapping):
    """
    Read-only name → RateLimitPolicy mapping.

    Args:
        policies: Policies to register; later entries replace earlier ones
            with the same name.
        authenticated_policy / anonymous_policy: Names used by select_dynamic().
    """

    def __init__(
        self,
        policies: Iterable[RateLimitPolicy] = DEFAULT_POLICIES,
        authenticated_policy: str = "authenticated",
        anonymous_policy: str = "general",
    ):
        table = {}
        for policy in policies:
            table[policy.name] = policy
        self._policies: Mapping[str, RateLimitPolicy] = MappingProxyType(table)
        self.authenticated_policy = authenticated_policy
        self.anonymous_policy = anonymous_policy
        for name in (authenticated_policy, anonymous_policy):
            if name not in self._policies:
                raise UnknownPolicyError(name)

    def __getitem__(self, name: str) -> RateLimitPolicy:
        try:
            return self._policies[name]
        except KeyError:
            raise UnknownPolicyError(name) from None

    def __iter__(self) -> Iterator[str]:
        return iter(self._policies)

    def __len__(self) -> int:
        return len(self._policies)

    def names(self) -> List[str]:
        return sorted(self._policies)

    def endpoint(self, name: str, **overrides) -> RateLimitPolicy:
        """Named policy merged with call-site overrides; unknown names use the anonymous default."""
        base = self._policies.get(name)
        if base is None:
            base = replace(self._policies[self.anonymous_policy], name=name)
        return base.with_overrides(**overrides)

    def select_dynamic(self, principal: Optional[Principal]) -> RateLimitPolicy:
        if principal is not None:
            return self._policies[self.authenticated_policy]
        return self._policies[self.anonymous_policy]

    def with_fail_closed(self, names: Iterable[str]) -> "PolicyCatalog":
        names = set(names)
        for name in names:
            if name not in self._policies:
                raise UnknownPolicyError(name)
        return PolicyCatalog(
            [replace(p, fail_closed=True) if p.name in names else p for p in self._policies.values()],
            authenticated_policy=self.authenticated_policy,
            anonymous_policy=self.anonymous_policy,
        )
