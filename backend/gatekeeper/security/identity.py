"""
Gatekeeper — Identity Resolver
================================

What:  Turns a request into a Principal (or None) without ever raising.
How:   Bearer token first, then the cookie session:

    1. Authorization: Bearer <token>   (scheme matched case-insensitively)
       a. development test tokens (only when explicitly enabled)
       b. JWT verified with python-jose against the shared secret; any JWTError
          simply disqualifies the bearer path
       c. user id taken from the `id`, `sub` or `user.id` claim, looked up in
          the UserStore → auth_source=jwt
    2. Session (Starlette SessionMiddleware): `userId` or `user._id`
       → auth_source=session
    3. Any collaborator failure is logged and resolution ends as anonymous.

Who:   The composer's protect() dependency and the require_* guards, through
       `attach()`, which resolves at most once per request.
"""

import logging
import re
from typing import Any, Iterable, Mapping, Optional

from jose import JWTError, jwt
from starlette.requests import Request

from gatekeeper.exceptions import AuthenticationIndeterminate
from gatekeeper.security.principal import AuthSource, Principal
from gatekeeper.services.user_store import UserStore

logger = logging.getLogger(__name__)

_BEARER = re.compile(r"^Bearer\s+(\S+)\s*$", re.IGNORECASE)

# Fixed development tokens. Verification is skipped for these, so they are
# only honoured when ENABLE_TEST_TOKENS is set outside production.
DEVELOPMENT_TEST_TOKENS = ("test-auth-token-12345", "test-access-token-12345")
DEVELOPMENT_TEST_PRINCIPAL = Principal(
    id="6888c9391815657294913e8d",
    auth_source=AuthSource.TEST,
    email="dev@localhost",
    name="Development User",
    role="user",
)


def development_test_tokens() -> Mapping[str, Principal]:
    return {token: DEVELOPMENT_TEST_PRINCIPAL for token in DEVELOPMENT_TEST_TOKENS}


def bearer_token(request: Request) -> Optional[str]:
    match = _BEARER.match(request.headers.get("authorization", ""))
    return match.group(1) if match else None


def user_id_from_claims(claims: Mapping[str, Any]) -> Optional[str]:
    """Accepts the three claim shapes issued by the auth service over time."""
    for value in (claims.get("id"), claims.get("sub")):
        if value:
            return str(value)
    nested = claims.get("user")
    if isinstance(nested, Mapping) and nested.get("id"):
        return str(nested["id"])
    return None


def session_user_id(request: Request) -> Optional[str]:
    if "session" not in request.scope:
        return None
    session = request.session
    if session.get("userId"):
        return str(session["userId"])
    user = session.get("user")
    if isinstance(user, Mapping) and user.get("_id"):
        return str(user["_id"])
    return None


class IdentityResolver:
    """
    Resolves the caller of a request.

    Args:
        user_store: Collaborator used for every id → user lookup.
        jwt_secret: Shared HMAC secret. Empty disables the bearer path.
        algorithms: Accepted JWT algorithms.
        test_tokens: token → Principal map that bypasses verification. Empty
            unless the development flag is on (see build_gatekeeper()).
    """

    def __init__(
        self,
        user_store: UserStore,
        jwt_secret: str,
        algorithms: Iterable[str] = ("HS256",),
        test_tokens: Optional[Mapping[str, Principal]] = None,
    ):
        self.user_store = user_store
        self._jwt_secret = jwt_secret
        self._algorithms = list(algorithms)
        self._test_tokens = dict(test_tokens or {})
        if self._test_tokens:
            logger.warning(
                "Development test tokens are enabled; %d bearer token(s) bypass verification",
                len(self._test_tokens),
            )

    async def resolve(self, request: Request) -> Optional[Principal]:
        """
        Return the principal for this request, or None. Never raises.

        A failing bearer lookup still lets the session path run.
        """
        for source in (self._from_bearer, self._from_session):
            try:
                principal = await source(request)
            except AuthenticationIndeterminate as e:
                logger.warning("Identity indeterminate for %s: %s", request.url.path, e.message)
                continue
            except Exception as e:
                logger.error(
                    "Identity resolution failed for %s: %s",
                    request.url.path,
                    str(e),
                    exc_info=True,
                )
                continue
            if principal is not None:
                return principal
        return None

    async def attach(self, request: Request) -> Optional[Principal]:
        """
        Resolve once and cache the result on request.state.

        A principal attached earlier in the request is returned unchanged.
        """
        if getattr(request.state, "identity_resolved", False):
            return request.state.principal

        principal = await self.resolve(request)
        request.state.principal = principal
        request.state.auth_source = principal.auth_source if principal else None
        request.state.identity_resolved = True

        if principal:
            logger.debug(
                "Principal attached: user=%s source=%s path=%s",
                principal.id,
                principal.auth_source.value,
                request.url.path,
            )
        return principal

    async def _from_bearer(self, request: Request) -> Optional[Principal]:
        token = bearer_token(request)
        if token is None:
            return None

        if token in self._test_tokens:
            logger.info("Development test token used for %s", request.url.path)
            return self._test_tokens[token]

        if not self._jwt_secret:
            return None

        try:
            claims = jwt.decode(token, self._jwt_secret, algorithms=self._algorithms)
        except JWTError as e:
            logger.debug("Bearer token rejected: %s", str(e))
            return None

        user_id = user_id_from_claims(claims)
        if not user_id:
            return None
        return await self._lookup(user_id, AuthSource.JWT)

    async def _from_session(self, request: Request) -> Optional[Principal]:
        user_id = session_user_id(request)
        if not user_id:
            return None
        return await self._lookup(user_id, AuthSource.SESSION)

    async def _lookup(self, user_id: str, source: AuthSource) -> Optional[Principal]:
        try:
            user = await self.user_store.find_by_id(user_id)
        except Exception as e:
            raise AuthenticationIndeterminate(
                message=f"user lookup failed: {e}",
                context={"user_id": user_id, "auth_source": source.value},
            ) from e
        if user is None:
            return None
        return Principal.from_user(user, source)
