"""
Gatekeeper — CSRF Guard Unit Tests
====================================

What we test:
    ✅ Cookie-authenticated requests need matching header and cookie
    ✅ Each failure reason is audited (without token values)
    ✅ Bearer-authenticated principals are exempt
    ✅ A bearer header alone does not exempt an anonymous request
    ✅ Development bypass
    ✅ Token format
"""

import pytest

from gatekeeper.audit import CSRF_VIOLATION
from gatekeeper.exceptions import CSRFTokenError, ForbiddenError
from gatekeeper.security.csrf import CSRFGuard, issue_token
from gatekeeper.security.principal import AuthSource, Principal

from tests.conftest import make_request

SESSION_USER = Principal(id="u-alice", auth_source=AuthSource.SESSION)
JWT_USER = Principal(id="u-alice", auth_source=AuthSource.JWT)
TEST_USER = Principal(id="dev", auth_source=AuthSource.TEST)


def post(header=None, cookie=None, **headers):
    if header is not None:
        headers["X-CSRF-Token"] = header
    if cookie is not None:
        headers["Cookie"] = f"XSRF-TOKEN={cookie}"
    return make_request(path="/api/profile", method="POST", headers=headers)


@pytest.fixture
def guard(audit_sink):
    return CSRFGuard(audit_sink)


class TestDoubleSubmit:

    @pytest.mark.asyncio
    async def test_matching_pair_passes(self, guard, audit_sink):
        await guard.enforce(post("abc", "abc"), SESSION_USER)
        assert audit_sink.events == []

    @pytest.mark.parametrize("header, cookie, reason", [
        (None, "abc", "missing_header"),
        ("abc", None, "missing_cookie"),
        ("abc", "abd", "mismatch"),
        (None, None, "missing_header"),
    ])
    @pytest.mark.asyncio
    async def test_failures_are_rejected_and_audited(
        self, guard, audit_sink, header, cookie, reason
    ):
        with pytest.raises(CSRFTokenError) as exc_info:
            await guard.enforce(post(header, cookie), SESSION_USER)

        assert exc_info.value.message == "Invalid CSRF token"
        assert exc_info.value.reason == reason
        assert isinstance(exc_info.value, ForbiddenError)

        events = audit_sink.of_type(CSRF_VIOLATION)
        assert len(events) == 1
        assert events[0]["reason"] == reason
        assert events[0]["userId"] == "u-alice"
        assert events[0]["path"] == "/api/profile"
        assert "abc" not in str(events[0])

    @pytest.mark.asyncio
    async def test_anonymous_requests_are_checked(self, guard):
        with pytest.raises(CSRFTokenError):
            await guard.enforce(post(), None)


class TestExemptions:

    @pytest.mark.parametrize("principal", [JWT_USER, TEST_USER])
    @pytest.mark.asyncio
    async def test_bearer_principals_are_exempt(self, guard, principal):
        await guard.enforce(post(), principal)

    @pytest.mark.asyncio
    async def test_unverified_bearer_header_is_not_exempt(self, guard):
        request = post(Authorization="Bearer forged")
        with pytest.raises(CSRFTokenError):
            await guard.enforce(request, None)

    @pytest.mark.asyncio
    async def test_development_bypass(self, audit_sink):
        guard = CSRFGuard(audit_sink, allow_bypass=True)
        await guard.enforce(post(), SESSION_USER)
        assert audit_sink.events == []


class TestTokens:

    def test_tokens_are_random_and_url_safe(self):
        tokens = {issue_token() for _ in range(50)}
        assert len(tokens) == 50
        for token in tokens:
            assert len(token) == 43
            assert set(token) <= set(
                "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"
            )
