"""
Gatekeeper — Policy Catalog Unit Tests
========================================

What we test:
    ✅ Default table values
    ✅ Unknown names: UnknownPolicyError from lookup, `general` limits from endpoint()
    ✅ Overrides create new policies; the catalog never changes
    ✅ Dynamic selection by identity
    ✅ Fail-closed marking
    ✅ Key generators
"""

import dataclasses

import pytest

from gatekeeper.exceptions import UnknownPolicyError
from gatekeeper.ratelimit.policies import (
    HOUR_MS,
    MINUTE_MS,
    BurstPolicy,
    PolicyCatalog,
    RateLimitPolicy,
    client_ip_key,
    user_id_key,
    user_or_ip_key,
)
from gatekeeper.security.principal import AuthSource, Principal

from tests.conftest import make_request


@pytest.fixture
def catalog():
    return PolicyCatalog()


class TestDefaults:

    @pytest.mark.parametrize(
        "name, window_ms, max_requests, message",
        [
            ("login", 15 * MINUTE_MS, 30, "Too many login attempts"),
            ("register", HOUR_MS, 3, "Too many registration attempts"),
            ("password-reset", HOUR_MS, 3, "Too many password reset attempts"),
            ("email-verification", HOUR_MS, 5, "Too many email verification attempts"),
            ("oauth", 15 * MINUTE_MS, 50, "Too many OAuth attempts"),
            ("api", 15 * MINUTE_MS, 100, "Too many API requests"),
            ("general", 15 * MINUTE_MS, 200, "Too many requests"),
        ],
    )
    def test_named_policy(self, catalog, name, window_ms, max_requests, message):
        policy = catalog[name]
        assert policy.window_ms == window_ms
        assert policy.max_requests == max_requests
        assert policy.message == message
        assert policy.key_generator is client_ip_key

    def test_translation_keys_by_user_and_ip(self, catalog):
        policy = catalog["translation"]
        assert (policy.window_ms, policy.max_requests) == (MINUTE_MS, 20)
        assert policy.message == "Too many translation requests"
        assert policy.key_generator is user_or_ip_key

    def test_authenticated_policy_keys_by_user(self, catalog):
        policy = catalog["authenticated"]
        assert policy.max_requests == 500
        assert policy.key_generator is user_id_key

    def test_names_are_sorted(self, catalog):
        assert catalog.names() == sorted(catalog)
        assert len(catalog) == 9


class TestLookup:

    def test_unknown_name_raises(self, catalog):
        with pytest.raises(UnknownPolicyError) as exc_info:
            catalog["nope"]
        assert exc_info.value.name == "nope"

    def test_unknown_name_is_a_key_error(self, catalog):
        assert "nope" not in catalog
        assert catalog.get("nope") is None

    def test_endpoint_unknown_falls_back_to_general(self, catalog):
        policy = catalog.endpoint("calendar-sync")
        assert policy.name == "calendar-sync"
        assert policy.max_requests == 200
        assert policy.window_ms == 15 * MINUTE_MS

    def test_endpoint_overrides_produce_new_policy(self, catalog):
        policy = catalog.endpoint("login", max_requests=5)
        assert policy.max_requests == 5
        assert catalog["login"].max_requests == 30

    def test_policies_are_immutable(self, catalog):
        with pytest.raises(dataclasses.FrozenInstanceError):
            catalog["login"].max_requests = 1

    def test_catalog_mapping_is_read_only(self, catalog):
        with pytest.raises(TypeError):
            catalog["login"] = catalog["api"]

    def test_catalog_requires_dynamic_policies(self):
        with pytest.raises(UnknownPolicyError):
            PolicyCatalog([RateLimitPolicy("general", MINUTE_MS, 1)])


class TestDynamicSelection:

    def test_principal_selects_authenticated(self, catalog):
        principal = Principal(id="u-1", auth_source=AuthSource.JWT)
        assert catalog.select_dynamic(principal).name == "authenticated"

    def test_anonymous_selects_general(self, catalog):
        assert catalog.select_dynamic(None).name == "general"


class TestFailClosed:

    def test_marks_only_named_policies(self, catalog):
        marked = catalog.with_fail_closed(["login"])
        assert marked["login"].fail_closed
        assert not marked["api"].fail_closed
        assert not catalog["login"].fail_closed

    def test_unknown_name_is_rejected(self, catalog):
        with pytest.raises(UnknownPolicyError):
            catalog.with_fail_closed(["lgoin"])


class TestPolicyValidation:

    def test_window_must_be_positive(self):
        with pytest.raises(ValueError):
            RateLimitPolicy("bad", 0, 1)

    def test_max_must_not_be_negative(self):
        with pytest.raises(ValueError):
            RateLimitPolicy("bad", MINUTE_MS, -1)

    def test_burst_defaults(self):
        burst = BurstPolicy.create()
        assert (burst.burst.window_ms, burst.burst.max_requests) == (10 * 1000, 5)
        assert (burst.regular.window_ms, burst.regular.max_requests) == (MINUTE_MS, 10)


class TestKeyGenerators:

    def test_client_ip(self):
        assert client_ip_key(make_request()) == "203.0.113.7"

    def test_user_id(self):
        principal = Principal(id="u-1", auth_source=AuthSource.SESSION)
        assert user_id_key(make_request(), principal) == "user:u-1"
        assert user_id_key(make_request(), None) == "ip:203.0.113.7"

    def test_user_or_ip(self):
        principal = Principal(id="u-1", auth_source=AuthSource.SESSION)
        assert user_or_ip_key(make_request(), principal) == "user:u-1:203.0.113.7"
        assert user_or_ip_key(make_request(), None) == "ip:203.0.113.7"
