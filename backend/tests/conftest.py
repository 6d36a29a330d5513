"""
Gatekeeper — Test Configuration (conftest.py)
===============================================

What:  Shared pytest fixtures for the entire test suite.
How:   pytest auto-discovers conftest.py and makes fixtures available to all tests.

Fixture Hierarchy:
    Function-scoped (created fresh for each test):
    ├── clock:            FakeClock in epoch ms, aligned to every default window
    ├── audit_sink:       RecordingAuditSink (events kept in memory)
    ├── user_store:       InMemoryUserStore with user / admin / superadmin / inactive
    ├── counter_store:    InMemoryCounterStore driven by the same clock
    ├── test_settings:    Settings with a known JWT secret
    ├── gatekeeper:       build_gatekeeper() over the doubles above
    ├── app:              create_app() plus a few routes protected for tests
    └── test_client:      HTTPX AsyncClient on ASGITransport

Helpers:
    make_request():  Starlette Request from a hand-built ASGI scope
    make_token():    HS256 JWT signed with TEST_JWT_SECRET
"""

import os

# Override settings for testing BEFORE any gatekeeper imports
os.environ["ENVIRONMENT"] = "test"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["USER_STORE_BACKEND"] = "memory"
os.environ["COUNTER_BACKEND"] = "memory"
os.environ["LOG_LEVEL"] = "WARNING"

from types import SimpleNamespace
from typing import Any, Dict, Optional, Tuple

import pytest
import pytest_asyncio
from fastapi import Depends, Request
from httpx import ASGITransport, AsyncClient
from jose import jwt
from starlette.requests import Request as StarletteRequest

from gatekeeper.audit import RecordingAuditSink
from gatekeeper.composer import build_gatekeeper, protect, user_limit
from gatekeeper.config import Settings
from gatekeeper.exceptions import CounterStoreError
from gatekeeper.ratelimit.store import CounterStore, InMemoryCounterStore
from gatekeeper.services.user_store import InMemoryUserStore

TEST_JWT_SECRET = "test-jwt-secret"

# Divisible by every default window (10 s, 1 min, 15 min, 60 min)
WINDOW_ALIGNED_MS = 1_620_000_000_000

USERS = [
    {"id": "u-alice", "email": "alice@example.com", "name": "Alice", "role": "user",
     "password_hash": "$2b$12$notarealhash"},
    {"id": "u-root", "email": "root@example.com", "name": "Root", "role": "admin"},
    {"_id": "u-carol", "email": "carol@example.com", "name": "Carol", "role": "superadmin"},
    {"id": "u-gone", "email": "gone@example.com", "name": "Gone", "role": "user",
     "is_active": False},
]


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, now_ms: int = WINDOW_ALIGNED_MS + 1000):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def seconds(self) -> float:
        return self.now_ms / 1000.0

    def advance(self, ms: int) -> None:
        self.now_ms += ms


class FaultyStore(CounterStore):
    """Every operation fails, as if Redis were unreachable."""

    async def get(self, key: str) -> Optional[str]:
        raise CounterStoreError("connection refused")

    async def set(self, key: str, value: str, ttl_ms: int) -> None:
        raise CounterStoreError("connection refused")

    async def delete(self, key: str) -> None:
        raise CounterStoreError("connection refused")

    async def ping(self) -> bool:
        return False


def make_token(claims: Dict[str, Any], secret: str = TEST_JWT_SECRET) -> str:
    return jwt.encode(claims, secret, algorithm="HS256")


def make_request(
    path: str = "/api/items",
    method: str = "GET",
    headers: Optional[Dict[str, str]] = None,
    client: Optional[Tuple[str, int]] = ("203.0.113.7", 50000),
    route_path: Optional[str] = None,
    session: Optional[Dict[str, Any]] = None,
) -> StarletteRequest:
    """Build a Request without a server; `route_path` mimics a matched route."""
    scope = {
        "type": "http",
        "method": method,
        "scheme": "http",
        "server": ("test", 80),
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "query_string": b"",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    if route_path is not None:
        scope["route"] = SimpleNamespace(path=route_path)
    if session is not None:
        scope["session"] = session
    return StarletteRequest(scope)


# ══════════════════════════════════════════════════════════════════════════
# Function-Scoped Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def user_store():
    return InMemoryUserStore(USERS)


@pytest.fixture
def counter_store(clock):
    return InMemoryCounterStore(clock=clock.seconds)


@pytest.fixture
def test_settings():
    return Settings(
        environment="test",
        jwt_secret=TEST_JWT_SECRET,
        user_store_backend="memory",
        counter_backend="memory",
        log_level="WARNING",
    )


@pytest.fixture
def gatekeeper(test_settings, user_store, counter_store, audit_sink, clock):
    return build_gatekeeper(
        test_settings,
        user_store=user_store,
        counter_store=counter_store,
        audit_sink=audit_sink,
        clock=clock,
    )


def add_test_routes(app) -> None:
    """Routes wired the way product routes are, for end-to-end checks."""

    @app.post("/api/auth/login", dependencies=[Depends(protect("login", csrf=True))])
    async def login():
        return {"ok": True}

    @app.post("/test/session-login/{user_id}")
    async def session_login(user_id: str, request: Request):
        request.session["userId"] = user_id
        return {"ok": True}

    @app.get("/api/items/{item_id}", dependencies=[Depends(protect("api", max_requests=3))])
    async def get_item(item_id: str):
        return {"id": item_id}

    @app.get("/test/burst", dependencies=[Depends(protect(None, burst=True))])
    async def burst():
        return {"ok": True}

    @app.get("/test/dynamic")
    async def dynamic(principal=Depends(protect(dynamic=True))):
        return {"user": principal.id if principal else None}

    @app.post("/test/state", dependencies=[Depends(protect(None, csrf=True))])
    async def change_state():
        return {"ok": True}

    @app.get("/test/per-user", dependencies=[Depends(user_limit(max_requests=2))])
    async def per_user():
        return {"ok": True}


@pytest.fixture
def app(test_settings, gatekeeper):
    from gatekeeper.main import create_app

    application = create_app(test_settings, gatekeeper)
    add_test_routes(application)
    return application


@pytest_asyncio.fixture
async def test_client(app):
    """
    HTTPX AsyncClient talking to the app through ASGITransport.

    Requests arrive from 127.0.0.1 (the transport's default client address).
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
