"""
Gatekeeper — Counter Store Unit Tests
=======================================

What:  Tests for the in-memory and Redis counter stores.
How:   The in-memory store runs on a FakeClock; the Redis store gets a mocked
       client (no real Redis needed).

What we test:
    ✅ TTL expiry, incr keeps the original expiry, sweep
    ✅ Non-atomic fallback incr on a get/set-only store
    ✅ Redis: Lua INCR script, PX on set, retried reads with capped backoff,
       errors wrapped
"""

from typing import Dict, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from tenacity import RetryCallState

from gatekeeper.exceptions import CounterStoreError
from gatekeeper.ratelimit.store import (
    CounterStore,
    InMemoryCounterStore,
    RedisCounterStore,
    create_counter_store,
    parse_count,
)


class DictStore(CounterStore):
    """get/set only: relies on the base-class incr."""

    def __init__(self):
        self.data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set(self, key: str, value: str, ttl_ms: int) -> None:
        self.data[key] = value

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)


class TestParseCount:

    @pytest.mark.parametrize("raw, expected", [
        (None, 0), ("7", 7), (b"3", 3), ("x", 0), ("-4", 0), (5, 5),
    ])
    def test_parse(self, raw, expected):
        assert parse_count(raw) == expected


class TestInMemoryCounterStore:

    @pytest.mark.asyncio
    async def test_value_expires_after_ttl(self, clock):
        store = InMemoryCounterStore(clock=clock.seconds)
        await store.set("k", "1", 1000)
        assert await store.get("k") == "1"
        clock.advance(1000)
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_incr_starts_at_one_and_keeps_expiry(self, clock):
        store = InMemoryCounterStore(clock=clock.seconds)
        assert await store.incr("k", 1000) == 1
        clock.advance(600)
        assert await store.incr("k", 1000) == 2
        clock.advance(400)
        assert await store.get("k") is None
        assert await store.incr("k", 1000) == 1

    @pytest.mark.asyncio
    async def test_delete_missing_key_is_not_an_error(self, clock):
        store = InMemoryCounterStore(clock=clock.seconds)
        await store.delete("missing")

    @pytest.mark.asyncio
    async def test_sweep_drops_expired_entries(self, clock):
        store = InMemoryCounterStore(clock=clock.seconds)
        await store.set("short", "1", 100)
        await store.set("long", "1", 10_000)
        clock.advance(200)
        assert store.sweep() == 1
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_periodic_sweep_on_writes(self, clock):
        store = InMemoryCounterStore(clock=clock.seconds, sweep_every=2)
        await store.set("a", "1", 100)
        clock.advance(200)
        await store.set("b", "1", 100)
        assert len(store) == 1

    def test_declares_atomic_increment(self):
        assert InMemoryCounterStore.atomic_increment


class TestFallbackIncrement:

    @pytest.mark.asyncio
    async def test_read_then_write(self):
        store = DictStore()
        assert not store.atomic_increment
        assert await store.incr("k", 1000) == 1
        assert await store.incr("k", 1000) == 2
        assert store.data["k"] == "2"


@pytest.fixture
def redis_client():
    client = MagicMock()
    client.get = AsyncMock(return_value="4")
    client.set = AsyncMock(return_value=True)
    client.delete = AsyncMock(return_value=1)
    client.ping = AsyncMock(return_value=True)
    client.aclose = AsyncMock()
    client.register_script = MagicMock(return_value=AsyncMock(return_value=5))
    return client


class TestRedisCounterStore:

    @pytest.mark.asyncio
    async def test_incr_runs_lua_script(self, redis_client):
        store = RedisCounterStore(client=redis_client)
        assert await store.incr("rate_limit:k", 900_000) == 5

        script = redis_client.register_script.return_value
        script.assert_awaited_once_with(keys=["rate_limit:k"], args=[900_000])
        assert "PEXPIRE" in redis_client.register_script.call_args[0][0]

    @pytest.mark.asyncio
    async def test_set_uses_millisecond_ttl(self, redis_client):
        store = RedisCounterStore(client=redis_client)
        await store.set("k", "1", 1500)
        redis_client.set.assert_awaited_once_with("k", "1", px=1500)

    @pytest.mark.asyncio
    async def test_get_retries_connection_errors(self, redis_client):
        redis_client.get = AsyncMock(side_effect=[RedisConnectionError("reset"), "2"])
        store = RedisCounterStore(client=redis_client)
        assert await store.get("k") == "2"
        assert redis_client.get.await_count == 2

    def test_retry_backoff_is_capped(self):
        state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})
        waits = []
        for attempt in (1, 10):
            state.attempt_number = attempt
            waits.append(RedisCounterStore._get.retry.wait(state))
        assert 0.01 <= waits[0] <= 0.02
        assert 0.1 <= waits[1] <= 0.11

    @pytest.mark.asyncio
    async def test_get_gives_up_with_counter_store_error(self, redis_client):
        redis_client.get = AsyncMock(side_effect=RedisConnectionError("down"))
        store = RedisCounterStore(client=redis_client)
        with pytest.raises(CounterStoreError):
            await store.get("k")

    @pytest.mark.asyncio
    async def test_incr_is_not_retried(self, redis_client):
        script = AsyncMock(side_effect=RedisConnectionError("down"))
        redis_client.register_script = MagicMock(return_value=script)
        store = RedisCounterStore(client=redis_client)
        with pytest.raises(CounterStoreError):
            await store.incr("k", 1000)
        assert script.await_count == 1

    @pytest.mark.asyncio
    async def test_non_transient_errors_are_wrapped(self, redis_client):
        redis_client.delete = AsyncMock(side_effect=ResponseError("WRONGTYPE"))
        store = RedisCounterStore(client=redis_client)
        with pytest.raises(CounterStoreError):
            await store.delete("k")
        assert redis_client.delete.await_count == 1

    @pytest.mark.asyncio
    async def test_ping_reports_unreachable(self, redis_client):
        redis_client.ping = AsyncMock(side_effect=RedisConnectionError("down"))
        store = RedisCounterStore(client=redis_client)
        assert await store.ping() is False

    @pytest.mark.asyncio
    async def test_close(self, redis_client):
        await RedisCounterStore(client=redis_client).close()
        redis_client.aclose.assert_awaited_once()


class TestFactory:

    def test_memory_backend(self):
        assert isinstance(create_counter_store("memory"), InMemoryCounterStore)

    def test_redis_backend_builds_client_lazily(self):
        store = create_counter_store("redis")
        assert isinstance(store, RedisCounterStore)
