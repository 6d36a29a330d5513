"""
Gatekeeper — Counter Stores
=============================

What:  Async key/value stores holding fixed-window request counters.
How:   get / set(ttl) / delete, plus `incr(key, ttl_ms)`, an increment-with-expiry
       primitive the rate-limit engine relies on for correct counting under
       concurrency.

Implementations:
    InMemoryCounterStore  Single-process dict with TTLs. Atomic on the event loop
                          because nothing awaits between read and write.
    RedisCounterStore     redis.asyncio; INCR and PEXPIRE run in one Lua script,
                          so concurrent requests in every worker see one counter.

Stores that only provide get/set inherit a read-then-write `incr` fallback and
keep `atomic_increment = False`. Two overlapping requests in the same window
can then both read N and both write N+1, under-counting by up to
(concurrency - 1) per window. The engine logs this once at startup.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from gatekeeper.config import settings
from gatekeeper.exceptions import CounterStoreError

logger = logging.getLogger(__name__)


def parse_count(raw) -> int:
    """Stored counter value as int; missing or unparseable values count as 0."""
    if raw is None:
        return 0
    try:
        return max(0, int(raw))
    except (TypeError, ValueError):
        return 0


class CounterStore(ABC):
    atomic_increment: bool = False

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Current raw value, or None when absent/expired."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl_ms: int) -> None:
        """Store value with a time-to-live in milliseconds."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove the key; absent keys are not an error."""

    async def incr(self, key: str, ttl_ms: int) -> int:
        """
        Increment and return the new count. Non-atomic fallback (see module docstring).
        """
        new_count = parse_count(await self.get(key)) + 1
        await self.set(key, str(new_count), ttl_ms)
        return new_count

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class InMemoryCounterStore(CounterStore):
    """
    Dict-backed counters for single-process deployments and tests.

    Expired keys are dropped lazily on read and swept every `sweep_every` writes.
    """

    atomic_increment = True

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sweep_every: int = 1000,
    ):
        self._clock = clock
        self._data: Dict[str, Tuple[str, float]] = {}
        self._sweep_every = sweep_every
        self._writes = 0

    def _live(self, key: str) -> Optional[Tuple[str, float]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            del self._data[key]
            return None
        return entry

    def _after_write(self) -> None:
        self._writes += 1
        if self._writes % self._sweep_every == 0:
            self.sweep()

    def sweep(self) -> int:
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._data.items() if expires_at <= now]
        for key in expired:
            del self._data[key]
        if expired:
            logger.debug("Swept %d expired counters", len(expired))
        return len(expired)

    async def get(self, key: str) -> Optional[str]:
        entry = self._live(key)
        return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl_ms: int) -> None:
        self._data[key] = (str(value), self._clock() + ttl_ms / 1000.0)
        self._after_write()

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def incr(self, key: str, ttl_ms: int) -> int:
        # No await between read and write: atomic with respect to other requests.
        entry = self._live(key)
        if entry is None:
            new_count = 1
            expires_at = self._clock() + ttl_ms / 1000.0
        else:
            new_count = parse_count(entry[0]) + 1
            expires_at = entry[1]
        self._data[key] = (str(new_count), expires_at)
        self._after_write()
        return new_count

    def __len__(self) -> int:
        return len(self._data)


_transient_redis_errors = retry(
    retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
    stop=stop_after_attempt(settings.redis_retry_attempts),
    wait=wait_exponential(multiplier=0.01, max=0.1) + wait_random(0, 0.01),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


class RedisCounterStore(CounterStore):
    """
    Counters shared by every worker through Redis.

    Reads and deletes are idempotent and retried on connection/timeout errors.
    `incr` is sent once: a retried INCR could count one request twice.
    All Redis failures surface as CounterStoreError.
    """

    atomic_increment = True

    # KEYS[1] = counter key, ARGV[1] = ttl in ms. The TTL is set only on the
    # first hit so the window never stretches.
    _INCR_LUA = """
    local count = redis.call('INCR', KEYS[1])
    if count == 1 then
      redis.call('PEXPIRE', KEYS[1], ARGV[1])
    end
    return count
    """

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        url: Optional[str] = None,
        max_connections: Optional[int] = None,
        socket_timeout: Optional[float] = None,
    ):
        if client is None:
            client = redis.from_url(
                url or settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                max_connections=max_connections or settings.redis_max_connections,
                socket_timeout=socket_timeout or settings.redis_socket_timeout,
                socket_connect_timeout=socket_timeout or settings.redis_socket_timeout,
            )
        self._redis = client
        self._incr_script = self._redis.register_script(self._INCR_LUA)

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._get(key)
        except RedisError as e:
            raise CounterStoreError("Redis GET failed", context={"key": key, "error": str(e)}) from e

    @_transient_redis_errors
    async def _get(self, key: str) -> Optional[str]:
        return await self._redis.get(key)

    async def set(self, key: str, value: str, ttl_ms: int) -> None:
        try:
            await self._redis.set(key, value, px=ttl_ms)
        except RedisError as e:
            raise CounterStoreError("Redis SET failed", context={"key": key, "error": str(e)}) from e

    async def delete(self, key: str) -> None:
        try:
            await self._delete(key)
        except RedisError as e:
            raise CounterStoreError("Redis DEL failed", context={"key": key, "error": str(e)}) from e

    @_transient_redis_errors
    async def _delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def incr(self, key: str, ttl_ms: int) -> int:
        try:
            count = await self._incr_script(keys=[key], args=[int(ttl_ms)])
        except RedisError as e:
            raise CounterStoreError("Redis INCR failed", context={"key": key, "error": str(e)}) from e
        return int(count)

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError as e:
            logger.warning("Counter store unreachable: %s", str(e))
            return False

    async def close(self) -> None:
        await self._redis.aclose()


def create_counter_store(backend: Optional[str] = None) -> CounterStore:
    backend = backend or settings.counter_backend
    if backend == "redis":
        logger.info("Rate-limit counters: Redis at %s", settings.redis_url)
        return RedisCounterStore()
    logger.info("Rate-limit counters: in-process memory (single worker only)")
    return InMemoryCounterStore()
