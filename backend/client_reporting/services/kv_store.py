"""
Key/value store backing every stateful check.

Two implementations share one async interface:
- RedisKeyValueStore: shared by all API instances (production)
- MemoryKeyValueStore: per-process, clock-driven TTLs (development, tests)

Unlike a cache, callers need to know when the store is unreachable so they
can fail closed. Every Redis error or timeout therefore surfaces as
StoreUnavailableError instead of being swallowed.

Key namespaces (no overlap):
    ratelimit:       fixed-window counters
    idempotency:     idempotency records and in-progress markers
    agency:          agency records and per-agency client sets
    agency_api_key:  hashed API key lookups
    client:          client records
    index:           tenant indexes
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, TypeVar

import redis.asyncio as redis
from redis.exceptions import RedisError

from client_reporting.core.config import settings
from client_reporting.core.metrics import track_store_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], float]


class StoreUnavailableError(Exception):
    """The store could not be reached or did not answer in time."""

    def __init__(self, operation: str, cause: Exception | None = None):
        self.operation = operation
        message = f"Key/value store unavailable during {operation}"
        if cause is not None:
            message = f"{message}: {type(cause).__name__}"
        super().__init__(message)


class KeyValueStore(ABC):
    """Async string-to-string store with TTLs and set indexes."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        ...

    @abstractmethod
    async def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        """Write ``value``, replacing any existing value and TTL."""

    @abstractmethod
    async def put_if_absent(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        """Write only if ``key`` is absent. Returns True when written."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def list_keys(self, prefix: str) -> list[str]:
        ...

    @abstractmethod
    async def add_to_set(self, key: str, member: str) -> None:
        """Atomically add ``member`` to the set at ``key``."""

    @abstractmethod
    async def remove_from_set(self, key: str, member: str) -> None:
        ...

    @abstractmethod
    async def set_members(self, key: str) -> set[str]:
        ...

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class MemoryKeyValueStore(KeyValueStore):
    """In-process store. Not shared between workers.

    Expiry is evaluated lazily against ``clock`` so tests can move time
    forward without sleeping.
    """

    def __init__(self, clock: Clock = time.time):
        self._clock = clock
        self._values: dict[str, tuple[str, float | None]] = {}
        self._sets: dict[str, set[str]] = {}

    def _live(self, key: str) -> str | None:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._values[key]
            return None
        return value

    def _expiry(self, ttl_seconds: int | None) -> float | None:
        if ttl_seconds is None:
            return None
        return self._clock() + ttl_seconds

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        self._values[key] = (value, self._expiry(ttl_seconds))

    async def put_if_absent(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        # No await between the check and the write, so this is atomic
        # with respect to other coroutines on the loop
        if self._live(key) is not None:
            return False
        self._values[key] = (value, self._expiry(ttl_seconds))
        return True

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)
        self._sets.pop(key, None)

    async def list_keys(self, prefix: str) -> list[str]:
        keys = [k for k in list(self._values) if k.startswith(prefix) and self._live(k) is not None]
        keys.extend(k for k, members in self._sets.items() if k.startswith(prefix) and members)
        return sorted(keys)

    async def add_to_set(self, key: str, member: str) -> None:
        self._sets.setdefault(key, set()).add(member)

    async def remove_from_set(self, key: str, member: str) -> None:
        members = self._sets.get(key)
        if members is not None:
            members.discard(member)

    async def set_members(self, key: str) -> set[str]:
        return set(self._sets.get(key, set()))


def _escape_glob(prefix: str) -> str:
    """Escape Redis glob metacharacters so a prefix matches literally."""
    escaped = []
    for char in prefix:
        if char in "*?[]\\":
            escaped.append("\\")
        escaped.append(char)
    return "".join(escaped)


class RedisKeyValueStore(KeyValueStore):
    """Redis-backed store.

    Every command is bounded by ``timeout_seconds``; a slow store is treated
    exactly like an unreachable one.
    """

    def __init__(self, redis_url: str | None = None, timeout_seconds: float | None = None):
        self._redis_url = redis_url or settings.REDIS_URL
        self._timeout = timeout_seconds if timeout_seconds is not None else settings.STORE_TIMEOUT_SECONDS
        self._redis: redis.Redis | None = None

    def _client(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def _run(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(call(), timeout=self._timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            track_store_error(operation)
            logger.warning(
                "Key/value store %s failed: %s",
                operation,
                type(e).__name__,
                extra={"event_type": "store.error", "operation": operation},
            )
            raise StoreUnavailableError(operation, e) from e

    async def get(self, key: str) -> str | None:
        return await self._run("get", lambda: self._client().get(key))

    async def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        await self._run("put", lambda: self._client().set(key, value, ex=ttl_seconds))

    async def put_if_absent(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        result = await self._run(
            "put_if_absent",
            lambda: self._client().set(key, value, ex=ttl_seconds, nx=True),
        )
        return bool(result)

    async def delete(self, key: str) -> None:
        await self._run("delete", lambda: self._client().delete(key))

    async def list_keys(self, prefix: str) -> list[str]:
        async def scan() -> list[str]:
            pattern = f"{_escape_glob(prefix)}*"
            return [key async for key in self._client().scan_iter(match=pattern)]

        return sorted(await self._run("list_keys", scan))

    async def add_to_set(self, key: str, member: str) -> None:
        await self._run("add_to_set", lambda: self._client().sadd(key, member))

    async def remove_from_set(self, key: str, member: str) -> None:
        await self._run("remove_from_set", lambda: self._client().srem(key, member))

    async def set_members(self, key: str) -> set[str]:
        members = await self._run("set_members", lambda: self._client().smembers(key))
        return set(members)

    async def ping(self) -> bool:
        try:
            await self._run("ping", lambda: self._client().ping())
        except StoreUnavailableError:
            return False
        return True

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("Redis store disconnected")


def create_store(clock: Clock = time.time) -> KeyValueStore:
    """Build the store selected by REDIS_URL."""
    if settings.REDIS_URL:
        logger.info("Using Redis key/value store")
        return RedisKeyValueStore()
    logger.warning(
        "REDIS_URL not set, using in-process memory store (not shared between instances)"
    )
    return MemoryKeyValueStore(clock=clock)
