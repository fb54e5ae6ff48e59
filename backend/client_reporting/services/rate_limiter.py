"""
Fixed-window rate limiter on the shared key/value store.

Counters live at ``ratelimit:{scope_key}`` as JSON ``{"count", "window_start"}``.
The first attempt in a window writes the counter with TTL = window length;
later increments keep the remaining TTL, so the window is fixed and cleans
itself up when it ends.

Concurrency: get-then-put is not atomic, so a burst of simultaneous attempts
can overshoot the limit by at most the number of requests in flight. That
bound is accepted here; the idempotency ledger, which guards the side effect
itself, uses a conditional write instead.

Store failures propagate as StoreUnavailableError. The limiter gates an
expensive side effect, so callers are expected to fail closed.
"""

import json
import logging
import math
import time
from dataclasses import dataclass

from client_reporting.core.metrics import track_rate_limit
from client_reporting.services.kv_store import Clock, KeyValueStore, StoreUnavailableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int  # epoch seconds when the current window ends

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }

    def retry_after(self, now: float) -> int:
        return max(0, math.ceil(self.reset_at - now))


@dataclass(frozen=True)
class _Window:
    count: int
    window_start: int


class FixedWindowRateLimiter:
    """Admit or reject attempts per scope key within fixed windows."""

    def __init__(self, store: KeyValueStore, clock: Clock = time.time):
        self._store = store
        self._clock = clock

    @staticmethod
    def storage_key(scope_key: str) -> str:
        return f"ratelimit:{scope_key}"

    async def _load(self, scope_key: str, window_seconds: int, now: float) -> _Window | None:
        """Current window for ``scope_key``, or None if absent or elapsed."""
        raw = await self._store.get(self.storage_key(scope_key))
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            window = _Window(count=int(data["count"]), window_start=int(data["window_start"]))
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding unreadable rate limit counter", extra={"event_type": "ratelimit.corrupt"})
            return None
        # A store with coarse TTLs may still hand back a finished window
        if now >= window.window_start + window_seconds:
            return None
        return window

    async def _save(self, scope_key: str, window: _Window, window_seconds: int, now: float) -> None:
        ttl = max(1, math.ceil(window.window_start + window_seconds - now))
        value = json.dumps({"count": window.count, "window_start": window.window_start})
        await self._store.put(self.storage_key(scope_key), value, ttl)

    async def try_acquire(self, scope_key: str, window_seconds: int, max_count: int) -> RateLimitDecision:
        """Consume one attempt if the window has quota left.

        Raises:
            StoreUnavailableError: the counter could not be read or written
        """
        if window_seconds <= 0 or max_count <= 0:
            raise ValueError("window_seconds and max_count must be positive")

        now = self._clock()
        window = await self._load(scope_key, window_seconds, now)

        if window is None:
            window = _Window(count=1, window_start=math.floor(now))
            await self._save(scope_key, window, window_seconds, now)
            decision = RateLimitDecision(True, max_count, max_count - 1, window.window_start + window_seconds)
        elif window.count < max_count:
            window = _Window(count=window.count + 1, window_start=window.window_start)
            await self._save(scope_key, window, window_seconds, now)
            decision = RateLimitDecision(
                True, max_count, max_count - window.count, window.window_start + window_seconds
            )
        else:
            decision = RateLimitDecision(False, max_count, 0, window.window_start + window_seconds)

        track_rate_limit(decision.allowed)
        return decision

    async def peek(self, scope_key: str, window_seconds: int, max_count: int) -> RateLimitDecision:
        """Report quota without consuming any."""
        now = self._clock()
        window = await self._load(scope_key, window_seconds, now)
        if window is None:
            return RateLimitDecision(True, max_count, max_count, math.floor(now) + window_seconds)
        remaining = max(0, max_count - window.count)
        return RateLimitDecision(remaining > 0, max_count, remaining, window.window_start + window_seconds)

    async def refund(self, scope_key: str, window_seconds: int) -> bool:
        """Give back one attempt in the current window. Best effort."""
        now = self._clock()
        try:
            window = await self._load(scope_key, window_seconds, now)
            if window is None or window.count <= 0:
                return False
            refunded = _Window(count=window.count - 1, window_start=window.window_start)
            await self._save(scope_key, refunded, window_seconds, now)
            return True
        except StoreUnavailableError:
            logger.warning(
                "Failed to refund rate limit attempt",
                extra={"event_type": "ratelimit.refund_failed", "scope_key": scope_key},
            )
            return False
