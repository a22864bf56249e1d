"""Fixed-window rate limiting over a swappable counter store.

The limiter holds no state itself: counters live in a ``CounterStore`` that
is injected at construction, so a Redis-backed store survives process
restarts and is shared between workers.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import redis.asyncio as aioredis

from capturebot.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RateLimitResult:
    """Outcome of a rate limit check."""
    allowed: bool
    remaining: int
    reset_in: float  # seconds


class CounterStore(ABC):
    """Abstract windowed counter storage."""

    @abstractmethod
    async def incr(self, key: str, window_seconds: int) -> Tuple[int, float]:
        """
        Increment the counter for ``key``.

        The window starts on the first increment and the counter resets when
        it elapses.

        Returns:
            Tuple of (count after increment, seconds until the window resets)
        """

    @abstractmethod
    async def reset(self, key: str) -> None:
        """Forget the counter for ``key``."""


class MemoryCounterStore(CounterStore):
    """In-process counters, for tests and single-process development."""

    MAX_KEYS = 10000

    def __init__(self, clock=time.monotonic, max_keys: int = MAX_KEYS):
        self._clock = clock
        self.max_keys = max_keys
        self._counters: Dict[str, Tuple[int, float]] = {}
        self._lock = asyncio.Lock()

    def _evict(self, now: float) -> None:
        """Drop expired windows, then the windows closest to reset, down to the cap."""
        self._counters = {k: v for k, v in self._counters.items() if v[1] > now}
        overflow = len(self._counters) - self.max_keys + 1
        if overflow > 0:
            oldest = sorted(self._counters, key=lambda k: self._counters[k][1])[:overflow]
            for k in oldest:
                del self._counters[k]

    async def incr(self, key: str, window_seconds: int) -> Tuple[int, float]:
        async with self._lock:
            now = self._clock()
            if key not in self._counters and len(self._counters) >= self.max_keys:
                self._evict(now)

            count, reset_at = self._counters.get(key, (0, 0.0))
            if reset_at <= now:
                count, reset_at = 0, now + window_seconds

            count += 1
            self._counters[key] = (count, reset_at)
            return count, reset_at - now

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._counters.pop(key, None)


class RedisCounterStore(CounterStore):
    """Counters kept in Redis with key expiry as the window."""

    def __init__(self, client: aioredis.Redis, prefix: str = "ratelimit"):
        self.redis = client
        self.prefix = prefix

    def _get_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def incr(self, key: str, window_seconds: int) -> Tuple[int, float]:
        redis_key = self._get_key(key)
        count = await self.redis.incr(redis_key)
        if count == 1:
            await self.redis.expire(redis_key, window_seconds)
        ttl = await self.redis.ttl(redis_key)
        if ttl is None or ttl < 0:
            # Key lost its expiry (e.g. crash between INCR and EXPIRE)
            await self.redis.expire(redis_key, window_seconds)
            ttl = window_seconds
        return int(count), float(ttl)

    async def reset(self, key: str) -> None:
        await self.redis.delete(self._get_key(key))


class RateLimiter:
    """Allow at most ``max_attempts`` hits per key per window."""

    def __init__(self, store: CounterStore, max_attempts: int = 5, window_seconds: int = 15 * 60):
        self.store = store
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds

    async def hit(self, key: str) -> RateLimitResult:
        """Record an attempt and report whether it is allowed."""
        count, reset_in = await self.store.incr(key, self.window_seconds)
        allowed = count <= self.max_attempts
        if not allowed:
            logger.warning(f"Rate limit exceeded for {key}", extra={'attempts': count})
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, self.max_attempts - count),
            reset_in=reset_in,
        )

    async def reset(self, key: str) -> None:
        await self.store.reset(key)


def build_counter_store(redis_url: Optional[str]) -> CounterStore:
    """Redis counters when a URL is configured, in-process counters otherwise."""
    if redis_url:
        logger.info("Using Redis counter store for rate limiting")
        return RedisCounterStore(aioredis.from_url(redis_url, decode_responses=True))
    logger.info("REDIS_URL not set, using in-process counter store for rate limiting")
    return MemoryCounterStore()
