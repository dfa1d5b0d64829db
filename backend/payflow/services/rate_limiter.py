"""
Fixed-Window Rate Limiter

Counts requests per ``"{client_key}:{route_key}"`` in fixed windows. Two
counter backends are available: an in-process dictionary (default, suitable
for a single worker) and Redis for deployments running several workers.

When the counter backend fails, the limiter fails open: the request is
allowed and the degraded mode is logged.
"""
import asyncio
import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Tuple, Union

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


@dataclass
class Allowed:
    limit: int
    remaining: int
    reset_at: int  # Unix timestamp when the window closes
    degraded: bool = False

    def to_headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }


@dataclass
class Rejected:
    limit: int
    retry_after_seconds: int
    reset_at: int
    remaining: int = 0

    def to_headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(self.reset_at),
            "Retry-After": str(self.retry_after_seconds),
        }


RateLimitResult = Union[Allowed, Rejected]


# ============================================================================
# Counter Backends
# ============================================================================

class CounterBackend(ABC):
    """Atomic increment of a counter that expires with its window."""

    @abstractmethod
    async def increment(self, key: str, window_seconds: int) -> Tuple[int, float]:
        """
        Increment ``key`` and return ``(count, seconds_until_reset)``.

        The first increment of a window starts its expiry clock.
        """

    async def close(self) -> None:
        return None


class MemoryCounterBackend(CounterBackend):
    """
    In-process counters.

    ``clock`` returns monotonic seconds and can be replaced in tests.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._lock = asyncio.Lock()

    async def increment(self, key: str, window_seconds: int) -> Tuple[int, float]:
        async with self._lock:
            now = self._clock()
            count, expires_at = self._windows.get(key, (0, 0.0))
            if now >= expires_at:
                count, expires_at = 0, now + window_seconds
            count += 1
            self._windows[key] = (count, expires_at)
            self._evict_expired(now)
            return count, expires_at - now

    def _evict_expired(self, now: float) -> None:
        if len(self._windows) < 10000:
            return
        for key in [k for k, (_, exp) in self._windows.items() if exp <= now]:
            del self._windows[key]


class RedisCounterBackend(CounterBackend):
    """Shared counters using ``INCR`` + ``EXPIRE NX`` in one pipeline."""

    def __init__(self, redis_url: str, prefix: str = "rate-limit"):
        self._redis = aioredis.from_url(redis_url, decode_responses=True)
        self._prefix = prefix

    async def increment(self, key: str, window_seconds: int) -> Tuple[int, float]:
        redis_key = f"{self._prefix}:{key}"
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.incr(redis_key)
            pipe.expire(redis_key, window_seconds, nx=True)
            pipe.ttl(redis_key)
            count, _, ttl = await pipe.execute()
        if ttl is None or ttl < 0:
            ttl = window_seconds
        return int(count), float(ttl)

    async def close(self) -> None:
        await self._redis.aclose()


# ============================================================================
# Rate Limiter
# ============================================================================

class RateLimiter:
    """Fixed-window throttle with a fail-open policy."""

    def __init__(self, backend: CounterBackend, wall_clock: Callable[[], float] = time.time):
        self.backend = backend
        self._wall_clock = wall_clock

    async def check(
        self,
        client_key: str,
        route_key: str,
        limit: int,
        window_seconds: int
    ) -> RateLimitResult:
        """
        Count one request and decide whether it may proceed.

        Args:
            client_key: Caller identity (IP address or user id)
            route_key: Logical route name, e.g. "payments:create"
            limit: Requests allowed per window
            window_seconds: Window length

        Returns:
            Allowed with remaining quota, or Rejected with the seconds left
            in the current window
        """
        key = f"{client_key}:{route_key}"
        try:
            count, ttl = await self.backend.increment(key, window_seconds)
        except Exception as e:
            logger.warning(
                f"Rate limiter degraded, failing open for {key}: {type(e).__name__}: {e}"
            )
            return Allowed(
                limit=limit,
                remaining=limit,
                reset_at=int(self._wall_clock()) + window_seconds,
                degraded=True
            )

        retry_after = max(1, math.ceil(ttl))
        reset_at = int(self._wall_clock()) + retry_after

        if count > limit:
            logger.warning(
                f"Rate limit exceeded: key={key}, count={count}, limit={limit}, retry_after={retry_after}s"
            )
            return Rejected(limit=limit, retry_after_seconds=retry_after, reset_at=reset_at)

        return Allowed(limit=limit, remaining=max(0, limit - count), reset_at=reset_at)

    async def close(self) -> None:
        await self.backend.close()


def build_rate_limiter(backend_name: str, redis_url: str) -> RateLimiter:
    """Create the limiter for the configured backend name."""
    if backend_name == "redis":
        return RateLimiter(RedisCounterBackend(redis_url))
    return RateLimiter(MemoryCounterBackend())
