"""
Fixed-window rate limiting with a pluggable counter store.

Each limiter owns a namespace ("receipt-upload", "admin", ...) so that
the same identifier counted by two limiters never shares a counter.

A window starts at the first request for a key and lasts ``window_ms``.
Within it the first ``max_requests`` calls are allowed; the rest are
rejected until the window expires, at which point the count resets hard.

Stores:
- InMemoryRateLimitStore: per-process dict with an injectable clock
  (tests drive it with a fake clock).
- RedisRateLimitStore: shared counters; INCR and PEXPIRE run in one Lua
  script so concurrent workers never lose an increment or leave a key
  without expiry.

Store selection (``get_rate_limit_store``):
- RATE_LIMIT_REDIS_URL set -> Redis
- otherwise                -> in-memory

If Redis is unreachable the request is allowed and a warning is logged.

Usage:
    limiter = get_rate_limiter("receipt-upload")
    result = await limiter.check(f"{user.id}:{client_ip}", max_requests=5, window_ms=3_600_000)
    if not result.allowed:
        raise RateLimitError(..., retry_after=result.reset_after_seconds)
"""

import math
import os
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from exceptions import RateLimitError
from observability.logging import get_logger
from observability.metrics import rate_limit_rejections_total

logger = get_logger(__name__)


# Named limiter -> (max_requests, window_ms)
HOUR_MS = 60 * 60 * 1000
MINUTE_MS = 60 * 1000

LIMITS: Dict[str, Tuple[int, int]] = {
    "receipt-upload": (5, HOUR_MS),
    "admin": (100, MINUTE_MS),
    "api": (100, HOUR_MS),
    "code-redemption": (10, HOUR_MS),
    "bonus-claim": (3, HOUR_MS),
    "bonus-download": (20, HOUR_MS),
}


class RateLimitStoreError(Exception):
    """The backing store could not be reached."""


class RateLimitStore(Protocol):
    async def increment(self, key: str, window_ms: int) -> int:
        """Increment the counter for key, starting a window if none is open."""
        ...

    async def ttl_ms(self, key: str) -> int:
        """Milliseconds until the key's window closes (0 if none)."""
        ...


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_after_seconds: int


class InMemoryRateLimitStore:
    """
    Per-process fixed-window counters.

    Expired entries are dropped lazily on access and swept every
    ``purge_every`` increments so the dict cannot grow without bound.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, purge_every: int = 1000):
        self._clock = clock
        self._entries: Dict[str, Tuple[int, float]] = {}  # key -> (count, reset_at)
        self._purge_every = purge_every
        self._ops = 0

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    async def increment(self, key: str, window_ms: int) -> int:
        now = self._now_ms()
        self._ops += 1
        if self._ops % self._purge_every == 0:
            self.purge_expired()

        entry = self._entries.get(key)
        if entry is None or now >= entry[1]:
            self._entries[key] = (1, now + window_ms)
            return 1

        count = entry[0] + 1
        self._entries[key] = (count, entry[1])
        return count

    async def ttl_ms(self, key: str) -> int:
        entry = self._entries.get(key)
        if entry is None:
            return 0
        remaining = entry[1] - self._now_ms()
        if remaining <= 0:
            del self._entries[key]
            return 0
        return int(math.ceil(remaining))

    def purge_expired(self) -> int:
        now = self._now_ms()
        expired = [k for k, (_, reset_at) in self._entries.items() if now >= reset_at]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# INCR, and start the window on the first hit. Returns {count, pttl}.
_INCREMENT_SCRIPT = """
local current = redis.call('INCR', KEYS[1])
if current == 1 then
    redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
    redis.call('PEXPIRE', KEYS[1], ARGV[1])
    ttl = tonumber(ARGV[1])
end
return {current, ttl}
"""


class RedisRateLimitStore:
    """Redis-backed counters shared by every worker."""

    def __init__(self, redis_url: str, client: Optional[aioredis.Redis] = None):
        self.redis_url = redis_url
        self._redis = client
        self._script = None

    def _get_redis(self) -> aioredis.Redis:
        # Created lazily so the app imports even when Redis is not up yet
        if self._redis is None:
            self._redis = aioredis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
            )
        return self._redis

    async def increment(self, key: str, window_ms: int) -> int:
        try:
            r = self._get_redis()
            if self._script is None:
                self._script = r.register_script(_INCREMENT_SCRIPT)
            count, _ttl = await self._script(keys=[key], args=[int(window_ms)])
            return int(count)
        except (RedisError, OSError) as exc:
            raise RateLimitStoreError(str(exc)) from exc

    async def ttl_ms(self, key: str) -> int:
        try:
            ttl = await self._get_redis().pttl(key)
        except (RedisError, OSError) as exc:
            raise RateLimitStoreError(str(exc)) from exc
        return max(int(ttl), 0)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class FixedWindowRateLimiter:
    """Rate limiter bound to one namespace of a shared store."""

    def __init__(self, store: RateLimitStore, namespace: str):
        self.store = store
        self.namespace = namespace

    def _key(self, identifier: str) -> str:
        return f"ratelimit:{self.namespace}:{identifier}"

    async def check(
        self,
        identifier: str,
        max_requests: Optional[int] = None,
        window_ms: Optional[int] = None,
    ) -> RateLimitResult:
        """
        Count one request for identifier and report whether it is allowed.

        Defaults come from LIMITS for the limiter's namespace, falling back
        to 100 requests per minute.
        """
        default_max, default_window = LIMITS.get(self.namespace, (100, MINUTE_MS))
        max_requests = default_max if max_requests is None else max_requests
        window_ms = default_window if window_ms is None else window_ms

        key = self._key(identifier)
        try:
            count = await self.store.increment(key, window_ms)
            ttl = await self.store.ttl_ms(key)
        except RateLimitStoreError as exc:
            logger.warning(
                "Rate limit store unavailable, allowing request",
                extra={"limiter": self.namespace, "error": str(exc)[:200]},
            )
            return RateLimitResult(
                allowed=True,
                limit=max_requests,
                remaining=max_requests,
                reset_after_seconds=0,
            )

        allowed = count <= max_requests
        reset_after = max(1, int(math.ceil((ttl or window_ms) / 1000.0)))

        if not allowed:
            rate_limit_rejections_total.labels(limiter=self.namespace).inc()
            logger.warning(
                "Rate limit exceeded",
                extra={"limiter": self.namespace, "count": count, "limit": max_requests},
            )

        return RateLimitResult(
            allowed=allowed,
            limit=max_requests,
            remaining=max(0, max_requests - count),
            reset_after_seconds=reset_after,
        )

    async def is_rate_limited(
        self,
        identifier: str,
        max_requests: int = 100,
        window_ms: int = MINUTE_MS,
    ) -> bool:
        result = await self.check(identifier, max_requests=max_requests, window_ms=window_ms)
        return not result.allowed


def rate_limit_headers(result: RateLimitResult) -> Dict[str, str]:
    """X-RateLimit-* headers for a response."""
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_after_seconds),
    }
    if not result.allowed:
        headers["Retry-After"] = str(result.reset_after_seconds)
    return headers


# ---------------------------------------------------------------------------
# Process-wide store and named limiters
# ---------------------------------------------------------------------------

_store: Optional[RateLimitStore] = None
_limiters: Dict[str, FixedWindowRateLimiter] = {}


def get_rate_limit_store() -> RateLimitStore:
    global _store
    if _store is None:
        redis_url = os.getenv("RATE_LIMIT_REDIS_URL")
        if redis_url:
            _store = RedisRateLimitStore(redis_url)
            logger.info("Rate limiting backed by Redis")
        else:
            _store = InMemoryRateLimitStore()
            logger.info("Rate limiting backed by in-memory store")
    return _store


def get_rate_limiter(namespace: str) -> FixedWindowRateLimiter:
    limiter = _limiters.get(namespace)
    if limiter is None:
        limiter = FixedWindowRateLimiter(get_rate_limit_store(), namespace)
        _limiters[namespace] = limiter
    return limiter


def reset_rate_limiters(store: Optional[RateLimitStore] = None) -> None:
    """Swap the shared store (tests) and drop cached limiters."""
    global _store
    _store = store
    _limiters.clear()


async def close_rate_limit_store() -> None:
    global _store
    if isinstance(_store, RedisRateLimitStore):
        await _store.close()
    _store = None
    _limiters.clear()


async def enforce_rate_limit(
    limiter: FixedWindowRateLimiter,
    identifier: str,
    message: str = "Too many requests. Please try again later.",
) -> RateLimitResult:
    """Count a request and raise RateLimitError when it is over the limit."""
    result = await limiter.check(identifier)
    if not result.allowed:
        raise RateLimitError(message, retry_after=result.reset_after_seconds)
    return result
