"""Token-bucket rate limiting for source CRM API calls.

One bucket is shared per ``(org_id, source)`` pair so that concurrent stages
for the same tenant and source draw from the same request budget.  Calls over
budget block until a token is available; nothing is dropped.

Preflight and dry runs execute in the API process while imports run in a
Celery worker, so the budget lives in Redis when it is reachable.  Without
Redis (or when a Redis call fails) each process falls back to its own
in-memory bucket.
"""

from __future__ import annotations

import math
import time
import uuid
from collections.abc import Callable
from threading import Lock
from typing import TYPE_CHECKING

import redis

from app.config import settings
from app.logging import get_logger

if TYPE_CHECKING:
    from redis import Redis

logger = get_logger(__name__)

RATE_LIMIT_PREFIX = "migration_rate:"

_redis_client: Redis | None = None


def get_rate_limit_redis() -> Redis | None:
    """Redis client for shared buckets, or None when Redis is unavailable."""
    global _redis_client
    if _redis_client is None:
        try:
            client = redis.from_url(settings.redis_url, decode_responses=True)
            client.ping()
        except redis.RedisError as exc:
            logger.warning("migration_rate_limit_redis_unavailable error=%s", exc)
            return None
        _redis_client = client
    return _redis_client


def _validate(rate: float, capacity: int) -> None:
    if rate <= 0:
        raise ValueError("rate must be positive")
    if capacity < 1:
        raise ValueError("capacity must be at least 1")


def _acquire_blocking(bucket, tokens: int, sleep: Callable[[float], None]) -> float:
    if tokens > bucket.capacity:
        raise ValueError("cannot acquire more tokens than the bucket capacity")
    waited = 0.0
    while True:
        wait = bucket.try_acquire(tokens)
        if wait <= 0:
            return waited
        sleep(wait)
        waited += wait


class TokenBucket:
    def __init__(
        self,
        rate: float,
        capacity: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        _validate(rate, capacity)
        self.rate = rate
        self.capacity = capacity
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._updated_at = clock()
        self._lock = Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(now - self._updated_at, 0.0)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._updated_at = now

    def try_acquire(self, tokens: int = 1) -> float:
        """Take tokens if available; otherwise return the seconds to wait."""
        with self._lock:
            self._refill()
            if self._tokens >= tokens:
                self._tokens -= tokens
                return 0.0
            return (tokens - self._tokens) / self.rate

    def acquire(self, tokens: int = 1) -> float:
        """Block until ``tokens`` are taken. Returns total seconds waited."""
        return _acquire_blocking(self, tokens, self._sleep)

    @property
    def available(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens


class SharedTokenBucket:
    """Token bucket whose state is a Redis sorted set.

    Every taken token is a member scored with the time it was taken and is
    returned to the budget ``capacity / rate`` seconds later, which allows a
    burst of ``capacity`` calls and ``rate`` calls per second after that.
    The clock must be wall time so that all processes agree on it.
    """

    MIN_WAIT = 0.01

    def __init__(
        self,
        client: Redis,
        key: str,
        rate: float,
        capacity: int,
        fallback: TokenBucket,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        _validate(rate, capacity)
        self.client = client
        self.key = key
        self.rate = rate
        self.capacity = capacity
        self.window = capacity / rate
        self.fallback = fallback
        self._clock = clock
        self._sleep = sleep

    def _redis_failed(self, exc: Exception) -> None:
        logger.warning("migration_rate_limit_redis_error key=%s error=%s", self.key, exc)

    def try_acquire(self, tokens: int = 1) -> float:
        """Take tokens if the shared budget allows; otherwise return the seconds to wait."""
        now = self._clock()
        members = {f"{now}:{uuid.uuid4().hex}:{i}": now for i in range(tokens)}
        try:
            pipe = self.client.pipeline()
            pipe.zremrangebyscore(self.key, 0, now - self.window)
            pipe.zadd(self.key, members)
            pipe.zcard(self.key)
            pipe.expire(self.key, math.ceil(self.window) + 5)
            _, _, count, _ = pipe.execute()
            if int(count) <= self.capacity:
                return 0.0

            pipe = self.client.pipeline()
            pipe.zrem(self.key, *members)
            pipe.zrange(self.key, 0, tokens - 1, withscores=True)
            _, oldest = pipe.execute()
        except redis.RedisError as exc:
            self._redis_failed(exc)
            return self.fallback.try_acquire(tokens)

        release_at = oldest[-1][1] + self.window if oldest else now
        return max(release_at - now, self.MIN_WAIT)

    def acquire(self, tokens: int = 1) -> float:
        """Block until ``tokens`` are taken. Returns total seconds waited."""
        return _acquire_blocking(self, tokens, self._sleep)

    @property
    def available(self) -> float:
        now = self._clock()
        try:
            pipe = self.client.pipeline()
            pipe.zremrangebyscore(self.key, 0, now - self.window)
            pipe.zcard(self.key)
            _, count = pipe.execute()
        except redis.RedisError as exc:
            self._redis_failed(exc)
            return self.fallback.available
        return float(max(self.capacity - int(count), 0))


def build_rate_limit_key(org_id, source) -> str:
    source_value = getattr(source, "value", source)
    return f"{org_id}:{source_value}"


class RateLimiterRegistry:
    """Registry of token buckets keyed by ``(org_id, source)``.

    With a Redis client the buckets are shared across processes; the
    in-memory bucket for the same key is kept as their fallback.
    """

    def __init__(
        self,
        rate: float,
        capacity: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        redis_client: Redis | None = None,
        shared_clock: Callable[[], float] = time.time,
    ):
        self.rate = rate
        self.capacity = capacity
        self.redis_client = redis_client
        self._clock = clock
        self._shared_clock = shared_clock
        self._sleep = sleep
        self._buckets: dict[str, TokenBucket | SharedTokenBucket] = {}
        self._lock = Lock()

    def _build(self, key: str) -> TokenBucket | SharedTokenBucket:
        local = TokenBucket(self.rate, self.capacity, clock=self._clock, sleep=self._sleep)
        if self.redis_client is None:
            return local
        return SharedTokenBucket(
            self.redis_client,
            f"{RATE_LIMIT_PREFIX}{key}",
            self.rate,
            self.capacity,
            fallback=local,
            clock=self._shared_clock,
            sleep=self._sleep,
        )

    def get(self, org_id, source) -> TokenBucket | SharedTokenBucket:
        key = build_rate_limit_key(org_id, source)
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = self._build(key)
                self._buckets[key] = bucket
                logger.debug(
                    "migration_rate_limiter_created key=%s rate=%s shared=%s",
                    key,
                    self.rate,
                    self.redis_client is not None,
                )
            return bucket
