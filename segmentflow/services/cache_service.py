"""
Tenant analytics cache on Redis.

Caches tenant analytics reads (RFM distribution, RFM matrix, churn
summaries). Keys are tenant-scoped, ``{prefix}:{tenant_id}:{parts...}``,
so a whole tenant can be invalidated after a recompute.

The cache is best effort: when Redis is unavailable every call degrades to
a miss, and a circuit breaker stops the pipeline from waiting on a dead
server for every read.

Usage:
    from segmentflow.services.cache_service import get_cache_service, TTL

    cache = get_cache_service()
    key = cache.build_key("rfm:dist", tenant_id)
    data = await cache.remember(key, TTL.LONG, lambda: rfm.get_segment_distribution(tenant_id))
    await cache.invalidate_tenant(tenant_id)
"""

import json
import logging
import time
from enum import IntEnum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from segmentflow.core.metrics import track_cache_hit, track_cache_miss
from segmentflow.core.redis import get_redis

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Key families that hold per-tenant analytics
TENANT_CACHE_PREFIXES = ("rfm", "churn", "segments", "customers")


class TTL(IntEnum):
    """Cache TTL presets in seconds."""

    SHORT = 60  # churn listings
    MEDIUM = 300  # segment previews
    LONG = 3600  # RFM distribution and matrix
    DAY = 86400


class CircuitState(IntEnum):
    CLOSED = 0
    OPEN = 1
    HALF_OPEN = 2  # one trial call allowed


class CircuitBreaker:
    """
    Failure counter guarding Redis calls.

    Opens after ``failure_threshold`` consecutive errors. Once
    ``recovery_timeout`` seconds have passed a trial call is let through:
    success closes the circuit, failure opens it again.
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: int = 30):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.state = CircuitState.CLOSED
        self.failures = 0
        self.opened_at = 0.0

    def allow(self) -> bool:
        if self.state != CircuitState.OPEN:
            return True
        if time.time() - self.opened_at < self.recovery_timeout:
            return False
        self.state = CircuitState.HALF_OPEN
        logger.info("Cache circuit half-open, trying Redis again")
        return True

    def success(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            logger.info("Cache circuit closed, Redis is back")
        self.state = CircuitState.CLOSED
        self.failures = 0

    def failure(self) -> None:
        self.failures += 1
        self.opened_at = time.time()
        if self.state == CircuitState.HALF_OPEN or self.failures >= self.failure_threshold:
            if self.state != CircuitState.OPEN:
                logger.warning(f"Cache circuit opened after {self.failures} failures")
            self.state = CircuitState.OPEN


class CacheService:
    """JSON values in Redis behind a circuit breaker, with hit/miss accounting."""

    def __init__(self, redis_client=None, failure_threshold: int = 5, recovery_timeout: int = 30):
        self._client = redis_client
        self.breaker = CircuitBreaker(failure_threshold, recovery_timeout)
        self.hits = 0
        self.misses = 0

    @property
    def client(self):
        if self._client is None:
            self._client = get_redis()
        return self._client

    @staticmethod
    def build_key(prefix: str, tenant_id: str, *parts: Any) -> str:
        """Tenant-isolated cache key, e.g. ``rfm:dist:{tenant_id}``."""
        return ":".join([prefix, tenant_id, *(str(p) for p in parts)])

    async def _call(self, operation: str, key: str, call: Callable[[], Awaitable[T]], fallback: T) -> T:
        if not self.breaker.allow():
            return fallback
        try:
            result = await call()
        except Exception as e:
            logger.debug(f"Cache {operation} failed for {key}: {e}")
            self.breaker.failure()
            return fallback
        self.breaker.success()
        return result

    async def get(self, key: str) -> Optional[Any]:
        sentinel = object()
        raw = await self._call("get", key, lambda: self.client.get(key), sentinel)
        if raw is sentinel:
            return None

        if raw is None:
            self.misses += 1
            track_cache_miss()
            return None

        self.hits += 1
        track_cache_hit()
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw

    async def set(self, key: str, value: Any, ttl: int = TTL.MEDIUM) -> bool:
        async def write():
            await self.client.setex(key, int(ttl), json.dumps(value, default=str))
            return True

        return await self._call("set", key, write, False)

    async def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern. Returns the number deleted."""

        async def drop():
            keys = [key async for key in self.client.scan_iter(match=pattern, count=100)]
            if keys:
                await self.client.delete(*keys)
            return len(keys)

        return await self._call("delete_pattern", pattern, drop, 0)

    async def remember(self, key: str, ttl: int, compute: Callable[[], Awaitable[T]]) -> T:
        """Return the cached value or compute, store and return it."""
        cached_value = await self.get(key)
        if cached_value is not None:
            return cached_value

        result = await compute()
        await self.set(key, result, ttl=ttl)
        return result

    async def invalidate_tenant(self, tenant_id: str) -> int:
        """Drop every analytics key of a tenant (after sync, RFM or segment recompute)."""
        deleted = 0
        for prefix in TENANT_CACHE_PREFIXES:
            deleted += await self.delete_pattern(f"{prefix}:*{tenant_id}*")
        logger.info(f"Tenant cache invalidated: tenant_id={tenant_id}, keys={deleted}")
        return deleted

    def get_stats(self) -> dict:
        lookups = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / lookups * 100, 2) if lookups else 0.0,
            "circuit_state": self.breaker.state.name,
            "failure_count": self.breaker.failures,
        }


_cache_service: Optional[CacheService] = None


def get_cache_service() -> CacheService:
    """Process-wide cache service on the shared Redis client."""
    global _cache_service
    if _cache_service is None:
        _cache_service = CacheService()
    return _cache_service
