"""Short-lived cache for computed analytics results.

The default backend is process-local: instances behind a load balancer do not
share entries, so a result may be up to one TTL stale on any instance. The
Redis backend implements the same interface for deployments that need a
shared cache. Expiry is passive (checked on read). Failed computations are
never cached.
"""
import asyncio
import json
import logging
import threading
import time
from typing import Any, Awaitable, Callable, Dict, Generic, Iterable, Optional, Tuple, Type, TypeVar

import blake3
from pydantic import BaseModel, ValidationError

from .config import settings
from .errors import CacheCorruptionError
from .metrics import (
    cache_corruptions_total,
    cache_hits_total,
    cache_misses_total,
    cache_shared_inflight_total,
)
from .models import DateRange, QueryScope

logger = logging.getLogger(__name__)

V = TypeVar("V", bound=BaseModel)


def canonical(obj: Any) -> bytes:
    return json.dumps(obj, separators=(",", ":"), sort_keys=True, ensure_ascii=False).encode("utf-8")


def build_cache_key(
    scope: QueryScope,
    date_range: DateRange,
    comparison_range: Optional[DateRange] = None,
    traffic_sources: Iterable[str] = (),
    prefix: Optional[str] = None,
) -> str:
    """
    Deterministic key for a normalized query.

    Set-valued inputs are sorted before hashing so request ordering never
    changes the key.
    """
    payload = {
        "kind": scope.kind.value,
        "orgs": sorted(set(scope.org_ids)),
        "apps": sorted(set(scope.app_ids)),
        "range": date_range.as_dict(),
        "compare": comparison_range is not None,
        "comparison_range": comparison_range.as_dict() if comparison_range else None,
        "sources": sorted(set(traffic_sources)),
    }
    digest = blake3.blake3(canonical(payload)).hexdigest()
    return f"{prefix or settings.cache_key_prefix}:{digest}"


class HotCache(Generic[V]):
    """Read-through cache interface with single-flight miss handling."""

    backend = "none"

    def __init__(self, value_type: Type[V], default_ttl: Optional[int] = None):
        self.value_type = value_type
        self.default_ttl = default_ttl if default_ttl is not None else settings.cache_ttl
        self._inflight: Dict[str, asyncio.Future] = {}

    async def get(self, key: str) -> Optional[V]:
        """Return the cached value, or None on a miss."""
        return None

    async def put(self, key: str, value: V, ttl: Optional[int] = None) -> None:
        """Store a value for ``ttl`` seconds (default: the configured TTL)."""

    async def invalidate(self, key: str) -> None:
        """Drop a single key."""

    async def get_or_compute(
        self,
        key: str,
        factory: Callable[[], Awaitable[V]],
        ttl: Optional[int] = None,
    ) -> Tuple[V, bool]:
        """
        Return ``(value, from_cache)``.

        On a miss the factory runs once per key and process as its own task;
        concurrent callers for the same key await that task. Cancelling one
        caller only abandons that caller's wait. Exceptions from the factory
        propagate to every waiter and nothing is cached.
        """
        cached = await self.get(key)
        if cached is not None:
            cache_hits_total.labels(backend=self.backend).inc()
            return cached, True

        cache_misses_total.labels(backend=self.backend).inc()

        pending = self._inflight.get(key)
        if pending is not None:
            cache_shared_inflight_total.inc()
            return await asyncio.shield(pending), False

        task = asyncio.ensure_future(self._compute_and_store(key, factory, ttl))
        self._inflight[key] = task
        task.add_done_callback(lambda done: self._release(key, done))
        return await asyncio.shield(task), False

    async def _compute_and_store(self, key: str, factory: Callable[[], Awaitable[V]], ttl: Optional[int]) -> V:
        value = await factory()
        await self.put(key, value, ttl)
        return value

    def _release(self, key: str, task: asyncio.Future) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Mark retrieved so a failure nobody is left waiting on does not warn on GC
        if not task.cancelled():
            task.exception()

    def _decode(self, key: str, value: Any) -> V:
        """Validate a stored value. Raises CacheCorruptionError if it is not a ``value_type``."""
        if isinstance(value, self.value_type):
            return value
        try:
            if isinstance(value, (str, bytes)):
                return self.value_type.model_validate_json(value)
            return self.value_type.model_validate(value)
        except (ValidationError, ValueError) as e:
            raise CacheCorruptionError(
                "Cached value could not be decoded",
                {"key": key, "reason": type(e).__name__},
            ) from e

    def _discard_corrupt(self, error: CacheCorruptionError) -> None:
        cache_corruptions_total.labels(backend=self.backend).inc()
        logger.warning(
            f"Discarding corrupt cache entry {error.details.get('key')}: {error.details.get('reason')}"
        )


class NullHotCache(HotCache[V]):
    """Cache that never stores anything. Used when caching is disabled."""

    backend = "none"


class MemoryHotCache(HotCache[V]):
    """Process-local cache guarded by a lock. Entries expire passively on read."""

    backend = "memory"

    def __init__(
        self,
        value_type: Type[V],
        default_ttl: Optional[int] = None,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(value_type, default_ttl)
        self.max_entries = max_entries or settings.cache_max_entries
        self.clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[V]:
        now = self.clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= now:
                del self._entries[key]
                return None

        try:
            return self._decode(key, value)
        except CacheCorruptionError as e:
            # Recovered as a miss, never surfaced
            self._discard_corrupt(e)
            await self.invalidate(key)
            return None

    async def put(self, key: str, value: V, ttl: Optional[int] = None) -> None:
        ttl = ttl if ttl is not None else self.default_ttl
        if ttl <= 0:
            return
        now = self.clock()
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict(now)
            self._entries[key] = (now + ttl, value)

    async def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _evict(self, now: float) -> None:
        """Drop expired entries, then the oldest insertions, to make room. Caller holds the lock."""
        for key in [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]:
            del self._entries[key]
        while len(self._entries) >= self.max_entries:
            oldest = next(iter(self._entries))
            del self._entries[oldest]


class RedisHotCache(HotCache[V]):
    """Shared cache in Redis. Values are stored as the model's JSON."""

    backend = "redis"

    def __init__(self, value_type: Type[V], redis=None, default_ttl: Optional[int] = None):
        super().__init__(value_type, default_ttl)
        if redis is None:
            from .database import get_redis_client
            redis = get_redis_client()
        self.redis = redis

    async def get(self, key: str) -> Optional[V]:
        try:
            raw = await self.redis.get(key)
        except Exception as e:
            logger.warning(f"Cache get error for key {key}: {e}")
            return None
        if raw is None:
            return None

        try:
            return self._decode(key, raw)
        except CacheCorruptionError as e:
            self._discard_corrupt(e)
            await self.invalidate(key)
            return None

    async def put(self, key: str, value: V, ttl: Optional[int] = None) -> None:
        ttl = ttl if ttl is not None else self.default_ttl
        if ttl <= 0:
            return
        try:
            await self.redis.setex(key, ttl, value.model_dump_json())
        except Exception as e:
            logger.warning(f"Cache set error for key {key}: {e}")

    async def invalidate(self, key: str) -> None:
        try:
            await self.redis.delete(key)
        except Exception as e:
            logger.warning(f"Cache delete error for key {key}: {e}")


def create_hot_cache(value_type: Type[V]) -> HotCache[V]:
    """Build the cache configured by ``settings.cache_enabled``/``settings.cache_backend``."""
    if not settings.cache_enabled:
        return NullHotCache(value_type)
    if settings.cache_backend == "redis":
        return RedisHotCache(value_type)
    if settings.cache_backend != "memory":
        raise ValueError(f"Unknown cache backend: {settings.cache_backend}")
    return MemoryHotCache(value_type)
