import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional

from cachetools import TTLCache
from pydantic import BaseModel

from app.cache.backends import CacheBackend, MemoryCacheBackend, RedisCacheBackend
from app.core.config import Settings
from app.core.exceptions import CacheError

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class _PendingLoad:
    tags: frozenset[str]
    stale: bool = False


class CacheLayer:
    """
    Tag-indexed read-through cache.

    Features:
    - Stampede protection with per-key locks
    - Invalidation by tag: evicting tag T drops every entry carrying T
    - No negative caching: a None result is never stored
    - Graceful degradation: backend errors fall through to the producer
    - Loads that race an invalidation of one of their tags are not stored
    """

    def __init__(self, backend: CacheBackend, *, default_ttl: int = 300):
        self.backend = backend
        self.default_ttl = default_ttl
        # Per-key locks, bounded and self-cleaning (see _lock_for).
        self._locks: TTLCache = TTLCache(maxsize=10_000, ttl=300)
        # Loads in flight, so an invalidation can mark the ones it overlaps.
        self._pending: set[_PendingLoad] = set()

        # Stats tracking
        self.stats = {
            "hits": 0,
            "misses": 0,
            "errors": 0,
            "skipped_stores": 0,
            "invalidations": 0,
        }

    @classmethod
    async def from_settings(cls, settings: Settings) -> "CacheLayer":
        """Build the configured backend; fall back to in-process when Redis is down."""
        backend: CacheBackend
        if settings.cache_backend == "redis":
            redis_backend = RedisCacheBackend.from_url(
                settings.redis_dsn,
                namespace=settings.cache_namespace,
                pool_size=settings.redis_pool_size,
            )
            try:
                await redis_backend.ping()
                logger.info("Redis connection established")
                backend = redis_backend
            except CacheError as e:
                logger.error(f"Redis initialization failed, using in-process cache: {e}")
                await redis_backend.close()
                backend = MemoryCacheBackend(maxsize=settings.cache_maxsize)
        else:
            backend = MemoryCacheBackend(maxsize=settings.cache_maxsize)

        logger.info("Cache layer initialized backend=%s", type(backend).__name__)
        return cls(backend, default_ttl=settings.default_ttl_seconds)

    def _serialize(self, value: Any) -> str:
        """Serialize value for storage."""
        if isinstance(value, BaseModel):
            value = value.model_dump(mode="json")
        try:
            return json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            logger.error(f"Serialization failed: {e}")
            raise

    def _deserialize(self, raw: str) -> Any:
        """Deserialize value from storage."""
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            # Return raw string if not valid JSON
            return raw

    def _lock_for(self, key: str) -> asyncio.Lock:
        # setdefault hands every concurrent caller the same lock object.
        return self._locks.setdefault(key, asyncio.Lock())

    async def _read(self, key: str) -> Optional[str]:
        try:
            return await self.backend.get(key)
        except CacheError as e:
            self.stats["errors"] += 1
            logger.warning(f"Cache degraded, reading through: {e}")
            return None

    async def _write(self, key: str, value: Any, ttl: int, tags: list[str]) -> None:
        try:
            await self.backend.set(key, self._serialize(value), ttl, tags)
            logger.debug("Stored %s ttl=%s tags=%s", key, ttl, tags)
        except CacheError as e:
            self.stats["errors"] += 1
            logger.warning(f"Cache degraded, value not stored: {e}")

    def _hydrate(self, raw: str, model: type[BaseModel] | None) -> Any:
        data = self._deserialize(raw)
        return model.model_validate(data) if model is not None else data

    async def cache_query(
        self,
        key: str,
        producer: Callable[[], Awaitable[Any]],
        *,
        tags: Iterable[str],
        ttl: Optional[int] = None,
        model: type[BaseModel] | None = None,
    ) -> Any:
        """
        Return the cached value for `key`, or run `producer` and cache its result.

        Args:
            key: Cache key
            producer: Async callable computing the value on a miss
            tags: Invalidation tags for the stored entry (at least one)
            ttl: Entry lifetime in seconds (uses default if None)
            model: Pydantic model used to rehydrate a cached value

        Returns:
            Cached or freshly produced value; None results are not cached
        """
        tags = list(dict.fromkeys(tags))
        if not tags:
            raise ValueError("cache_query needs at least one tag")

        # 1) Fast path
        raw = await self._read(key)
        if raw is not None:
            self.stats["hits"] += 1
            logger.debug("Cache hit %s", key)
            return self._hydrate(raw, model)

        # 2) Load with stampede protection
        async with self._lock_for(key):
            raw = await self._read(key)
            if raw is not None:
                self.stats["hits"] += 1
                return self._hydrate(raw, model)

            self.stats["misses"] += 1
            logger.debug("Cache miss %s, loading from source", key)
            load = _PendingLoad(frozenset(tags))
            self._pending.add(load)
            try:
                value = await producer()
                if value is None:
                    return None

                if load.stale:
                    # A tag was invalidated mid-load; the value may predate that write.
                    self.stats["skipped_stores"] += 1
                    logger.debug("Skipping store of %s, invalidated during load", key)
                    return value

                await self._write(key, value, ttl or self.default_ttl, tags)
                if load.stale:
                    # Invalidated while the store itself was in flight.
                    self.stats["skipped_stores"] += 1
                    await self.delete(key)
            finally:
                self._pending.discard(load)
            return value

    async def invalidate_tags(self, *tags: str) -> int:
        """
        Evict every entry carrying any of `tags`.

        Backend failures are logged and counted, never raised: the write
        that triggered the invalidation has already committed.
        """
        tags = tuple(dict.fromkeys(tags))
        for load in self._pending:
            if load.tags.intersection(tags):
                load.stale = True

        evicted = 0
        for tag in tags:
            try:
                evicted += await self.backend.invalidate_tag(tag)
            except CacheError as e:
                self.stats["errors"] += 1
                logger.error(f"Cache invalidation failed for tag {tag}: {e}")
        self.stats["invalidations"] += 1
        logger.debug("Invalidated tags=%s evicted=%s", list(tags), evicted)
        return evicted

    async def delete(self, key: str):
        try:
            await self.backend.delete(key)
        except CacheError as e:
            self.stats["errors"] += 1
            logger.error(f"Cache DELETE error: {e}")

    async def close(self):
        """Graceful shutdown of cache connections."""
        await self.backend.close()

    def get_stats(self) -> dict:
        total = self.stats["hits"] + self.stats["misses"]
        return {
            **self.stats,
            "backend": type(self.backend).__name__,
            "hit_rate": self.stats["hits"] / total if total > 0 else 0,
        }
