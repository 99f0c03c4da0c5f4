import logging
import time
from dataclasses import dataclass
from typing import Iterable, Protocol

from cachetools import TLRUCache
from redis.asyncio import Redis, RedisError

from app.core.exceptions import CacheError

logger = logging.getLogger(__name__)


class CacheBackend(Protocol):
    """get/set/delete by key plus invalidate-by-tag. Values are serialized strings."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl: int, tags: Iterable[str]) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def invalidate_tag(self, tag: str) -> int: ...

    async def close(self) -> None: ...


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: str
    tags: frozenset[str]
    expires_at: float


class _TaggedTLRUCache(TLRUCache):
    """TLRUCache that reports every entry it drops on its own (expiry or LRU)."""

    def __init__(self, maxsize, ttu, timer, on_evict):
        super().__init__(maxsize=maxsize, ttu=ttu, timer=timer)
        self._on_evict = on_evict

    def expire(self, time=None):
        expired = super().expire(time)
        for key, entry in expired:
            self._on_evict(key, entry)
        return expired

    def popitem(self):
        key, entry = super().popitem()
        self._on_evict(key, entry)
        return key, entry


class MemoryCacheBackend:
    """
    Process-local backend.

    Entries live in a cachetools TLRUCache so each one expires at its own
    instant; a tag -> keys index drives invalidation. Every way an entry
    leaves the cache also removes it from the index.
    """

    def __init__(self, maxsize: int = 2048, timer=time.monotonic):
        self._timer = timer
        self._entries = _TaggedTLRUCache(
            maxsize=maxsize,
            ttu=lambda _key, entry, _now: entry.expires_at,
            timer=timer,
            on_evict=self._unindex,
        )
        self._tags: dict[str, set[str]] = {}

    def _unindex(self, key: str, entry: CacheEntry) -> None:
        for tag in entry.tags:
            keys = self._tags.get(tag)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._tags[tag]

    def _drop(self, key: str) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._unindex(key, entry)
        return True

    async def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        return entry.value if entry is not None else None

    async def set(self, key: str, value: str, ttl: int, tags: Iterable[str]) -> None:
        # Overwriting an expired key would hide it from expire(), so sweep first.
        self._entries.expire()
        self._drop(key)
        if ttl <= 0:
            return
        tags = frozenset(tags)
        self._entries[key] = CacheEntry(key, value, tags, self._timer() + ttl)
        for tag in tags:
            self._tags.setdefault(tag, set()).add(key)

    async def delete(self, key: str) -> None:
        self._drop(key)

    async def invalidate_tag(self, tag: str) -> int:
        keys = self._tags.pop(tag, set())
        return sum(1 for key in keys if self._drop(key))

    async def close(self) -> None:
        self._entries.clear()
        self._tags.clear()

    @property
    def tag_count(self) -> int:
        return len(self._tags)

    def __len__(self) -> int:
        return len(self._entries)


class RedisCacheBackend:
    """
    Shared backend on redis.asyncio.

    Each entry is a plain string key with EX ttl. Each tag is a set of entry
    keys; the set's expiry is only ever pushed later so it outlives every
    member (NX + GT expire, Redis 7+).
    """

    def __init__(self, redis: Redis, namespace: str = "taskcache:"):
        self.redis = redis
        self._namespace = namespace

    @classmethod
    def from_url(cls, dsn: str, *, namespace: str = "taskcache:", pool_size: int = 5) -> "RedisCacheBackend":
        redis = Redis.from_url(
            dsn,
            encoding="utf-8",
            decode_responses=True,
            max_connections=pool_size,
            socket_connect_timeout=5,
            socket_keepalive=True,
            health_check_interval=30,
        )
        return cls(redis, namespace=namespace)

    def _key(self, key: str) -> str:
        return f"{self._namespace}entry:{key}"

    def _tag_key(self, tag: str) -> str:
        return f"{self._namespace}tag:{tag}"

    async def ping(self) -> None:
        try:
            await self.redis.ping()
        except RedisError as e:
            raise CacheError(f"Redis ping failed: {e}") from e

    async def get(self, key: str) -> str | None:
        try:
            return await self.redis.get(self._key(key))
        except RedisError as e:
            raise CacheError(f"Redis GET error: {e}") from e

    async def set(self, key: str, value: str, ttl: int, tags: Iterable[str]) -> None:
        entry_key = self._key(key)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(entry_key, value, ex=ttl)
                for tag in tags:
                    tag_key = self._tag_key(tag)
                    pipe.sadd(tag_key, entry_key)
                    pipe.expire(tag_key, ttl, nx=True)
                    pipe.expire(tag_key, ttl, gt=True)
                await pipe.execute()
        except RedisError as e:
            raise CacheError(f"Redis SET error: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self.redis.delete(self._key(key))
        except RedisError as e:
            raise CacheError(f"Redis DELETE error: {e}") from e

    async def invalidate_tag(self, tag: str) -> int:
        tag_key = self._tag_key(tag)
        try:
            keys = await self.redis.smembers(tag_key)
            if keys:
                await self.redis.delete(*keys, tag_key)
            return len(keys)
        except RedisError as e:
            raise CacheError(f"Redis tag invalidation error: {e}") from e

    async def close(self) -> None:
        try:
            await self.redis.aclose()
            logger.info("Redis connection closed")
        except RedisError as e:
            logger.error(f"Error closing Redis: {e}")
