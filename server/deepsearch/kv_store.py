"""
Key-value stores behind the context cache

The context cache only sees the KeyValueStore interface (get/set/delete/stats),
so tests and deployments pick the backend:

- InMemoryTTLStore: process-local dict with per-entry TTL. Expiry is passive:
  checked on access plus an optional periodic sweep.
- RedisKeyValueStore: redis.asyncio with a connection pool, MessagePack
  values and SETEX for per-entry TTL.
"""

import asyncio
import copy
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import msgpack
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import RedisError

from core.exceptions import CacheBackendError, ErrorCode

logger = logging.getLogger("deepsearch.kv_store")


@dataclass
class StoreStats:
    """Counters kept by every store"""
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    expired: int = 0
    errors: int = 0


class KeyValueStore(ABC):
    """Async key-value store with per-entry TTL in seconds"""

    name: str = "store"

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the stored value, or None when missing or expired"""
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        pass

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys and return how many existed"""
        pass

    @abstractmethod
    async def stats(self) -> Dict[str, Any]:
        pass

    async def close(self) -> None:
        pass


class InMemoryTTLStore(KeyValueStore):
    """
    Process-local store with passive TTL eviction.

    Values are deep-copied on the way in and out so callers never share
    mutable state with the store.
    """

    name = "memory"

    def __init__(
        self,
        default_ttl: Optional[int] = 3600,
        check_period: Optional[int] = 600,
        clock: Callable[[], float] = time.monotonic
    ):
        self.default_ttl = default_ttl
        self.check_period = check_period
        self._clock = clock
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._stats = StoreStats()
        self._sweeper: Optional[asyncio.Task] = None

    def _expired(self, expires_at: Optional[float]) -> bool:
        return expires_at is not None and self._clock() >= expires_at

    async def get(self, key: str) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            self._stats.misses += 1
            return None
        value, expires_at = entry
        if self._expired(expires_at):
            del self._data[key]
            self._stats.expired += 1
            self._stats.misses += 1
            return None
        self._stats.hits += 1
        return copy.deepcopy(value)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        ttl = self.default_ttl if ttl is None else ttl
        expires_at = self._clock() + ttl if ttl and ttl > 0 else None
        self._data[key] = (copy.deepcopy(value), expires_at)
        self._stats.sets += 1
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._data.pop(key, None) is not None:
                removed += 1
        self._stats.deletes += removed
        return removed

    def sweep(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        expired = [key for key, (_, expires_at) in self._data.items() if self._expired(expires_at)]
        for key in expired:
            del self._data[key]
        self._stats.expired += len(expired)
        if expired:
            logger.debug(f"Swept {len(expired)} expired entries")
        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.check_period)
            self.sweep()

    def start_sweeper(self) -> None:
        """Start the periodic sweep on the running event loop"""
        if self.check_period and (self._sweeper is None or self._sweeper.done()):
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def close(self) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
        self._sweeper = None

    async def stats(self) -> Dict[str, Any]:
        return {"backend": self.name, "keys": len(self._data), **asdict(self._stats)}


class RedisKeyValueStore(KeyValueStore):
    """
    Redis-backed store.

    Usage:
    ```python
    store = RedisKeyValueStore("redis://localhost:6379/4", key_prefix="deepsearch")
    await store.connect()
    await store.set("session:abc:full", {"messages": [...]}, ttl=3600)
    ```
    Backend failures raise CacheBackendError.
    """

    name = "redis"

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/4",
        key_prefix: str = "deepsearch",
        default_ttl: Optional[int] = 3600,
        client: Optional[redis.Redis] = None
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.default_ttl = default_ttl
        self._pool: Optional[ConnectionPool] = None
        self._redis: Optional[redis.Redis] = client
        self._stats = StoreStats()

    def _make_key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}" if self.key_prefix else key

    def _serialize(self, value: Any) -> bytes:
        return msgpack.packb(value, use_bin_type=True)

    def _deserialize(self, data: bytes) -> Any:
        return msgpack.unpackb(data, raw=False, strict_map_key=False)

    async def connect(self) -> None:
        """Create the connection pool and verify the server responds"""
        if self._redis is not None:
            return
        self._pool = ConnectionPool.from_url(
            self.redis_url,
            max_connections=20,
            decode_responses=False  # We handle encoding ourselves
        )
        self._redis = redis.Redis(connection_pool=self._pool)
        try:
            await self._redis.ping()
        except RedisError as e:
            raise CacheBackendError(f"Redis unreachable at {self.redis_url}: {e}", operation="connect") from e
        logger.info(f"Connected to Redis at {self.redis_url}")

    async def _client(self) -> redis.Redis:
        if self._redis is None:
            await self.connect()
        return self._redis

    async def get(self, key: str) -> Optional[Any]:
        client = await self._client()
        try:
            data = await client.get(self._make_key(key))
        except RedisError as e:
            self._stats.errors += 1
            raise CacheBackendError(str(e), operation="get", key=key) from e
        if data is None:
            self._stats.misses += 1
            return None
        self._stats.hits += 1
        try:
            return self._deserialize(data)
        except (ValueError, msgpack.UnpackException) as e:
            self._stats.errors += 1
            raise CacheBackendError(
                f"Corrupt value: {e}", operation="get",
                code=ErrorCode.CACHE_SERIALIZATION_ERROR, key=key
            ) from e

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        client = await self._client()
        ttl = self.default_ttl if ttl is None else ttl
        try:
            payload = self._serialize(value)
        except (TypeError, ValueError) as e:
            raise CacheBackendError(
                f"Value is not serializable: {e}", operation="set",
                code=ErrorCode.CACHE_SERIALIZATION_ERROR, key=key
            ) from e
        try:
            if ttl and ttl > 0:
                await client.setex(self._make_key(key), ttl, payload)
            else:
                await client.set(self._make_key(key), payload)
        except RedisError as e:
            self._stats.errors += 1
            raise CacheBackendError(str(e), operation="set", key=key) from e
        self._stats.sets += 1
        return True

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        client = await self._client()
        try:
            removed = await client.delete(*(self._make_key(k) for k in keys))
        except RedisError as e:
            self._stats.errors += 1
            raise CacheBackendError(str(e), operation="delete") from e
        self._stats.deletes += int(removed or 0)
        return int(removed or 0)

    async def stats(self) -> Dict[str, Any]:
        return {"backend": self.name, "url": self.redis_url, **asdict(self._stats)}

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        if self._pool is not None:
            await self._pool.disconnect()
            self._pool = None


def build_store(settings, ttl: int) -> KeyValueStore:
    """Create the store selected by settings.cache_backend"""
    if settings.cache_backend == "redis":
        return RedisKeyValueStore(
            redis_url=settings.redis_url,
            key_prefix=settings.redis_key_prefix,
            default_ttl=ttl
        )
    return InMemoryTTLStore(default_ttl=ttl, check_period=settings.check_period)
