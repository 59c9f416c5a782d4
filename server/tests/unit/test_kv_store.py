"""
Unit Tests for the Key-Value Stores

InMemoryTTLStore is driven with a fake clock; RedisKeyValueStore gets a
mocked redis.asyncio client so no server is needed.
"""

from unittest.mock import AsyncMock

import msgpack
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from core.exceptions import CacheBackendError, ErrorCode
from deepsearch.kv_store import InMemoryTTLStore, RedisKeyValueStore, build_store


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


# =============================================================================
# IN-MEMORY STORE TESTS
# =============================================================================

class TestInMemoryTTLStore:
    """Tests for the process-local store."""

    @pytest.mark.asyncio
    async def test_set_get_delete(self):
        """Test the basic operations and their counters."""
        store = InMemoryTTLStore(clock=FakeClock())
        await store.set("a", {"n": 1})

        assert await store.get("a") == {"n": 1}
        assert await store.get("missing") is None
        assert await store.delete("a", "missing") == 1

        stats = await store.stats()
        assert stats["backend"] == "memory"
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["sets"] == 1
        assert stats["deletes"] == 1
        assert stats["keys"] == 0

    @pytest.mark.asyncio
    async def test_entries_expire(self):
        """Test an entry disappears once its TTL has passed."""
        clock = FakeClock()
        store = InMemoryTTLStore(default_ttl=60, clock=clock)
        await store.set("short", "v", ttl=10)
        await store.set("long", "v")

        clock.now += 30
        assert await store.get("short") is None
        assert await store.get("long") == "v"
        assert (await store.stats())["expired"] == 1

    @pytest.mark.asyncio
    async def test_zero_ttl_never_expires(self):
        """Test ttl=0 stores without expiry."""
        clock = FakeClock()
        store = InMemoryTTLStore(clock=clock)
        await store.set("k", "v", ttl=0)
        clock.now += 10 ** 6
        assert await store.get("k") == "v"

    @pytest.mark.asyncio
    async def test_values_are_copied(self):
        """Test callers cannot mutate stored values."""
        store = InMemoryTTLStore(clock=FakeClock())
        value = {"messages": [{"role": "user"}]}
        await store.set("k", value)
        value["messages"].append({"role": "assistant"})

        fetched = await store.get("k")
        fetched["messages"].clear()
        assert await store.get("k") == {"messages": [{"role": "user"}]}

    @pytest.mark.asyncio
    async def test_sweep(self):
        """Test sweep() removes only expired entries."""
        clock = FakeClock()
        store = InMemoryTTLStore(clock=clock)
        await store.set("old", 1, ttl=5)
        await store.set("new", 2, ttl=500)
        clock.now += 10

        assert store.sweep() == 1
        assert (await store.stats())["keys"] == 1

    @pytest.mark.asyncio
    async def test_sweeper_lifecycle(self):
        """Test the periodic sweeper starts and stops cleanly."""
        store = InMemoryTTLStore(check_period=60)
        store.start_sweeper()
        assert store._sweeper is not None
        await store.close()
        assert store._sweeper is None


# =============================================================================
# REDIS STORE TESTS
# =============================================================================

@pytest.fixture
def redis_client():
    client = AsyncMock()
    client.get.return_value = None
    client.delete.return_value = 0
    return client


class TestRedisKeyValueStore:
    """Tests for the Redis store with a mocked client."""

    @pytest.mark.asyncio
    async def test_set_uses_setex_with_msgpack(self, redis_client):
        """Test values are packed and written with their TTL."""
        store = RedisKeyValueStore(key_prefix="ds", default_ttl=3600, client=redis_client)
        assert await store.set("session:a:full", {"messages": []}, ttl=120) is True

        key, ttl, payload = redis_client.setex.await_args.args
        assert key == "ds:session:a:full"
        assert ttl == 120
        assert msgpack.unpackb(payload, raw=False) == {"messages": []}

    @pytest.mark.asyncio
    async def test_set_without_ttl(self, redis_client):
        """Test ttl=0 writes a persistent key."""
        store = RedisKeyValueStore(key_prefix="", client=redis_client)
        await store.set("k", [1, 2], ttl=0)
        redis_client.set.assert_awaited_once()
        assert redis_client.set.await_args.args[0] == "k"

    @pytest.mark.asyncio
    async def test_get_unpacks(self, redis_client):
        """Test stored bytes are decoded."""
        redis_client.get.return_value = msgpack.packb({"count": 2}, use_bin_type=True)
        store = RedisKeyValueStore(client=redis_client)

        assert await store.get("session:a:chunks:meta") == {"count": 2}
        redis_client.get.assert_awaited_with("deepsearch:session:a:chunks:meta")
        assert (await store.stats())["hits"] == 1

    @pytest.mark.asyncio
    async def test_get_missing(self, redis_client):
        """Test a missing key returns None."""
        store = RedisKeyValueStore(client=redis_client)
        assert await store.get("nope") is None
        assert (await store.stats())["misses"] == 1

    @pytest.mark.asyncio
    async def test_redis_errors_become_cache_backend_errors(self, redis_client):
        """Test transport failures are mapped to CacheBackendError."""
        redis_client.get.side_effect = RedisConnectionError("connection refused")
        store = RedisKeyValueStore(client=redis_client)

        with pytest.raises(CacheBackendError) as exc_info:
            await store.get("k")
        assert exc_info.value.code == ErrorCode.CACHE_BACKEND_ERROR
        assert exc_info.value.details["operation"] == "get"
        assert (await store.stats())["errors"] == 1

    @pytest.mark.asyncio
    async def test_corrupt_value(self, redis_client):
        """Test undecodable bytes raise a serialization error."""
        redis_client.get.return_value = b"\xc1"
        store = RedisKeyValueStore(client=redis_client)

        with pytest.raises(CacheBackendError) as exc_info:
            await store.get("k")
        assert exc_info.value.code == ErrorCode.CACHE_SERIALIZATION_ERROR

    @pytest.mark.asyncio
    async def test_unserializable_value(self, redis_client):
        """Test values msgpack cannot encode are rejected."""
        store = RedisKeyValueStore(client=redis_client)
        with pytest.raises(CacheBackendError):
            await store.set("k", object())
        redis_client.setex.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_delete_prefixes_keys(self, redis_client):
        """Test delete() sends prefixed keys and returns the count."""
        redis_client.delete.return_value = 2
        store = RedisKeyValueStore(client=redis_client)

        assert await store.delete("a", "b") == 2
        redis_client.delete.assert_awaited_with("deepsearch:a", "deepsearch:b")
        assert await store.delete() == 0


class TestBuildStore:
    """Tests for backend selection."""

    def test_memory_backend(self, settings):
        """Test the memory backend is chosen from settings."""
        store = build_store(settings, ttl=10)
        assert isinstance(store, InMemoryTTLStore)
        assert store.default_ttl == 10

    def test_redis_backend(self, settings):
        """Test the redis backend is chosen from settings."""
        settings.cache_backend = "redis"
        store = build_store(settings, ttl=10)
        assert isinstance(store, RedisKeyValueStore)
        assert store.default_ttl == 10
