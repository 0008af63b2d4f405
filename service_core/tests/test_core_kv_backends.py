"""
Unit tests for the cache KV backends.
"""

import pytest
import redis.asyncio as redis
from unittest.mock import AsyncMock, MagicMock

from service_core.app.caching.backends import InMemoryKVBackend, RedisKVBackend
from shared.errors import CacheUnavailableError
from shared.test_helpers import FakeClock


class TestInMemoryKVBackend:
    """Test cases for InMemoryKVBackend."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def backend(self, clock):
        return InMemoryKVBackend(clock)

    @pytest.mark.asyncio
    async def test_set_get_expire(self, backend, clock):
        await backend.set("k", "v", 10)
        assert await backend.get("k") == "v"

        clock.advance(10)
        assert await backend.get("k") is None

    @pytest.mark.asyncio
    async def test_delete_counts_values_and_sets(self, backend):
        await backend.set("a", "1", 10)
        await backend.sadd("s", "x", "y")

        assert await backend.delete("a", "s", "missing") == 2
        assert await backend.smembers("s") == set()

    @pytest.mark.asyncio
    async def test_delete_pattern(self, backend):
        await backend.set("tenant:acme:a", "1", 10)
        await backend.set("tenant:acme:b", "2", 10)
        await backend.set("tenant:globex:a", "3", 10)

        assert await backend.delete_pattern("tenant:acme:*") == 2
        assert backend.keys() == ["tenant:globex:a"]


class TestRedisKVBackend:
    """Test cases for RedisKVBackend with a mocked client."""

    @pytest.fixture
    def client(self):
        return AsyncMock()

    @pytest.fixture
    def backend(self, client):
        return RedisKVBackend(client=client, scan_count=2)

    @pytest.mark.asyncio
    async def test_set_rounds_ttl_up(self, backend, client):
        await backend.set("k", "v", 2.2)
        await backend.set("k", "v", 0.1)

        client.set.assert_any_await("k", "v", ex=3)
        client.set.assert_any_await("k", "v", ex=1)

    @pytest.mark.asyncio
    async def test_smembers_decodes_bytes(self, backend, client):
        client.smembers.return_value = {b"a", b"b"}

        assert await backend.smembers("tags:acme:t") == {"a", "b"}

    @pytest.mark.asyncio
    async def test_delete_without_keys_skips_round_trip(self, backend, client):
        assert await backend.delete() == 0
        client.delete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_delete_pattern_batches(self, backend, client):
        async def scan_iter(match=None, count=None):
            for key in (b"tenant:acme:a", b"tenant:acme:b", b"tenant:acme:c"):
                yield key

        client.scan_iter = MagicMock(side_effect=scan_iter)
        client.delete.side_effect = lambda *keys: len(keys)

        assert await backend.delete_pattern("tenant:acme:*") == 3
        assert client.delete.await_count == 2
        client.scan_iter.assert_called_once_with(match="tenant:acme:*", count=2)

    @pytest.mark.asyncio
    async def test_redis_errors_become_cache_unavailable(self, backend, client):
        client.get.side_effect = redis.ConnectionError("refused")

        with pytest.raises(CacheUnavailableError) as exc_info:
            await backend.get("k")

        assert exc_info.value.details["operation"] == "get"

    @pytest.mark.asyncio
    async def test_close_releases_client(self, backend, client):
        await backend.close()

        client.aclose.assert_awaited_once()
        assert backend._redis is None
