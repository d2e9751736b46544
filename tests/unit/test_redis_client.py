"""
Unit Tests for the Async Redis Client
=====================================

The redis.asyncio connection is replaced with an AsyncMock; the pool's
circuit breaker and the client's error mapping run for real.
"""

from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from core.exceptions import CacheCorruptionError, CacheError
from infrastructure.redis_client import RedisClient, RedisConnectionPool


@pytest.fixture
def connection():
    conn = AsyncMock()
    conn.aclose = AsyncMock()
    with patch("infrastructure.redis_client.Redis", return_value=conn):
        yield conn


@pytest.fixture
def client(connection) -> RedisClient:
    pool = RedisConnectionPool()
    pool._pool = object()
    return RedisClient(pool=pool)


class TestRedisClient:
    @pytest.mark.asyncio
    async def test_hgetall(self, client, connection):
        connection.hgetall.return_value = {"entry": "{}"}

        assert await client.hgetall("kwcache:en:us:dog") == {"entry": "{}"}
        connection.aclose.assert_awaited()

    @pytest.mark.asyncio
    async def test_wrong_type_is_corruption(self, client, connection):
        connection.hgetall.side_effect = ResponseError(
            "WRONGTYPE Operation against a key holding the wrong kind of value"
        )

        with pytest.raises(CacheCorruptionError) as exc_info:
            await client.hgetall("kwcache:en:us:dog")
        assert exc_info.value.cache_key == "kwcache:en:us:dog"

    @pytest.mark.asyncio
    async def test_eval_passes_key_count(self, client, connection):
        connection.eval.return_value = 2

        assert await client.eval("return 1", ["k1"], [5, "x"]) == 2
        connection.eval.assert_awaited_once_with("return 1", 1, "k1", 5, "x")

    @pytest.mark.asyncio
    async def test_flush_pattern_scans_and_deletes(self, client, connection):
        connection.scan.side_effect = [(7, ["a", "b"]), (0, ["c"])]
        connection.delete.side_effect = [2, 1]

        assert await client.flush_pattern("kwcache:*") == 3
        assert connection.scan.await_count == 2

    @pytest.mark.asyncio
    async def test_delete_without_keys(self, client, connection):
        assert await client.delete() == 0
        connection.delete.assert_not_awaited()


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_opens_after_repeated_connection_failures(self, client, connection):
        connection.hgetall.side_effect = RedisConnectionError("refused")

        for _ in range(RedisConnectionPool.FAILURE_THRESHOLD):
            with pytest.raises(CacheError):
                await client.hgetall("kwcache:en:us:dog")

        assert client._pool.circuit_open
        connection.hgetall.reset_mock()
        with pytest.raises(CacheError, match="Circuit breaker open"):
            await client.hgetall("kwcache:en:us:dog")
        connection.hgetall.assert_not_awaited()
