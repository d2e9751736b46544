"""
Async Redis Client for the Shared Keyword Metrics Cache
========================================================

Provides async Redis operations for the keyword cache backend:
- Hash-per-entry storage with native TTL
- Server-side Lua scripts for atomic read-modify-write
- Cursor-based key scanning for scoped flushes
- Circuit breaker pattern for fault tolerance

Architecture: Connection pool with automatic failover; entry
encoding is left to the cache store.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional, Sequence

from loguru import logger
from redis.asyncio import Redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import ConnectionError, RedisError, ResponseError, TimeoutError

from config.settings import RedisSettings, settings
from core.exceptions import CacheCorruptionError, CacheError, InfrastructureError


class RedisConnectionPool:
    """
    Connection pool manager with health monitoring.

    Implements exponential backoff reconnection strategy and
    circuit breaker pattern to prevent cascade failures.
    """

    FAILURE_THRESHOLD = 3

    def __init__(self, redis_settings: Optional[RedisSettings] = None):
        self._settings = redis_settings or settings.redis
        self._pool: Optional[ConnectionPool] = None
        self._init_lock = asyncio.Lock()
        self._circuit_breaker_open = False
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._backoff_multiplier = 1
        self._max_backoff = 300  # 5 minutes max backoff

    @property
    def circuit_open(self) -> bool:
        return self._circuit_breaker_open

    async def initialize(self) -> None:
        """Initialize Redis connection pool and verify connectivity."""
        async with self._init_lock:
            if self._pool is not None:
                return
            try:
                self._pool = ConnectionPool.from_url(
                    str(self._settings.url),
                    encoding="utf-8",
                    decode_responses=True,
                    max_connections=self._settings.max_connections,
                    socket_timeout=self._settings.socket_timeout,
                    socket_connect_timeout=self._settings.socket_connect_timeout,
                    socket_keepalive=True,
                    health_check_interval=30,
                )
                conn = Redis(connection_pool=self._pool)
                try:
                    await conn.ping()
                finally:
                    await conn.aclose()

                logger.info(
                    f"Redis connection pool initialized "
                    f"({self._settings.host}:{self._settings.port}/{self._settings.db})"
                )
                self._circuit_breaker_open = False
                self._failure_count = 0

            except RedisError as e:
                self._pool = None
                logger.error(f"Failed to initialize Redis connection pool: {e}")
                raise InfrastructureError(f"Redis initialization failed: {e}", cause=e)

    @asynccontextmanager
    async def get_connection(self) -> AsyncGenerator[Redis, None]:
        """
        Context manager for acquiring Redis connections with circuit breaker.

        Yields:
            Redis connection from pool

        Raises:
            CacheError: When circuit breaker is open or connection fails
        """
        loop = asyncio.get_running_loop()
        if self._circuit_breaker_open:
            time_since_failure = loop.time() - (self._last_failure_time or 0)
            backoff_time = min(60 * self._backoff_multiplier, self._max_backoff)

            if time_since_failure < backoff_time:
                raise CacheError(
                    f"Circuit breaker open: Redis unavailable. "
                    f"Retry in {backoff_time - time_since_failure:.1f}s"
                )
            logger.info(f"Attempting to close Redis circuit breaker (backoff: {backoff_time}s)")
            self._circuit_breaker_open = False
            self._failure_count = 0

        if self._pool is None:
            await self.initialize()

        connection = Redis(connection_pool=self._pool)
        try:
            yield connection
            self._failure_count = 0
            self._backoff_multiplier = 1

        except (ConnectionError, TimeoutError) as e:
            self._failure_count += 1
            self._last_failure_time = loop.time()

            if self._failure_count >= self.FAILURE_THRESHOLD:
                self._circuit_breaker_open = True
                self._backoff_multiplier = min(self._backoff_multiplier * 2, 16)
                logger.error(
                    f"Circuit breaker opened after {self._failure_count} failures. "
                    f"Backoff multiplier: {self._backoff_multiplier}x"
                )

            raise CacheError(f"Redis connection error: {e}", retryable=True, cause=e)

        finally:
            await connection.aclose()

    async def close(self) -> None:
        """Gracefully close connection pool."""
        if self._pool:
            await self._pool.disconnect()
            self._pool = None
            logger.info("Redis connection pool closed")


class RedisClient:
    """
    High-level Redis client used by the Redis cache store.

    Features:
    - Hash reads with wrong-type detection
    - Lua script execution for atomic updates
    - SCAN-based pattern deletion (never KEYS on a shared server)
    """

    def __init__(
        self,
        redis_settings: Optional[RedisSettings] = None,
        pool: Optional[RedisConnectionPool] = None,
    ):
        self._pool = pool or RedisConnectionPool(redis_settings)

    async def initialize(self) -> None:
        """Initialize Redis client and verify connectivity."""
        await self._pool.initialize()

    # =========================================================================
    # HASH OPERATIONS
    # =========================================================================

    async def hgetall(self, key: str) -> Dict[str, str]:
        """
        Get all fields of a hash; empty when the key does not exist.

        Raises:
            CacheCorruptionError: the key holds a non-hash value
        """
        try:
            async with self._pool.get_connection() as conn:
                return await conn.hgetall(key)
        except ResponseError as e:
            if "WRONGTYPE" in str(e):
                raise CacheCorruptionError(f"Key {key} does not hold a hash", cache_key=key, cause=e)
            logger.error(f"Failed to read hash {key}: {e}")
            raise CacheError(f"Hash read failed: {e}", cause=e)
        except RedisError as e:
            logger.error(f"Failed to read hash {key}: {e}")
            raise CacheError(f"Hash read failed: {e}", cause=e)

    async def delete(self, *keys: str) -> int:
        """Delete keys; returns how many existed."""
        if not keys:
            return 0
        try:
            async with self._pool.get_connection() as conn:
                return int(await conn.delete(*keys))
        except RedisError as e:
            logger.error(f"Failed to delete {len(keys)} keys: {e}")
            raise CacheError(f"Delete operation failed: {e}", cause=e)

    # =========================================================================
    # SCRIPTING & SCANNING
    # =========================================================================

    async def eval(self, script: str, keys: Sequence[str], args: Sequence[Any]) -> Any:
        """Run a Lua script atomically on the server."""
        try:
            async with self._pool.get_connection() as conn:
                return await conn.eval(script, len(keys), *keys, *args)
        except RedisError as e:
            logger.error(f"Lua script failed on {list(keys)}: {e}")
            raise CacheError(f"Script execution failed: {e}", cause=e)

    async def scan_keys(self, pattern: str, count: int = 500) -> AsyncIterator[List[str]]:
        """
        Yield batches of keys matching a glob pattern.

        Uses SCAN so a large keyspace never blocks the server.
        """
        try:
            async with self._pool.get_connection() as conn:
                cursor = 0
                while True:
                    cursor, batch = await conn.scan(cursor=cursor, match=pattern, count=count)
                    if batch:
                        yield list(batch)
                    if cursor == 0:
                        break
        except RedisError as e:
            logger.error(f"Failed to scan '{pattern}': {e}")
            raise CacheError(f"Scan operation failed: {e}", cause=e)

    async def flush_pattern(self, pattern: str) -> int:
        """
        Delete every key matching pattern.

        Args:
            pattern: Redis glob pattern (e.g., "kwcache:en:*")

        Returns:
            Number of keys deleted
        """
        deleted = 0
        async for batch in self.scan_keys(pattern):
            deleted += await self.delete(*batch)
        if deleted:
            logger.warning(f"Flushed {deleted} keys matching '{pattern}'")
        return deleted

    async def close(self) -> None:
        """Close Redis connection pool."""
        await self._pool.close()
