"""
Keyword Metrics Cache Stores
============================
Storage backends for the shared keyword metrics cache.

Both backends share one contract (CacheStore):
- get() never returns an entry whose expires_at has passed
- put() replaces any previous entry wholesale and resets the TTL
- touch() bumps access_count / last_accessed_at on live entries only
- clean_expired() re-checks expiry at delete time, so an entry that was
  refreshed between scan and delete survives

Backends:
- InMemoryCacheStore: single-process dict guarded by an asyncio.Lock
- RedisCacheStore: one Redis hash per entry, atomic updates via Lua

Time is read from an injected clock so TTL behaviour is testable.
"""

import asyncio
import json
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Protocol, runtime_checkable

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from config.settings import CacheSettings
from core.enums import CacheBackend
from core.exceptions import CacheCorruptionError
from core.models import CacheEntry, CacheKey, FlushScope, KeywordMetrics, utcnow
from infrastructure.redis_client import RedisClient

Clock = Callable[[], datetime]


@runtime_checkable
class CacheStore(Protocol):
    """Backend contract used by KeywordCacheManager."""

    backend_name: str

    async def get(self, key: CacheKey) -> Optional[CacheEntry]:
        """Live entry or None; raises CacheCorruptionError on unreadable payloads."""
        ...

    async def put(self, key: CacheKey, metrics: KeywordMetrics) -> CacheEntry: ...

    async def touch(self, key: CacheKey) -> Optional[CacheEntry]: ...

    async def delete(self, key: CacheKey) -> bool: ...

    async def flush(self, scope: FlushScope) -> int: ...

    async def clean_expired(self) -> int: ...

    async def size(self) -> int: ...


def _new_entry(
    rendered: str, key: CacheKey, metrics: KeywordMetrics, now: datetime, ttl: timedelta
) -> CacheEntry:
    return CacheEntry(
        cache_key=rendered,
        keyword=key.keyword,
        location=key.location,
        language=key.language,
        metrics=metrics,
        fetched_at=now,
        expires_at=now + ttl,
        access_count=1,
        last_accessed_at=now,
    )


# =============================================================================
# IN-MEMORY BACKEND
# =============================================================================


class InMemoryCacheStore:
    """
    Process-local cache store.

    Entries are held in their serialized (JSON-compatible) form and
    validated on read, so a damaged payload surfaces as corruption
    exactly like it would from Redis.
    """

    backend_name = "memory"

    def __init__(self, ttl: timedelta, *, clock: Clock = utcnow, key_prefix: str = "kwcache"):
        self._ttl = ttl
        self._clock = clock
        self._prefix = key_prefix
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    def _decode(self, rendered: str, raw: Dict[str, Any]) -> CacheEntry:
        try:
            return CacheEntry.model_validate(raw)
        except PydanticValidationError as e:
            raise CacheCorruptionError(cache_key=rendered, cause=e)

    async def get(self, key: CacheKey) -> Optional[CacheEntry]:
        rendered = key.render(self._prefix)
        async with self._lock:
            raw = self._entries.get(rendered)
        if raw is None:
            return None
        entry = self._decode(rendered, raw)
        return None if entry.is_expired(self._clock()) else entry

    async def put(self, key: CacheKey, metrics: KeywordMetrics) -> CacheEntry:
        rendered = key.render(self._prefix)
        entry = _new_entry(rendered, key, metrics, self._clock(), self._ttl)
        async with self._lock:
            self._entries[rendered] = entry.model_dump(mode="json")
        return entry

    async def touch(self, key: CacheKey) -> Optional[CacheEntry]:
        rendered = key.render(self._prefix)
        async with self._lock:
            raw = self._entries.get(rendered)
            if raw is None:
                return None
            entry = self._decode(rendered, raw)
            now = self._clock()
            if entry.is_expired(now):
                return None
            entry.access_count += 1
            entry.last_accessed_at = now
            self._entries[rendered] = entry.model_dump(mode="json")
            return entry

    async def delete(self, key: CacheKey) -> bool:
        async with self._lock:
            return self._entries.pop(key.render(self._prefix), None) is not None

    async def flush(self, scope: FlushScope) -> int:
        async with self._lock:
            if scope.is_global:
                removed = len(self._entries)
                self._entries.clear()
                return removed

            doomed = [
                rendered
                for rendered in self._entries
                if scope.matches(CacheKey.parse(rendered))
            ]
            for rendered in doomed:
                del self._entries[rendered]
            return len(doomed)

    async def clean_expired(self) -> int:
        removed = 0
        async with self._lock:
            now = self._clock()
            for rendered in list(self._entries):
                try:
                    expired = self._decode(rendered, self._entries[rendered]).is_expired(now)
                except CacheCorruptionError:
                    expired = True
                if expired:
                    del self._entries[rendered]
                    removed += 1
        return removed

    async def size(self) -> int:
        async with self._lock:
            return len(self._entries)


# =============================================================================
# REDIS BACKEND
# =============================================================================

# KEYS[1] entry key; ARGV: entry json, expires_at epoch, last_accessed iso, ttl ms
_PUT_SCRIPT = """
redis.call('DEL', KEYS[1])
redis.call('HSET', KEYS[1],
    'entry', ARGV[1],
    'expires_at_epoch', ARGV[2],
    'access_count', 1,
    'last_accessed_at', ARGV[3])
redis.call('PEXPIRE', KEYS[1], ARGV[4])
return 1
"""

# KEYS[1] entry key; ARGV: now epoch, now iso. Returns new access_count or false.
_TOUCH_SCRIPT = """
if redis.call('TYPE', KEYS[1]).ok ~= 'hash' then return false end
local exp = tonumber(redis.call('HGET', KEYS[1], 'expires_at_epoch'))
if not exp or exp <= tonumber(ARGV[1]) then return false end
local count = redis.call('HINCRBY', KEYS[1], 'access_count', 1)
redis.call('HSET', KEYS[1], 'last_accessed_at', ARGV[2])
return count
"""

# KEYS[1] entry key; ARGV: now epoch. Deletes only if still expired (or unreadable).
_DELETE_IF_EXPIRED_SCRIPT = """
local kind = redis.call('TYPE', KEYS[1]).ok
if kind == 'none' then return 0 end
if kind ~= 'hash' then redis.call('DEL', KEYS[1]) return 1 end
local exp = tonumber(redis.call('HGET', KEYS[1], 'expires_at_epoch'))
if not exp or exp <= tonumber(ARGV[1]) then
    redis.call('DEL', KEYS[1])
    return 1
end
return 0
"""

_GLOB_SPECIALS = "\\*?[]"


def _glob_escape(value: str) -> str:
    return "".join(f"\\{ch}" if ch in _GLOB_SPECIALS else ch for ch in value)


class RedisCacheStore:
    """
    Shared cache store on Redis.

    Layout: one hash per entry at `{prefix}:{language}:{location}:{keyword}`
    with fields entry (immutable JSON), expires_at_epoch, access_count and
    last_accessed_at. Redis-native expiry mirrors expires_at; the stored
    epoch stays authoritative for lazy-expiry checks.
    """

    backend_name = "redis"

    def __init__(
        self,
        client: RedisClient,
        ttl: timedelta,
        *,
        clock: Clock = utcnow,
        key_prefix: str = "kwcache",
    ):
        self._client = client
        self._ttl = ttl
        self._clock = clock
        self._prefix = key_prefix

    def _decode(self, rendered: str, fields: Dict[str, str]) -> CacheEntry:
        try:
            body = json.loads(fields["entry"])
            body["access_count"] = int(fields.get("access_count", body.get("access_count", 1)))
            body["last_accessed_at"] = fields.get("last_accessed_at", body.get("last_accessed_at"))
            return CacheEntry.model_validate(body)
        except (KeyError, TypeError, ValueError, PydanticValidationError) as e:
            raise CacheCorruptionError(cache_key=rendered, cause=e)

    async def get(self, key: CacheKey) -> Optional[CacheEntry]:
        rendered = key.render(self._prefix)
        fields = await self._client.hgetall(rendered)
        if not fields:
            return None
        entry = self._decode(rendered, fields)
        return None if entry.is_expired(self._clock()) else entry

    async def put(self, key: CacheKey, metrics: KeywordMetrics) -> CacheEntry:
        rendered = key.render(self._prefix)
        now = self._clock()
        entry = _new_entry(rendered, key, metrics, now, self._ttl)
        await self._client.eval(
            _PUT_SCRIPT,
            [rendered],
            [
                entry.model_dump_json(),
                entry.expires_at.timestamp(),
                now.isoformat(),
                max(int(self._ttl.total_seconds() * 1000), 1),
            ],
        )
        return entry

    async def touch(self, key: CacheKey) -> Optional[CacheEntry]:
        rendered = key.render(self._prefix)
        now = self._clock()
        count = await self._client.eval(_TOUCH_SCRIPT, [rendered], [now.timestamp(), now.isoformat()])
        if not count:
            return None
        entry = await self.get(key)
        if entry is None:
            return None
        # a concurrent touch may already be reflected; never report less than ours
        entry.access_count = max(entry.access_count, int(count))
        return entry

    async def delete(self, key: CacheKey) -> bool:
        return await self._client.delete(key.render(self._prefix)) > 0

    def _scope_pattern(self, scope: FlushScope) -> str:
        language = _glob_escape(scope.language) if scope.language else "*"
        location = _glob_escape(scope.location) if scope.location else "*"
        keyword = f"{_glob_escape(scope.keyword_prefix)}*" if scope.keyword_prefix else "*"
        return f"{_glob_escape(self._prefix)}:{language}:{location}:{keyword}"

    async def flush(self, scope: FlushScope) -> int:
        pattern = self._scope_pattern(scope)
        logger.debug(f"Flushing Redis cache entries matching '{pattern}'")
        return await self._client.flush_pattern(pattern)

    async def clean_expired(self) -> int:
        now_epoch = self._clock().timestamp()
        removed = 0
        async for batch in self._client.scan_keys(f"{_glob_escape(self._prefix)}:*"):
            for rendered in batch:
                removed += int(
                    await self._client.eval(_DELETE_IF_EXPIRED_SCRIPT, [rendered], [now_epoch])
                )
        return removed

    async def size(self) -> int:
        total = 0
        async for batch in self._client.scan_keys(f"{_glob_escape(self._prefix)}:*"):
            total += len(batch)
        return total


def build_cache_store(
    cache_settings: CacheSettings,
    redis_client: Optional[RedisClient] = None,
    *,
    key_prefix: str = "kwcache",
    clock: Clock = utcnow,
) -> CacheStore:
    """
    Build the store named by CACHE_BACKEND.

    Raises:
        ValueError: If the redis backend is requested without a client
    """
    ttl = timedelta(days=cache_settings.ttl_days)
    if cache_settings.backend == CacheBackend.REDIS.value:
        if redis_client is None:
            raise ValueError("Redis cache backend requires a RedisClient")
        return RedisCacheStore(redis_client, ttl, clock=clock, key_prefix=key_prefix)
    return InMemoryCacheStore(ttl, clock=clock, key_prefix=key_prefix)
