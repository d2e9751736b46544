"""
Keyword Cache Manager - Coalescing Read-Through Cache
======================================================

Sits between research runs and a CacheStore backend:

- Read-through lookups with access tracking on every hit
- At most one upstream fetch per cache key: concurrent misses wait on
  the in-flight fetch instead of issuing their own
- Corrupt entries are evicted and treated as misses
- Backend outages degrade to misses (reads) or uncached results (writes)
- Manual flush and expiry cleanup with hit-rate statistics

Design Philosophy: a failed fetch never damages what is already cached.
"""

import asyncio
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from loguru import logger

from core.exceptions import CacheCorruptionError, CacheError
from core.models import CacheEntry, CacheHit, CacheKey, FlushScope, KeywordMetrics
from infrastructure.monitoring import MetricsCollector, get_metrics_collector
from optimization.cache_store import CacheStore

FetchMetrics = Callable[[], Awaitable[KeywordMetrics]]


@dataclass
class CacheStats:
    """Cache statistics for monitoring."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    invalidations: int = 0
    coalesced: int = 0
    corruptions: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate hit rate percentage."""
        total = self.hits + self.misses
        return (self.hits / total * 100) if total > 0 else 0.0

    @property
    def total_operations(self) -> int:
        """Total cache operations."""
        return self.hits + self.misses + self.sets


def _consume_outcome(future: "asyncio.Future[KeywordMetrics]") -> None:
    # Nobody may be left waiting; mark the exception retrieved.
    if not future.cancelled():
        future.exception()


class KeywordCacheManager:
    """
    Coalescing cache front for keyword metrics.

    The in-flight registry maps a rendered cache key to the Future of
    the single fetch serving it. The fetch itself runs as its own task,
    so a caller that is cancelled mid-wait does not abort the fetch and
    its result is still cached for everyone else.
    """

    def __init__(self, store: CacheStore, *, metrics: Optional[MetricsCollector] = None):
        self._store = store
        self._metrics = metrics or get_metrics_collector()
        self._inflight: Dict[str, "asyncio.Future[KeywordMetrics]"] = {}
        self._lock = asyncio.Lock()
        self._tasks: Set["asyncio.Task[None]"] = set()
        self.stats = CacheStats()

        logger.info(f"Keyword cache manager initialized (backend={store.backend_name})")

    @property
    def backend(self) -> str:
        return self._store.backend_name

    # =========================================================================
    # READ PATH
    # =========================================================================

    async def _read_live(self, key: CacheKey) -> Optional[CacheEntry]:
        """Live entry from the store; corruption is evicted, outages read as a miss."""
        try:
            return await self._store.get(key)
        except CacheCorruptionError as e:
            self.stats.corruptions += 1
            logger.warning(f"Evicting corrupt cache entry {e.cache_key}")
            await self._evict(key)
            return None
        except CacheError as e:
            self.stats.errors += 1
            logger.warning(f"Cache read failed for '{key.keyword}', treating as miss: {e.message}")
            return None

    async def _evict(self, key: CacheKey) -> None:
        try:
            if await self._store.delete(key):
                self._metrics.record_cache_eviction(self.backend, reason="corrupt")
        except CacheError as e:
            self.stats.errors += 1
            logger.error(f"Failed to evict corrupt entry for '{key.keyword}': {e.message}")

    async def _touch(self, key: CacheKey, entry: CacheEntry) -> Optional[CacheEntry]:
        try:
            return await self._store.touch(key)
        except CacheError as e:
            self.stats.errors += 1
            logger.warning(f"Failed to record cache access for '{key.keyword}': {e.message}")
            return entry

    async def lookup(self, keyword: str, location: str, language: str) -> Optional[CacheHit]:
        """
        Cache-only lookup; never triggers a fetch.

        Returns:
            CacheHit (with the post-touch access_count) or None on a miss
        """
        key = CacheKey.build(keyword, location, language)
        entry = await self._read_live(key)
        touched = await self._touch(key, entry) if entry is not None else None

        if touched is None:
            self.stats.misses += 1
            self._metrics.record_cache_miss(self.backend)
            logger.debug(f"Cache miss: {key.keyword} [{key.language}/{key.location}]")
            return None

        self.stats.hits += 1
        self._metrics.record_cache_hit(self.backend)
        logger.debug(f"Cache hit: {key.keyword} (access_count={touched.access_count})")
        return CacheHit(
            metrics=touched.metrics,
            age=touched.last_accessed_at - touched.fetched_at,
            access_count=touched.access_count,
        )

    async def get_or_fetch(
        self,
        keyword: str,
        location: str,
        language: str,
        fetch: FetchMetrics,
    ) -> KeywordMetrics:
        """
        Return cached metrics, or fetch them once for all concurrent callers.

        Args:
            keyword: Keyword (any casing/spacing; normalized for the key)
            location: Location context
            language: Language code
            fetch: Zero-argument coroutine factory producing fresh metrics

        Raises:
            ProviderError: the shared fetch failed; any existing entry is untouched
        """
        hit = await self.lookup(keyword, location, language)
        if hit is not None:
            return hit.metrics

        key = CacheKey.build(keyword, location, language)
        slot = key.render()

        async with self._lock:
            future = self._inflight.get(slot)
            leader = future is None
            if leader:
                future = asyncio.get_running_loop().create_future()
                future.add_done_callback(_consume_outcome)
                self._inflight[slot] = future
                task = asyncio.create_task(self._fill(key, slot, fetch, future))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

        if not leader:
            self.stats.coalesced += 1
            self._metrics.record_cache_coalesced(self.backend)
            logger.debug(f"Coalesced onto in-flight fetch: {key.keyword}")

        return await asyncio.shield(future)

    async def _fill(
        self,
        key: CacheKey,
        slot: str,
        fetch: FetchMetrics,
        future: "asyncio.Future[KeywordMetrics]",
    ) -> None:
        """Run the single upstream fetch for `slot` and publish its outcome."""
        try:
            # Another leader may have filled the key just before we registered.
            entry = await self._read_live(key)
            if entry is not None:
                future.set_result(entry.metrics)
                return

            try:
                metrics = await fetch()
            except Exception as e:
                future.set_exception(e)
                return

            try:
                await self._store.put(key, metrics)
                self.stats.sets += 1
            except CacheError as e:
                self.stats.errors += 1
                logger.error(f"Cache write failed for '{key.keyword}': {e.message}")
            future.set_result(metrics)

        except asyncio.CancelledError:
            future.cancel()
            raise

        finally:
            async with self._lock:
                self._inflight.pop(slot, None)

    # =========================================================================
    # WRITE / ADMIN PATH
    # =========================================================================

    async def store(
        self, keyword: str, location: str, language: str, metrics: KeywordMetrics
    ) -> CacheEntry:
        """Write metrics directly, replacing any entry and resetting its TTL."""
        entry = await self._store.put(CacheKey.build(keyword, location, language), metrics)
        self.stats.sets += 1
        return entry

    async def flush(self, scope: Optional[FlushScope] = None) -> int:
        """
        Manually invalidate cache entries.

        Args:
            scope: Narrowing filters; None or an empty scope flushes everything

        Returns:
            Number of entries deleted
        """
        scope = scope or FlushScope()
        removed = await self._store.flush(scope)
        self.stats.invalidations += removed
        self._metrics.record_cache_eviction(self.backend, reason="flush", count=removed)
        filters = scope.model_dump(exclude_none=True) or "all"
        logger.warning(f"Flushed {removed} keyword cache entries ({filters})")
        return removed

    async def clean_expired(self) -> int:
        """Delete entries past expires_at. Safe to run alongside reads and writes."""
        removed = await self._store.clean_expired()
        self._metrics.record_cache_eviction(self.backend, reason="expired", count=removed)
        if removed:
            logger.info(f"Cleaned up {removed} expired keyword cache entries")
        return removed

    async def get_statistics(self) -> Dict[str, Any]:
        """
        Cache statistics for monitoring.

        Returns:
            Counters, hit rate, backend name, live key count and in-flight fetches
        """
        try:
            size: Optional[int] = await self._store.size()
        except CacheError as e:
            logger.warning(f"Could not size cache backend: {e.message}")
            size = None

        return {
            **asdict(self.stats),
            "hit_rate": round(self.stats.hit_rate, 2),
            "total_operations": self.stats.total_operations,
            "backend": self.backend,
            "entries": size,
            "inflight_fetches": len(self._inflight),
        }

    def reset_statistics(self) -> None:
        """Reset statistics counters."""
        self.stats = CacheStats()
        logger.info("Cache statistics reset")
