"""
Pytest Configuration and Fixture Library

Shared test infrastructure:
- Controllable clock for deterministic TTL behaviour
- In-memory cache store and coalescing cache manager
- In-memory SQLite database with the full schema
- Fresh Prometheus registries per test
- Scripted keyword provider and fetcher

Design Pattern: Test Data Builder + Fixture Factory
"""

import os
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

# Set test environment variables before importing any modules
os.environ.update(
    {
        "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
        "CACHE_BACKEND": "memory",
        "MONITORING_LOG_LEVEL": "DEBUG",
    }
)

from config.settings import DatabaseSettings, ResearchSettings
from infrastructure.database import DatabaseManager
from infrastructure.metrics_fetcher import MetricsFetcher
from infrastructure.monitoring import MetricsCollector
from intelligence.clustering_engine import ClusteringEngine
from intelligence.scoring_engine import ScoringEngine
from knowledge.research_repository import ResearchRepository
from optimization.cache_manager import KeywordCacheManager
from optimization.cache_store import InMemoryCacheStore
from tests.factories import FakeProvider

# ============================================================================
# PYTEST CONFIGURATION
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "slow: mark test as slow-running (>1s)")
    config.addinivalue_line("markers", "unit: mark test as unit test (no external dependencies)")


@pytest.fixture(autouse=True)
def reset_metrics_collector():
    """Reset MetricsCollector singleton before each test."""
    MetricsCollector.reset_singleton()
    yield
    MetricsCollector.reset_singleton()


# ============================================================================
# CLOCK & CACHE FIXTURES
# ============================================================================


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def metrics() -> MetricsCollector:
    """Collector with its own registry."""
    return MetricsCollector()


@pytest.fixture
def memory_store(clock) -> InMemoryCacheStore:
    return InMemoryCacheStore(timedelta(days=90), clock=clock)


@pytest.fixture
def cache_manager(memory_store, metrics) -> KeywordCacheManager:
    return KeywordCacheManager(memory_store, metrics=metrics)


# ============================================================================
# DATABASE FIXTURES
# ============================================================================


@pytest_asyncio.fixture
async def db_manager() -> AsyncGenerator[DatabaseManager, None]:
    """In-memory SQLite database with the full schema."""
    manager = DatabaseManager(DatabaseSettings(DATABASE_URL="sqlite+aiosqlite:///:memory:"))
    await manager.initialize()
    await manager.create_schema()
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def repository(db_manager) -> ResearchRepository:
    return ResearchRepository(db_manager)


# ============================================================================
# RESEARCH FIXTURES
# ============================================================================


@pytest.fixture
def research_settings() -> ResearchSettings:
    """Fast settings: no backoff waits, short deadlines."""
    return ResearchSettings(
        max_concurrent_fetches=15,
        fetch_timeout=2.0,
        run_deadline=5.0,
        max_retries=2,
        retry_min_wait=0.0,
        retry_max_wait=0.0,
        max_related_keywords=100,
    )


@pytest.fixture
def scoring() -> ScoringEngine:
    return ScoringEngine()


@pytest.fixture
def clustering(scoring) -> ClusteringEngine:
    return ClusteringEngine(scoring=scoring)


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def fetcher(fake_provider, research_settings, metrics) -> MetricsFetcher:
    return MetricsFetcher(fake_provider, research_settings=research_settings, metrics=metrics)


@pytest.fixture
def mock_redis_client():
    """RedisClient double; each test scripts the coroutine return values."""
    client = AsyncMock()
    client.hgetall = AsyncMock(return_value={})
    client.delete = AsyncMock(return_value=1)
    client.eval = AsyncMock(return_value=1)
    client.flush_pattern = AsyncMock(return_value=0)
    return client
