"""
Unit Tests for the Dependency Injection Container
=================================================
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from dependency_injector import providers

from config.settings import CacheSettings, get_settings
from container import Container, ContainerManager
from optimization.cache_store import InMemoryCacheStore
from services.research_service import ResearchService


@pytest.fixture
def fresh_container() -> Container:
    return Container()


class TestContainerManager:
    @pytest.mark.asyncio
    async def test_initialize_and_cleanup(self, fresh_container):
        manager = ContainerManager(fresh_container)

        await manager.initialize()
        try:
            assert manager.is_initialized
            service = manager.get_container().research_service()
            assert isinstance(service, ResearchService)
            assert isinstance(fresh_container.cache_store(), InMemoryCacheStore)
            # one coalescing cache per process
            assert fresh_container.cache() is service.cache_manager
        finally:
            await manager.cleanup()

        assert not manager.is_initialized
        with pytest.raises(RuntimeError):
            manager.get_container()

    @pytest.mark.asyncio
    async def test_redis_outage_falls_back_to_memory(self, fresh_container):
        redis_settings = get_settings().model_copy(
            update={"cache": CacheSettings(backend="redis")}
        )
        broken_redis = MagicMock()
        broken_redis.initialize = AsyncMock(side_effect=ConnectionError("refused"))
        broken_redis.close = AsyncMock()
        fresh_container.config.override(providers.Object(redis_settings))
        fresh_container.redis.override(providers.Object(broken_redis))
        manager = ContainerManager(fresh_container)

        await manager.initialize()
        try:
            assert isinstance(fresh_container.cache_store(), InMemoryCacheStore)
        finally:
            await manager.cleanup()

    @pytest.mark.asyncio
    async def test_database_failure_is_fatal(self, fresh_container):
        broken_database = MagicMock()
        broken_database.initialize = AsyncMock(side_effect=OSError("no database"))
        broken_database.close = AsyncMock()
        fresh_container.database.override(providers.Object(broken_database))
        manager = ContainerManager(fresh_container)

        with pytest.raises(RuntimeError):
            await manager.initialize()

        assert not manager.is_initialized
        broken_database.close.assert_awaited()
