"""
Dependency Injection Container: Centralized Object Lifecycle Management

Wires the keyword research object graph with dependency-injector:
infrastructure singletons (database, Redis, metrics), the shared keyword
cache, the provider fetcher, the pure scoring/clustering engines and the
research service on top.

Architecture: Container Pattern + Dependency Injection + Singleton Registry
Dependency Graph (DAG):
Settings -> Infrastructure -> Cache/Fetcher -> Engines -> Researcher -> Service
"""

from datetime import timedelta
from typing import Optional

from dependency_injector import containers, providers
from dependency_injector.wiring import Provide, inject
from loguru import logger

from config.settings import Settings, get_settings
from execution.keyword_researcher import KeywordResearcher
from infrastructure.database import DatabaseManager
from infrastructure.metrics_fetcher import HttpKeywordProvider, MetricsFetcher
from infrastructure.monitoring import MetricsCollector, configure_logging, get_metrics_collector
from infrastructure.redis_client import RedisClient
from intelligence.clustering_engine import ClusteringConfig, ClusteringEngine
from intelligence.scoring_engine import ScoringConfig, ScoringEngine
from knowledge.research_repository import ResearchRepository
from optimization.cache_manager import KeywordCacheManager
from optimization.cache_store import CacheStore, InMemoryCacheStore, build_cache_store
from services.research_service import ResearchService


class Container(containers.DeclarativeContainer):
    """
    Central dependency injection container.

    Singletons for anything holding connections or shared state (the
    cache manager owns the in-flight fetch registry, so there must be
    exactly one per process); factories for the stateless layers.
    """

    # Configuration providers (singletons)
    config: providers.Singleton[Settings] = providers.Singleton(get_settings)

    # Infrastructure layer providers (singletons)
    database: providers.Singleton[DatabaseManager] = providers.Singleton(
        DatabaseManager,
        database_settings=config.provided.database,
    )

    redis: providers.Singleton[RedisClient] = providers.Singleton(
        RedisClient,
        redis_settings=config.provided.redis,
    )

    metrics: providers.Singleton[MetricsCollector] = providers.Singleton(get_metrics_collector)

    # Cache layer providers (singletons)
    cache_store: providers.Singleton[CacheStore] = providers.Singleton(
        build_cache_store,
        cache_settings=config.provided.cache,
        redis_client=redis,
        key_prefix=config.provided.redis.key_prefix,
    )

    cache: providers.Singleton[KeywordCacheManager] = providers.Singleton(
        KeywordCacheManager,
        store=cache_store,
        metrics=metrics,
    )

    # Provider layer providers (singletons)
    keyword_provider: providers.Singleton[HttpKeywordProvider] = providers.Singleton(
        HttpKeywordProvider,
        provider_settings=providers.AttributeGetter(config, "provider"),
    )

    fetcher: providers.Singleton[MetricsFetcher] = providers.Singleton(
        MetricsFetcher,
        provider=keyword_provider,
        research_settings=config.provided.research,
        metrics=metrics,
    )

    # Intelligence layer providers
    scoring: providers.Singleton[ScoringEngine] = providers.Singleton(
        ScoringEngine,
        config=providers.Singleton(ScoringConfig.from_settings, config.provided.scoring),
    )

    clustering: providers.Singleton[ClusteringEngine] = providers.Singleton(
        ClusteringEngine,
        config=providers.Singleton(ClusteringConfig.from_settings, config.provided.clustering),
        scoring=scoring,
    )

    # Knowledge layer providers (factories)
    research_repository: providers.Factory[ResearchRepository] = providers.Factory(
        ResearchRepository,
        database_manager=database,
    )

    # Execution layer providers (factories)
    keyword_researcher: providers.Factory[KeywordResearcher] = providers.Factory(
        KeywordResearcher,
        repository=research_repository,
        cache_manager=cache,
        fetcher=fetcher,
        scoring=scoring,
        clustering=clustering,
        research_settings=config.provided.research,
        metrics=metrics,
    )

    # Service layer providers (factories)
    research_service: providers.Factory[ResearchService] = providers.Factory(
        ResearchService,
        repository=research_repository,
        researcher=keyword_researcher,
        cache_manager=cache,
    )


# Global container instance
container = Container()


class ContainerManager:
    """
    Container lifecycle manager.

    Handles initialization, wiring, and cleanup of the dependency injection
    container with proper async resource management.
    """

    def __init__(self, target: Optional[Container] = None) -> None:
        self._container: Container = target or container
        self._initialized: bool = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self, create_schema: bool = True) -> None:
        """
        Initialize the container and all infrastructure dependencies.

        The database is critical. Redis is only needed for the redis cache
        backend; if it cannot be reached the cache falls back to an
        in-process store.

        Raises:
            RuntimeError: If the database cannot be initialized
        """
        if self._initialized:
            logger.warning("Container already initialized - skipping re-initialization")
            return

        logger.info("Initializing dependency injection container")
        settings = self._container.config()
        configure_logging(settings.monitoring)

        try:
            database = self._container.database()
            await database.initialize()
            if create_schema:
                await database.create_schema()
            logger.info("✓ Database initialized successfully")
        except Exception as db_error:
            logger.error(f"Database is a critical component - cannot continue: {db_error}")
            await self.cleanup(force=True)
            raise RuntimeError(f"Failed to initialize database: {db_error}") from db_error

        if settings.cache.backend == "redis":
            try:
                await self._container.redis().initialize()
                logger.info("✓ Redis initialized successfully")
            except Exception as redis_error:
                logger.warning(
                    f"Redis initialization failed: {redis_error}. "
                    "Continuing with in-memory keyword cache"
                )
                self._container.cache_store.override(
                    providers.Singleton(
                        InMemoryCacheStore,
                        timedelta(days=settings.cache.ttl_days),
                        key_prefix=settings.redis.key_prefix,
                    )
                )

        self._container.wire(modules=[__name__])
        self._initialized = True
        logger.success("Container initialized")

    async def cleanup(self, force: bool = False) -> None:
        """
        Clean up container resources.

        Idempotent; errors on one component are logged and do not stop
        the others from being closed.
        """
        if not self._initialized and not force:
            logger.debug("Container not initialized - skipping cleanup")
            return

        logger.info("Cleaning up dependency injection container")
        components = (
            ("database", self._container.database),
            ("redis", self._container.redis),
            ("keyword provider", self._container.keyword_provider),
        )
        cleanup_errors = []
        for name, provider in components:
            try:
                await provider().close()
            except Exception as e:
                logger.error(f"{name} cleanup failed: {e}")
                cleanup_errors.append(name)

        self._container.cache_store.reset_override()
        self._container.unwire()

        if cleanup_errors:
            logger.warning(f"Container cleanup completed with errors: {', '.join(cleanup_errors)}")
        else:
            logger.info("✓ Container cleanup completed successfully")
        self._initialized = False

    def get_container(self) -> Container:
        """Get the container instance."""
        if not self._initialized:
            raise RuntimeError("Container not initialized. Call initialize() first.")
        return self._container


# Global container manager instance
container_manager = ContainerManager()


# Convenience functions for dependency injection
@inject
def get_research_service(
    service: ResearchService = Provide[Container.research_service],
) -> ResearchService:
    """Get research service instance."""
    return service


@inject
def get_cache(cache: KeywordCacheManager = Provide[Container.cache]) -> KeywordCacheManager:
    """Get keyword cache manager instance."""
    return cache


@inject
def get_metrics(metrics: MetricsCollector = Provide[Container.metrics]) -> MetricsCollector:
    """Get metrics collector instance."""
    return metrics
