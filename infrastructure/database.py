"""
Database Infrastructure & Connection Management
================================================
Async SQLAlchemy engine lifecycle with:
- Connection pooling (asyncpg for PostgreSQL, aiosqlite for SQLite)
- Health monitoring
- Schema bootstrap from the Core table metadata
- Transaction context managers

Architecture: Repository Pattern + Unit of Work
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from loguru import logger
from sqlalchemy import event, text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool
from sqlalchemy.pool.impl import AsyncAdaptedQueuePool

from config.settings import DatabaseSettings, get_settings
from core.exceptions import DatabaseConnectionError
from infrastructure.schema import metadata


class DatabaseManager:
    """
    Centralized database connection and session management.

    One manager per process (see get_db_manager); tests build their own
    against an in-memory SQLite URL.
    """

    def __init__(self, database_settings: Optional[DatabaseSettings] = None):
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None
        self._is_initialized: bool = False
        self._settings = database_settings or get_settings().database

    @property
    def is_initialized(self) -> bool:
        return self._is_initialized

    def _engine_options(self) -> dict:
        if self._settings.is_sqlite:
            options: dict = {"connect_args": {"check_same_thread": False}}
            if ":memory:" in self._settings.url or self._settings.database in ("", ":memory:"):
                # one shared connection, or every checkout sees an empty database
                options["poolclass"] = StaticPool
            return options

        return {
            "pool_size": self._settings.pool_size,
            "max_overflow": self._settings.max_overflow,
            "pool_timeout": self._settings.pool_timeout,
            "pool_recycle": self._settings.pool_recycle,
            "pool_pre_ping": True,  # Verify connections before use
            "poolclass": AsyncAdaptedQueuePool,
        }

    async def initialize(self) -> None:
        """
        Initialize database engine and session factory.

        Must be called during application startup.
        """
        if self._is_initialized:
            logger.warning("Database already initialized")
            return

        try:
            self._engine = create_async_engine(
                self._settings.async_url,
                echo=self._settings.echo_sql,
                **self._engine_options(),
            )
            self._register_events()

            self._session_factory = async_sessionmaker(
                self._engine,
                class_=AsyncSession,
                expire_on_commit=False,  # Prevent lazy loading after commit
            )

            await self.health_check()

            self._is_initialized = True
            logger.info(f"Database initialized ({self._settings.dialect})")

        except (OperationalError, DBAPIError, DatabaseConnectionError, OSError) as e:
            logger.error(f"Database initialization failed: {e}")
            raise DatabaseConnectionError(
                "Failed to initialize database connection",
                host=self._settings.host,
                database=self._settings.database,
                cause=e,
            ) from e

    async def close(self) -> None:
        """
        Close database connections and dispose engine.

        Should be called during application shutdown.
        """
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            self._is_initialized = False
            logger.info("Database connections closed")

    def _register_events(self) -> None:
        """Register SQLAlchemy event listeners."""
        if not self._engine:
            return

        if self._settings.is_sqlite:

            @event.listens_for(self._engine.sync_engine, "connect")
            def enable_foreign_keys(dbapi_conn, connection_record):
                """SQLite ignores ON DELETE CASCADE unless asked per connection."""
                cursor = dbapi_conn.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

        @event.listens_for(self._engine.sync_engine, "checkout")
        def receive_checkout(dbapi_conn, connection_record, connection_proxy):
            """Track connection checkouts from pool."""
            logger.trace("Connection checked out from pool")

    async def health_check(self) -> bool:
        """
        Verify database connectivity.

        Returns:
            True if healthy, raises exception otherwise
        """
        if not self._engine:
            raise DatabaseConnectionError("Database engine not initialized")

        try:
            async with self._engine.connect() as conn:
                result = await conn.execute(text("SELECT 1"))
                if result.scalar() != 1:
                    raise DatabaseConnectionError("Database health check returned unexpected value")
                return True

        except (OperationalError, DBAPIError) as e:
            logger.error(f"Database health check failed: {e}")
            raise DatabaseConnectionError("Database health check failed", cause=e) from e

    async def create_schema(self) -> None:
        """Create all tables that do not exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
        logger.info("Database schema ensured")

    async def drop_schema(self) -> None:
        """Drop all tables. Test and teardown use only."""
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.drop_all)
        logger.warning("Database schema dropped")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Provide async database session with automatic cleanup.

        Usage:
            async with db_manager.session() as session:
                result = await session.execute(query)

        Commits on clean exit, rolls back on any exception.
        """
        if not self._session_factory:
            raise DatabaseConnectionError("Database not initialized")

        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"Session error, rolled back: {e}")
            raise
        finally:
            await session.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncConnection, None]:
        """
        Provide a Core connection inside a single transaction.

        Everything executed in the block commits atomically or not at all.
        """
        async with self.engine.begin() as conn:
            yield conn

    @property
    def engine(self) -> AsyncEngine:
        """Get database engine (raises if not initialized)."""
        if not self._engine:
            raise DatabaseConnectionError("Database engine not initialized")
        return self._engine


# =============================================================================
# GLOBAL DATABASE MANAGER INSTANCE
# =============================================================================

_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """
    Get or create global database manager instance.

    Returns:
        DatabaseManager: Singleton instance
    """
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


async def init_database(create_schema: bool = True) -> DatabaseManager:
    """
    Initialize the global database manager.

    Should be called once during application (or worker) startup.
    """
    manager = get_db_manager()
    await manager.initialize()
    if create_schema:
        await manager.create_schema()
    return manager


async def close_database() -> None:
    """
    Close database connections.

    Should be called during application shutdown.
    """
    global _db_manager
    if _db_manager is not None:
        await _db_manager.close()
        _db_manager = None


__all__ = [
    "DatabaseManager",
    "get_db_manager",
    "init_database",
    "close_database",
]
