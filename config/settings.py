"""
Configuration Management System
================================
Implements environment-driven configuration with type-safe validation,
hierarchical overrides, and zero-runtime-cost abstractions through Pydantic.

Every tunable policy of the engine (cache TTL, worker pool size, scoring
weights, clustering thresholds) is sourced from here rather than from
module constants, so operators can retune without touching core logic.

Architecture: Strategy Pattern + Singleton + Functional Composition
"""

from functools import lru_cache
from typing import Literal, Optional
from urllib.parse import urlparse

from pydantic import Field, HttpUrl, RedisDsn, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Relational storage configuration loaded exclusively from environment."""

    url: str = Field(default="sqlite+aiosqlite:///./keyword_research.db", alias="DATABASE_URL")
    pool_size: int = Field(default=10, ge=1, le=50, alias="DB_POOL_SIZE")
    max_overflow: int = Field(default=20, ge=0, le=100, alias="DB_MAX_OVERFLOW")
    pool_timeout: int = Field(default=30, ge=1, le=120, alias="DB_POOL_TIMEOUT")
    pool_recycle: int = Field(default=3600, ge=300, alias="DB_POOL_RECYCLE")
    echo_sql: bool = Field(default=False, alias="DB_ECHO_SQL")

    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore")

    @property
    def parsed_url(self):
        return urlparse(self.url)

    @property
    def dialect(self) -> str:
        return self.parsed_url.scheme.split("+")[0]

    @property
    def is_sqlite(self) -> bool:
        return self.dialect == "sqlite"

    @property
    def host(self) -> str:
        return self.parsed_url.hostname or ""

    @property
    def database(self) -> str:
        return self.parsed_url.path.lstrip("/")

    @property
    def async_url(self) -> str:
        """Rewrite plain driver schemes to their asyncio counterparts."""
        parsed = self.parsed_url
        if parsed.scheme in ("postgresql", "postgres"):
            return parsed._replace(scheme="postgresql+asyncpg").geturl()
        if parsed.scheme == "sqlite":
            return parsed._replace(scheme="sqlite+aiosqlite").geturl()
        return self.url


class RedisSettings(BaseSettings):
    """Redis configuration sourced from environment variables."""

    url: RedisDsn = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    max_connections: int = Field(default=50, ge=1, le=200, alias="REDIS_MAX_CONNECTIONS")
    socket_timeout: int = Field(default=5, ge=1, le=30, alias="REDIS_SOCKET_TIMEOUT")
    socket_connect_timeout: int = Field(
        default=5, ge=1, le=30, alias="REDIS_SOCKET_CONNECT_TIMEOUT"
    )
    key_prefix: str = Field(default="kwcache", alias="REDIS_KEY_PREFIX")

    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore")

    @property
    def parsed_url(self):
        return urlparse(str(self.url))

    @property
    def host(self) -> str:
        return self.parsed_url.hostname or "localhost"

    @property
    def port(self) -> int:
        return self.parsed_url.port or 6379

    @property
    def db(self) -> int:
        path = self.parsed_url.path.lstrip("/")
        return int(path) if path else 0


class CacheSettings(BaseSettings):
    """Keyword metrics cache policy."""

    backend: Literal["memory", "redis"] = Field(default="memory")
    ttl_days: int = Field(default=90, ge=1, le=365)

    model_config = SettingsConfigDict(env_prefix="CACHE_", case_sensitive=False, extra="ignore")

    @property
    def ttl_seconds(self) -> int:
        return self.ttl_days * 86400


class ProviderSettings(BaseSettings):
    """Keyword metrics provider (HTTP) configuration."""

    base_url: HttpUrl = Field(default="https://api.keyword-provider.example/v1")
    api_key: Optional[SecretStr] = Field(default=None)
    request_timeout: float = Field(default=15.0, ge=1.0, le=120.0)

    model_config = SettingsConfigDict(
        env_prefix="PROVIDER_", case_sensitive=False, extra="ignore"
    )


class ResearchSettings(BaseSettings):
    """Research run fan-out and resilience parameters."""

    max_concurrent_fetches: int = Field(default=15, ge=1, le=100)
    fetch_timeout: float = Field(default=10.0, gt=0.0, le=120.0)
    run_deadline: float = Field(default=30.0, gt=0.0, le=600.0)
    max_retries: int = Field(default=3, ge=1, le=10)
    retry_min_wait: float = Field(default=0.5, ge=0.0, le=30.0)
    retry_max_wait: float = Field(default=8.0, ge=0.0, le=120.0)
    max_related_keywords: int = Field(default=200, ge=0, le=2000)
    default_location: str = Field(default="United States")
    default_language: str = Field(default="en")

    model_config = SettingsConfigDict(
        env_prefix="RESEARCH_", case_sensitive=False, extra="ignore"
    )

    @model_validator(mode="after")
    def validate_retry_window(self) -> "ResearchSettings":
        if self.retry_min_wait > self.retry_max_wait:
            raise ValueError("retry_min_wait cannot exceed retry_max_wait")
        return self


class ScoringSettings(BaseSettings):
    """Easy Win / High Value scoring weights and log-scale ceilings."""

    easy_win_difficulty_weight: float = Field(default=0.6, ge=0.0, le=1.0)
    easy_win_volume_weight: float = Field(default=0.4, ge=0.0, le=1.0)
    high_value_volume_weight: float = Field(default=0.5, ge=0.0, le=1.0)
    high_value_cpc_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    high_value_competition_weight: float = Field(default=0.2, ge=0.0, le=1.0)
    volume_ceiling: float = Field(default=1_000_000, gt=0)
    cpc_ceiling: float = Field(default=50.0, gt=0)
    easy_win_threshold: float = Field(default=60.0, ge=0.0, le=100.0)
    high_value_threshold: float = Field(default=60.0, ge=0.0, le=100.0)
    zero_volume_margin: float = Field(default=1.0, gt=0.0, le=60.0)

    model_config = SettingsConfigDict(env_prefix="SCORING_", case_sensitive=False, extra="ignore")


class ClusteringSettings(BaseSettings):
    """Lexical clustering thresholds."""

    min_shared_tokens: int = Field(default=1, ge=1, le=5)
    long_tail_min_tokens: int = Field(default=3, ge=2, le=10)
    pillar_min_members: int = Field(default=3, ge=2, le=50)
    authority_easy_win_weight: float = Field(default=0.35, ge=0.0, le=1.0)
    authority_high_value_weight: float = Field(default=0.35, ge=0.0, le=1.0)
    authority_volume_weight: float = Field(default=0.30, ge=0.0, le=1.0)
    authority_volume_ceiling: float = Field(default=10_000_000, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="CLUSTERING_", case_sensitive=False, extra="ignore"
    )


class CelerySettings(BaseSettings):
    """Celery task queue configuration."""

    broker_url: str = Field(default="redis://localhost:6379/1", alias="CELERY_BROKER_URL")
    result_backend: str = Field(default="redis://localhost:6379/2", alias="CELERY_RESULT_BACKEND")
    cache_cleanup_interval: float = Field(default=86400.0, ge=60.0, alias="CELERY_CACHE_CLEANUP_INTERVAL")

    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore")


class MonitoringSettings(BaseSettings):
    """Observability and monitoring configuration."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="text")
    enable_prometheus: bool = Field(default=True)

    model_config = SettingsConfigDict(
        env_prefix="MONITORING_", case_sensitive=False, extra="ignore"
    )


class Settings(BaseSettings):
    """
    Master configuration orchestrator.

    Implements hierarchical configuration composition with environment-specific
    overrides and runtime validation.
    """

    environment: Literal["development", "staging", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )
    debug: bool = Field(default=False, alias="DEBUG")

    app_name: str = Field(default="Keyword Research Engine")
    app_version: str = Field(default="1.0.0")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    provider: ProviderSettings = Field(default_factory=ProviderSettings)
    research: ResearchSettings = Field(default_factory=ResearchSettings)
    scoring: ScoringSettings = Field(default_factory=ScoringSettings)
    clustering: ClusteringSettings = Field(default_factory=ClusteringSettings)
    celery: CelerySettings = Field(default_factory=CelerySettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("debug")
    @classmethod
    def validate_debug_mode(cls, v: bool, info) -> bool:
        """Ensure debug mode is disabled in production."""
        if info.data.get("environment") == "production" and v:
            raise ValueError("Debug mode must be disabled in production")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Singleton factory for global settings access.

    Returns:
        Settings: Validated settings instance, built once per process
    """
    return Settings()


settings = get_settings()

__all__ = [
    "Settings",
    "DatabaseSettings",
    "RedisSettings",
    "CacheSettings",
    "ProviderSettings",
    "ResearchSettings",
    "ScoringSettings",
    "ClusteringSettings",
    "CelerySettings",
    "MonitoringSettings",
    "get_settings",
    "settings",
]
