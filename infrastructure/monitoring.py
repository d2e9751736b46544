"""
Monitoring Infrastructure: Logging Sinks, Structured Events and Metrics

Configures loguru sinks from MonitoringSettings, structlog for JSON
event records (run completions, cache maintenance), and a Prometheus
collector covering cache efficiency, provider calls and research runs.
"""

import logging
import sys
from typing import Any, Dict, Optional

import structlog
from loguru import logger
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from config.settings import MonitoringSettings, settings

_LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


def configure_logging(monitoring: Optional[MonitoringSettings] = None) -> None:
    """
    Install loguru sinks and structlog processors.

    json format serializes every loguru record; text keeps the
    colourised developer format.
    """
    monitoring = monitoring or settings.monitoring
    logger.remove()
    if monitoring.log_format == "json":
        logger.add(sys.stderr, level=monitoring.log_level, serialize=True)
    else:
        logger.add(sys.stderr, level=monitoring.log_level, format=_LOG_FORMAT)
    configure_structlog(monitoring.log_level)


def configure_structlog(level: str = "INFO") -> None:
    """
    Configure structlog for JSON event records.

    Sets up processors for:
    - Timestamping (ISO 8601)
    - Log level formatting
    - JSON rendering
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


def get_event_logger(name: str) -> structlog.BoundLogger:
    """
    Get a structlog logger bound with a name context.

    Args:
        name: Logger name (typically module __name__)
    """
    return structlog.get_logger(name)


class MetricsCollector:
    """
    Prometheus metrics collector for the keyword engine.

    Tracks:
    - Cache hits, misses, coalesced waiters, evictions
    - Provider request outcomes and latency
    - Research run duration, outcome and per-keyword failures

    Each collector owns its registry, so tests can build fresh ones.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        # Cache metrics
        self.cache_hits_total = Counter(
            "keyword_cache_hits_total",
            "Total keyword cache hits",
            labelnames=["backend"],
            registry=self.registry,
        )
        self.cache_misses_total = Counter(
            "keyword_cache_misses_total",
            "Total keyword cache misses",
            labelnames=["backend"],
            registry=self.registry,
        )
        self.cache_coalesced_total = Counter(
            "keyword_cache_coalesced_total",
            "Lookups that awaited another caller's in-flight fetch",
            labelnames=["backend"],
            registry=self.registry,
        )
        self.cache_evictions_total = Counter(
            "keyword_cache_evictions_total",
            "Entries removed from the keyword cache",
            labelnames=["backend", "reason"],
            registry=self.registry,
        )

        # Provider metrics
        self.provider_requests_total = Counter(
            "keyword_provider_requests_total",
            "Keyword provider requests by outcome",
            labelnames=["status"],
            registry=self.registry,
        )
        self.provider_latency_seconds = Histogram(
            "keyword_provider_latency_seconds",
            "Keyword provider request latency",
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
            registry=self.registry,
        )

        # Research run metrics
        self.research_duration_seconds = Histogram(
            "research_run_duration_seconds",
            "End-to-end research run time",
            buckets=[0.5, 1, 2, 5, 10, 20, 30, 60, 120],
            labelnames=["status"],
            registry=self.registry,
        )
        self.research_failed_keywords_total = Counter(
            "research_failed_keywords_total",
            "Keywords whose metrics could not be fetched during a run",
            registry=self.registry,
        )
        self.active_research_runs = Gauge(
            "active_research_runs",
            "Number of research runs currently in progress",
            registry=self.registry,
        )

    def record_cache_hit(self, backend: str) -> None:
        self.cache_hits_total.labels(backend=backend).inc()

    def record_cache_miss(self, backend: str) -> None:
        self.cache_misses_total.labels(backend=backend).inc()

    def record_cache_coalesced(self, backend: str) -> None:
        self.cache_coalesced_total.labels(backend=backend).inc()

    def record_cache_eviction(self, backend: str, reason: str, count: int = 1) -> None:
        if count > 0:
            self.cache_evictions_total.labels(backend=backend, reason=reason).inc(count)

    def record_provider_call(self, status: str, latency_seconds: float) -> None:
        """
        Record a single provider attempt.

        Args:
            status: "success", "timeout", "rate_limited", "auth", "malformed" or "error"
            latency_seconds: Attempt latency
        """
        self.provider_requests_total.labels(status=status).inc()
        self.provider_latency_seconds.observe(latency_seconds)

    def record_research_run(
        self, status: str, duration_seconds: float, failed_keywords: int = 0
    ) -> None:
        self.research_duration_seconds.labels(status=status).observe(duration_seconds)
        if failed_keywords:
            self.research_failed_keywords_total.inc(failed_keywords)

    def export_metrics(self) -> bytes:
        """Export metrics in Prometheus text format."""
        return generate_latest(self.registry)

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Current counter values, for health checks and the statistics endpoint."""
        summary: Dict[str, Any] = {}
        for metric in self.registry.collect():
            for sample in metric.samples:
                if sample.name.endswith("_total"):
                    summary[sample.name] = summary.get(sample.name, 0.0) + sample.value
        return summary

    # =========================================================================
    # SINGLETON
    # =========================================================================

    _instance: Optional["MetricsCollector"] = None

    @classmethod
    def instance(cls) -> "MetricsCollector":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_singleton(cls) -> None:
        """Reset singleton for testing purposes."""
        cls._instance = None


def get_metrics_collector() -> MetricsCollector:
    """Process-wide metrics collector."""
    return MetricsCollector.instance()
