"""
Celery Application Configuration
=================================

Background jobs for the keyword engine:
- Daily expired-entry cleanup of the keyword cache (beat)
- Manual cache flushes
- Research runs queued from outside the request path

Each worker process owns one event loop for its lifetime. The database
engine and Redis pool are bound to that loop, so every task runs its
coroutine on it through run_async().

Design Pattern: Distributed Task Queue with Result Backend
"""

import asyncio
import os
from typing import Any, Awaitable, Optional, TypeVar

from celery import Celery
from celery.signals import worker_process_init, worker_process_shutdown
from kombu import Queue
from loguru import logger

from config.settings import get_settings
from container import container_manager

T = TypeVar("T")

settings = get_settings()

# Create Celery application instance
app = Celery(
    "keyword_research",
    broker=settings.celery.broker_url,
    backend=settings.celery.result_backend,
    include=["orchestration.tasks"],
)

app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # Timezone
    timezone="UTC",
    enable_utc=True,
    # Task execution
    task_track_started=True,
    task_time_limit=600,
    task_soft_time_limit=540,
    # Worker configuration
    worker_prefetch_multiplier=1,  # Fair task distribution
    worker_max_tasks_per_child=200,
    # Result backend
    result_expires=86400,
    # Task acknowledgment
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_queues=(
        Queue("research", routing_key="research", priority=7),
        Queue("maintenance", routing_key="maintenance", priority=3),
    ),
    task_default_queue="research",
    task_default_routing_key="research",
    task_routes={
        "orchestration.tasks.clean_expired_keyword_cache": {"queue": "maintenance"},
        "orchestration.tasks.flush_keyword_cache": {"queue": "maintenance"},
    },
    # Monitoring
    worker_send_task_events=True,
    task_send_sent_event=True,
)

app.conf.beat_schedule = {
    "clean-expired-keyword-cache": {
        "task": "orchestration.tasks.clean_expired_keyword_cache",
        "schedule": settings.celery.cache_cleanup_interval,
    },
}


# =============================================================================
# WORKER EVENT LOOP
# =============================================================================

_worker_loop: Optional[asyncio.AbstractEventLoop] = None


def get_worker_loop() -> asyncio.AbstractEventLoop:
    """The process-wide event loop, created on first use."""
    global _worker_loop
    if _worker_loop is None or _worker_loop.is_closed():
        _worker_loop = asyncio.new_event_loop()
        asyncio.set_event_loop(_worker_loop)
    return _worker_loop


def run_async(coro: Awaitable[T]) -> T:
    """
    Run a coroutine to completion on the worker loop.

    Initializes the container on first use, so eagerly executed tasks
    work outside a worker process too.
    """
    loop = get_worker_loop()
    if not container_manager.is_initialized:
        loop.run_until_complete(container_manager.initialize())
    return loop.run_until_complete(coro)


@worker_process_init.connect
def on_worker_init(**kwargs: Any) -> None:
    """Initialize DI container and resources when a Celery worker process starts."""
    try:
        logger.info(f"Celery worker process initializing... (PID: {os.getpid()})")
        get_worker_loop().run_until_complete(container_manager.initialize())
        logger.success(f"Container initialized successfully for worker (PID: {os.getpid()}).")
    except Exception as e:
        logger.critical(f"Failed to initialize container for worker (PID: {os.getpid()}): {e}")
        os._exit(1)


@worker_process_shutdown.connect
def on_worker_shutdown(**kwargs: Any) -> None:
    """Cleanup DI container and resources when a Celery worker process shuts down."""
    global _worker_loop
    try:
        logger.info(f"Celery worker process shutting down... (PID: {os.getpid()})")
        loop = get_worker_loop()
        loop.run_until_complete(container_manager.cleanup())
        loop.close()
        _worker_loop = None
        logger.success(f"Container resources cleaned up for worker (PID: {os.getpid()}).")
    except Exception as e:
        logger.error(f"Failed to cleanup container for worker (PID: {os.getpid()}): {e}")


if __name__ == "__main__":
    app.start()
