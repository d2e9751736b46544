"""
Celery Tasks: Keyword Cache Maintenance & Background Research
=============================================================

Defines Celery tasks for:
- Periodic removal of expired keyword cache entries
- Scoped manual cache flushes
- Queued research runs

Inputs are validated with Pydantic before any work starts; invalid
input fails the task permanently instead of retrying.

Design Pattern: Task Queue with Retry Logic and Late Acknowledgment
"""

from typing import Dict, List, Optional, Union

from celery import Task
from loguru import logger
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from container import container
from core.enums import SearchType
from core.exceptions import (
    CacheError,
    DatabaseConnectionError,
    ValidationError,
)
from core.models import FlushScope
from orchestration.celery_app import app, run_async

# ============================================================================
# Task Input Validation Schemas
# ============================================================================


class FlushCacheInput(BaseModel):
    """Validation schema for flush_keyword_cache parameters."""

    keyword_prefix: Optional[str] = Field(None, max_length=200)
    location: Optional[str] = Field(None, max_length=100)
    language: Optional[str] = Field(None, max_length=16)

    def to_scope(self) -> FlushScope:
        return FlushScope(**self.model_dump())


class RunResearchInput(BaseModel):
    """Validation schema for run_keyword_research parameters."""

    seed_keywords: List[str] = Field(min_length=1, max_length=20)
    owner: str = Field(min_length=1, max_length=255)
    location: Optional[str] = Field(None, max_length=100)
    language: Optional[str] = Field(None, max_length=16)
    search_type: SearchType = Field(default=SearchType.TRADITIONAL)
    include_related: bool = True

    @field_validator("seed_keywords", mode="before")
    @classmethod
    def wrap_single_seed(cls, v: Union[str, List[str]]) -> List[str]:
        return [v] if isinstance(v, str) else v


# ============================================================================
# Base Task
# ============================================================================


class KeywordBaseTask(Task):
    """Base task class with lifecycle logging."""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        logger.error(f"Task failed | task_id={task_id} | task={self.name} | error={exc}")

    def on_success(self, retval, task_id, args, kwargs):
        logger.success(f"Task completed | task_id={task_id} | task={self.name}")

    def on_retry(self, exc, task_id, args, kwargs, einfo):
        logger.warning(
            f"Task retrying | task_id={task_id} | task={self.name} | "
            f"attempt={self.request.retries + 1} | error={exc}"
        )


# ============================================================================
# Tasks
# ============================================================================


async def _clean_expired() -> int:
    return await container.research_service().clean_expired_cache()


async def _flush(scope: FlushScope) -> int:
    return await container.research_service().flush_cache(scope)


async def _run_research(request: RunResearchInput) -> Dict:
    summary = await container.research_service().run_research(
        request.seed_keywords,
        request.owner,
        location=request.location,
        language=request.language,
        search_type=request.search_type,
        include_related=request.include_related,
    )
    return summary.model_dump(mode="json")


@app.task(
    base=KeywordBaseTask,
    bind=True,
    name="orchestration.tasks.clean_expired_keyword_cache",
    autoretry_for=(CacheError, ConnectionError),
    retry_kwargs={"max_retries": 3},
    retry_backoff=True,
    retry_jitter=True,
)
def clean_expired_keyword_cache(self) -> Dict:
    """
    Delete keyword cache entries past their expiry.

    Scheduled daily by beat; safe to run while research runs read and
    write the cache.
    """
    logger.info(f"Expired cache cleanup started | task_id={self.request.id}")
    removed = run_async(_clean_expired())
    return {"removed": removed}


@app.task(
    base=KeywordBaseTask,
    bind=True,
    name="orchestration.tasks.flush_keyword_cache",
    autoretry_for=(CacheError, ConnectionError),
    retry_kwargs={"max_retries": 3},
    retry_backoff=True,
)
def flush_keyword_cache(
    self,
    keyword_prefix: Optional[str] = None,
    location: Optional[str] = None,
    language: Optional[str] = None,
) -> Dict:
    """
    Flush keyword cache entries, optionally narrowed by keyword prefix,
    location and language. No arguments flushes the whole cache.
    """
    try:
        validated_input = FlushCacheInput(
            keyword_prefix=keyword_prefix, location=location, language=language
        )
    except PydanticValidationError as validation_error:
        logger.error(
            f"Input validation failed | task_id={self.request.id} | error={validation_error}"
        )
        raise ValueError(f"Invalid task parameters: {validation_error}")

    scope = validated_input.to_scope()
    removed = run_async(_flush(scope))
    return {"removed": removed, "scope": scope.model_dump(exclude_none=True)}


@app.task(
    base=KeywordBaseTask,
    bind=True,
    name="orchestration.tasks.run_keyword_research",
    acks_late=True,
    autoretry_for=(DatabaseConnectionError, ConnectionError),
    retry_kwargs={"max_retries": 2},
    retry_backoff=True,
    retry_backoff_max=300,
    retry_jitter=True,
)
def run_keyword_research(
    self,
    seed_keywords: Union[str, List[str]],
    owner: str,
    location: Optional[str] = None,
    language: Optional[str] = None,
    search_type: str = SearchType.TRADITIONAL.value,
    include_related: bool = True,
) -> Dict:
    """
    Run one research request in the background.

    Returns:
        The ResearchSummary as a JSON-serializable dict

    Raises:
        ValueError: On invalid input (not retried)
    """
    try:
        validated_input = RunResearchInput(
            seed_keywords=seed_keywords,
            owner=owner,
            location=location,
            language=language,
            search_type=search_type,
            include_related=include_related,
        )
    except PydanticValidationError as validation_error:
        logger.error(
            f"Input validation failed | task_id={self.request.id} | error={validation_error}"
        )
        raise ValueError(f"Invalid task parameters: {validation_error}")

    logger.info(
        f"Research task started | task_id={self.request.id} | owner={validated_input.owner} | "
        f"seeds={len(validated_input.seed_keywords)}"
    )
    try:
        return run_async(_run_research(validated_input))
    except ValidationError as e:
        raise ValueError(f"Invalid research request: {e.message}") from e
