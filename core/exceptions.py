"""
Exception Hierarchy & Error Handling Framework
===============================================
Type-safe exception taxonomy with structured context propagation,
retry metadata, and observability integration.

Propagation policy:
- ProviderError: absorbed per keyword by the research run, reported in
  the run summary; never aborts the run.
- ValidationError / OwnershipError: surfaced synchronously to the caller.
- CacheCorruptionError: converted into a miss plus eviction by the
  cache manager; never reaches callers.

Architecture: Railway-Oriented Programming + Error Algebra
"""

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

from core.enums import ErrorSeverity

# =============================================================================
# BASE EXCEPTION CLASSES
# =============================================================================


class KeywordEngineException(Exception):
    """
    Root exception for all application errors.

    Implements structured error context with:
    - Unique error ID for distributed tracing
    - Severity classification for alerting
    - Structured context dictionary
    - Retry metadata
    - Timestamp for temporal analysis
    """

    def __init__(
        self,
        message: str,
        *,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[dict[str, Any]] = None,
        error_code: Optional[str] = None,
        retryable: bool = False,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)

        self.error_id: UUID = uuid4()
        self.message: str = message
        self.severity: ErrorSeverity = severity
        self.context: dict[str, Any] = context or {}
        self.error_code: Optional[str] = error_code
        self.retryable: bool = retryable
        self.timestamp: datetime = datetime.now(timezone.utc)

        if cause:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        """Serialize exception for logging/telemetry."""
        return {
            "error_id": str(self.error_id),
            "error_type": self.__class__.__name__,
            "message": self.message,
            "severity": self.severity.name,
            "error_code": self.error_code,
            "retryable": self.retryable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.__cause__) if self.__cause__ else None,
        }

    def __str__(self) -> str:
        """Human-readable error representation."""
        parts = [f"[{self.severity.name}] {self.message}"]
        if self.error_code:
            parts.append(f"Code: {self.error_code}")
        if self.context:
            parts.append(f"Context: {self.context}")
        return " | ".join(parts)


# =============================================================================
# PROVIDER EXCEPTIONS
# =============================================================================


class ProviderException(KeywordEngineException):
    """Base exception for keyword metrics provider failures."""

    def __init__(self, message: str, *, keyword: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", None) or {}
        context.setdefault("keyword", keyword)
        super().__init__(message, context=context, **kwargs)
        self.keyword = keyword


ProviderError = ProviderException


class ProviderRateLimitError(ProviderException):
    """Provider rejected the request due to rate limiting."""

    def __init__(
        self,
        message: str = "Keyword provider rate limit exceeded",
        *,
        retry_after: Optional[float] = None,
        **kwargs,
    ):
        super().__init__(
            message,
            retryable=True,
            context={"retry_after_seconds": retry_after},
            error_code="PROVIDER_RATE_LIMIT",
            **kwargs,
        )
        self.retry_after = retry_after


class ProviderTimeoutError(ProviderException):
    """Provider did not answer within the per-fetch timeout."""

    def __init__(
        self,
        message: str = "Keyword provider request timed out",
        *,
        timeout_seconds: Optional[float] = None,
        **kwargs,
    ):
        super().__init__(
            message,
            retryable=True,
            context={"timeout_seconds": timeout_seconds},
            error_code="PROVIDER_TIMEOUT",
            **kwargs,
        )


class ProviderUnavailableError(ProviderException):
    """Transient provider failure (5xx, connection reset)."""

    def __init__(
        self,
        message: str = "Keyword provider unavailable",
        *,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(
            message,
            retryable=True,
            context={"status_code": status_code},
            error_code="PROVIDER_UNAVAILABLE",
            **kwargs,
        )


class ProviderAuthError(ProviderException):
    """Provider rejected our credentials. Retrying cannot help."""

    def __init__(self, message: str = "Keyword provider authentication failed", **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.CRITICAL,
            retryable=False,
            error_code="PROVIDER_AUTH_FAILED",
            **kwargs,
        )


class MalformedProviderResponseError(ProviderException):
    """Provider payload could not be coerced into KeywordMetrics."""

    def __init__(
        self,
        message: str = "Keyword provider returned a malformed response",
        *,
        issues: Optional[list[str]] = None,
        **kwargs,
    ):
        super().__init__(
            message,
            retryable=False,
            context={"issues": issues},
            error_code="PROVIDER_MALFORMED_RESPONSE",
            **kwargs,
        )


# =============================================================================
# INFRASTRUCTURE EXCEPTIONS
# =============================================================================


class InfrastructureException(KeywordEngineException):
    """Base exception for infrastructure errors."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        super().__init__(message, **kwargs)


InfrastructureError = InfrastructureException


class DatabaseException(InfrastructureException):
    """Base exception for database errors."""


DatabaseError = DatabaseException


class DatabaseConnectionError(DatabaseException):
    """Failed to establish database connection."""

    def __init__(
        self,
        message: str = "Database connection failed",
        *,
        host: Optional[str] = None,
        database: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(
            message,
            retryable=True,
            context={"host": host, "database": database},
            error_code="DB_CONNECTION_FAILED",
            **kwargs,
        )


class EntityNotFoundError(DatabaseException):
    """Requested entity does not exist."""

    def __init__(self, entity_type: str, entity_id: Any, message: Optional[str] = None, **kwargs):
        message = message or f"{entity_type} with ID {entity_id} not found"
        super().__init__(
            message,
            severity=ErrorSeverity.WARNING,
            retryable=False,
            context={"entity_type": entity_type, "entity_id": str(entity_id)},
            error_code="ENTITY_NOT_FOUND",
            **kwargs,
        )


class ResearchNotFoundError(EntityNotFoundError):
    """Research result does not exist (or was deleted)."""

    def __init__(self, research_result_id: Any, **kwargs):
        super().__init__("ResearchResult", research_result_id, **kwargs)


# =============================================================================
# CACHE EXCEPTIONS
# =============================================================================


class CacheException(KeywordEngineException):
    """Base exception for caching errors."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.WARNING,  # Cache failures should degrade gracefully
            **kwargs,
        )


CacheError = CacheException


class CacheCorruptionError(CacheException):
    """Stored cache payload is unreadable or does not match KeywordMetrics."""

    def __init__(
        self,
        message: str = "Cached payload is corrupt",
        *,
        cache_key: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(
            message,
            retryable=False,
            context={"cache_key": cache_key},
            error_code="CACHE_CORRUPTION",
            **kwargs,
        )
        self.cache_key = cache_key


# =============================================================================
# VALIDATION & OWNERSHIP EXCEPTIONS
# =============================================================================


class ValidationException(KeywordEngineException):
    """Caller input rejected before any work was started."""

    def __init__(self, message: str, *, field: Optional[str] = None, value: Any = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.WARNING,
            retryable=False,
            context={"field": field, "value": value},
            error_code="VALIDATION_FAILED",
            **kwargs,
        )
        self.field = field


ValidationError = ValidationException


class OwnershipError(KeywordEngineException):
    """A tenant tried to touch a research result it does not own."""

    def __init__(
        self,
        message: str = "Research result belongs to another owner",
        *,
        research_result_id: Any = None,
        owner: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.WARNING,
            retryable=False,
            context={"research_result_id": str(research_result_id), "owner": owner},
            error_code="OWNERSHIP_VIOLATION",
            **kwargs,
        )


# =============================================================================
# RESEARCH RUN EXCEPTIONS
# =============================================================================


class ResearchException(KeywordEngineException):
    """Base exception for research run failures."""


class ResearchCancelledError(ResearchException):
    """Raised inside a run once its caller has cancelled it."""

    def __init__(self, research_result_id: Any = None, **kwargs):
        super().__init__(
            "Research run was cancelled",
            severity=ErrorSeverity.INFO,
            retryable=False,
            context={"research_result_id": str(research_result_id)},
            error_code="RESEARCH_CANCELLED",
            **kwargs,
        )


class ResearchStateError(ResearchException):
    """Operation needs a research result in a different status."""

    def __init__(self, research_result_id: Any, status: str, expected: str, **kwargs):
        super().__init__(
            f"Research result is {status}; expected {expected}",
            severity=ErrorSeverity.WARNING,
            retryable=False,
            context={
                "research_result_id": str(research_result_id),
                "status": status,
                "expected": expected,
            },
            error_code="RESEARCH_STATE_CONFLICT",
            **kwargs,
        )


# =============================================================================
# UTILITIES
# =============================================================================


def is_retryable(exc: BaseException) -> bool:
    """
    Determine if an exception is retryable.

    Args:
        exc: Exception to check

    Returns:
        True if operation should be retried, False otherwise
    """
    if isinstance(exc, KeywordEngineException):
        return exc.retryable

    # Heuristic for non-application exceptions
    return isinstance(exc, (TimeoutError, ConnectionError))


# =============================================================================
# MODULE EXPORTS
# =============================================================================

__all__ = [
    # Base
    "KeywordEngineException",
    # Provider
    "ProviderException",
    "ProviderError",
    "ProviderRateLimitError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "ProviderAuthError",
    "MalformedProviderResponseError",
    # Infrastructure
    "InfrastructureException",
    "InfrastructureError",
    "DatabaseException",
    "DatabaseError",
    "DatabaseConnectionError",
    "EntityNotFoundError",
    "ResearchNotFoundError",
    # Cache
    "CacheException",
    "CacheError",
    "CacheCorruptionError",
    # Validation & ownership
    "ValidationException",
    "ValidationError",
    "OwnershipError",
    # Research
    "ResearchException",
    "ResearchStateError",
    "ResearchCancelledError",
    # Utilities
    "is_retryable",
]
