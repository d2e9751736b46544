"""
Keyword Metrics Fetcher
=======================

The only component that talks to the third-party keyword provider.

Responsibilities:
- Adapt the provider (an opaque async callable) to a fixed call shape
- Validate and coerce provider payloads into KeywordMetrics
- Per-attempt timeout and bounded exponential-backoff retries that
  respect the provider's Retry-After
- Map transport failures onto the ProviderError taxonomy

Architecture: Adapter + Anti-Corruption Layer
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, List, Mapping, Optional

import httpx
from loguru import logger
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from config.settings import ProviderSettings, ResearchSettings, settings
from core.enums import KeywordIntent, get_enum_by_value
from core.exceptions import (
    MalformedProviderResponseError,
    ProviderAuthError,
    ProviderException,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from core.models import KeywordMetrics, normalize_keyword
from infrastructure.monitoring import MetricsCollector, get_metrics_collector

# (keyword, location, language) -> raw provider payload
ProviderFetch = Callable[[str, str, str], Awaitable[Mapping[str, Any]]]


# =============================================================================
# PAYLOAD COERCION
# =============================================================================


class _ProviderPayload(BaseModel):
    """
    Lenient view of a provider response.

    Accepts the field spellings seen in the wild (keyword_difficulty,
    volume) and numeric strings; range checks happen in KeywordMetrics.
    """

    search_volume: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("search_volume", "volume")
    )
    difficulty: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("difficulty", "keyword_difficulty", "kd")
    )
    competition: Optional[float] = None
    cpc: Optional[float] = None
    related_keywords: List[Any] = Field(default_factory=list)
    search_intent: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("search_intent", "intent")
    )

    model_config = ConfigDict(extra="ignore")

    @field_validator("related_keywords", mode="before")
    @classmethod
    def none_as_empty(cls, v: Any) -> Any:
        return [] if v is None else v


def _related_keyword_text(item: Any) -> Optional[str]:
    if isinstance(item, str):
        return item
    if isinstance(item, Mapping):
        value = item.get("keyword")
        return value if isinstance(value, str) else None
    return None


def coerce_metrics(
    keyword: str,
    payload: Any,
    *,
    max_related: Optional[int] = None,
) -> KeywordMetrics:
    """
    Validate a raw provider payload into KeywordMetrics.

    Missing volume or difficulty mean "no data" and become 0; anything
    present but non-numeric or out of range is malformed.

    Raises:
        MalformedProviderResponseError: payload cannot be coerced
    """
    if not isinstance(payload, Mapping):
        raise MalformedProviderResponseError(
            keyword=keyword,
            issues=[f"expected an object, got {type(payload).__name__}"],
        )

    try:
        raw = _ProviderPayload.model_validate(payload)
        normalized = normalize_keyword(keyword)

        related: List[str] = []
        seen = {normalized}
        for item in raw.related_keywords:
            text = _related_keyword_text(item)
            if text is None:
                continue
            candidate = normalize_keyword(text)
            if candidate and candidate not in seen:
                seen.add(candidate)
                related.append(candidate)
        if max_related is not None:
            related = related[:max_related]

        volume = raw.search_volume or 0
        if volume != int(volume):
            raise ValueError(f"search_volume must be a whole number, got {volume}")

        return KeywordMetrics(
            keyword=normalized,
            search_volume=int(volume),
            difficulty=raw.difficulty or 0.0,
            competition=raw.competition,
            cpc=raw.cpc,
            related_keywords=tuple(related),
            search_intent=(
                get_enum_by_value(KeywordIntent, raw.search_intent.lower())
                if raw.search_intent
                else None
            ),
        )

    except PydanticValidationError as e:
        issues = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise MalformedProviderResponseError(keyword=keyword, issues=issues, cause=e)
    except (TypeError, ValueError, OverflowError) as e:
        raise MalformedProviderResponseError(keyword=keyword, issues=[str(e)], cause=e)


# =============================================================================
# HTTP PROVIDER
# =============================================================================


class HttpKeywordProvider:
    """
    Default concrete ProviderFetch backed by httpx.

    POSTs {keyword, location, language} to `{base_url}/keywords/metrics`
    and returns the decoded JSON object.
    """

    def __init__(
        self,
        provider_settings: Optional[ProviderSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._settings = provider_settings or settings.provider
        headers = {"Accept": "application/json"}
        if self._settings.api_key is not None:
            headers["Authorization"] = f"Bearer {self._settings.api_key.get_secret_value()}"

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=str(self._settings.base_url).rstrip("/"),
            headers=headers,
            timeout=self._settings.request_timeout,
        )

    async def __call__(self, keyword: str, location: str, language: str) -> Mapping[str, Any]:
        try:
            response = await self._client.post(
                "/keywords/metrics",
                json={"keyword": keyword, "location": location, "language": language},
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(
                keyword=keyword, timeout_seconds=self._settings.request_timeout, cause=e
            )
        except httpx.TransportError as e:
            raise ProviderUnavailableError(f"Provider transport error: {e}", keyword=keyword, cause=e)

        status = response.status_code
        if status in (401, 403):
            raise ProviderAuthError(keyword=keyword, context={"status_code": status})
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise ProviderRateLimitError(
                keyword=keyword,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if status >= 500:
            raise ProviderUnavailableError(keyword=keyword, status_code=status)
        if status >= 400:
            raise MalformedProviderResponseError(
                f"Provider rejected request with HTTP {status}",
                keyword=keyword,
                issues=[response.text[:500]],
            )

        try:
            return response.json()
        except ValueError as e:
            raise MalformedProviderResponseError(
                keyword=keyword, issues=["response body is not JSON"], cause=e
            )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# =============================================================================
# FETCHER
# =============================================================================


def _is_retryable_provider_error(exc: BaseException) -> bool:
    return isinstance(exc, ProviderException) and exc.retryable


class RetryAfterWait(wait_base):
    """
    Backoff that never undercuts a rate limit's Retry-After.

    The provider's hint is capped at `ceiling` so one 429 cannot stall
    a fetch past the run deadline.
    """

    def __init__(self, backoff: wait_base, ceiling: float):
        self.backoff = backoff
        self.ceiling = ceiling

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = self.backoff(retry_state)
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, ProviderRateLimitError) and error.retry_after:
            return max(delay, min(error.retry_after, self.ceiling))
        return delay


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    message = error.message if isinstance(error, ProviderException) else repr(error)
    logger.warning(
        f"Retrying provider fetch in {delay:.2f}s "
        f"(attempt {retry_state.attempt_number} failed: {message})"
    )


def _status_label(exc: Optional[BaseException]) -> str:
    if exc is None:
        return "success"
    if isinstance(exc, ProviderTimeoutError):
        return "timeout"
    if isinstance(exc, ProviderRateLimitError):
        return "rate_limited"
    if isinstance(exc, ProviderAuthError):
        return "auth"
    if isinstance(exc, MalformedProviderResponseError):
        return "malformed"
    return "error"


class MetricsFetcher:
    """
    Resilient, normalizing wrapper around a ProviderFetch.

    Every attempt is bounded by `fetch_timeout`; retryable ProviderErrors
    are retried up to `max_retries` attempts with exponential backoff.
    Non-retryable errors (auth, malformed payload) surface immediately.
    """

    def __init__(
        self,
        provider: ProviderFetch,
        *,
        research_settings: Optional[ResearchSettings] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._provider = provider
        self._settings = research_settings or settings.research
        self._metrics = metrics or get_metrics_collector()

    async def fetch(self, keyword: str, location: str, language: str) -> KeywordMetrics:
        """
        Fetch normalized metrics for one keyword.

        Raises:
            ProviderError: after retries are exhausted or on a permanent failure
        """

        @retry(
            stop=stop_after_attempt(self._settings.max_retries),
            wait=RetryAfterWait(
                wait_exponential(
                    multiplier=1,
                    min=self._settings.retry_min_wait,
                    max=self._settings.retry_max_wait,
                ),
                ceiling=self._settings.run_deadline,
            ),
            retry=retry_if_exception(_is_retryable_provider_error),
            before_sleep=_log_retry,
            reraise=True,
        )
        async def _attempt() -> KeywordMetrics:
            return await self._fetch_once(keyword, location, language)

        return await _attempt()

    async def _fetch_once(self, keyword: str, location: str, language: str) -> KeywordMetrics:
        start = time.perf_counter()
        error: Optional[BaseException] = None
        try:
            try:
                payload = await asyncio.wait_for(
                    self._provider(keyword, location, language),
                    timeout=self._settings.fetch_timeout,
                )
            except asyncio.TimeoutError as e:
                raise ProviderTimeoutError(
                    keyword=keyword, timeout_seconds=self._settings.fetch_timeout, cause=e
                )
            return coerce_metrics(
                keyword, payload, max_related=self._settings.max_related_keywords
            )

        except ProviderException as e:
            error = e
            logger.warning(f"Provider fetch failed for '{keyword}': {e.message}")
            raise
        except (httpx.HTTPError, ConnectionError, OSError) as e:
            error = ProviderUnavailableError(f"Provider call failed: {e}", keyword=keyword, cause=e)
            logger.warning(f"Provider fetch failed for '{keyword}': {e}")
            raise error

        finally:
            self._metrics.record_provider_call(_status_label(error), time.perf_counter() - start)
