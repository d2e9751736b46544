"""
Unit Tests for the Keyword Metrics Fetcher
==========================================

Covers:
- Payload coercion (aliases, missing values, related keyword cleanup)
- Malformed payload rejection
- Retry policy: transient errors retried, permanent errors surfaced
- Rate-limit backoff honouring Retry-After
- Per-attempt timeout
- HTTP provider status mapping via httpx.MockTransport
"""

import asyncio
import json
import time
from unittest.mock import MagicMock

import httpx
import pytest
from tenacity import wait_fixed

from config.settings import ProviderSettings, ResearchSettings
from core.enums import KeywordIntent
from core.exceptions import (
    MalformedProviderResponseError,
    ProviderAuthError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from infrastructure.metrics_fetcher import (
    HttpKeywordProvider,
    MetricsFetcher,
    RetryAfterWait,
    coerce_metrics,
)
from tests.factories import FakeProvider


class TestCoerceMetrics:
    def test_full_payload(self):
        metrics = coerce_metrics(
            "Dog Grooming",
            {
                "search_volume": 15000,
                "difficulty": 28,
                "competition": 0.4,
                "cpc": 2.5,
                "related_keywords": ["Dog Grooming Near Me", {"keyword": "puppy grooming"}],
                "search_intent": "Commercial",
            },
        )

        assert metrics.keyword == "dog grooming"
        assert metrics.search_volume == 15000
        assert metrics.difficulty == 28.0
        assert metrics.competition == 0.4
        assert metrics.cpc == 2.5
        assert metrics.related_keywords == ("dog grooming near me", "puppy grooming")
        assert metrics.search_intent == KeywordIntent.COMMERCIAL

    def test_alias_spellings(self):
        metrics = coerce_metrics("seo tools", {"volume": "900", "keyword_difficulty": "41.5"})
        assert metrics.search_volume == 900
        assert metrics.difficulty == 41.5

    def test_missing_values_default_to_zero(self):
        metrics = coerce_metrics("rare keyword", {"related_keywords": None})
        assert metrics.search_volume == 0
        assert metrics.difficulty == 0.0
        assert metrics.competition is None
        assert metrics.cpc is None
        assert metrics.related_keywords == ()

    def test_related_keywords_deduplicated_and_capped(self):
        metrics = coerce_metrics(
            "dog grooming",
            {
                "search_volume": 10,
                "difficulty": 10,
                "related_keywords": ["Dog  Grooming", "a", "A", "b", 42, {"kw": "x"}, "c"],
            },
            max_related=2,
        )
        assert metrics.related_keywords == ("a", "b")

    def test_unknown_intent_is_dropped(self):
        metrics = coerce_metrics("x y", {"search_volume": 1, "difficulty": 1, "intent": "mystery"})
        assert metrics.search_intent is None

    @pytest.mark.parametrize(
        "payload",
        [
            ["not", "an", "object"],
            {"search_volume": "lots", "difficulty": 10},
            {"search_volume": 10.5, "difficulty": 10},
            {"search_volume": -5, "difficulty": 10},
            {"search_volume": 10, "difficulty": 140},
            {"search_volume": 10, "difficulty": 10, "competition": 3},
        ],
    )
    def test_malformed_payloads(self, payload):
        with pytest.raises(MalformedProviderResponseError) as exc_info:
            coerce_metrics("dog grooming", payload)
        assert exc_info.value.keyword == "dog grooming"
        assert not exc_info.value.retryable


class TestMetricsFetcher:
    @pytest.mark.asyncio
    async def test_fetch_normalizes_payload(self, fake_provider, fetcher, metrics):
        fake_provider.payloads["Dog Grooming"] = {"search_volume": 15000, "difficulty": 28}

        result = await fetcher.fetch("Dog Grooming", "United States", "en")

        assert result.keyword == "dog grooming"
        assert fake_provider.calls == ["Dog Grooming"]
        assert metrics.get_metrics_summary()["keyword_provider_requests_total"] == 1

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, metrics):
        attempts = []

        async def flaky(keyword, location, language):
            attempts.append(keyword)
            if len(attempts) == 1:
                raise ProviderUnavailableError(keyword=keyword, status_code=503)
            return {"search_volume": 10, "difficulty": 5}

        fetcher = MetricsFetcher(
            flaky,
            research_settings=ResearchSettings(max_retries=3, retry_min_wait=0, retry_max_wait=0),
            metrics=metrics,
        )

        result = await fetcher.fetch("dog grooming", "United States", "en")

        assert result.search_volume == 10
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_rate_limit_waits_for_retry_after(self, metrics):
        attempts = []

        async def limited(keyword, location, language):
            attempts.append(time.perf_counter())
            if len(attempts) == 1:
                raise ProviderRateLimitError(keyword=keyword, retry_after=0.2)
            return {"search_volume": 10, "difficulty": 5}

        fetcher = MetricsFetcher(
            limited,
            research_settings=ResearchSettings(max_retries=2, retry_min_wait=0, retry_max_wait=0),
            metrics=metrics,
        )

        await fetcher.fetch("dog grooming", "United States", "en")

        assert attempts[1] - attempts[0] >= 0.19

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, research_settings, metrics):
        provider = FakeProvider({"dog grooming": ProviderRateLimitError(keyword="dog grooming")})
        fetcher = MetricsFetcher(provider, research_settings=research_settings, metrics=metrics)

        with pytest.raises(ProviderRateLimitError):
            await fetcher.fetch("dog grooming", "United States", "en")

        assert len(provider.calls) == research_settings.max_retries

    @pytest.mark.asyncio
    async def test_permanent_errors_are_not_retried(self, research_settings, metrics):
        provider = FakeProvider({"dog grooming": ProviderAuthError(keyword="dog grooming")})
        fetcher = MetricsFetcher(provider, research_settings=research_settings, metrics=metrics)

        with pytest.raises(ProviderAuthError):
            await fetcher.fetch("dog grooming", "United States", "en")

        assert provider.calls == ["dog grooming"]

    @pytest.mark.asyncio
    async def test_malformed_payload_is_not_retried(self, research_settings, metrics):
        provider = FakeProvider({"dog grooming": {"search_volume": "lots"}})
        fetcher = MetricsFetcher(provider, research_settings=research_settings, metrics=metrics)

        with pytest.raises(MalformedProviderResponseError):
            await fetcher.fetch("dog grooming", "United States", "en")

        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_slow_provider_times_out(self, metrics):
        async def slow(keyword, location, language):
            await asyncio.sleep(1)
            return {}

        fetcher = MetricsFetcher(
            slow,
            research_settings=ResearchSettings(
                fetch_timeout=0.01, max_retries=1, retry_min_wait=0, retry_max_wait=0
            ),
            metrics=metrics,
        )

        with pytest.raises(ProviderTimeoutError):
            await fetcher.fetch("dog grooming", "United States", "en")

    @pytest.mark.asyncio
    async def test_connection_errors_become_unavailable(self, research_settings, metrics):
        provider = FakeProvider({"dog grooming": ConnectionResetError("reset by peer")})
        fetcher = MetricsFetcher(provider, research_settings=research_settings, metrics=metrics)

        with pytest.raises(ProviderUnavailableError):
            await fetcher.fetch("dog grooming", "United States", "en")

        assert len(provider.calls) == research_settings.max_retries


class TestRetryAfterWait:
    @staticmethod
    def _state(error):
        state = MagicMock(attempt_number=1)
        state.outcome.exception.return_value = error
        return state

    def test_retry_after_stretches_backoff(self):
        wait = RetryAfterWait(wait_fixed(0.5), ceiling=30.0)

        assert wait(self._state(ProviderRateLimitError(retry_after=3.0))) == 3.0
        assert wait(self._state(ProviderRateLimitError(retry_after=0.1))) == 0.5

    def test_retry_after_is_capped(self):
        wait = RetryAfterWait(wait_fixed(0.5), ceiling=30.0)
        assert wait(self._state(ProviderRateLimitError(retry_after=3600.0))) == 30.0

    def test_other_errors_use_backoff(self):
        wait = RetryAfterWait(wait_fixed(0.5), ceiling=30.0)

        assert wait(self._state(ProviderRateLimitError())) == 0.5
        assert wait(self._state(ProviderUnavailableError(status_code=503))) == 0.5


def _http_provider(handler) -> HttpKeywordProvider:
    client = httpx.AsyncClient(
        base_url="https://provider.test/v1", transport=httpx.MockTransport(handler)
    )
    return HttpKeywordProvider(ProviderSettings(), client=client)


class TestHttpKeywordProvider:
    @pytest.mark.asyncio
    async def test_posts_keyword_context(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"search_volume": 15000, "difficulty": 28})

        provider = _http_provider(handler)
        payload = await provider("dog grooming", "United States", "en")

        assert payload["search_volume"] == 15000
        assert seen["path"] == "/v1/keywords/metrics"
        assert seen["body"] == {"keyword": "dog grooming", "location": "United States", "language": "en"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,error",
        [
            (401, ProviderAuthError),
            (403, ProviderAuthError),
            (429, ProviderRateLimitError),
            (503, ProviderUnavailableError),
            (400, MalformedProviderResponseError),
        ],
    )
    async def test_status_mapping(self, status, error):
        provider = _http_provider(lambda request: httpx.Response(status, text="nope"))

        with pytest.raises(error):
            await provider("dog grooming", "United States", "en")

    @pytest.mark.asyncio
    async def test_retry_after_header(self):
        provider = _http_provider(
            lambda request: httpx.Response(429, headers={"Retry-After": "12"})
        )

        with pytest.raises(ProviderRateLimitError) as exc_info:
            await provider("dog grooming", "United States", "en")
        assert exc_info.value.retry_after == 12.0

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        provider = _http_provider(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(MalformedProviderResponseError):
            await provider("dog grooming", "United States", "en")
