"""
Unit Tests for Domain Models
============================
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from pydantic import ValidationError as PydanticValidationError

from core.enums import CompetitionLevel, KeywordIntent
from core.models import (
    CacheEntry,
    CacheKey,
    FlushScope,
    KeywordMetrics,
    KeywordTerm,
    TermFilter,
    normalize_keyword,
)
from tests.factories import make_metrics


class TestNormalizeKeyword:
    @pytest.mark.parametrize(
        "raw",
        ["dog grooming", "Dog  Grooming", " DOG GROOMING\t", "dog\u00a0grooming"],
    )
    def test_equivalent_spellings(self, raw):
        assert normalize_keyword(raw) == "dog grooming"

    def test_blank(self):
        assert normalize_keyword("   ") == ""


class TestCacheKey:
    def test_build_normalizes_every_part(self):
        key = CacheKey.build("Dog  Grooming", " United   States", "EN_us")
        assert key == CacheKey(keyword="dog grooming", location="united states", language="en-us")

    def test_render_and_parse(self):
        key = CacheKey.build("ratio 16:9 monitor", "United States", "en")
        rendered = key.render("kw")

        assert rendered == "kw:en:united states:ratio 16:9 monitor"
        assert CacheKey.parse(rendered) == key

    def test_parse_rejects_foreign_keys(self):
        with pytest.raises(ValueError):
            CacheKey.parse("session:abc")


class TestCacheEntry:
    def test_expiry_boundary(self):
        fetched = datetime(2024, 1, 1, tzinfo=timezone.utc)
        entry = CacheEntry(
            cache_key="kwcache:en:us:dog grooming",
            keyword="dog grooming",
            location="us",
            language="en",
            metrics=make_metrics("dog grooming"),
            fetched_at=fetched,
            expires_at=fetched + timedelta(days=90),
            last_accessed_at=fetched,
        )

        assert not entry.is_expired(fetched + timedelta(days=89))
        assert entry.is_expired(fetched + timedelta(days=90))
        assert entry.age(fetched + timedelta(days=3)) == timedelta(days=3)


class TestFlushScope:
    def test_empty_scope_is_global(self):
        assert FlushScope().is_global
        assert not FlushScope(language="en").is_global

    def test_matching(self):
        key = CacheKey.build("dog grooming", "Canada", "fr")

        assert FlushScope(keyword_prefix="DOG").matches(key)
        assert FlushScope(location="canada", language="FR").matches(key)
        assert not FlushScope(location="United States").matches(key)
        assert not FlushScope(keyword_prefix="cat").matches(key)


class TestKeywordModels:
    def test_metrics_reject_out_of_range_values(self):
        with pytest.raises(PydanticValidationError):
            KeywordMetrics(keyword="dog grooming", difficulty=101)
        with pytest.raises(PydanticValidationError):
            KeywordMetrics(keyword="   ")

    @pytest.mark.parametrize(
        "competition,level",
        [
            (None, CompetitionLevel.LOW),
            (0.1, CompetitionLevel.LOW),
            (0.3, CompetitionLevel.MEDIUM),
            (0.69, CompetitionLevel.MEDIUM),
            (0.7, CompetitionLevel.HIGH),
        ],
    )
    def test_competition_level(self, competition, level):
        term = KeywordTerm(research_result_id=uuid4(), keyword="x", competition=competition)
        assert term.competition_level == level

    def test_from_metrics_copies_snapshot(self):
        rrid = uuid4()
        metrics = make_metrics(
            "Dog Grooming", 15000, 28, cpc=2.5, search_intent=KeywordIntent.COMMERCIAL
        )

        term = KeywordTerm.from_metrics(
            rrid, metrics, is_related_term=True, parent_keyword="dog care"
        )

        assert term.research_result_id == rrid
        assert term.keyword == "dog grooming"
        assert term.cpc == 2.5
        assert term.search_intent == KeywordIntent.COMMERCIAL
        assert term.is_related_term
        assert term.parent_keyword == "dog care"
        assert term.easy_win_score == 0.0

    def test_term_filter_normalizes_search(self):
        assert TermFilter(search="  Near  ME ").search == "near me"
