"""
Unit Tests for Research Request Validation and Intent Fallback
==============================================================

Everything here runs before any I/O: invalid input must be rejected
synchronously by KeywordResearcher.start().
"""

from unittest.mock import MagicMock

import pytest

from core.enums import KeywordIntent, SearchType
from core.exceptions import ValidationError
from execution.keyword_researcher import (
    KeywordResearcher,
    ResearchRequest,
    classify_intent,
    validate_request,
)


def _valid(**overrides) -> ResearchRequest:
    params = {
        "seed_keywords": ["dog grooming"],
        "location": "United States",
        "language": "en",
        "owner": "tenant-1",
    }
    params.update(overrides)
    return validate_request(**params)


class TestValidateRequest:
    def test_normalizes_and_deduplicates_seeds(self):
        request = _valid(seed_keywords=["Dog  Grooming", "dog grooming", " Puppy Grooming "])
        assert request.seed_keywords == ("dog grooming", "puppy grooming")

    def test_single_string_seed(self):
        assert _valid(seed_keywords="dog grooming").seed_keywords == ("dog grooming",)

    def test_language_and_location_are_normalized(self):
        request = _valid(language="pt_BR", location="  New   York, NY ")
        assert request.language == "pt-br"
        assert request.location == "New York, NY"

    @pytest.mark.parametrize(
        "location", ["Zürich", "São Paulo", "Köln", "Москва", "Côte d'Ivoire", "GB"]
    )
    def test_accepts_locations_in_any_script(self, location):
        assert _valid(location=location).location == location

    def test_search_type_accepts_strings(self):
        assert _valid(search_type="ai").search_type == SearchType.AI

    def test_request_is_frozen(self):
        request = _valid()
        with pytest.raises(Exception):
            request.owner = "someone-else"

    @pytest.mark.parametrize(
        "overrides,field",
        [
            ({"seed_keywords": []}, "seed_keywords"),
            ({"seed_keywords": [f"seed {i}" for i in range(21)]}, "seed_keywords"),
            ({"seed_keywords": ["   "]}, "seed_keyword"),
            ({"seed_keywords": ["dog\x00grooming"]}, "seed_keyword"),
            ({"seed_keywords": ["x" * 201]}, "seed_keyword"),
            ({"seed_keywords": [" ".join(["word"] * 13)]}, "seed_keyword"),
            ({"seed_keywords": ["!!! ???"]}, "seed_keyword"),
            ({"location": ""}, "location"),
            ({"location": "12345"}, "location"),
            ({"location": "Zürich 8001"}, "location"),
            ({"location": "_north"}, "location"),
            ({"location": "A" * 101}, "location"),
            ({"language": "english"}, "language"),
            ({"language": "EN"}, "language"),
            ({"owner": "  "}, "owner"),
            ({"search_type": "telepathy"}, "search_type"),
        ],
    )
    def test_rejects_invalid_input(self, overrides, field):
        with pytest.raises(ValidationError) as exc_info:
            _valid(**overrides)
        assert exc_info.value.context["field"] == field

    def test_start_rejects_before_any_io(self):
        repository = MagicMock()
        fetcher = MagicMock()
        researcher = KeywordResearcher(repository, MagicMock(), fetcher)

        with pytest.raises(ValidationError):
            researcher.start([], owner="tenant-1")

        assert repository.mock_calls == []
        assert fetcher.mock_calls == []

    def test_start_fills_defaults_from_settings(self, research_settings):
        researcher = KeywordResearcher(
            MagicMock(), MagicMock(), MagicMock(), research_settings=research_settings
        )

        run = researcher.start("dog grooming", owner="tenant-1")

        assert run.request.location == research_settings.default_location
        assert run.request.language == research_settings.default_language
        assert run.research_result_id is None
        assert not run.cancelled


class TestClassifyIntent:
    @pytest.mark.parametrize(
        "phrase,intent",
        [
            ("dog grooming prices", KeywordIntent.TRANSACTIONAL),
            ("buy dog shampoo", KeywordIntent.TRANSACTIONAL),
            ("best dog groomer", KeywordIntent.COMMERCIAL),
            ("clippers vs scissors", KeywordIntent.COMMERCIAL),
            ("dog grooming near me", KeywordIntent.LOCAL),
            ("petsmart login", KeywordIntent.NAVIGATIONAL),
            ("how to groom a dog", KeywordIntent.INFORMATIONAL),
        ],
    )
    def test_heuristics(self, phrase, intent):
        assert classify_intent(phrase) == intent
