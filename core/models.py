"""
Domain Data Models
==================
Pydantic v2 schema definitions for the keyword research engine:
- Normalized provider metrics (the only shape allowed past the fetcher)
- Cache entries with TTL bookkeeping
- Research results, keyword terms and clusters
- Query facade filters and run summaries

Architecture: Domain-Driven Design + Value Objects
"""

import re
import unicodedata
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from config.constants import REGEX_PATTERNS
from core.enums import (
    ClusterType,
    CompetitionLevel,
    KeywordIntent,
    MemberRole,
    ResearchStatus,
    SearchType,
    SortDirection,
    TermSortField,
    TermView,
)

_WHITESPACE = re.compile(REGEX_PATTERNS.MULTIPLE_SPACES)


def utcnow() -> datetime:
    """Timezone-aware UTC now; the single clock used by default everywhere."""
    return datetime.now(timezone.utc)


def normalize_keyword(keyword: str) -> str:
    """
    Canonical form used for cache keys and per-run deduplication.

    NFKC-folds, lower-cases, trims and collapses whitespace runs, so
    "Dog  Grooming", " dog grooming" and "DOG GROOMING" are one keyword.
    """
    folded = unicodedata.normalize("NFKC", keyword).lower()
    return _WHITESPACE.sub(" ", folded).strip()


# =============================================================================
# CONFIGURATION
# =============================================================================


class BaseModelConfig(BaseModel):
    """Base configuration for all models."""

    model_config = ConfigDict(
        validate_assignment=True,  # Validate on field updates
        use_enum_values=False,  # Keep enum types (don't convert to strings)
    )


# =============================================================================
# PROVIDER METRICS
# =============================================================================


class KeywordMetrics(BaseModelConfig):
    """
    Fully-typed keyword metrics snapshot.

    Invariants:
    - search_volume ≥ 0
    - difficulty ∈ [0, 100]
    - competition ∈ [0, 1] when known
    - cpc ≥ 0 when known
    """

    keyword: str = Field(..., min_length=1, max_length=200)
    search_volume: int = Field(default=0, ge=0)
    difficulty: float = Field(default=0.0, ge=0.0, le=100.0)
    competition: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    cpc: Optional[float] = Field(default=None, ge=0.0)
    related_keywords: tuple[str, ...] = Field(default_factory=tuple)
    search_intent: Optional[KeywordIntent] = Field(default=None)

    model_config = ConfigDict(frozen=True)

    @field_validator("keyword")
    @classmethod
    def normalize(cls, v: str) -> str:
        normalized = normalize_keyword(v)
        if not normalized:
            raise ValueError("keyword cannot be empty")
        return normalized


# =============================================================================
# CACHE MODELS
# =============================================================================


class CacheKey(BaseModel):
    """Cache identity: normalized keyword within a location/language context."""

    keyword: str
    location: str
    language: str

    model_config = ConfigDict(frozen=True)

    @classmethod
    def build(cls, keyword: str, location: str, language: str) -> "CacheKey":
        return cls(
            keyword=normalize_keyword(keyword),
            location=normalize_keyword(location),
            language=language.strip().lower().replace("_", "-"),
        )

    def render(self, prefix: str = "kwcache") -> str:
        # keyword last: it is the only part that may itself contain ':'
        return f"{prefix}:{self.language}:{self.location}:{self.keyword}"

    @classmethod
    def parse(cls, rendered: str) -> "CacheKey":
        """Inverse of render(); the prefix is discarded."""
        parts = rendered.split(":", 3)
        if len(parts) != 4:
            raise ValueError(f"not a rendered cache key: {rendered!r}")
        _, language, location, keyword = parts
        return cls(keyword=keyword, location=location, language=language)


class CacheEntry(BaseModelConfig):
    """
    Keyword metrics cache entry.

    At most one live entry exists per cache_key; a put replaces it wholesale.
    """

    cache_key: str = Field(..., min_length=1)
    keyword: str
    location: str
    language: str
    metrics: KeywordMetrics

    fetched_at: datetime
    expires_at: datetime
    access_count: int = Field(default=1, ge=0)
    last_accessed_at: datetime

    def is_expired(self, now: datetime) -> bool:
        """An entry is dead from the instant now reaches expires_at."""
        return now >= self.expires_at

    def age(self, now: datetime) -> timedelta:
        return now - self.fetched_at


class CacheHit(BaseModelConfig):
    """Successful lookup: the metrics plus how old they are."""

    metrics: KeywordMetrics
    age: timedelta
    access_count: int


class FlushScope(BaseModelConfig):
    """
    Selector for manual cache invalidation.

    Every populated field narrows the scope; an empty scope matches all.
    """

    keyword_prefix: Optional[str] = Field(default=None)
    location: Optional[str] = Field(default=None)
    language: Optional[str] = Field(default=None)

    @field_validator("keyword_prefix", "location")
    @classmethod
    def normalize_text(cls, v: Optional[str]) -> Optional[str]:
        return normalize_keyword(v) if v else None

    @field_validator("language")
    @classmethod
    def normalize_language(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().lower().replace("_", "-") if v else None

    @property
    def is_global(self) -> bool:
        return not (self.keyword_prefix or self.location or self.language)

    def matches(self, key: CacheKey) -> bool:
        if self.keyword_prefix and not key.keyword.startswith(self.keyword_prefix):
            return False
        if self.location and key.location != self.location:
            return False
        if self.language and key.language != self.language:
            return False
        return True


# =============================================================================
# RESEARCH MODELS
# =============================================================================


class ResearchResult(BaseModelConfig):
    """
    One research run, owned by the tenant that requested it.

    Immutable except for appended KeywordTerms and run bookkeeping
    (status, failed keywords).
    """

    id: UUID = Field(default_factory=uuid4)
    owner: str = Field(..., min_length=1, max_length=255)
    seed_keyword: str = Field(..., min_length=1, max_length=200)
    location: str
    language: str
    search_type: SearchType = Field(default=SearchType.TRADITIONAL)
    raw_snapshot: dict[str, Any] = Field(default_factory=dict)
    status: ResearchStatus = Field(default=ResearchStatus.RUNNING)
    failed_keywords: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class KeywordTerm(BaseModelConfig):
    """
    A single keyword row under a research result.

    (research_result_id, keyword) is unique; keyword is always normalized.
    """

    id: UUID = Field(default_factory=uuid4)
    research_result_id: UUID
    keyword: str = Field(..., min_length=1, max_length=200)
    search_volume: int = Field(default=0, ge=0)
    difficulty: float = Field(default=0.0, ge=0.0, le=100.0)
    competition: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    cpc: Optional[float] = Field(default=None, ge=0.0)
    search_intent: Optional[KeywordIntent] = Field(default=None)
    is_related_term: bool = Field(default=False)
    parent_keyword: Optional[str] = Field(default=None)
    easy_win_score: float = Field(default=0.0, ge=0.0, le=100.0)
    high_value_score: float = Field(default=0.0, ge=0.0, le=100.0)

    @field_validator("keyword")
    @classmethod
    def normalize(cls, v: str) -> str:
        normalized = normalize_keyword(v)
        if not normalized:
            raise ValueError("keyword cannot be empty")
        return normalized

    @computed_field
    @property
    def competition_level(self) -> CompetitionLevel:
        return CompetitionLevel.from_competition(self.competition)

    @classmethod
    def from_metrics(
        cls,
        research_result_id: UUID,
        metrics: KeywordMetrics,
        *,
        is_related_term: bool = False,
        parent_keyword: Optional[str] = None,
    ) -> "KeywordTerm":
        return cls(
            research_result_id=research_result_id,
            keyword=metrics.keyword,
            search_volume=metrics.search_volume,
            difficulty=metrics.difficulty,
            competition=metrics.competition,
            cpc=metrics.cpc,
            search_intent=metrics.search_intent,
            is_related_term=is_related_term,
            parent_keyword=parent_keyword,
        )


class ClusterMember(BaseModelConfig):
    """A term's membership in a cluster."""

    term_id: UUID
    keyword: str
    role: MemberRole


class Cluster(BaseModelConfig):
    """
    Content cluster rooted at a pillar keyword.

    Recomputed wholesale on each run; never patched incrementally.
    """

    id: UUID = Field(default_factory=uuid4)
    research_result_id: UUID
    parent_topic: str
    pillar_term_id: UUID
    members: list[ClusterMember] = Field(default_factory=list)
    cluster_type: ClusterType
    authority_potential_score: float = Field(default=0.0, ge=0.0, le=100.0)
    aggregate_search_volume: int = Field(default=0, ge=0)
    avg_difficulty: float = Field(default=0.0, ge=0.0, le=100.0)
    easy_win_count: int = Field(default=0, ge=0)
    high_value_count: int = Field(default=0, ge=0)

    @property
    def member_term_ids(self) -> list[UUID]:
        return [member.term_id for member in self.members]

    @property
    def size(self) -> int:
        return len(self.members)


class ClusteringResult(BaseModelConfig):
    """Partition of a term set: clusters plus the explicit unclustered bucket."""

    clusters: list[Cluster] = Field(default_factory=list)
    unclustered_term_ids: list[UUID] = Field(default_factory=list)

    def assigned_term_ids(self) -> list[UUID]:
        """Every term id in output order; duplicates here would break coverage."""
        ids = [term_id for cluster in self.clusters for term_id in cluster.member_term_ids]
        return ids + list(self.unclustered_term_ids)


class ResearchSummary(BaseModelConfig):
    """What a caller gets back from run_research."""

    research_result_id: UUID
    terms_count: int = Field(default=0, ge=0)
    easy_win_count: int = Field(default=0, ge=0)
    high_value_count: int = Field(default=0, ge=0)
    cluster_count: int = Field(default=0, ge=0)
    failed_keywords: list[str] = Field(default_factory=list)
    cancelled: bool = Field(default=False)


# =============================================================================
# QUERY MODELS
# =============================================================================


class TermFilter(BaseModelConfig):
    """Read-side filter for listing a research run's terms."""

    view: TermView = Field(default=TermView.ALL)
    sort_by: TermSortField = Field(default=TermSortField.SEARCH_VOLUME)
    sort_direction: SortDirection = Field(default=SortDirection.DESC)
    competition_level: Optional[CompetitionLevel] = Field(default=None)
    search: Optional[str] = Field(default=None, max_length=200)
    limit: Optional[int] = Field(default=None, ge=1, le=10_000)

    @field_validator("search")
    @classmethod
    def normalize_search(cls, v: Optional[str]) -> Optional[str]:
        return normalize_keyword(v) if v else None


class OwnerTermFilter(BaseModelConfig):
    """Filter for listing one owner's terms across all research runs."""

    search_type: Optional[SearchType] = Field(default=None)
    location: Optional[str] = Field(default=None, max_length=100)
    language: Optional[str] = Field(default=None, max_length=16)
    parent_keyword: Optional[str] = Field(default=None, max_length=200)
    is_related_term: Optional[bool] = Field(default=None)
    min_search_volume: Optional[int] = Field(default=None, ge=0)
    max_difficulty: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    limit: Optional[int] = Field(default=None, ge=1, le=10_000)

    @field_validator("location")
    @classmethod
    def collapse_location(cls, v: Optional[str]) -> Optional[str]:
        return " ".join(v.split()) or None if v else None

    @field_validator("language")
    @classmethod
    def normalize_language(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().lower().replace("_", "-") or None if v else None

    @field_validator("parent_keyword")
    @classmethod
    def normalize_parent(cls, v: Optional[str]) -> Optional[str]:
        return normalize_keyword(v) or None if v else None


__all__ = [
    "utcnow",
    "normalize_keyword",
    "KeywordMetrics",
    "CacheKey",
    "CacheEntry",
    "CacheHit",
    "FlushScope",
    "ResearchResult",
    "KeywordTerm",
    "ClusterMember",
    "Cluster",
    "ClusteringResult",
    "ResearchSummary",
    "TermFilter",
    "OwnerTermFilter",
]
