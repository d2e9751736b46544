"""
Domain Enumerations & Type Taxonomy
====================================
Exhaustive type-safe enumerations for keyword research domain modeling
with first-class support for serialization and database storage.

Architecture: Type-Driven Design + ADT (Algebraic Data Types)
"""

from enum import Enum, IntEnum
from typing import Optional

from config.constants import COMPETITION_BANDS


class SearchType(str, Enum):
    """
    Which search surface a research run targets.

    A label recorded on the research result and used to filter an
    owner's terms; the provider call itself is the same for every type.

    String enum for JSON serialization compatibility and
    database storage without integer mapping fragility.
    """

    TRADITIONAL = "traditional"
    AI = "ai"
    BOTH = "both"


class KeywordIntent(str, Enum):
    """
    Search intent classification (Google's taxonomy plus local).
    """

    INFORMATIONAL = "informational"  # "how to", "what is"
    NAVIGATIONAL = "navigational"  # Brand/product searches
    COMMERCIAL = "commercial"  # "best", "review", "compare"
    TRANSACTIONAL = "transactional"  # "buy", "price", "discount"
    LOCAL = "local"  # "near me"


class CompetitionLevel(str, Enum):
    """Paid-search competition banding used by the term filters."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @classmethod
    def from_competition(cls, competition: Optional[float]) -> "CompetitionLevel":
        """
        Band a [0, 1] competition value.

        Missing competition is treated as LOW, matching how the
        scoring engine lets it contribute nothing.
        """
        if competition is None or competition < COMPETITION_BANDS.LOW_MAX:
            return cls.LOW
        if competition < COMPETITION_BANDS.MEDIUM_MAX:
            return cls.MEDIUM
        return cls.HIGH


class ClusterType(str, Enum):
    """
    Content cluster archetype.

    PILLAR clusters anchor a topic hub, SUPPORTING clusters are smaller
    satellites, LONG_TAIL clusters are rooted at a specific multi-word term.
    """

    PILLAR = "pillar"
    SUPPORTING = "supporting"
    LONG_TAIL = "long_tail"


class MemberRole(str, Enum):
    """Role of a single term inside its cluster."""

    PILLAR = "pillar"
    SUPPORTING = "supporting"
    LONG_TAIL = "long_tail"


class ResearchStatus(str, Enum):
    """Lifecycle of a research run."""

    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self != self.RUNNING


class TermView(str, Enum):
    """Pre-filtered views over a research run's term table."""

    ALL = "all"
    EASY_WINS = "easy_wins"
    HIGH_VALUE = "high_value"


class TermSortField(str, Enum):
    """Sortable columns of the term table."""

    KEYWORD = "keyword"
    SEARCH_VOLUME = "search_volume"
    DIFFICULTY = "difficulty"
    COMPETITION = "competition"
    CPC = "cpc"
    EASY_WIN_SCORE = "easy_win_score"
    HIGH_VALUE_SCORE = "high_value_score"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class CacheBackend(str, Enum):
    """Keyword metrics cache storage backends."""

    MEMORY = "memory"
    REDIS = "redis"


class ErrorSeverity(IntEnum):
    """
    Error classification by impact severity.

    Determines alerting, retry, and recovery strategies.
    """

    CRITICAL = 5  # System failure, immediate intervention required
    ERROR = 4  # Operation failed, automatic retry possible
    WARNING = 3  # Degraded performance, monitoring needed
    INFO = 2  # Notable event, no action required
    DEBUG = 1  # Diagnostic information

    @property
    def should_alert(self) -> bool:
        """Determine if severity warrants immediate alert."""
        return self >= self.ERROR


def get_enum_by_value(enum_class: type[Enum], value: str) -> Optional[Enum]:
    """
    Safely retrieve enum member by value.

    Args:
        enum_class: The enum class to search
        value: The string value to find

    Returns:
        Matching enum member or None if not found
    """
    try:
        return enum_class(value)
    except (ValueError, KeyError):
        return None


# =============================================================================
# MODULE EXPORTS
# =============================================================================

__all__ = [
    # Research domain
    "SearchType",
    "KeywordIntent",
    "CompetitionLevel",
    "ClusterType",
    "MemberRole",
    "ResearchStatus",
    # Query facade
    "TermView",
    "TermSortField",
    "SortDirection",
    # Infrastructure
    "CacheBackend",
    "ErrorSeverity",
    # Utilities
    "get_enum_by_value",
]
