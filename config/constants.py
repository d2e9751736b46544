"""
System Constants & Invariants
==============================
Immutable domain constants defining validation boundaries, lexical
tokenization rules and export layouts.

Tunable policy (weights, TTLs, pool sizes) lives in config.settings;
what lives here is fixed by the data model itself.

Architecture: Value Objects + Namespace Organization
"""

from dataclasses import dataclass
from typing import Final, FrozenSet, Tuple

# =============================================================================
# INPUT VALIDATION
# =============================================================================


@dataclass(frozen=True)
class KeywordLimits:
    """Boundaries for seed keywords and context codes."""

    MIN_KEYWORD_LENGTH: int = 1
    MAX_KEYWORD_LENGTH: int = 200
    MAX_KEYWORD_TOKENS: int = 12
    MAX_SEEDS_PER_RUN: int = 20
    MAX_LOCATION_LENGTH: int = 100


KEYWORD_LIMITS: Final = KeywordLimits()


@dataclass(frozen=True)
class RegexPatterns:
    """Regex patterns for keyword and context validation."""

    # ISO 639-1 with optional region, e.g. "en", "pt-BR", "zh_Hant"
    LANGUAGE_CODE: str = r"^[a-z]{2,3}(?:[-_][A-Za-z]{2,4})?$"
    # Country/region names or codes in any script: letters, spaces, commas, dots, hyphens
    LOCATION: str = r"^[^\W\d_](?:[^\W\d_]|[ .,'()-])*$"
    # Unicode letters and digits; underscores split tokens
    TOKEN: str = r"[^\W_]+"
    MULTIPLE_SPACES: str = r"\s+"
    # Control characters are rejected outright
    CONTROL_CHARS: str = r"[\x00-\x1f\x7f]"


REGEX_PATTERNS: Final = RegexPatterns()


# =============================================================================
# COMPETITION BANDS
# =============================================================================


@dataclass(frozen=True)
class CompetitionBands:
    """Upper bounds (exclusive) for competition level classification."""

    LOW_MAX: float = 0.3
    MEDIUM_MAX: float = 0.7


COMPETITION_BANDS: Final = CompetitionBands()


# =============================================================================
# LEXICAL TOKENIZATION
# =============================================================================

# Tokens carrying no topical signal; never count toward cluster overlap.
STOP_WORDS: Final[FrozenSet[str]] = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "best", "by", "can", "do",
        "does", "for", "from", "how", "i", "in", "is", "it", "me", "my", "near",
        "of", "on", "or", "the", "to", "top", "vs", "what", "when", "where",
        "which", "who", "why", "with", "you", "your",
    }
)

MIN_SIGNIFICANT_TOKEN_LENGTH: Final[int] = 2


# =============================================================================
# EXPORT LAYOUT
# =============================================================================

CSV_EXPORT_HEADERS: Final[Tuple[str, ...]] = (
    "Keyword",
    "Search Volume",
    "Difficulty",
    "Competition",
    "Competition Level",
    "CPC",
    "Easy Win Score",
    "High Value Score",
    "Intent",
    "Related Term",
    "Parent Keyword",
)


# =============================================================================
# MODULE EXPORTS
# =============================================================================

__all__ = [
    "KEYWORD_LIMITS",
    "REGEX_PATTERNS",
    "COMPETITION_BANDS",
    "STOP_WORDS",
    "MIN_SIGNIFICANT_TOKEN_LENGTH",
    "CSV_EXPORT_HEADERS",
]
