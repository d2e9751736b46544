"""
Opportunity scoring for keyword terms.

Two independent 0-100 scores per term:

- Easy Win: how cheaply a term can rank. Driven mostly by low difficulty,
  with volume as a tiebreaker so dead terms never look attractive.
- High Value: how much a ranking is worth. Volume, CPC and low paid
  competition.

Volume and CPC enter on a log scale against a configurable ceiling, so a
term at 1k searches is not a hundred times "worse" than one at 100k.
Pure functions of (term, config); no I/O, no clock.
"""

import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol

from config.settings import ScoringSettings, settings


class ScorableTerm(Protocol):
    search_volume: int
    difficulty: float
    competition: Optional[float]
    cpc: Optional[float]


@dataclass(frozen=True)
class ScoringConfig:
    """Weights, log-scale ceilings and classification thresholds."""

    easy_win_difficulty_weight: float = 0.6
    easy_win_volume_weight: float = 0.4
    high_value_volume_weight: float = 0.5
    high_value_cpc_weight: float = 0.3
    high_value_competition_weight: float = 0.2
    volume_ceiling: float = 1_000_000
    cpc_ceiling: float = 50.0
    easy_win_threshold: float = 60.0
    high_value_threshold: float = 60.0
    zero_volume_margin: float = 1.0

    @classmethod
    def from_settings(cls, scoring: Optional[ScoringSettings] = None) -> "ScoringConfig":
        scoring = scoring or settings.scoring
        return cls(**scoring.model_dump())


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def log_scale(value: Optional[float], ceiling: float) -> float:
    """
    Map a non-negative magnitude onto [0, 100] logarithmically.

    log_scale(0) == 0 and log_scale(ceiling) == 100; anything above the
    ceiling saturates. None is treated as 0.
    """
    if not value or value <= 0:
        return 0.0
    return clamp(100.0 * math.log10(1.0 + value) / math.log10(1.0 + ceiling))


class ScoringEngine:
    """Computes Easy Win and High Value scores from a ScoringConfig."""

    def __init__(self, config: Optional[ScoringConfig] = None):
        self.config = config or ScoringConfig.from_settings()

    def easy_win_score(self, term: ScorableTerm) -> float:
        cfg = self.config
        score = clamp(
            cfg.easy_win_difficulty_weight * (100.0 - term.difficulty)
            + cfg.easy_win_volume_weight * log_scale(term.search_volume, cfg.volume_ceiling)
        )
        if term.search_volume == 0:
            # No demand is never an easy win, however trivial the ranking.
            score = min(score, clamp(cfg.easy_win_threshold - cfg.zero_volume_margin))
        return round(score, 4)

    def high_value_score(self, term: ScorableTerm) -> float:
        cfg = self.config
        competition_part = (
            100.0 * (1.0 - term.competition) if term.competition is not None else 0.0
        )
        score = clamp(
            cfg.high_value_volume_weight * log_scale(term.search_volume, cfg.volume_ceiling)
            + cfg.high_value_cpc_weight * log_scale(term.cpc, cfg.cpc_ceiling)
            + cfg.high_value_competition_weight * competition_part
        )
        return round(score, 4)

    def is_easy_win(self, term: ScorableTerm) -> bool:
        return self.easy_win_score(term) >= self.config.easy_win_threshold

    def is_high_value(self, term: ScorableTerm) -> bool:
        return self.high_value_score(term) >= self.config.high_value_threshold

    def score_terms(self, terms: Iterable) -> List:
        """
        Return copies of KeywordTerms with both scores filled in.

        Inputs are left untouched.
        """
        return [
            term.model_copy(
                update={
                    "easy_win_score": self.easy_win_score(term),
                    "high_value_score": self.high_value_score(term),
                }
            )
            for term in terms
        ]
