"""
Lexical Topic Clustering
========================

Partitions one research run's keyword terms into content clusters, each
rooted at a pillar keyword, plus an explicit bucket of unclustered terms.

Algorithm:
1. Tokenize keywords; significant tokens exclude stop-words and
   one-character tokens.
2. Rank terms by opportunity mass, search_volume × (100 − difficulty),
   descending; ties go to the shorter keyword, then lexicographic order.
3. Walk the ranking. An unassigned term that shares a significant token
   with at least one unassigned term of no greater volume becomes a
   pillar, and every such term joins its cluster.
4. Inside a cluster, multi-word members below the cluster's median
   volume are tagged long-tail.

The output depends only on the set of input terms, never on their order,
and every input term lands in exactly one cluster or the unclustered
bucket.
"""

import re
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple
from uuid import NAMESPACE_URL, UUID, uuid5

import numpy as np
from loguru import logger

from config.constants import MIN_SIGNIFICANT_TOKEN_LENGTH, REGEX_PATTERNS, STOP_WORDS
from config.settings import ClusteringSettings, settings
from core.enums import ClusterType, MemberRole
from core.models import Cluster, ClusteringResult, ClusterMember, KeywordTerm
from intelligence.scoring_engine import ScoringEngine, clamp, log_scale

_TOKEN = re.compile(REGEX_PATTERNS.TOKEN)


def tokenize(keyword: str) -> Tuple[str, ...]:
    """All lower-case alphanumeric tokens, in order."""
    return tuple(_TOKEN.findall(keyword.lower()))


def significant_tokens(keyword: str) -> FrozenSet[str]:
    """Tokens that carry topical signal."""
    return frozenset(
        token
        for token in tokenize(keyword)
        if len(token) >= MIN_SIGNIFICANT_TOKEN_LENGTH and token not in STOP_WORDS
    )


def rank_key(term: KeywordTerm) -> Tuple[float, int, str, str]:
    """Total order: opportunity mass desc, shorter keyword, keyword, id."""
    mass = term.search_volume * (100.0 - term.difficulty)
    return (-mass, len(term.keyword), term.keyword, str(term.id))


@dataclass(frozen=True)
class ClusteringConfig:
    min_shared_tokens: int = 1
    long_tail_min_tokens: int = 3
    pillar_min_members: int = 3
    authority_easy_win_weight: float = 0.35
    authority_high_value_weight: float = 0.35
    authority_volume_weight: float = 0.30
    authority_volume_ceiling: float = 10_000_000

    @classmethod
    def from_settings(cls, clustering: Optional[ClusteringSettings] = None) -> "ClusteringConfig":
        clustering = clustering or settings.clustering
        return cls(**clustering.model_dump())


class ClusteringEngine:
    """Deterministic pillar/supporting/long-tail clustering."""

    def __init__(
        self,
        config: Optional[ClusteringConfig] = None,
        scoring: Optional[ScoringEngine] = None,
    ):
        self.config = config or ClusteringConfig.from_settings()
        self.scoring = scoring or ScoringEngine()

    def cluster(self, terms: Iterable[KeywordTerm]) -> ClusteringResult:
        """
        Partition terms into clusters.

        Args:
            terms: The full term set of one research result

        Returns:
            ClusteringResult with clusters in pillar rank order
        """
        ranked = sorted(terms, key=rank_key)
        tokens: Dict[UUID, FrozenSet[str]] = {t.id: significant_tokens(t.keyword) for t in ranked}
        assigned: set = set()
        clusters: List[Cluster] = []

        for pillar in ranked:
            if pillar.id in assigned or not tokens[pillar.id]:
                continue

            pillar_tokens = tokens[pillar.id]
            followers = [
                term
                for term in ranked
                if term.id != pillar.id
                and term.id not in assigned
                and term.search_volume <= pillar.search_volume
                and len(pillar_tokens & tokens[term.id]) >= self.config.min_shared_tokens
            ]
            if not followers:
                continue

            assigned.add(pillar.id)
            assigned.update(term.id for term in followers)
            clusters.append(self._build_cluster(pillar, followers))

        unclustered = [term.id for term in ranked if term.id not in assigned]
        logger.debug(
            f"Clustered {len(ranked) - len(unclustered)}/{len(ranked)} terms "
            f"into {len(clusters)} clusters"
        )
        return ClusteringResult(clusters=clusters, unclustered_term_ids=unclustered)

    def _build_cluster(self, pillar: KeywordTerm, followers: Sequence[KeywordTerm]) -> Cluster:
        cfg = self.config
        members = [pillar, *followers]
        volumes = np.array([m.search_volume for m in members], dtype=float)
        median_volume = float(np.median(volumes))

        roles = [ClusterMember(term_id=pillar.id, keyword=pillar.keyword, role=MemberRole.PILLAR)]
        for term in followers:
            is_long_tail = (
                len(tokenize(term.keyword)) >= cfg.long_tail_min_tokens
                and term.search_volume < median_volume
            )
            roles.append(
                ClusterMember(
                    term_id=term.id,
                    keyword=term.keyword,
                    role=MemberRole.LONG_TAIL if is_long_tail else MemberRole.SUPPORTING,
                )
            )

        if len(tokenize(pillar.keyword)) >= cfg.long_tail_min_tokens:
            cluster_type = ClusterType.LONG_TAIL
        elif len(members) >= cfg.pillar_min_members:
            cluster_type = ClusterType.PILLAR
        else:
            cluster_type = ClusterType.SUPPORTING

        easy = np.array([self.scoring.easy_win_score(m) for m in members])
        high = np.array([self.scoring.high_value_score(m) for m in members])
        aggregate_volume = int(volumes.sum())
        authority = clamp(
            cfg.authority_easy_win_weight * float(easy.mean())
            + cfg.authority_high_value_weight * float(high.mean())
            + cfg.authority_volume_weight * log_scale(aggregate_volume, cfg.authority_volume_ceiling)
        )

        return Cluster(
            id=uuid5(NAMESPACE_URL, f"cluster:{pillar.research_result_id}:{pillar.keyword}"),
            research_result_id=pillar.research_result_id,
            parent_topic=pillar.keyword,
            pillar_term_id=pillar.id,
            members=roles,
            cluster_type=cluster_type,
            authority_potential_score=round(authority, 4),
            aggregate_search_volume=aggregate_volume,
            avg_difficulty=round(float(np.mean([m.difficulty for m in members])), 4),
            easy_win_count=int((easy >= self.scoring.config.easy_win_threshold).sum()),
            high_value_count=int((high >= self.scoring.config.high_value_threshold).sum()),
        )
