"""
Research Service: Business Logic Layer for Keyword Research

Caller-facing facade over the research engine:
- Research runs (start, cancel, summarize)
- Filtered and sorted term views, cluster views
- Owner-wide term listing across research runs
- CSV and JSON exports
- Research history with ownership enforcement
- Cache administration (flush, expiry cleanup, statistics)

Design Pattern: Service Layer with Repository Pattern
"""

import csv
import io
import json
from typing import Any, Dict, List, Optional, Sequence, Union
from uuid import UUID

from loguru import logger

from config.constants import CSV_EXPORT_HEADERS
from core.enums import ResearchStatus, SearchType
from core.exceptions import ResearchStateError
from core.models import (
    Cluster,
    FlushScope,
    KeywordTerm,
    OwnerTermFilter,
    ResearchResult,
    ResearchSummary,
    TermFilter,
)
from execution.keyword_researcher import KeywordResearcher, ResearchRun
from knowledge.research_repository import ResearchRepository
from optimization.cache_manager import KeywordCacheManager


def _format_optional(value: Optional[float]) -> str:
    return "" if value is None else f"{value:g}"


def term_to_csv_row(term: KeywordTerm) -> List[Any]:
    """One CSV row, columns in CSV_EXPORT_HEADERS order."""
    return [
        term.keyword,
        term.search_volume,
        f"{term.difficulty:g}",
        _format_optional(term.competition),
        term.competition_level.value,
        _format_optional(term.cpc),
        f"{term.easy_win_score:.2f}",
        f"{term.high_value_score:.2f}",
        term.search_intent.value if term.search_intent else "",
        "yes" if term.is_related_term else "no",
        term.parent_keyword or "",
    ]


class ResearchService:
    """
    Service layer for keyword research.

    Every read takes the caller's owner id; a research result owned by
    someone else raises OwnershipError rather than returning nothing.
    """

    def __init__(
        self,
        repository: ResearchRepository,
        researcher: KeywordResearcher,
        cache_manager: KeywordCacheManager,
    ):
        self.repository = repository
        self.researcher = researcher
        self.cache_manager = cache_manager
        logger.debug("ResearchService initialized")

    # =========================================================================
    # RESEARCH RUNS
    # =========================================================================

    def start_research(
        self,
        seed_keywords: Union[str, Sequence[str]],
        owner: str,
        location: Optional[str] = None,
        language: Optional[str] = None,
        search_type: Union[SearchType, str] = SearchType.TRADITIONAL,
        include_related: bool = True,
    ) -> ResearchRun:
        """
        Validate input and return a run the caller can execute or cancel.

        Raises:
            ValidationError: If any input is malformed
        """
        return self.researcher.start(
            seed_keywords, location, language, owner, search_type, include_related
        )

    async def run_research(
        self,
        seed_keywords: Union[str, Sequence[str]],
        owner: str,
        location: Optional[str] = None,
        language: Optional[str] = None,
        search_type: Union[SearchType, str] = SearchType.TRADITIONAL,
        include_related: bool = True,
    ) -> ResearchSummary:
        run = self.start_research(
            seed_keywords, owner, location, language, search_type, include_related
        )
        return await run.execute()

    async def rescore(self, research_result_id: UUID, owner: str) -> ResearchSummary:
        """
        Recompute scores and clusters of a stored run with current weights.

        Returns:
            Summary of the rescored run; no provider calls are made

        Raises:
            ResearchStateError: If the run is not completed
        """
        result = await self.repository.get(research_result_id, owner)
        if result.status != ResearchStatus.COMPLETED:
            raise ResearchStateError(
                research_result_id, result.status.value, ResearchStatus.COMPLETED.value
            )
        scoring = self.researcher.scoring
        terms = scoring.score_terms(await self.repository.list_terms(research_result_id, owner))
        await self.repository.update_scores(research_result_id, terms)
        clustering = self.researcher.clustering.cluster(terms)
        await self.repository.replace_clusters(research_result_id, clustering)

        logger.success(f"Rescored research result {research_result_id}: {len(terms)} terms")
        return ResearchSummary(
            research_result_id=research_result_id,
            terms_count=len(terms),
            easy_win_count=sum(1 for t in terms if scoring.is_easy_win(t)),
            high_value_count=sum(1 for t in terms if scoring.is_high_value(t)),
            cluster_count=len(clustering.clusters),
            failed_keywords=result.failed_keywords,
        )

    # =========================================================================
    # READ OPERATIONS
    # =========================================================================

    async def get_research(self, research_result_id: UUID, owner: str) -> ResearchResult:
        return await self.repository.get(research_result_id, owner)

    async def list_research(self, owner: str, limit: int = 50) -> List[ResearchResult]:
        return await self.repository.list_for_owner(owner, limit=limit)

    async def list_terms(
        self,
        research_result_id: UUID,
        owner: str,
        term_filter: Optional[TermFilter] = None,
    ) -> List[KeywordTerm]:
        """
        List a run's terms through a view, filter and sort order.

        The easy_wins and high_value views use the scoring thresholds.
        """
        config = self.researcher.scoring.config
        return await self.repository.list_terms(
            research_result_id,
            owner,
            term_filter,
            easy_win_threshold=config.easy_win_threshold,
            high_value_threshold=config.high_value_threshold,
        )

    async def list_owner_terms(
        self, owner: str, term_filter: Optional[OwnerTermFilter] = None
    ) -> List[KeywordTerm]:
        """All of an owner's terms across research runs, highest volume first."""
        return await self.repository.list_owner_terms(owner, term_filter)

    async def list_clusters(self, research_result_id: UUID, owner: str) -> List[Cluster]:
        return await self.repository.list_clusters(research_result_id, owner)

    async def delete_research(self, research_result_id: UUID, owner: str) -> None:
        await self.repository.delete(research_result_id, owner)

    # =========================================================================
    # EXPORTS
    # =========================================================================

    async def export_csv(
        self,
        research_result_id: UUID,
        owner: str,
        term_filter: Optional[TermFilter] = None,
    ) -> bytes:
        """
        Export the term table as UTF-8 CSV.

        Args:
            research_result_id: Research result to export
            owner: Caller's tenant id
            term_filter: Optional view/sort; defaults to all terms by volume

        Returns:
            CSV bytes with a header row
        """
        terms = await self.list_terms(research_result_id, owner, term_filter)

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_EXPORT_HEADERS)
        for term in terms:
            writer.writerow(term_to_csv_row(term))

        logger.info(f"Exported {len(terms)} terms of {research_result_id} as CSV")
        return buffer.getvalue().encode("utf-8")

    async def export_json(self, research_result_id: UUID, owner: str) -> bytes:
        """Export the research result, its terms and clusters as UTF-8 JSON."""
        result = await self.repository.get(research_result_id, owner)
        terms = await self.list_terms(research_result_id, owner)
        clusters = await self.list_clusters(research_result_id, owner)

        document = {
            "research_result": result.model_dump(mode="json"),
            "terms": [term.model_dump(mode="json") for term in terms],
            "clusters": [cluster.model_dump(mode="json") for cluster in clusters],
        }
        return json.dumps(document, ensure_ascii=False, indent=2).encode("utf-8")

    # =========================================================================
    # CACHE ADMINISTRATION
    # =========================================================================

    async def flush_cache(self, scope: Optional[FlushScope] = None) -> int:
        return await self.cache_manager.flush(scope)

    async def clean_expired_cache(self) -> int:
        return await self.cache_manager.clean_expired()

    async def cache_statistics(self) -> Dict[str, Any]:
        return await self.cache_manager.get_statistics()
