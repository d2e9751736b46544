"""
Research Repository - Data Access Layer
========================================

Implements repository pattern for research runs with:
- One ResearchResult per run, owned by a single tenant
- Idempotent keyword term upserts keyed by (result, normalized keyword)
- Wholesale cluster replacement after each clustering pass
- Ownership enforcement on every owner-scoped read and write
- Explicit cascade on delete

Design: Single Responsibility - all research data access goes through this layer.
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import and_, delete, insert, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.constants import COMPETITION_BANDS
from core.enums import (
    ClusterType,
    CompetitionLevel,
    KeywordIntent,
    MemberRole,
    ResearchStatus,
    SearchType,
    SortDirection,
    TermView,
)
from core.exceptions import DatabaseError, OwnershipError, ResearchNotFoundError
from core.models import (
    Cluster,
    ClusteringResult,
    ClusterMember,
    KeywordTerm,
    OwnerTermFilter,
    ResearchResult,
    TermFilter,
    normalize_keyword,
    utcnow,
)
from infrastructure.database import DatabaseManager
from infrastructure.schema import (
    cluster_members_table,
    keyword_clusters_table,
    keyword_terms_table,
    research_results_table,
)


def merge_duplicate_terms(terms: Iterable[KeywordTerm]) -> List[KeywordTerm]:
    """
    Collapse a batch to one term per normalized keyword.

    The winner has the highest search_volume; equal volumes go to the
    lower difficulty. First-seen order of keywords is preserved.
    """
    winners: Dict[str, KeywordTerm] = {}
    for term in terms:
        current = winners.get(term.keyword)
        if current is None or (term.search_volume, -term.difficulty) > (
            current.search_volume,
            -current.difficulty,
        ):
            winners[term.keyword] = term
    return list(winners.values())


class ResearchRepository:
    """
    Repository for ResearchResult, KeywordTerm and Cluster persistence.

    Every method taking an `owner` raises OwnershipError when the stored
    owner differs and ResearchNotFoundError when the id is unknown.
    """

    def __init__(self, database_manager: DatabaseManager):
        """
        Initialize repository with database manager.

        Args:
            database_manager: Database manager for session management
        """
        self.database_manager = database_manager

    # =========================================================================
    # ROW MAPPING
    # =========================================================================

    @staticmethod
    def _row_to_result(row: Any) -> ResearchResult:
        data = row._mapping
        return ResearchResult(
            id=data["id"],
            owner=data["owner"],
            seed_keyword=data["seed_keyword"],
            location=data["location"],
            language=data["language"],
            search_type=SearchType(data["search_type"]),
            raw_snapshot=data["raw_snapshot"] or {},
            status=ResearchStatus(data["status"]),
            failed_keywords=list(data["failed_keywords"] or []),
            created_at=data["created_at"],
            updated_at=data["updated_at"] or data["created_at"],
        )

    @staticmethod
    def _row_to_term(row: Any) -> KeywordTerm:
        data = row._mapping
        return KeywordTerm(
            id=data["id"],
            research_result_id=data["research_result_id"],
            keyword=data["keyword"],
            search_volume=data["search_volume"],
            difficulty=data["difficulty"],
            competition=data["competition"],
            cpc=data["cpc"],
            search_intent=KeywordIntent(data["search_intent"]) if data["search_intent"] else None,
            is_related_term=bool(data["is_related_term"]),
            parent_keyword=data["parent_keyword"],
            easy_win_score=data["easy_win_score"],
            high_value_score=data["high_value_score"],
        )

    @staticmethod
    def _term_values(term: KeywordTerm) -> Dict[str, Any]:
        return {
            "search_volume": term.search_volume,
            "difficulty": term.difficulty,
            "competition": term.competition,
            "cpc": term.cpc,
            "search_intent": term.search_intent.value if term.search_intent else None,
            "is_related_term": term.is_related_term,
            "parent_keyword": term.parent_keyword,
            "easy_win_score": term.easy_win_score,
            "high_value_score": term.high_value_score,
        }

    # =========================================================================
    # OWNERSHIP
    # =========================================================================

    async def _load_owned(
        self, session: AsyncSession, research_result_id: UUID, owner: Optional[str]
    ) -> Any:
        """Fetch the result row, enforcing existence and (when given) ownership."""
        result = await session.execute(
            select(research_results_table).where(research_results_table.c.id == research_result_id)
        )
        row = result.fetchone()
        if row is None:
            raise ResearchNotFoundError(research_result_id)
        if owner is not None and row._mapping["owner"] != owner:
            logger.warning(f"Owner '{owner}' denied access to research result {research_result_id}")
            raise OwnershipError(research_result_id=research_result_id, owner=owner)
        return row

    # =========================================================================
    # CREATE OPERATIONS
    # =========================================================================

    async def create(
        self,
        seed_keyword: str,
        location: str,
        language: str,
        owner: str,
        search_type: SearchType = SearchType.TRADITIONAL,
        raw_snapshot: Optional[Dict[str, Any]] = None,
    ) -> UUID:
        """
        Create a new research result in `running` state.

        Returns:
            The new ResearchResult id

        Raises:
            DatabaseError: On constraint violations or connection issues
        """
        research_result_id = uuid4()
        now = utcnow()
        try:
            async with self.database_manager.session() as session:
                await session.execute(
                    insert(research_results_table).values(
                        id=research_result_id,
                        owner=owner,
                        seed_keyword=normalize_keyword(seed_keyword),
                        location=location,
                        language=language,
                        search_type=search_type.value,
                        raw_snapshot=raw_snapshot or {},
                        status=ResearchStatus.RUNNING.value,
                        failed_keywords=[],
                        created_at=now,
                        updated_at=now,
                    )
                )
            logger.info(f"Created research result {research_result_id} for owner '{owner}'")
            return research_result_id

        except SQLAlchemyError as e:
            logger.error(f"Failed to create research result: {e}")
            raise DatabaseError(f"Research result creation failed: {e}", cause=e)

    async def append_terms(
        self,
        research_result_id: UUID,
        terms: Sequence[KeywordTerm],
        owner: Optional[str] = None,
    ) -> List[KeywordTerm]:
        """
        Idempotently upsert terms under a research result.

        Duplicates inside the batch are merged first (max volume, then
        lowest difficulty). A keyword already stored is updated in place
        and keeps its id; new keywords are inserted. The whole batch
        commits in one transaction.

        Returns:
            The stored terms, one per distinct keyword in the batch
        """
        merged = merge_duplicate_terms(terms)
        if not merged:
            return []

        try:
            async with self.database_manager.session() as session:
                await self._load_owned(session, research_result_id, owner)

                existing_rows = await session.execute(
                    select(keyword_terms_table.c.id, keyword_terms_table.c.keyword).where(
                        and_(
                            keyword_terms_table.c.research_result_id == research_result_id,
                            keyword_terms_table.c.keyword.in_([t.keyword for t in merged]),
                        )
                    )
                )
                existing = {row.keyword: row.id for row in existing_rows}

                now = utcnow()
                stored: List[KeywordTerm] = []
                to_insert: List[Dict[str, Any]] = []
                for term in merged:
                    values = self._term_values(term)
                    term_id = existing.get(term.keyword)
                    if term_id is not None:
                        await session.execute(
                            update(keyword_terms_table)
                            .where(keyword_terms_table.c.id == term_id)
                            .values(**values, updated_at=now)
                        )
                    else:
                        term_id = term.id
                        to_insert.append(
                            {
                                "id": term_id,
                                "research_result_id": research_result_id,
                                "keyword": term.keyword,
                                "created_at": now,
                                "updated_at": now,
                                **values,
                            }
                        )
                    stored.append(
                        term.model_copy(
                            update={"id": term_id, "research_result_id": research_result_id}
                        )
                    )

                if to_insert:
                    await session.execute(insert(keyword_terms_table), to_insert)

                await session.execute(
                    update(research_results_table)
                    .where(research_results_table.c.id == research_result_id)
                    .values(updated_at=now)
                )

            logger.debug(
                f"Upserted {len(stored)} terms into {research_result_id} "
                f"({len(to_insert)} new, {len(stored) - len(to_insert)} updated)"
            )
            return stored

        except SQLAlchemyError as e:
            logger.error(f"Failed to append terms to {research_result_id}: {e}")
            raise DatabaseError(f"Term upsert failed: {e}", cause=e)

    # =========================================================================
    # READ OPERATIONS
    # =========================================================================

    async def get(self, research_result_id: UUID, owner: str) -> ResearchResult:
        """Retrieve a research result owned by `owner`."""
        try:
            async with self.database_manager.session() as session:
                row = await self._load_owned(session, research_result_id, owner)
                return self._row_to_result(row)
        except SQLAlchemyError as e:
            logger.error(f"Failed to retrieve research result {research_result_id}: {e}")
            raise DatabaseError(f"Research result retrieval failed: {e}", cause=e)

    async def list_for_owner(self, owner: str, limit: int = 50) -> List[ResearchResult]:
        """Most recent research results of one tenant."""
        try:
            async with self.database_manager.session() as session:
                result = await session.execute(
                    select(research_results_table)
                    .where(research_results_table.c.owner == owner)
                    .order_by(research_results_table.c.created_at.desc())
                    .limit(limit)
                )
                return [self._row_to_result(row) for row in result.fetchall()]
        except SQLAlchemyError as e:
            logger.error(f"Failed to list research results for '{owner}': {e}")
            raise DatabaseError(f"Research result listing failed: {e}", cause=e)

    @staticmethod
    def _competition_clause(level: CompetitionLevel):
        competition = keyword_terms_table.c.competition
        if level == CompetitionLevel.LOW:
            return or_(competition.is_(None), competition < COMPETITION_BANDS.LOW_MAX)
        if level == CompetitionLevel.MEDIUM:
            return and_(
                competition >= COMPETITION_BANDS.LOW_MAX, competition < COMPETITION_BANDS.MEDIUM_MAX
            )
        return competition >= COMPETITION_BANDS.MEDIUM_MAX

    async def list_terms(
        self,
        research_result_id: UUID,
        owner: Optional[str] = None,
        term_filter: Optional[TermFilter] = None,
        *,
        easy_win_threshold: float = 60.0,
        high_value_threshold: float = 60.0,
    ) -> List[KeywordTerm]:
        """
        List terms of a research result, filtered and sorted.

        Args:
            research_result_id: Research result to read
            owner: Tenant; None skips the ownership check (internal callers)
            term_filter: View, competition band, substring search and ordering
            easy_win_threshold: Minimum easy_win_score for the easy_wins view
            high_value_threshold: Minimum high_value_score for the high_value view

        Returns:
            Ordered KeywordTerms; ties always break on keyword ascending
        """
        term_filter = term_filter or TermFilter()
        table = keyword_terms_table
        conditions = [table.c.research_result_id == research_result_id]

        if term_filter.view == TermView.EASY_WINS:
            conditions.append(table.c.easy_win_score >= easy_win_threshold)
        elif term_filter.view == TermView.HIGH_VALUE:
            conditions.append(table.c.high_value_score >= high_value_threshold)
        if term_filter.competition_level is not None:
            conditions.append(self._competition_clause(term_filter.competition_level))
        if term_filter.search:
            conditions.append(table.c.keyword.contains(term_filter.search, autoescape=True))

        sort_column = table.c[term_filter.sort_by.value]
        ordering = (
            sort_column.asc().nulls_last()
            if term_filter.sort_direction == SortDirection.ASC
            else sort_column.desc().nulls_last()
        )
        query = select(table).where(and_(*conditions)).order_by(ordering, table.c.keyword.asc())
        if term_filter.limit:
            query = query.limit(term_filter.limit)

        try:
            async with self.database_manager.session() as session:
                await self._load_owned(session, research_result_id, owner)
                result = await session.execute(query)
                return [self._row_to_term(row) for row in result.fetchall()]
        except SQLAlchemyError as e:
            logger.error(f"Failed to list terms of {research_result_id}: {e}")
            raise DatabaseError(f"Term listing failed: {e}", cause=e)

    async def list_owner_terms(
        self, owner: str, term_filter: Optional[OwnerTermFilter] = None
    ) -> List[KeywordTerm]:
        """
        List one owner's terms across every research run.

        Run context (search type, location, language) filters on the
        owning research result. Ordered by search_volume desc, then
        keyword, then newest run first.
        """
        term_filter = term_filter or OwnerTermFilter()
        terms = keyword_terms_table
        results = research_results_table
        conditions = [results.c.owner == owner]

        if term_filter.search_type is not None:
            conditions.append(results.c.search_type == term_filter.search_type.value)
        if term_filter.location:
            conditions.append(results.c.location == term_filter.location)
        if term_filter.language:
            conditions.append(results.c.language == term_filter.language)
        if term_filter.parent_keyword:
            conditions.append(terms.c.parent_keyword == term_filter.parent_keyword)
        if term_filter.is_related_term is not None:
            conditions.append(terms.c.is_related_term == term_filter.is_related_term)
        if term_filter.min_search_volume is not None:
            conditions.append(terms.c.search_volume >= term_filter.min_search_volume)
        if term_filter.max_difficulty is not None:
            conditions.append(terms.c.difficulty <= term_filter.max_difficulty)

        query = (
            select(terms)
            .join(results, results.c.id == terms.c.research_result_id)
            .where(and_(*conditions))
            .order_by(
                terms.c.search_volume.desc(),
                terms.c.keyword.asc(),
                results.c.created_at.desc(),
            )
        )
        if term_filter.limit:
            query = query.limit(term_filter.limit)

        try:
            async with self.database_manager.session() as session:
                result = await session.execute(query)
                return [self._row_to_term(row) for row in result.fetchall()]
        except SQLAlchemyError as e:
            logger.error(f"Failed to list terms of owner '{owner}': {e}")
            raise DatabaseError(f"Owner term listing failed: {e}", cause=e)

    async def list_clusters(
        self, research_result_id: UUID, owner: Optional[str] = None
    ) -> List[Cluster]:
        """Clusters in stored (pillar rank) order, members in stored order."""
        try:
            async with self.database_manager.session() as session:
                await self._load_owned(session, research_result_id, owner)

                cluster_rows = (
                    await session.execute(
                        select(keyword_clusters_table)
                        .where(keyword_clusters_table.c.research_result_id == research_result_id)
                        .order_by(keyword_clusters_table.c.position)
                    )
                ).fetchall()
                if not cluster_rows:
                    return []

                member_rows = (
                    await session.execute(
                        select(
                            cluster_members_table.c.cluster_id,
                            cluster_members_table.c.term_id,
                            cluster_members_table.c.role,
                            keyword_terms_table.c.keyword,
                        )
                        .join(
                            keyword_terms_table,
                            keyword_terms_table.c.id == cluster_members_table.c.term_id,
                        )
                        .where(
                            cluster_members_table.c.cluster_id.in_([r.id for r in cluster_rows])
                        )
                        .order_by(cluster_members_table.c.position)
                    )
                ).fetchall()

            members: Dict[UUID, List[ClusterMember]] = {}
            for row in member_rows:
                members.setdefault(row.cluster_id, []).append(
                    ClusterMember(term_id=row.term_id, keyword=row.keyword, role=MemberRole(row.role))
                )

            return [
                Cluster(
                    id=row.id,
                    research_result_id=row.research_result_id,
                    parent_topic=row.parent_topic,
                    pillar_term_id=row.pillar_term_id,
                    members=members.get(row.id, []),
                    cluster_type=ClusterType(row.cluster_type),
                    authority_potential_score=row.authority_potential_score,
                    aggregate_search_volume=row.aggregate_search_volume,
                    avg_difficulty=row.avg_difficulty,
                    easy_win_count=row.easy_win_count,
                    high_value_count=row.high_value_count,
                )
                for row in cluster_rows
            ]

        except SQLAlchemyError as e:
            logger.error(f"Failed to list clusters of {research_result_id}: {e}")
            raise DatabaseError(f"Cluster listing failed: {e}", cause=e)

    # =========================================================================
    # UPDATE OPERATIONS
    # =========================================================================

    async def update_scores(self, research_result_id: UUID, terms: Sequence[KeywordTerm]) -> int:
        """Persist easy_win / high_value scores for already-stored terms."""
        if not terms:
            return 0
        try:
            async with self.database_manager.session() as session:
                updated = 0
                for term in terms:
                    result = await session.execute(
                        update(keyword_terms_table)
                        .where(
                            and_(
                                keyword_terms_table.c.id == term.id,
                                keyword_terms_table.c.research_result_id == research_result_id,
                            )
                        )
                        .values(
                            easy_win_score=term.easy_win_score,
                            high_value_score=term.high_value_score,
                        )
                    )
                    updated += result.rowcount or 0
            logger.debug(f"Updated scores of {updated} terms in {research_result_id}")
            return updated
        except SQLAlchemyError as e:
            logger.error(f"Failed to update scores in {research_result_id}: {e}")
            raise DatabaseError(f"Score update failed: {e}", cause=e)

    async def replace_clusters(self, research_result_id: UUID, clustering: ClusteringResult) -> int:
        """
        Replace every cluster of a research result with a fresh clustering.

        Returns:
            Number of clusters stored
        """
        try:
            async with self.database_manager.session() as session:
                await self._delete_clusters(session, research_result_id)

                if clustering.clusters:
                    await session.execute(
                        insert(keyword_clusters_table),
                        [
                            {
                                "id": cluster.id,
                                "research_result_id": research_result_id,
                                "parent_topic": cluster.parent_topic,
                                "pillar_term_id": cluster.pillar_term_id,
                                "cluster_type": cluster.cluster_type.value,
                                "authority_potential_score": cluster.authority_potential_score,
                                "aggregate_search_volume": cluster.aggregate_search_volume,
                                "avg_difficulty": cluster.avg_difficulty,
                                "easy_win_count": cluster.easy_win_count,
                                "high_value_count": cluster.high_value_count,
                                "position": position,
                                "created_at": utcnow(),
                            }
                            for position, cluster in enumerate(clustering.clusters)
                        ],
                    )
                    await session.execute(
                        insert(cluster_members_table),
                        [
                            {
                                "cluster_id": cluster.id,
                                "term_id": member.term_id,
                                "role": member.role.value,
                                "position": position,
                            }
                            for cluster in clustering.clusters
                            for position, member in enumerate(cluster.members)
                        ],
                    )

            logger.info(f"Stored {len(clustering.clusters)} clusters for {research_result_id}")
            return len(clustering.clusters)

        except SQLAlchemyError as e:
            logger.error(f"Failed to replace clusters of {research_result_id}: {e}")
            raise DatabaseError(f"Cluster replacement failed: {e}", cause=e)

    async def mark_status(
        self,
        research_result_id: UUID,
        status: ResearchStatus,
        failed_keywords: Optional[Sequence[str]] = None,
    ) -> None:
        """Record run outcome and the keywords that could not be fetched."""
        values: Dict[str, Any] = {"status": status.value, "updated_at": utcnow()}
        if failed_keywords is not None:
            values["failed_keywords"] = list(failed_keywords)
        try:
            async with self.database_manager.session() as session:
                result = await session.execute(
                    update(research_results_table)
                    .where(research_results_table.c.id == research_result_id)
                    .values(**values)
                )
                if not result.rowcount:
                    raise ResearchNotFoundError(research_result_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to mark {research_result_id} as {status.value}: {e}")
            raise DatabaseError(f"Status update failed: {e}", cause=e)

    # =========================================================================
    # DELETE OPERATIONS
    # =========================================================================

    @staticmethod
    async def _delete_clusters(session: AsyncSession, research_result_id: UUID) -> None:
        cluster_ids = select(keyword_clusters_table.c.id).where(
            keyword_clusters_table.c.research_result_id == research_result_id
        )
        await session.execute(
            delete(cluster_members_table).where(cluster_members_table.c.cluster_id.in_(cluster_ids))
        )
        await session.execute(
            delete(keyword_clusters_table).where(
                keyword_clusters_table.c.research_result_id == research_result_id
            )
        )

    async def delete(self, research_result_id: UUID, owner: str) -> None:
        """Delete a research result with all of its terms and clusters."""
        try:
            async with self.database_manager.session() as session:
                await self._load_owned(session, research_result_id, owner)
                await self._delete_clusters(session, research_result_id)
                await session.execute(
                    delete(keyword_terms_table).where(
                        keyword_terms_table.c.research_result_id == research_result_id
                    )
                )
                await session.execute(
                    delete(research_results_table).where(
                        research_results_table.c.id == research_result_id
                    )
                )
            logger.info(f"Deleted research result {research_result_id}")
        except SQLAlchemyError as e:
            logger.error(f"Failed to delete research result {research_result_id}: {e}")
            raise DatabaseError(f"Research result deletion failed: {e}", cause=e)
