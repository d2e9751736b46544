"""
Research Repository Integration Tests
=====================================

Runs the repository against an in-memory SQLite database with the real
schema. Covers:
- Idempotent term upserts and in-batch duplicate merging
- Ownership enforcement
- Term views, filters and ordering
- Owner-wide term listing across runs
- Cluster replacement and cascade delete
"""

from uuid import uuid4

import pytest
import pytest_asyncio

from core.enums import (
    CompetitionLevel,
    ResearchStatus,
    SearchType,
    SortDirection,
    TermSortField,
    TermView,
)
from core.exceptions import OwnershipError, ResearchNotFoundError
from core.models import OwnerTermFilter, TermFilter
from knowledge.research_repository import merge_duplicate_terms
from tests.factories import dog_grooming_terms, keywords_of, make_term

OWNER = "tenant-1"


async def _create(repository, owner: str = OWNER):
    return await repository.create(
        seed_keyword="Dog Grooming",
        location="United States",
        language="en",
        owner=owner,
        search_type=SearchType.TRADITIONAL,
        raw_snapshot={"seed_keywords": ["dog grooming"]},
    )


class TestMergeDuplicateTerms:
    def test_highest_volume_wins_then_lowest_difficulty(self):
        merged = merge_duplicate_terms(
            [
                make_term("Doc", 100, 40),
                make_term("doc", 300, 60),
                make_term("other", 10, 10),
                make_term("DOC", 300, 20),
            ]
        )

        assert keywords_of(merged) == ["doc", "other"]
        assert merged[0].search_volume == 300
        assert merged[0].difficulty == 20


@pytest.mark.integration
class TestCreateAndRead:
    @pytest.mark.asyncio
    async def test_create_starts_running(self, repository):
        rrid = await _create(repository)

        result = await repository.get(rrid, OWNER)

        assert result.seed_keyword == "dog grooming"
        assert result.status == ResearchStatus.RUNNING
        assert result.raw_snapshot == {"seed_keywords": ["dog grooming"]}
        assert result.failed_keywords == []

    @pytest.mark.asyncio
    async def test_unknown_id(self, repository):
        with pytest.raises(ResearchNotFoundError):
            await repository.get(uuid4(), OWNER)

    @pytest.mark.asyncio
    async def test_list_for_owner_only_returns_own_results(self, repository):
        mine = await _create(repository)
        await _create(repository, owner="tenant-2")

        results = await repository.list_for_owner(OWNER)

        assert [r.id for r in results] == [mine]

    @pytest.mark.asyncio
    async def test_mark_status_records_failures(self, repository):
        rrid = await _create(repository)

        await repository.mark_status(rrid, ResearchStatus.COMPLETED, ["dog wash"])

        result = await repository.get(rrid, OWNER)
        assert result.status == ResearchStatus.COMPLETED
        assert result.failed_keywords == ["dog wash"]


@pytest.mark.integration
class TestAppendTerms:
    @pytest.mark.asyncio
    async def test_append_is_idempotent(self, repository):
        rrid = await _create(repository)
        terms = dog_grooming_terms(rrid)

        first = await repository.append_terms(rrid, terms)
        second = await repository.append_terms(rrid, dog_grooming_terms(rrid))

        stored = await repository.list_terms(rrid, OWNER)
        assert len(stored) == 7
        assert {t.id for t in first} == {t.id for t in second} == {t.id for t in stored}

    @pytest.mark.asyncio
    async def test_reappend_updates_metrics_in_place(self, repository):
        rrid = await _create(repository)
        [original] = await repository.append_terms(rrid, [make_term("dog grooming", 100, 50, rrid)])

        [updated] = await repository.append_terms(
            rrid, [make_term("Dog Grooming", 15000, 28, rrid)]
        )

        assert updated.id == original.id
        [stored] = await repository.list_terms(rrid)
        assert stored.search_volume == 15000
        assert stored.difficulty == 28

    @pytest.mark.asyncio
    async def test_case_variants_collapse_to_one_term(self, repository):
        rrid = await _create(repository)

        stored = await repository.append_terms(
            rrid, [make_term("Doc", 100, 40, rrid), make_term("doc", 300, 60, rrid)]
        )

        assert len(stored) == 1
        [term] = await repository.list_terms(rrid)
        assert term.keyword == "doc"
        assert term.search_volume == 300

    @pytest.mark.asyncio
    async def test_same_keyword_in_two_runs_is_two_terms(self, repository):
        first = await _create(repository)
        second = await _create(repository)

        await repository.append_terms(first, [make_term("dog grooming", research_result_id=first)])
        await repository.append_terms(second, [make_term("dog grooming", research_result_id=second)])

        assert len(await repository.list_terms(first)) == 1
        assert len(await repository.list_terms(second)) == 1

    @pytest.mark.asyncio
    async def test_wrong_owner_cannot_append(self, repository):
        rrid = await _create(repository)

        with pytest.raises(OwnershipError):
            await repository.append_terms(rrid, [make_term("dog grooming")], owner="tenant-2")

        assert await repository.list_terms(rrid) == []


@pytest.mark.integration
class TestOwnership:
    @pytest.mark.asyncio
    async def test_every_owner_scoped_read_is_checked(self, repository):
        rrid = await _create(repository)

        with pytest.raises(OwnershipError):
            await repository.get(rrid, "tenant-2")
        with pytest.raises(OwnershipError):
            await repository.list_terms(rrid, "tenant-2")
        with pytest.raises(OwnershipError):
            await repository.list_clusters(rrid, "tenant-2")
        with pytest.raises(OwnershipError):
            await repository.delete(rrid, "tenant-2")

        assert (await repository.get(rrid, OWNER)).id == rrid


@pytest.mark.integration
class TestListTerms:
    @pytest.mark.asyncio
    async def test_default_order_is_volume_desc(self, repository):
        rrid = await _create(repository)
        await repository.append_terms(rrid, dog_grooming_terms(rrid))

        terms = await repository.list_terms(rrid, OWNER)

        assert [t.search_volume for t in terms] == [15000, 13000, 12000, 11000, 10000, 9000, 8000]

    @pytest.mark.asyncio
    async def test_ties_break_on_keyword(self, repository):
        rrid = await _create(repository)
        await repository.append_terms(
            rrid,
            [make_term("b term", 50, research_result_id=rrid), make_term("a term", 50, research_result_id=rrid)],
        )

        terms = await repository.list_terms(rrid)

        assert keywords_of(terms) == ["a term", "b term"]

    @pytest.mark.asyncio
    async def test_views_use_thresholds(self, repository):
        rrid = await _create(repository)
        await repository.append_terms(
            rrid,
            [
                make_term("easy", research_result_id=rrid, easy_win_score=75.0),
                make_term("valuable", research_result_id=rrid, high_value_score=61.0),
                make_term("neither", research_result_id=rrid, easy_win_score=10.0),
            ],
        )

        easy = await repository.list_terms(rrid, term_filter=TermFilter(view=TermView.EASY_WINS))
        valuable = await repository.list_terms(
            rrid, term_filter=TermFilter(view=TermView.HIGH_VALUE)
        )
        lenient = await repository.list_terms(
            rrid, term_filter=TermFilter(view=TermView.EASY_WINS), easy_win_threshold=5.0
        )

        assert keywords_of(easy) == ["easy"]
        assert keywords_of(valuable) == ["valuable"]
        assert set(keywords_of(lenient)) == {"easy", "neither"}

    @pytest.mark.asyncio
    async def test_competition_search_sort_and_limit(self, repository):
        rrid = await _create(repository)
        await repository.append_terms(
            rrid,
            [
                make_term("dog wash", 10, 40, rrid, competition=0.1),
                make_term("dog spa", 20, 30, rrid, competition=None),
                make_term("dog salon", 30, 20, rrid, competition=0.5),
                make_term("cat spa", 40, 10, rrid, competition=0.9),
            ],
        )

        low = await repository.list_terms(
            rrid, term_filter=TermFilter(competition_level=CompetitionLevel.LOW)
        )
        high = await repository.list_terms(
            rrid, term_filter=TermFilter(competition_level=CompetitionLevel.HIGH)
        )
        spa = await repository.list_terms(rrid, term_filter=TermFilter(search="SPA"))
        by_difficulty = await repository.list_terms(
            rrid,
            term_filter=TermFilter(
                sort_by=TermSortField.DIFFICULTY, sort_direction=SortDirection.ASC, limit=2
            ),
        )

        assert keywords_of(low) == ["dog spa", "dog wash"]
        assert keywords_of(high) == ["cat spa"]
        assert keywords_of(spa) == ["cat spa", "dog spa"]
        assert keywords_of(by_difficulty) == ["cat spa", "dog salon"]

    @pytest.mark.asyncio
    async def test_search_treats_wildcards_literally(self, repository):
        rrid = await _create(repository)
        await repository.append_terms(
            rrid,
            [make_term("100% cotton", research_result_id=rrid), make_term("100 cotton", research_result_id=rrid)],
        )

        terms = await repository.list_terms(rrid, term_filter=TermFilter(search="100%"))

        assert keywords_of(terms) == ["100% cotton"]


@pytest_asyncio.fixture
async def two_runs(repository):
    run_us = await _create(repository)
    await repository.append_terms(
        run_us,
        [
            make_term("dog grooming", 15000, 28, run_us),
            make_term(
                "dog grooming tips", 8000, 22, run_us,
                is_related_term=True, parent_keyword="dog grooming",
            ),
            make_term(
                "puppy grooming", 9000, 23, run_us,
                is_related_term=True, parent_keyword="dog grooming",
            ),
        ],
    )
    run_de = await repository.create("Hundepflege", "Zürich", "de", OWNER, SearchType.AI)
    await repository.append_terms(
        run_de,
        [
            make_term("hundepflege", 12000, 40, run_de),
            make_term(
                "hundepflege kosten", 3000, 35, run_de,
                is_related_term=True, parent_keyword="hundepflege",
            ),
        ],
    )
    foreign = await _create(repository, owner="tenant-2")
    await repository.append_terms(foreign, [make_term("dog grooming", 50000, 10, foreign)])
    return run_us, run_de


@pytest.mark.integration
class TestListOwnerTerms:
    @pytest.mark.asyncio
    async def test_spans_runs_of_one_owner(self, repository, two_runs):
        terms = await repository.list_owner_terms(OWNER)

        assert keywords_of(terms) == [
            "dog grooming",
            "hundepflege",
            "puppy grooming",
            "dog grooming tips",
            "hundepflege kosten",
        ]
        assert {t.research_result_id for t in terms} == set(two_runs)
        assert await repository.list_owner_terms("tenant-3") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "term_filter,expected",
        [
            (OwnerTermFilter(language="DE"), ["hundepflege", "hundepflege kosten"]),
            (
                OwnerTermFilter(location="Zürich", search_type=SearchType.AI),
                ["hundepflege", "hundepflege kosten"],
            ),
            (
                OwnerTermFilter(parent_keyword="Dog Grooming"),
                ["puppy grooming", "dog grooming tips"],
            ),
            (OwnerTermFilter(is_related_term=False), ["dog grooming", "hundepflege"]),
            (
                OwnerTermFilter(min_search_volume=9000, max_difficulty=30),
                ["dog grooming", "puppy grooming"],
            ),
            (OwnerTermFilter(limit=2), ["dog grooming", "hundepflege"]),
        ],
    )
    async def test_filters(self, repository, two_runs, term_filter, expected):
        terms = await repository.list_owner_terms(OWNER, term_filter)
        assert keywords_of(terms) == expected


@pytest.mark.integration
class TestClustersAndDelete:
    @pytest.mark.asyncio
    async def test_replace_clusters_round_trip(self, repository, clustering):
        rrid = await _create(repository)
        await repository.append_terms(rrid, dog_grooming_terms(rrid))
        terms = await repository.list_terms(rrid)

        assert await repository.replace_clusters(rrid, clustering.cluster(terms)) == 1
        assert await repository.replace_clusters(rrid, clustering.cluster(terms)) == 1

        [cluster] = await repository.list_clusters(rrid, OWNER)
        assert cluster.parent_topic == "dog grooming"
        assert cluster.size == 7
        assert cluster.aggregate_search_volume == 78000
        assert cluster.members[0].keyword == "dog grooming"

    @pytest.mark.asyncio
    async def test_delete_cascades(self, repository, clustering):
        rrid = await _create(repository)
        other = await _create(repository)
        await repository.append_terms(rrid, dog_grooming_terms(rrid))
        await repository.append_terms(other, dog_grooming_terms(other))
        await repository.replace_clusters(
            rrid, clustering.cluster(await repository.list_terms(rrid))
        )

        await repository.delete(rrid, OWNER)

        with pytest.raises(ResearchNotFoundError):
            await repository.get(rrid, OWNER)
        with pytest.raises(ResearchNotFoundError):
            await repository.list_terms(rrid)
        assert len(await repository.list_terms(other)) == 7
