"""
Keyword Research Engine
=======================

Runs one research request end to end:

1. Validate seeds, location and language before any I/O
2. Create the ResearchResult
3. Fan out seed lookups, then related-keyword lookups, through the
   coalescing cache with a bounded worker pool
4. Persist whatever succeeded; report whatever did not
5. Score every term, then cluster the full term set

A single keyword failing never aborts the run. A run-wide deadline caps
the fan-out; keywords still pending at the deadline count as failed.
Cancellation stops further persistence and skips clustering, while
fetches already in flight are allowed to finish and populate the cache.
"""

import asyncio
import re
import time
from typing import Dict, List, Optional, Sequence, Tuple, Union
from uuid import UUID

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from config.constants import KEYWORD_LIMITS, REGEX_PATTERNS
from config.settings import ResearchSettings, settings
from core.enums import KeywordIntent, ResearchStatus, SearchType
from core.exceptions import (
    KeywordEngineException,
    ResearchCancelledError,
    ValidationError,
)
from core.models import KeywordMetrics, KeywordTerm, ResearchSummary, normalize_keyword
from infrastructure.metrics_fetcher import MetricsFetcher
from infrastructure.monitoring import MetricsCollector, get_event_logger, get_metrics_collector
from intelligence.clustering_engine import ClusteringEngine
from intelligence.scoring_engine import ScoringEngine
from knowledge.research_repository import ResearchRepository
from optimization.cache_manager import KeywordCacheManager

_LANGUAGE = re.compile(REGEX_PATTERNS.LANGUAGE_CODE)
_LOCATION = re.compile(REGEX_PATTERNS.LOCATION)
_CONTROL = re.compile(REGEX_PATTERNS.CONTROL_CHARS)

event_log = get_event_logger(__name__)


# =========================================================================
# REQUEST VALIDATION
# =========================================================================


class ResearchRequest(BaseModel):
    """
    A validated, normalized research request.

    search_type is stored on the research result as a label; it does not
    change which keywords are fetched.
    """

    seed_keywords: Tuple[str, ...]
    location: str
    language: str
    owner: str
    search_type: SearchType = SearchType.TRADITIONAL
    include_related: bool = True

    model_config = ConfigDict(frozen=True)


def _validate_seed(raw: str) -> str:
    if not isinstance(raw, str):
        raise ValidationError("Seed keyword must be a string", field="seed_keyword", value=raw)
    if _CONTROL.search(raw):
        raise ValidationError(
            "Seed keyword contains control characters", field="seed_keyword", value=raw
        )
    seed = normalize_keyword(raw)
    if len(seed) < KEYWORD_LIMITS.MIN_KEYWORD_LENGTH:
        raise ValidationError("Seed keyword cannot be empty", field="seed_keyword", value=raw)
    if len(seed) > KEYWORD_LIMITS.MAX_KEYWORD_LENGTH:
        raise ValidationError(
            f"Seed keyword exceeds {KEYWORD_LIMITS.MAX_KEYWORD_LENGTH} characters",
            field="seed_keyword",
            value=raw[:50],
        )
    if len(seed.split(" ")) > KEYWORD_LIMITS.MAX_KEYWORD_TOKENS:
        raise ValidationError(
            f"Seed keyword exceeds {KEYWORD_LIMITS.MAX_KEYWORD_TOKENS} words",
            field="seed_keyword",
            value=raw[:50],
        )
    if not any(ch.isalnum() for ch in seed):
        raise ValidationError(
            "Seed keyword must contain letters or digits", field="seed_keyword", value=raw
        )
    return seed


def validate_request(
    seed_keywords: Union[str, Sequence[str]],
    location: str,
    language: str,
    owner: str,
    search_type: Union[SearchType, str] = SearchType.TRADITIONAL,
    include_related: bool = True,
) -> ResearchRequest:
    """
    Validate and normalize caller input.

    Raises:
        ValidationError: on the first offending field; nothing has been fetched
    """
    seeds_in = [seed_keywords] if isinstance(seed_keywords, str) else list(seed_keywords or [])
    if not seeds_in:
        raise ValidationError("At least one seed keyword is required", field="seed_keywords")
    if len(seeds_in) > KEYWORD_LIMITS.MAX_SEEDS_PER_RUN:
        raise ValidationError(
            f"At most {KEYWORD_LIMITS.MAX_SEEDS_PER_RUN} seed keywords per run",
            field="seed_keywords",
            value=len(seeds_in),
        )
    seeds = tuple(dict.fromkeys(_validate_seed(seed) for seed in seeds_in))

    location_clean = " ".join((location or "").split())
    if (
        not location_clean
        or len(location_clean) > KEYWORD_LIMITS.MAX_LOCATION_LENGTH
        or not _LOCATION.match(location_clean)
    ):
        raise ValidationError("Invalid location", field="location", value=location)

    language_clean = (language or "").strip()
    if not _LANGUAGE.match(language_clean):
        raise ValidationError("Invalid language code", field="language", value=language)

    if not owner or not owner.strip():
        raise ValidationError("Owner is required", field="owner")

    try:
        search_type = SearchType(search_type)
    except ValueError as e:
        raise ValidationError("Invalid search type", field="search_type", value=search_type, cause=e)

    return ResearchRequest(
        seed_keywords=seeds,
        location=location_clean,
        language=language_clean.lower().replace("_", "-"),
        owner=owner.strip(),
        search_type=search_type,
        include_related=include_related,
    )


def classify_intent(phrase: str) -> KeywordIntent:
    """
    Classify search intent from phrase when the provider gives none.

    Heuristics:
    - "buy", "price" → transactional
    - "best", "vs" → commercial
    - "near me" → local
    - "login" → navigational
    """
    words = set(phrase.split())

    if words & {"buy", "purchase", "price", "prices", "cheap", "deal", "cost", "coupon"}:
        return KeywordIntent.TRANSACTIONAL
    if words & {"best", "top", "review", "reviews", "vs", "compare", "comparison"}:
        return KeywordIntent.COMMERCIAL
    if "near me" in phrase or words & {"local", "nearby"}:
        return KeywordIntent.LOCAL
    if phrase.startswith("go to") or phrase.endswith("login"):
        return KeywordIntent.NAVIGATIONAL
    return KeywordIntent.INFORMATIONAL


# =========================================================================
# RESEARCH RUN
# =========================================================================


class ResearchRun:
    """
    A single, cancellable execution of a ResearchRequest.

    Create through KeywordResearcher.start(); await execute() once.
    """

    def __init__(self, researcher: "KeywordResearcher", request: ResearchRequest):
        self._researcher = researcher
        self.request = request
        self.research_result_id: Optional[UUID] = None
        self._cancel_event = asyncio.Event()
        self._failed: Dict[str, str] = {}

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Stop persisting new terms and skip clustering. Idempotent."""
        if not self._cancel_event.is_set():
            logger.warning(f"Cancellation requested for research run {self.research_result_id}")
            self._cancel_event.set()

    @property
    def failed_keywords(self) -> List[str]:
        return list(self._failed)

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise ResearchCancelledError(self.research_result_id)

    async def _lookup(self, keyword: str, semaphore: asyncio.Semaphore) -> KeywordMetrics:
        r = self._researcher
        req = self.request
        async with semaphore:
            self._check_cancelled()
            return await r.cache_manager.get_or_fetch(
                keyword,
                req.location,
                req.language,
                lambda: r.fetcher.fetch(keyword, req.location, req.language),
            )

    async def _fan_out(self, keywords: Sequence[str], deadline: float) -> Dict[str, KeywordMetrics]:
        """
        Look up keywords concurrently until done, the deadline, or cancel.

        Returns:
            Metrics for every keyword that succeeded, in input order
        """
        if not keywords:
            return {}

        loop = asyncio.get_running_loop()
        semaphore = asyncio.Semaphore(self._researcher.settings.max_concurrent_fetches)
        tasks = {kw: asyncio.create_task(self._lookup(kw, semaphore)) for kw in keywords}
        cancel_waiter = asyncio.create_task(self._cancel_event.wait())

        pending = set(tasks.values())
        try:
            while pending and not self._cancel_event.is_set():
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, _ = await asyncio.wait(
                    pending | {cancel_waiter},
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                pending -= done
        finally:
            cancel_waiter.cancel()
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        results: Dict[str, KeywordMetrics] = {}
        for keyword, task in tasks.items():
            if task.cancelled():
                if not self._cancel_event.is_set():
                    self._failed[keyword] = "deadline exceeded"
                continue
            error = task.exception()
            if error is None:
                results[keyword] = task.result()
            elif isinstance(error, ResearchCancelledError):
                continue
            elif isinstance(error, KeywordEngineException):
                self._failed[keyword] = error.message
                logger.warning(f"Keyword '{keyword}' failed: {error.message}")
            else:
                self._failed[keyword] = repr(error)
                logger.error(f"Keyword '{keyword}' failed unexpectedly: {error!r}")
        return results

    def _to_terms(
        self,
        metrics: Dict[str, KeywordMetrics],
        parents: Optional[Dict[str, str]] = None,
    ) -> List[KeywordTerm]:
        terms = []
        for keyword, snapshot in metrics.items():
            if snapshot.search_intent is None:
                snapshot = snapshot.model_copy(update={"search_intent": classify_intent(keyword)})
            parent = parents.get(keyword) if parents else None
            terms.append(
                KeywordTerm.from_metrics(
                    self.research_result_id,
                    snapshot,
                    is_related_term=parent is not None,
                    parent_keyword=parent,
                )
            )
        return self._researcher.scoring.score_terms(terms)

    async def _persist(self, terms: List[KeywordTerm]) -> None:
        self._check_cancelled()
        if terms:
            await self._researcher.repository.append_terms(self.research_result_id, terms)

    async def execute(self) -> ResearchSummary:
        """
        Run to completion, deadline or cancellation.

        Returns:
            ResearchSummary; per-keyword failures are reported, not raised
        """
        r = self._researcher
        req = self.request
        started = time.perf_counter()
        r.metrics.active_research_runs.inc()
        status = ResearchStatus.FAILED

        try:
            self.research_result_id = await r.repository.create(
                seed_keyword=req.seed_keywords[0],
                location=req.location,
                language=req.language,
                owner=req.owner,
                search_type=req.search_type,
                raw_snapshot={
                    "seed_keywords": list(req.seed_keywords),
                    "include_related": req.include_related,
                },
            )
            logger.info(
                f"Research run {self.research_result_id} started: "
                f"{len(req.seed_keywords)} seeds [{req.language}/{req.location}]"
            )

            deadline = asyncio.get_running_loop().time() + r.settings.run_deadline
            try:
                seed_metrics = await self._fan_out(req.seed_keywords, deadline)
                await self._persist(self._to_terms(seed_metrics))

                if req.include_related:
                    parents: Dict[str, str] = {}
                    for seed, snapshot in seed_metrics.items():
                        for related in snapshot.related_keywords:
                            if related not in seed_metrics and related not in req.seed_keywords:
                                parents.setdefault(related, seed)
                    related_keywords = list(parents)[: r.settings.max_related_keywords]
                    self._check_cancelled()
                    related_metrics = await self._fan_out(related_keywords, deadline)
                    await self._persist(self._to_terms(related_metrics, parents))

                self._check_cancelled()
                terms = await r.repository.list_terms(self.research_result_id)
                clustering = r.clustering.cluster(terms)
                self._check_cancelled()
                await r.repository.replace_clusters(self.research_result_id, clustering)

            except ResearchCancelledError:
                status = ResearchStatus.CANCELLED
                await r.repository.mark_status(
                    self.research_result_id, status, self.failed_keywords
                )
                logger.warning(f"Research run {self.research_result_id} cancelled")
                return ResearchSummary(
                    research_result_id=self.research_result_id,
                    failed_keywords=self.failed_keywords,
                    cancelled=True,
                )

            status = ResearchStatus.COMPLETED if terms or not self._failed else ResearchStatus.FAILED
            await r.repository.mark_status(self.research_result_id, status, self.failed_keywords)

            summary = ResearchSummary(
                research_result_id=self.research_result_id,
                terms_count=len(terms),
                easy_win_count=sum(
                    1 for t in terms if t.easy_win_score >= r.scoring.config.easy_win_threshold
                ),
                high_value_count=sum(
                    1 for t in terms if t.high_value_score >= r.scoring.config.high_value_threshold
                ),
                cluster_count=len(clustering.clusters),
                failed_keywords=self.failed_keywords,
            )
            logger.success(
                f"Research run {self.research_result_id} {status.value}: "
                f"{summary.terms_count} terms, {summary.cluster_count} clusters, "
                f"{len(summary.failed_keywords)} failed"
            )
            return summary

        except asyncio.CancelledError:
            status = ResearchStatus.CANCELLED
            if self.research_result_id is not None:
                await asyncio.shield(
                    r.repository.mark_status(self.research_result_id, status, self.failed_keywords)
                )
            raise

        except Exception:
            if self.research_result_id is not None:
                logger.error(f"Research run {self.research_result_id} aborted")
                await r.repository.mark_status(
                    self.research_result_id, ResearchStatus.FAILED, self.failed_keywords
                )
            raise

        finally:
            duration = time.perf_counter() - started
            r.metrics.active_research_runs.dec()
            r.metrics.record_research_run(status.value, duration, len(self._failed))
            event_log.info(
                "research_run_finished",
                research_result_id=str(self.research_result_id),
                owner=req.owner,
                status=status.value,
                duration_seconds=round(duration, 3),
                failed_keywords=len(self._failed),
            )


# =========================================================================
# RESEARCHER
# =========================================================================


class KeywordResearcher:
    """
    Research orchestration service.

    Architecture:
    - Functional core: scoring and clustering engines are pure
    - Imperative shell: cache, provider and repository I/O
    """

    def __init__(
        self,
        repository: ResearchRepository,
        cache_manager: KeywordCacheManager,
        fetcher: MetricsFetcher,
        scoring: Optional[ScoringEngine] = None,
        clustering: Optional[ClusteringEngine] = None,
        research_settings: Optional[ResearchSettings] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.repository = repository
        self.cache_manager = cache_manager
        self.fetcher = fetcher
        self.scoring = scoring or ScoringEngine()
        self.clustering = clustering or ClusteringEngine(scoring=self.scoring)
        self.settings = research_settings or settings.research
        self.metrics = metrics or get_metrics_collector()

        logger.info("Keyword researcher initialized")

    def start(
        self,
        seed_keywords: Union[str, Sequence[str]],
        location: Optional[str] = None,
        language: Optional[str] = None,
        owner: str = "",
        search_type: Union[SearchType, str] = SearchType.TRADITIONAL,
        include_related: bool = True,
    ) -> ResearchRun:
        """
        Validate input and prepare a cancellable run.

        Raises:
            ValidationError: synchronously, before anything is fetched
        """
        request = validate_request(
            seed_keywords,
            location if location is not None else self.settings.default_location,
            language if language is not None else self.settings.default_language,
            owner,
            search_type,
            include_related,
        )
        return ResearchRun(self, request)

    async def run_research(
        self,
        seed_keywords: Union[str, Sequence[str]],
        location: Optional[str] = None,
        language: Optional[str] = None,
        owner: str = "",
        search_type: Union[SearchType, str] = SearchType.TRADITIONAL,
        include_related: bool = True,
    ) -> ResearchSummary:
        """Validate, execute and summarize one research run."""
        run = self.start(seed_keywords, location, language, owner, search_type, include_related)
        return await run.execute()
