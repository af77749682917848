from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Callable, ClassVar, Iterable, Mapping

from loguru import logger
from pydantic import ValidationError

from awardprobe.config import ResearchLimits
from awardprobe.models.award import AwardMetadata
from awardprobe.models.research import Analysis, AwardSearchContext, Finding, ReasoningStep
from awardprobe.research_core.analysis.analyzer import ContentAnalyzer
from awardprobe.research_core.crawl.executor import CrawlExecutor
from awardprobe.research_core.frontier import TopicFrontier
from awardprobe.research_core.models.interfaces import Page, TopicQuestion
from awardprobe.services import logger as log_service
from awardprobe.services.result_store import ResultStore, ResultStoreError, get_result_store
from awardprobe.services.retry import RetryPolicy

SEED_PRIORITY = 5
NO_SUMMARY = "No conclusive summary generated"
NO_CONCLUSIONS = ["Analysis incomplete"]


class ResearchState(str, Enum):
    INIT = "init"
    CHECK_CACHE = "check_cache"
    SEEDING = "seeding"
    EXPLORING = "exploring"
    SUMMARIZING = "summarizing"
    DONE = "done"
    FAILED = "failed"


def seed_queries(award_id: str, award_metadata: AwardMetadata | None) -> list[str]:
    """Initial investigation queries for an award, most specific first."""
    queries = [award_id]
    if award_metadata is None:
        return queries

    details = award_metadata.details
    recipient = (details.recipient.recipient_name or "").strip()
    if recipient:
        queries += [
            f"{recipient} fraud",
            f"{recipient} investigation",
            f"{recipient} lawsuit",
            f"{recipient} debarment",
        ]
        location = details.recipient.location
        if location and location.city_name and location.state_code:
            queries.append(f"{recipient} {location.city_name} {location.state_code} violations")

    officers = details.executive_details.officers if details.executive_details else []
    for officer in officers:
        name = (officer.name or "").strip()
        if not name:
            continue
        if recipient:
            queries.append(f"{name} {recipient} fraud")
        queries.append(f"{name} contractor investigation")

    parent = (details.recipient.parent_recipient_name or "").strip()
    if parent and parent != recipient:
        queries += [f"{parent} fraud", f"{parent} subsidiaries investigation"]

    naics = details.naics_hierarchy.base_code if details.naics_hierarchy else None
    if naics and naics.description and recipient:
        queries.append(f"{naics.description} {recipient} violations")

    return queries


class ResearchOrchestrator:
    """Drives one bounded investigation per award.

    Flow:
      1. Return the cached report if a completed one exists
      2. Seed the topic frontier from the award id and metadata
      3. Loop: search unexplored topics, crawl new URLs in batches, score pages
      4. Record risky pages as findings, checkpointing after each one
      5. Summarize and store the completed report

    Provider and model failures degrade to empty results. Only store failures
    abort a run, as ``ResultStoreError``.
    """

    _award_locks: ClassVar[dict[str, asyncio.Lock]] = {}
    _lock_holders: ClassVar[dict[str, int]] = {}

    def __init__(
        self,
        *,
        limits: ResearchLimits | None = None,
        store: ResultStore | None = None,
        executor: CrawlExecutor | None = None,
        analyzer: ContentAnalyzer | None = None,
        retry: RetryPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limits = limits or ResearchLimits.from_settings()
        self.retry = retry or RetryPolicy.from_settings(max_retries=self.limits.max_retries)
        self.store = store if store is not None else get_result_store()
        self.executor = executor or CrawlExecutor(limits=self.limits, retry=self.retry)
        self.analyzer = analyzer or ContentAnalyzer(retry=self.retry)
        self.clock = clock
        self.state = ResearchState.INIT

    @classmethod
    def _claim_lock(cls, award_id: str) -> asyncio.Lock:
        lock = cls._award_locks.get(award_id)
        if lock is None:
            lock = asyncio.Lock()
            cls._award_locks[award_id] = lock
        cls._lock_holders[award_id] = cls._lock_holders.get(award_id, 0) + 1
        return lock

    @classmethod
    def _release_lock(cls, award_id: str) -> None:
        # Drop the lock once nobody holds or waits on it.
        remaining = cls._lock_holders.get(award_id, 1) - 1
        if remaining > 0:
            cls._lock_holders[award_id] = remaining
            return
        cls._lock_holders.pop(award_id, None)
        cls._award_locks.pop(award_id, None)

    def _transition(self, award_id: str, state: ResearchState, **data: Any) -> None:
        self.state = state
        log_service.log_research_step(award_id, state.value, "entered", data or None)

    # --- store access ---

    async def _store_get(self, award_id: str) -> str | None:
        try:
            return await self.store.get(award_id)
        except ResultStoreError:
            raise
        except Exception as exc:
            raise ResultStoreError(f"get failed for {award_id!r}: {exc}") from exc

    async def _store_put(self, award_id: str, context: AwardSearchContext) -> None:
        try:
            await self.store.put(award_id, context.to_json())
        except ResultStoreError:
            raise
        except Exception as exc:
            raise ResultStoreError(f"put failed for {award_id!r}: {exc}") from exc

    async def get_cached(self, award_id: str) -> AwardSearchContext | None:
        """Completed report for ``award_id``, or None.

        Checkpoints from interrupted runs have no summary and are ignored.
        """
        raw = await self._store_get(award_id)
        if not raw:
            return None
        try:
            context = AwardSearchContext.from_json(raw)
        except ValueError as exc:
            logger.warning(f"Ignoring unreadable cached report for {award_id}: {exc}")
            return None
        return context if context.is_complete else None

    async def is_cached(self, award_id: str) -> bool:
        return await self.get_cached(award_id) is not None

    # --- run ---

    async def start(
        self,
        award_id: str,
        award_metadata: AwardMetadata | dict[str, Any] | None = None,
    ) -> AwardSearchContext:
        """Research ``award_id`` and return its report.

        Concurrent calls for the same award id in one process run one at a
        time; later callers get the first caller's report from the store.
        """
        lock = self._claim_lock(award_id)
        try:
            async with lock:
                return await self._run(award_id, self._coerce_metadata(award_id, award_metadata))
        except ResultStoreError:
            self._transition(award_id, ResearchState.FAILED)
            logger.exception(f"Research for {award_id} failed on a store error")
            raise
        finally:
            self._release_lock(award_id)

    @staticmethod
    def _coerce_metadata(award_id: str, award_metadata: Any) -> AwardMetadata | None:
        try:
            return AwardMetadata.coerce(award_metadata)
        except ValidationError as exc:
            logger.warning(f"Ignoring unreadable metadata for {award_id}: {exc.error_count()} field error(s)")
            return None

    async def _run(self, award_id: str, metadata: AwardMetadata | None) -> AwardSearchContext:
        self._transition(award_id, ResearchState.INIT)
        started = self.clock()
        context = AwardSearchContext(original_award_id=award_id)
        frontier = TopicFrontier(self.limits.max_topics)
        visited: set[str] = set()
        staged: list[TopicQuestion] = []

        self._transition(award_id, ResearchState.CHECK_CACHE)
        cached = await self.get_cached(award_id)
        if cached is not None:
            logger.info(f"Returning cached research for {award_id}")
            self._transition(award_id, ResearchState.DONE, cached=True)
            return cached

        self._transition(award_id, ResearchState.SEEDING)
        for query in seed_queries(award_id, metadata):
            frontier.add_topic(query, SEED_PRIORITY)
        logger.info(f"Seeded {len(frontier)} topics for {award_id}")

        self._transition(award_id, ResearchState.EXPLORING)
        while True:
            if staged:
                added = frontier.add_questions(staged)
                logger.debug(f"Merged {added}/{len(staged)} follow-up topics")
                staged.clear()

            stop_reason = self._stop_reason(started, frontier, visited, context)
            if stop_reason:
                logger.info(f"Stopping exploration for {award_id}: {stop_reason}")
                break

            new_urls = await self._resolve_topics(frontier, visited)
            if not new_urls:
                logger.info(f"No new URLs for {award_id}; stopping exploration")
                break

            for i in range(0, len(new_urls), self.limits.url_batch_size):
                batch = self._admit(new_urls[i : i + self.limits.url_batch_size], visited)
                if not batch:
                    continue
                await self._process_batch(batch, award_id, metadata, context, staged)

        self._transition(award_id, ResearchState.SUMMARIZING, findings=len(context.findings))
        summary = (await self.analyzer.summarize(context.findings) or "").strip()
        lines = [line.strip() for line in summary.splitlines() if line.strip()]
        context.summary = summary or NO_SUMMARY
        context.reasoning_chain.final_conclusions = lines or list(NO_CONCLUSIONS)

        await self._store_put(award_id, context)
        self._transition(
            award_id,
            ResearchState.DONE,
            findings=len(context.findings),
            urls=len(visited),
            topics=len(frontier),
        )
        return context

    def _stop_reason(
        self,
        started: float,
        frontier: TopicFrontier,
        visited: set[str],
        context: AwardSearchContext,
    ) -> str | None:
        elapsed_ms = (self.clock() - started) * 1000
        if elapsed_ms >= self.limits.max_search_time_ms:
            return f"time budget exhausted ({elapsed_ms:.0f}ms)"
        if len(visited) >= self.limits.max_urls:
            return f"URL budget exhausted ({len(visited)} visited)"
        if frontier.all_explored() and len(context.findings) >= self.limits.min_findings_threshold:
            return "all topics explored"
        return None

    async def _resolve_topics(self, frontier: TopicFrontier, visited: set[str]) -> list[str]:
        new_urls: list[str] = []
        for topic in frontier.unexplored_topics():
            try:
                urls = await self.executor.search(topic.query, visited=visited)
            except Exception as exc:
                logger.error(f"Search for topic {topic.query!r} failed: {exc!r}")
                urls = []
            finally:
                frontier.mark_explored(topic.query)
            topic.discovered_urls.update(urls)
            for url in urls:
                if url not in visited and url not in new_urls:
                    new_urls.append(url)
        return new_urls

    def _admit(self, urls: Iterable[str], visited: set[str]) -> list[str]:
        admitted: list[str] = []
        for url in urls:
            if url in visited:
                continue
            if len(visited) >= self.limits.max_urls:
                break
            visited.add(url)
            admitted.append(url)
        return admitted

    async def _process_batch(
        self,
        batch: list[str],
        award_id: str,
        metadata: AwardMetadata | None,
        context: AwardSearchContext,
        staged: list[TopicQuestion],
    ) -> None:
        results = await asyncio.gather(
            *(self._process_url(url, award_id, metadata) for url in batch)
        )
        for scored in results:
            for page, analysis in scored:
                for question in analysis.follow_up_questions:
                    staged.append(TopicQuestion(question=question, priority=analysis.risk_level))
                if analysis.risk_level > 1:
                    await self._record_finding(award_id, context, page, analysis)

    async def _process_url(
        self,
        url: str,
        award_id: str,
        metadata: AwardMetadata | None,
    ) -> list[tuple[Page, Analysis]]:
        try:
            pages = await self.executor.crawl(url, award_id)
        except Exception as exc:
            logger.error(f"Crawl of {url} failed: {exc!r}")
            return []
        if not pages:
            return []

        async def score(page: Page) -> tuple[Page, Analysis]:
            try:
                analysis = await self.analyzer.score_content(page.content, award_id, metadata)
            except Exception as exc:
                logger.error(f"Scoring {page.url} failed: {exc!r}")
                analysis = Analysis.default("Analysis process failed")
            return page, analysis

        return list(await asyncio.gather(*(score(page) for page in pages)))

    async def _record_finding(
        self,
        award_id: str,
        context: AwardSearchContext,
        page: Page,
        analysis: Analysis,
    ) -> None:
        relevance = min(1.0, analysis.risk_level / 5 * page.relevance_score)
        context.findings.append(
            Finding(
                content=page.content,
                source=page.url,
                relevance_score=relevance,
                analysis=analysis,
            )
        )
        context.reasoning_chain.steps.append(
            ReasoningStep(
                stage=f"analyzing {page.url}",
                reasoning=analysis.initial_thoughts,
                evidence=list(analysis.indicators),
                confidence=relevance,
            )
        )
        log_service.log_research_step(
            award_id,
            "finding",
            "recorded",
            {"source": page.url, "risk_level": analysis.risk_level, "relevance": relevance},
        )
        await self._store_put(award_id, context)

    async def run_batch(
        self,
        award_ids: Iterable[str],
        metadata_by_id: Mapping[str, AwardMetadata | dict[str, Any]] | None = None,
    ) -> dict[str, AwardSearchContext]:
        """Research every award without a completed report, one after another."""
        metadata_by_id = metadata_by_id or {}
        completed: dict[str, AwardSearchContext] = {}
        for award_id in award_ids:
            try:
                if await self.is_cached(award_id):
                    logger.info(f"Skipping {award_id}: research already cached")
                    continue
                completed[award_id] = await self.start(award_id, metadata_by_id.get(award_id))
            except Exception as exc:
                logger.error(f"Research for {award_id} failed: {exc!r}")
        log_service.log_event(
            "batch_research",
            f"Researched {len(completed)} awards",
            award_ids=list(completed),
        )
        return completed
