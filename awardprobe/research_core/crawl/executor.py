from __future__ import annotations

from collections.abc import Collection
from typing import Awaitable, Callable

from loguru import logger

from awardprobe.config import ResearchLimits, settings
from awardprobe.research_core.models.interfaces import Page
from awardprobe.services.retry import RetryPolicy
from awardprobe.tools import firecrawl_client, web_utils
from awardprobe.tools.firecrawl_client import CrawlResponse, SearchHit

RELEVANCE_KEYWORDS = ("contract", "fraud", "award", "recipient")
RELEVANCE_INCREMENT = 0.2

Searcher = Callable[[str, int], Awaitable[list[SearchHit]]]
Crawler = Callable[[str, int], Awaitable[CrawlResponse]]


def relevance_score(content: str, award_id: str) -> float:
    """Keyword heuristic: 0.2 per matched keyword, capped at 1.0."""
    lowered = content.lower()
    keywords = [award_id, *RELEVANCE_KEYWORDS]
    score = sum(RELEVANCE_INCREMENT for keyword in keywords if keyword and keyword.lower() in lowered)
    return min(1.0, round(score, 6))


def passes_precision_filter(content: str, award_id: str) -> bool:
    """Keep pages that mention the award id or the word "contract"."""
    if award_id and award_id in content:
        return True
    return "contract" in content.lower()


async def _default_searcher(query: str, limit: int) -> list[SearchHit]:
    return await firecrawl_client.search(query, limit=limit)


async def _default_crawler(url: str, page_limit: int) -> CrawlResponse:
    return await firecrawl_client.crawl(
        url,
        page_limit=page_limit,
        formats=settings.crawl_format_list,
    )


class CrawlExecutor:
    """Resolves topics into URLs and URLs into scored pages.

    Provider failures are retried through the retry policy; once retries are
    exhausted both operations log and return an empty list.
    """

    def __init__(
        self,
        *,
        limits: ResearchLimits | None = None,
        retry: RetryPolicy | None = None,
        searcher: Searcher | None = None,
        crawler: Crawler | None = None,
    ):
        self.limits = limits or ResearchLimits.from_settings()
        self.retry = retry or RetryPolicy.from_settings()
        self._searcher = searcher or _default_searcher
        self._crawler = crawler or _default_crawler

    async def search(
        self,
        query: str,
        limit: int | None = None,
        *,
        visited: Collection[str] = frozenset(),
    ) -> list[str]:
        cap = min(limit or self.limits.max_results_per_query, self.limits.max_results_per_query)
        try:
            hits = await self.retry.run(
                lambda: self._searcher(query, cap),
                label=f"search({query!r})",
            )
        except Exception as exc:
            logger.error(f"Search failed for topic {query!r} after retries: {exc}")
            return []

        urls: list[str] = []
        seen: set[str] = set()
        for hit in hits[:cap]:
            url = hit.url.strip()
            if not web_utils.is_valid_url(url) or url in seen or url in visited:
                continue
            seen.add(url)
            urls.append(url)
        logger.info(f"Found {len(hits)} results for {query!r} ({len(urls)} new)")
        return urls

    async def crawl(self, url: str, award_id: str, page_limit: int | None = None) -> list[Page]:
        cap = min(page_limit or self.limits.max_pages_per_site, self.limits.max_pages_per_site)
        try:
            response = await self.retry.run(
                lambda: self._crawler(url, cap),
                label=f"crawl({url})",
            )
        except Exception as exc:
            logger.error(f"Crawl failed for {url} after retries: {exc}")
            return []

        if not response.success:
            logger.warning(f"Crawl of {url} unsuccessful: {response.error or response.status}")
            return []

        pages: list[Page] = []
        for crawled in response.pages[:cap]:
            content = crawled.content
            if not passes_precision_filter(content, award_id):
                continue
            pages.append(
                Page(
                    url=crawled.url or url,
                    title=crawled.title,
                    content=content,
                    relevance_score=relevance_score(content, award_id),
                )
            )
        logger.info(
            f"Crawled {web_utils.extract_domain(url)}: kept {len(pages)}/{len(response.pages)} pages"
        )
        return pages
