from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx

from awardprobe.config import settings
from awardprobe.services.env_safety import sanitize_tls_environment

CRAWL_DONE_STATUSES = {"completed"}
CRAWL_FAILED_STATUSES = {"failed", "cancelled"}


class FirecrawlError(RuntimeError):
    pass


@dataclass
class SearchHit:
    url: str
    title: str = ""
    description: str = ""


@dataclass
class CrawledPage:
    url: str
    title: str = ""
    markdown: str = ""
    html: str = ""

    @property
    def content(self) -> str:
        return self.markdown or self.html or ""


@dataclass
class CrawlResponse:
    success: bool
    pages: list[CrawledPage] = field(default_factory=list)
    status: str = ""
    error: str | None = None


def _headers() -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if settings.firecrawl_api_key:
        headers["Authorization"] = f"Bearer {settings.firecrawl_api_key}"
    return headers


def _endpoint(path: str) -> str:
    base = settings.firecrawl_base_url.strip() or "https://api.firecrawl.dev"
    return base.rstrip("/") + path


def _parse_page(item: dict[str, Any], fallback_url: str) -> CrawledPage:
    metadata = item.get("metadata")
    metadata = metadata if isinstance(metadata, dict) else {}
    url = str(item.get("url") or metadata.get("sourceURL") or metadata.get("url") or fallback_url)
    return CrawledPage(
        url=url,
        title=str(metadata.get("title") or item.get("title") or ""),
        markdown=str(item.get("markdown") or ""),
        html=str(item.get("html") or item.get("rawHtml") or ""),
    )


def parse_search_response(payload: Any) -> list[SearchHit]:
    if not isinstance(payload, dict):
        return []
    raw = payload.get("data")
    if isinstance(raw, dict):
        # Newer responses group results by source type.
        raw = raw.get("web")
    if not isinstance(raw, list):
        return []
    hits: list[SearchHit] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        url = item.get("url")
        if not isinstance(url, str) or not url.strip():
            continue
        hits.append(
            SearchHit(
                url=url.strip(),
                title=str(item.get("title") or ""),
                description=str(item.get("description") or ""),
            )
        )
    return hits


async def search(
    query: str,
    *,
    limit: int = 5,
    http_client: httpx.AsyncClient | None = None,
) -> list[SearchHit]:
    """Run a Firecrawl web search and return the result URLs and titles."""
    sanitize_tls_environment()

    async def _do_request(client: httpx.AsyncClient) -> Any:
        response = await client.post(
            _endpoint("/v1/search"),
            json={"query": query, "limit": limit},
            headers=_headers(),
        )
        response.raise_for_status()
        return response.json()

    if http_client is None:
        async with httpx.AsyncClient(timeout=settings.firecrawl_request_timeout_seconds) as client:
            payload = await _do_request(client)
    else:
        payload = await _do_request(http_client)

    if isinstance(payload, dict) and payload.get("success") is False:
        raise FirecrawlError(f"Firecrawl search failed: {payload.get('error', 'unknown error')}")
    return parse_search_response(payload)


async def crawl(
    url: str,
    *,
    page_limit: int = 5,
    formats: list[str] | None = None,
    http_client: httpx.AsyncClient | None = None,
    poll_interval: float | None = None,
    max_wait: float | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> CrawlResponse:
    """Start a Firecrawl crawl job for ``url`` and wait for its pages.

    Raises ``FirecrawlError`` if the job does not finish within ``max_wait``
    seconds; a job the provider reports as failed comes back as an
    unsuccessful ``CrawlResponse``.
    """
    sanitize_tls_environment()
    interval = settings.crawl_poll_interval_seconds if poll_interval is None else poll_interval
    deadline_s = settings.crawl_max_wait_seconds if max_wait is None else max_wait
    body = {
        "url": url,
        "limit": page_limit,
        "scrapeOptions": {"formats": formats or settings.crawl_format_list or ["markdown"]},
    }

    async def _run(client: httpx.AsyncClient) -> CrawlResponse:
        response = await client.post(_endpoint("/v1/crawl"), json=body, headers=_headers())
        response.raise_for_status()
        started = response.json()
        if not isinstance(started, dict) or not started.get("success"):
            error = started.get("error") if isinstance(started, dict) else None
            return CrawlResponse(success=False, status="rejected", error=str(error or "crawl rejected"))
        job_id = started.get("id")
        if not job_id:
            raise FirecrawlError("Firecrawl crawl response missing job id")

        status_url = _endpoint(f"/v1/crawl/{job_id}")
        t0 = time.monotonic()
        while True:
            status_response = await client.get(status_url, headers=_headers())
            status_response.raise_for_status()
            status_payload = status_response.json()
            status = str(status_payload.get("status", "")).lower()
            if status in CRAWL_DONE_STATUSES:
                break
            if status in CRAWL_FAILED_STATUSES:
                return CrawlResponse(
                    success=False,
                    status=status,
                    error=str(status_payload.get("error") or status),
                )
            if time.monotonic() - t0 >= deadline_s:
                raise FirecrawlError(f"Crawl of {url} did not complete within {deadline_s:.0f}s")
            await sleep(interval)

        pages: list[CrawledPage] = []
        payload: dict[str, Any] | None = status_payload
        while payload is not None and len(pages) < page_limit:
            for item in payload.get("data") or []:
                if isinstance(item, dict):
                    pages.append(_parse_page(item, url))
            next_url = payload.get("next")
            if not next_url or len(pages) >= page_limit:
                break
            next_response = await client.get(str(next_url), headers=_headers())
            next_response.raise_for_status()
            payload = next_response.json()

        return CrawlResponse(success=True, pages=pages[:page_limit], status=status)

    if http_client is None:
        async with httpx.AsyncClient(timeout=settings.firecrawl_request_timeout_seconds) as client:
            return await _run(client)
    return await _run(http_client)
