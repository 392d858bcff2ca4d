"""Landing-page fetcher and the windowed pool that drives it."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

import httpx
from bs4 import BeautifulSoup, Tag

from app.models.analysis import MAX_BODY_CHARS, MAX_HEADINGS, ScrapedContent
from app.models.lead import normalize_url
from app.observability.metrics import metrics

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_CONTENT_BYTES = 50_000
DEFAULT_CONCURRENCY = 5
DEFAULT_BATCH_DELAY_SECONDS = 1.0

DEFAULT_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}
NON_CONTENT_TAGS = ["script", "style", "noscript", "iframe", "nav", "footer", "header"]
_WHITESPACE = re.compile(r"\s+")


class _FetchRejected(Exception):
    def __init__(self, code: str) -> None:
        super().__init__(code)
        self.code = code


class WebsiteFetcher:
    """Single timed, size-bounded GET of a landing page. Failures come back as ``None``."""

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_content_bytes: int = DEFAULT_MAX_CONTENT_BYTES,
        headers: dict[str, str] | None = None,
    ) -> None:
        if max_content_bytes < 1:
            raise ValueError("max_content_bytes must be >= 1")
        self._client = http_client
        self._timeout = timeout_seconds
        self._max_bytes = max_content_bytes
        self._headers = headers or DEFAULT_HEADERS

    async def fetch(self, url: str) -> ScrapedContent | None:
        target = normalize_url(url)
        if not target:
            self._record_failure(url, "422_INVALID_URL")
            return None

        start = time.perf_counter()
        try:
            html = await self._download(target)
        except _FetchRejected as exc:
            self._record_failure(target, exc.code)
            return None
        except httpx.TimeoutException:
            self._record_failure(target, "504_FETCH_TIMEOUT")
            return None
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            self._record_failure(target, "520_FETCH_ERROR", error=type(exc).__name__)
            return None

        try:
            scraped = parse_landing_page(target, html)
        except Exception as exc:  # pragma: no cover - parser guard
            logger.exception("scraper.parse_failed", extra={"url": target})
            self._record_failure(target, "422_UNPARSABLE_HTML", error=type(exc).__name__)
            return None

        elapsed_ms = (time.perf_counter() - start) * 1000
        metrics.increment("scraper.fetch_success")
        metrics.timing("scraper.latency_ms", elapsed_ms)
        logger.info(
            "scraper.fetched",
            extra={"url": target, "latency_ms": round(elapsed_ms, 2), "headings": len(scraped.headings)},
        )
        return scraped

    async def _download(self, url: str) -> str:
        async with self._client.stream(
            "GET",
            url,
            headers=self._headers,
            timeout=self._timeout,
            follow_redirects=True,
        ) as response:
            if response.status_code >= 400:
                raise _FetchRejected(f"{response.status_code}_HTTP_STATUS")
            declared = response.headers.get("content-length", "")
            if declared.isdigit() and int(declared) > self._max_bytes:
                raise _FetchRejected("413_CONTENT_TOO_LARGE")
            buffer = bytearray()
            async for chunk in response.aiter_bytes():
                buffer.extend(chunk)
                if len(buffer) > self._max_bytes:
                    raise _FetchRejected("413_CONTENT_TOO_LARGE")
            encoding = response.charset_encoding or "utf-8"
        try:
            return bytes(buffer).decode(encoding, errors="replace")
        except LookupError:
            return bytes(buffer).decode("utf-8", errors="replace")

    @staticmethod
    def _record_failure(url: Any, code: str, *, error: str | None = None) -> None:
        metrics.increment("scraper.fetch_failed", tags={"code": code})
        logger.warning("scraper.fetch_failed", extra={"url": url, "code": code, "error": error})


def parse_landing_page(url: str, html: str) -> ScrapedContent:
    """Strip non-content markup and pull title, description, headings, and body text."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(NON_CONTENT_TAGS):
        tag.decompose()

    title = (
        _text(soup.title)
        or _meta(soup, property="og:title")
        or _text(soup.find("h1"))
    )
    description = _meta(soup, name="description") or _meta(soup, property="og:description")

    headings: list[str] = []
    for element in soup.find_all(["h1", "h2", "h3"]):
        text = _text(element)
        if text:
            headings.append(text)
        if len(headings) >= MAX_HEADINGS:
            break

    body = soup.body or soup
    body_text = _collapse(body.get_text(" "))[:MAX_BODY_CHARS]
    return ScrapedContent(
        url=url,
        title=title,
        description=description,
        headings=headings,
        body_text=body_text,
    )


def _collapse(value: str) -> str:
    return _WHITESPACE.sub(" ", value or "").strip()


def _text(element: Any) -> str:
    if not isinstance(element, Tag):
        return ""
    return _collapse(element.get_text(" "))


def _meta(soup: BeautifulSoup, **attrs: str) -> str:
    tag = soup.find("meta", attrs=attrs)
    if not isinstance(tag, Tag):
        return ""
    content = tag.get("content")
    return _collapse(content) if isinstance(content, str) else ""


class ConcurrentFetchPool:
    """Runs the fetcher over fixed-size windows with a pause between windows."""

    def __init__(
        self,
        fetcher: WebsiteFetcher,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        batch_delay_seconds: float = DEFAULT_BATCH_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._fetcher = fetcher
        self._concurrency = concurrency
        self._batch_delay = max(0.0, batch_delay_seconds)
        self._sleep = sleep

    @property
    def fetcher(self) -> WebsiteFetcher:
        return self._fetcher

    async def fetch_many(
        self,
        urls: Sequence[str],
        *,
        deadline: float | None = None,
    ) -> dict[str, ScrapedContent]:
        """Return scraped content keyed by the URL exactly as it was passed in.

        ``deadline`` is an absolute ``loop.time()`` value; fetches still running
        when it passes are cancelled and count as failures.
        """
        ordered = list(dict.fromkeys(url for url in urls if url))
        results: dict[str, ScrapedContent] = {}
        loop = asyncio.get_running_loop()

        for start in range(0, len(ordered), self._concurrency):
            if deadline is not None and loop.time() >= deadline:
                logger.warning(
                    "scraper.deadline_exceeded",
                    extra={"skipped": len(ordered) - start, "total": len(ordered)},
                )
                break
            window = ordered[start : start + self._concurrency]
            outcomes = await self._run_window(window, deadline)
            for url, scraped in zip(window, outcomes, strict=True):
                if scraped is not None:
                    results[url] = scraped
            if start + self._concurrency < len(ordered):
                await self._sleep(self._batch_delay)

        logger.info(
            "scraper.pool_complete",
            extra={"requested": len(ordered), "scraped": len(results)},
        )
        return results

    async def _run_window(
        self,
        window: Sequence[str],
        deadline: float | None,
    ) -> list[ScrapedContent | None]:
        loop = asyncio.get_running_loop()
        tasks = [asyncio.create_task(self._fetcher.fetch(url)) for url in window]
        timeout = None if deadline is None else max(0.0, deadline - loop.time())
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            metrics.increment("scraper.fetch_cancelled", value=len(pending))

        outcomes: list[ScrapedContent | None] = []
        for url, task in zip(window, tasks, strict=True):
            if task not in done or task.cancelled():
                outcomes.append(None)
                continue
            error = task.exception()
            if error is not None:
                logger.error(
                    "scraper.unhandled_exception",
                    extra={"url": url, "error": type(error).__name__},
                )
                outcomes.append(None)
                continue
            outcomes.append(task.result())
        return outcomes
