"""Binary topic filter: fetch and judge companies in parallel windows."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping, Sequence
from typing import Any

from app.models.analysis import TopicMatch
from app.models.enrichment import TopicMatchOutcome, TopicMatchResult
from app.models.lead import Lead, normalize_domain, normalize_url
from app.observability.metrics import metrics
from app.services.analysis.oracle import RelevanceOracle
from app.services.cache.errors import ResultCacheError
from app.services.cache.repositories import CacheKind, ResultCache
from app.services.enrichment.errors import EnrichmentInputError
from app.services.scraping.extractor import extract_text_for_analysis
from app.services.scraping.fetcher import WebsiteFetcher

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 10
MAX_CONCURRENT_LIMIT = 10


class ParallelTopicMatcher:
    """Keeps the companies whose landing page the oracle ties to the topic."""

    def __init__(
        self,
        *,
        fetcher: WebsiteFetcher,
        oracle: RelevanceOracle,
        cache: ResultCache | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._oracle = oracle
        self._cache = cache

    async def filter_companies(
        self,
        companies: Sequence[Lead | Mapping[str, Any]],
        topic: str,
        *,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
    ) -> TopicMatchResult:
        if not companies:
            raise EnrichmentInputError("companies must be a non-empty list.")
        if not topic or not topic.strip():
            raise EnrichmentInputError("topic is required for filtering.")
        topic = topic.strip()
        window_size = max(1, min(max_concurrent, MAX_CONCURRENT_LIMIT))
        leads = [Lead.from_payload(company) for company in companies]
        start = time.perf_counter()

        outcomes: list[TopicMatchOutcome] = []
        for offset in range(0, len(leads), window_size):
            window = leads[offset : offset + window_size]
            results = await asyncio.gather(
                *(self._judge(offset + position, lead, topic) for position, lead in enumerate(window)),
                return_exceptions=True,
            )
            for position, (lead, result) in enumerate(zip(window, results, strict=True)):
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    logger.error(
                        "topic_match.unit_failed",
                        extra={"company": lead.display_name, "error": type(result).__name__},
                    )
                    result = TopicMatchOutcome(
                        index=offset + position,
                        company=lead,
                        website_url=normalize_url(lead.resolve_website()) or None,
                        verdict=TopicMatch.UNKNOWN,
                    )
                outcomes.append(result)

        outcomes.sort(key=lambda outcome: outcome.index)
        matched = [outcome.company for outcome in outcomes if outcome.verdict is TopicMatch.YES]
        unmatched = [outcome for outcome in outcomes if outcome.verdict is not TopicMatch.YES]
        total_no = sum(1 for outcome in unmatched if outcome.verdict is TopicMatch.NO)
        result = TopicMatchResult(
            matched=matched,
            unmatched=unmatched,
            total_input=len(leads),
            total_matched=len(matched),
            total_no=total_no,
            total_unknown=len(unmatched) - total_no,
            max_concurrent=window_size,
            topic=topic,
        )

        elapsed_ms = (time.perf_counter() - start) * 1000
        metrics.timing("topic_match.latency_ms", elapsed_ms)
        metrics.increment("topic_match.companies", value=len(leads), tags={"verdict": "total"})
        metrics.increment("topic_match.companies", value=result.total_unknown, tags={"verdict": "unknown"})
        logger.info(
            "topic_match.completed",
            extra={
                "total_input": result.total_input,
                "total_matched": result.total_matched,
                "total_unknown": result.total_unknown,
                "filter_rate": round(result.filter_rate, 3),
                "latency_ms": round(elapsed_ms, 2),
            },
        )
        return result

    async def _judge(self, index: int, lead: Lead, topic: str) -> TopicMatchOutcome:
        url = normalize_url(lead.resolve_website())
        if not url:
            logger.info("topic_match.no_website", extra={"index": index, "company": lead.display_name})
            return TopicMatchOutcome(index=index, company=lead, verdict=TopicMatch.UNKNOWN)

        domain = normalize_domain(url)
        cached = await self._lookup(domain, topic)
        if cached is not None:
            return TopicMatchOutcome(
                index=index, company=lead, website_url=url, verdict=cached, cache_hit=True
            )

        scraped = await self._fetcher.fetch(url)
        if scraped is None:
            logger.info("topic_match.unreachable", extra={"index": index, "url": url})
            return TopicMatchOutcome(index=index, company=lead, website_url=url, verdict=TopicMatch.UNKNOWN)

        content = extract_text_for_analysis(scraped)
        verdict = await self._oracle.check_company_topic_relation(url, content, topic)
        if verdict is not TopicMatch.UNKNOWN and content:
            await self._store(domain, topic, verdict, content)
        logger.info(
            "topic_match.judged",
            extra={"index": index, "company": lead.display_name, "verdict": verdict.value},
        )
        return TopicMatchOutcome(index=index, company=lead, website_url=url, verdict=verdict)

    async def _lookup(self, domain: str, topic: str) -> TopicMatch | None:
        if self._cache is None:
            return None
        try:
            entry = await asyncio.to_thread(self._cache.lookup, domain, topic, CacheKind.TOPIC_MATCH)
        except ResultCacheError as exc:
            logger.warning("topic_match.cache_unavailable", extra={"domain": domain, "code": exc.code})
            return None
        if entry is None or entry.topic_match in (None, TopicMatch.UNKNOWN):
            return None
        return entry.topic_match

    async def _store(self, domain: str, topic: str, verdict: TopicMatch, content: str) -> None:
        if self._cache is None:
            return
        try:
            await asyncio.to_thread(
                self._cache.upsert,
                domain,
                topic,
                kind=CacheKind.TOPIC_MATCH,
                topic_match=verdict,
                analysis_text=content,
            )
        except ResultCacheError as exc:
            logger.warning("topic_match.cache_write_failed", extra={"domain": domain, "code": exc.code})
