"""Graded enrichment: cache check, landing-page scrape, oracle scoring, filter and rank."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import httpx
from pydantic import ValidationError

from app.config import settings
from app.models.analysis import RelevanceVerdict, ScrapedContent
from app.models.enrichment import (
    BatchEnrichmentResult,
    BatchOutcome,
    EnrichedLead,
    EnrichmentMetadata,
    EnrichmentRequest,
    EnrichmentResult,
    ExclusionReason,
    LeadStatus,
    WebsiteAnalysis,
)
from app.models.lead import Lead, normalize_domain, normalize_url
from app.observability.metrics import metrics
from app.services.analysis.oracle import OracleConfig, RelevanceOracle
from app.services.cache.errors import ResultCacheError
from app.services.cache.repositories import CacheEntry, CacheKind, ResultCache
from app.services.enrichment.errors import EnrichmentInputError
from app.services.scraping.extractor import extract_text_for_analysis
from app.services.scraping.fetcher import ConcurrentFetchPool, WebsiteFetcher

logger = logging.getLogger(__name__)

DEFAULT_MAX_BATCH_SIZE = 50


@dataclass
class _LeadWork:
    """Mutable per-lead state while a request moves through the stages."""

    lead: Lead
    url: str
    domain: str
    cached: CacheEntry | None = None
    scraped: ScrapedContent | None = None
    content: str = ""
    verdict: RelevanceVerdict | None = None


class EnrichmentPipeline:
    """Coordinates fetch pool, oracle, and cache for one request at a time."""

    def __init__(
        self,
        *,
        fetch_pool: ConcurrentFetchPool,
        oracle: RelevanceOracle,
        cache: ResultCache | None = None,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
        default_deadline_seconds: float | None = None,
    ) -> None:
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        self._pool = fetch_pool
        self._oracle = oracle
        self._cache = cache
        self._max_batch_size = max_batch_size
        self._default_deadline = default_deadline_seconds

    @property
    def fetch_pool(self) -> ConcurrentFetchPool:
        return self._pool

    async def enrich(self, request: EnrichmentRequest) -> EnrichmentResult:
        """Run one request. Raises ``EnrichmentInputError`` before any I/O on bad input."""
        _validate(request.leads, request.topic)
        loop = asyncio.get_running_loop()
        start = time.perf_counter()
        deadline_seconds = request.deadline_seconds or self._default_deadline
        deadline = loop.time() + deadline_seconds if deadline_seconds else None
        topic = request.topic.strip()

        processed = request.leads[: self._max_batch_size]
        overflow = request.leads[self._max_batch_size :]
        if overflow:
            logger.warning(
                "enrichment.batch_truncated",
                extra={"total_input": len(request.leads), "max_batch_size": self._max_batch_size},
            )

        work = [_prepare(lead) for lead in processed]
        entries = await asyncio.gather(*(self._lookup(item.domain, topic) for item in work))
        for item, entry in zip(work, entries, strict=True):
            item.cached = entry
            if entry is not None:
                item.content = entry.analysis_text

        if request.enable_scraping:
            await self._scrape(work, deadline)

        if request.enable_analysis:
            await self._score(work, topic, deadline)

        retained: list[EnrichedLead] = []
        excluded: list[EnrichedLead] = []
        for item in work:
            record = _to_record(item, request)
            (retained if record.status is LeadStatus.RETAINED else excluded).append(record)
        retained.sort(key=lambda record: record.sort_score, reverse=True)

        not_processed = [
            EnrichedLead(
                lead=lead,
                website_url=normalize_url(lead.resolve_website()) or None,
                status=LeadStatus.NOT_PROCESSED,
                exclusion_reason=ExclusionReason.BATCH_LIMIT,
            )
            for lead in overflow
        ]
        metadata = EnrichmentMetadata(
            total_input=len(request.leads),
            total_processed=len(processed),
            total_enriched=len(retained),
            total_scraped=sum(1 for item in work if item.scraped is not None),
            total_unevaluated=sum(
                1 for item in work if item.verdict is not None and not item.verdict.evaluated
            ),
            total_cache_hits=sum(1 for item in work if item.cached is not None),
            website_scraping_enabled=request.enable_scraping,
            ai_analysis_enabled=request.enable_analysis,
            min_relevance_score=request.min_relevance_score,
            topic=topic,
            deadline_exceeded=deadline is not None and loop.time() >= deadline,
        )

        elapsed_ms = (time.perf_counter() - start) * 1000
        metrics.timing("enrichment.latency_ms", elapsed_ms)
        metrics.increment("enrichment.leads_processed", value=len(processed))
        metrics.increment("enrichment.leads_retained", value=len(retained))
        logger.info(
            "enrichment.completed",
            extra={
                "total_input": metadata.total_input,
                "total_processed": metadata.total_processed,
                "total_enriched": metadata.total_enriched,
                "total_cache_hits": metadata.total_cache_hits,
                "deadline_exceeded": metadata.deadline_exceeded,
                "latency_ms": round(elapsed_ms, 2),
            },
        )
        return EnrichmentResult(
            leads=retained,
            excluded=excluded,
            not_processed=not_processed,
            metadata=metadata,
        )

    async def analyze_website(
        self,
        url: str,
        topic: str | None = None,
        *,
        lead: Lead | None = None,
    ) -> WebsiteAnalysis:
        """Scrape a single site and, when a topic is given, grade it."""
        target = normalize_url(url)
        if not target:
            raise EnrichmentInputError("url must be an http(s) URL or bare domain.")

        scraped = await self._pool.fetcher.fetch(target)
        if scraped is None:
            return WebsiteAnalysis(success=False, url=target, message="Failed to scrape website")

        content = extract_text_for_analysis(scraped)
        analysis = None
        if topic and topic.strip():
            analysis = await self._oracle.analyze_company_relevance(
                lead or Lead(website=target), content, topic.strip()
            )
        return WebsiteAnalysis(
            success=True,
            url=target,
            content=content,
            scraped=scraped,
            analysis=analysis,
        )

    async def batch_enrich(
        self, batches: Sequence[EnrichmentRequest | Mapping[str, Any]]
    ) -> BatchEnrichmentResult:
        """Run batches one after another; a failed batch is recorded, never re-raised."""
        outcomes: list[BatchOutcome] = []
        for position, batch in enumerate(batches, start=1):
            batch_id = str(batch.get("id") or position) if isinstance(batch, Mapping) else str(position)
            try:
                request = (
                    EnrichmentRequest.from_payload(batch) if isinstance(batch, Mapping) else batch
                )
                result = await self.enrich(request)
            except EnrichmentInputError as exc:
                logger.warning("enrichment.batch_rejected", extra={"batch_id": batch_id, "code": exc.code})
                outcomes.append(
                    BatchOutcome(batch_id=batch_id, success=False, error=str(exc), error_code=exc.code)
                )
                continue
            except ValidationError as exc:
                logger.warning("enrichment.batch_invalid", extra={"batch_id": batch_id})
                outcomes.append(
                    BatchOutcome(
                        batch_id=batch_id,
                        success=False,
                        error=str(exc),
                        error_code="422_INVALID_ENRICHMENT_REQUEST",
                    )
                )
                continue
            except Exception as exc:
                logger.exception("enrichment.batch_failed", extra={"batch_id": batch_id})
                outcomes.append(
                    BatchOutcome(batch_id=batch_id, success=False, error=str(exc), error_code="500_INTERNAL")
                )
                continue
            outcomes.append(BatchOutcome(batch_id=batch_id, success=True, result=result))

        successful = sum(1 for outcome in outcomes if outcome.success)
        metrics.increment("enrichment.batches", value=len(outcomes), tags={"status": "total"})
        return BatchEnrichmentResult(
            batches=outcomes,
            total_batches=len(outcomes),
            successful=successful,
            failed=len(outcomes) - successful,
        )

    async def _scrape(self, work: list[_LeadWork], deadline: float | None) -> None:
        targets = [item for item in work if item.cached is None and item.url]
        if not targets:
            return
        scraped = await self._pool.fetch_many([item.url for item in targets], deadline=deadline)
        for item in targets:
            item.scraped = scraped.get(item.url)
            item.content = extract_text_for_analysis(item.scraped)

    async def _score(self, work: list[_LeadWork], topic: str, deadline: float | None) -> None:
        pending: list[_LeadWork] = []
        for item in work:
            if item.cached is not None and item.cached.verdict is not None:
                item.verdict = item.cached.verdict
            else:
                pending.append(item)
        if not pending:
            return

        scored = await self._oracle.analyze_companies(
            [(item.lead, item.content or None) for item in pending],
            topic,
            deadline=deadline,
        )
        for entry in scored:
            item = pending[entry.index]
            item.verdict = entry.verdict
            if entry.verdict.evaluated and item.domain and item.content:
                await self._store(item.domain, topic, entry.verdict, item.content)

    async def _lookup(self, domain: str, topic: str) -> CacheEntry | None:
        if self._cache is None or not domain:
            return None
        try:
            return await asyncio.to_thread(self._cache.lookup, domain, topic, CacheKind.RELEVANCE)
        except ResultCacheError as exc:
            logger.warning("enrichment.cache_unavailable", extra={"domain": domain, "code": exc.code})
            return None

    async def _store(self, domain: str, topic: str, verdict: RelevanceVerdict, content: str) -> None:
        if self._cache is None:
            return
        try:
            await asyncio.to_thread(
                self._cache.upsert,
                domain,
                topic,
                kind=CacheKind.RELEVANCE,
                verdict=verdict,
                analysis_text=content,
            )
        except ResultCacheError as exc:
            logger.warning("enrichment.cache_write_failed", extra={"domain": domain, "code": exc.code})


def _validate(leads: Sequence[Any], topic: str | None) -> None:
    if not leads:
        raise EnrichmentInputError("leads must be a non-empty list.")
    if not topic or not topic.strip():
        raise EnrichmentInputError("topic is required.")


def _prepare(lead: Lead) -> _LeadWork:
    website = lead.resolve_website()
    url = normalize_url(website)
    return _LeadWork(lead=lead, url=url, domain=normalize_domain(url) if url else "")


def _to_record(item: _LeadWork, request: EnrichmentRequest) -> EnrichedLead:
    verdict = item.verdict if request.enable_analysis else None
    record = EnrichedLead(
        lead=item.lead,
        website_url=item.url or None,
        website_content=item.content or None,
        website_scraped=item.scraped is not None,
        scraped_at=item.scraped.fetched_at if item.scraped is not None else None,
        analysis=verdict,
        relevance_score=verdict.score if verdict is not None else None,
        cache_hit=item.cached is not None,
    )
    if verdict is None or verdict.score >= request.min_relevance_score:
        return record
    reason = ExclusionReason.BELOW_THRESHOLD if verdict.evaluated else ExclusionReason.NOT_EVALUATED
    return record.model_copy(update={"status": LeadStatus.EXCLUDED, "exclusion_reason": reason})


def build_enrichment_pipeline(
    http_client: httpx.AsyncClient,
    *,
    cache: ResultCache | None = None,
    oracle: RelevanceOracle | None = None,
) -> EnrichmentPipeline:
    """Wire a pipeline from settings around a caller-owned HTTP client."""
    fetcher = WebsiteFetcher(
        http_client=http_client,
        timeout_seconds=settings.scraper_timeout_seconds,
        max_content_bytes=settings.scraper_max_content_bytes,
    )
    pool = ConcurrentFetchPool(
        fetcher,
        concurrency=settings.scraper_concurrency,
        batch_delay_seconds=settings.scraper_batch_delay_seconds,
    )
    return EnrichmentPipeline(
        fetch_pool=pool,
        oracle=oracle or RelevanceOracle(OracleConfig.from_settings()),
        cache=cache,
        max_batch_size=settings.enrichment_max_batch_size,
        default_deadline_seconds=settings.enrichment_deadline_seconds,
    )
