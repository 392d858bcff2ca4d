"""Relevance oracle: prompts an LLM to grade or accept/reject companies against a topic."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Hashable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from app.clients.llm import ScoringServiceClient, build_scoring_client
from app.config import Settings, settings
from app.models.analysis import RelevanceVerdict, SalesIntelligence, TopicMatch
from app.models.lead import Lead
from app.observability.metrics import metrics
from app.services.analysis.errors import (
    OracleError,
    OracleNotConfiguredError,
    OracleProviderError,
    OracleRateLimitError,
)
from app.services.analysis.parsing import (
    parse_id_array,
    parse_relevance_verdict,
    parse_sales_intelligence,
    parse_topic_answer,
)
from app.services.analysis.rate_limit import RateLimiter, exponential_backoff

logger = logging.getLogger(__name__)

RELEVANCE_CONTENT_CHARS = 3000
TOPIC_CONTENT_CHARS = 3000
INTELLIGENCE_CONTENT_CHARS = 2000
INTELLIGENCE_MAX_POSTS = 5
DEFAULT_POST_CHUNK_SIZE = 20
FREEFORM_MAX_TOKENS = 2000
NOT_CONFIGURED_REASONING = "AI analysis not configured"

RELEVANCE_SYSTEM_PROMPT = "You are a B2B sales analyst. Respond only with valid JSON."

TOPIC_SYSTEM_PROMPT = """You are an AI company analyst. Decide whether a company's website shows that \
the company operates in, or is clearly related to, the topic: "{topic}".

Weigh the company description, services, products, industry terminology, and focus.

Answer with ONLY "YES" when there is clear evidence the company is related, otherwise "NO". \
Be strict."""

POST_FILTER_SYSTEM_PROMPT = """You are an AI data filter. The user wants posts related to these \
keywords and concepts: '{topic}'.

You will receive a JSON list of objects, each with an "id" and a "text". Return a JSON array \
containing ONLY the ids of posts that are clearly and explicitly relevant.

Example:
Topic: "business trips, attending conference, work travel"
Data: [
  {{"id": 1, "text": "Excited to be at #GDC in San Francisco this week!"}},
  {{"id": 2, "text": "Just posted our Q3 earnings, great results!"}},
  {{"id": 3, "text": "Packing my bags for the London sales meeting!"}}
]
Response: [1, 3]"""


@dataclass(frozen=True)
class OracleConfig:
    """Explicit provider configuration; nothing is read from the environment here."""

    provider: str = "openai"
    api_key: str | None = None
    model: str = "gpt-4o-mini"
    temperature: float = 0.3
    max_tokens: int = 500
    timeout_seconds: float = 30.0
    retry_attempts: int = 3
    retry_backoff_seconds: float = 0.5
    call_interval_seconds: float = 0.5

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> OracleConfig:
        resolved = source or settings
        return cls(
            provider=resolved.ai_provider.lower(),
            api_key=resolved.oracle_api_key,
            model=resolved.ai_model,
            temperature=resolved.oracle_temperature,
            max_tokens=resolved.oracle_max_tokens,
            timeout_seconds=resolved.oracle_timeout_seconds,
            retry_attempts=resolved.oracle_retry_attempts,
            call_interval_seconds=resolved.oracle_call_interval_seconds,
        )


@dataclass(frozen=True)
class ScoredCompany:
    """Graded verdict for one lead, tagged with its position in the input batch."""

    index: int
    lead: Lead
    verdict: RelevanceVerdict


class RelevanceOracle:
    """Graded and binary relevance checks behind one scoring-service primitive."""

    def __init__(
        self,
        config: OracleConfig | None = None,
        *,
        client: ScoringServiceClient | None = None,
        rate_limiter: RateLimiter | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._config = config or OracleConfig()
        self._owns_client = client is None
        self._client = client if client is not None else build_scoring_client(
            self._config.provider,
            self._config.api_key,
            timeout=self._config.timeout_seconds,
        )
        self._limiter = rate_limiter or RateLimiter.every(self._config.call_interval_seconds)
        self._sleep = sleep
        if self._client is None:
            logger.warning("oracle.not_configured", extra={"provider": self._config.provider})

    @property
    def configured(self) -> bool:
        return self._client is not None

    async def aclose(self) -> None:
        """Release the provider client if this oracle built it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()

    async def call_scoring_service(
        self,
        prompt: str,
        *,
        system_prompt: str = "",
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> str:
        """Send one prompt, retrying only on rate limits. Raises ``OracleError``."""
        if self._client is None:
            raise OracleNotConfiguredError()

        tags = {"provider": self._config.provider}
        start = time.perf_counter()
        try:
            for attempt, delay in exponential_backoff(
                max_attempts=max(1, self._config.retry_attempts),
                base_delay=self._config.retry_backoff_seconds,
            ):
                try:
                    metrics.increment("oracle.calls", tags=tags)
                    return await self._client.complete(
                        prompt=prompt,
                        system_prompt=system_prompt,
                        model=self._config.model,
                        temperature=self._config.temperature if temperature is None else temperature,
                        max_tokens=max_tokens or self._config.max_tokens,
                        json_mode=json_mode,
                    )
                except OracleRateLimitError as exc:
                    logger.warning("oracle.retry", extra={"attempt": attempt, "code": exc.code})
                    if attempt >= self._config.retry_attempts:
                        raise
                    await self._sleep(delay)
            raise OracleProviderError("Exceeded retry policy")
        except OracleError as exc:
            metrics.increment("oracle.errors", tags={**tags, "code": exc.code})
            raise
        finally:
            metrics.timing("oracle.latency_ms", (time.perf_counter() - start) * 1000, tags=tags)

    async def analyze_company_relevance(
        self,
        lead: Lead,
        website_content: str | None,
        topic: str,
    ) -> RelevanceVerdict:
        """Graded verdict. Never raises; failures come back as unknown verdicts."""
        if not self.configured:
            return RelevanceVerdict.unknown(NOT_CONFIGURED_REASONING)

        prompt = build_analysis_prompt(lead, website_content, topic)
        try:
            raw = await self.call_scoring_service(
                prompt,
                system_prompt=RELEVANCE_SYSTEM_PROMPT,
                json_mode=True,
            )
        except OracleError as exc:
            logger.error(
                "oracle.analysis_failed",
                extra={"company": lead.display_name, "code": exc.code},
            )
            return RelevanceVerdict.unknown(f"Analysis failed: {exc}")
        except Exception as exc:  # pragma: no cover - unexpected provider failure
            logger.exception("oracle.unexpected_error", extra={"company": lead.display_name})
            return RelevanceVerdict.unknown(f"Analysis failed: {exc}")

        verdict = parse_relevance_verdict(raw)
        metrics.increment(
            "oracle.verdicts",
            tags={"evaluated": verdict.evaluated, "relevant": verdict.is_relevant},
        )
        return verdict

    async def check_company_topic_relation(
        self,
        website_url: str,
        website_content: str | None,
        topic: str,
    ) -> TopicMatch:
        """Strict YES/NO check. Errors and missing content are UNKNOWN, which callers exclude."""
        if not website_content or not website_content.strip():
            logger.info("oracle.topic_check_no_content", extra={"url": website_url})
            return TopicMatch.UNKNOWN
        if not self.configured:
            return TopicMatch.UNKNOWN

        content = website_content
        if len(content) > TOPIC_CONTENT_CHARS:
            content = f"{content[:TOPIC_CONTENT_CHARS]}..."
        prompt = (
            f"Website URL: {website_url}\n"
            f"Topic: {topic}\n\n"
            f"Website Content:\n{content}\n\n"
            f'Is this company related to "{topic}"? Answer YES or NO only.'
        )
        try:
            raw = await self.call_scoring_service(
                prompt,
                system_prompt=TOPIC_SYSTEM_PROMPT.format(topic=topic),
                temperature=0.0,
                max_tokens=FREEFORM_MAX_TOKENS,
            )
        except OracleError as exc:
            logger.error("oracle.topic_check_failed", extra={"url": website_url, "code": exc.code})
            return TopicMatch.UNKNOWN
        except Exception:  # pragma: no cover - unexpected provider failure
            logger.exception("oracle.unexpected_error", extra={"url": website_url})
            return TopicMatch.UNKNOWN
        return parse_topic_answer(raw)

    async def analyze_companies(
        self,
        companies: Sequence[tuple[Lead, str | None]],
        topic: str,
        *,
        deadline: float | None = None,
    ) -> list[ScoredCompany]:
        """Score leads one at a time through the rate limiter, best first.

        ``deadline`` is an absolute ``loop.time()``; leads not scored by then get
        unknown verdicts.
        """
        loop = asyncio.get_running_loop()
        scored: list[ScoredCompany] = []
        for index, (lead, content) in enumerate(companies):
            verdict = await self._score_before_deadline(lead, content, topic, deadline, loop)
            scored.append(ScoredCompany(index=index, lead=lead, verdict=verdict))
        return sorted(scored, key=lambda entry: entry.verdict.score, reverse=True)

    async def _score_before_deadline(
        self,
        lead: Lead,
        content: str | None,
        topic: str,
        deadline: float | None,
        loop: asyncio.AbstractEventLoop,
    ) -> RelevanceVerdict:
        if not self.configured:
            return RelevanceVerdict.unknown(NOT_CONFIGURED_REASONING)
        if deadline is not None and loop.time() >= deadline:
            return RelevanceVerdict.unknown("Deadline exceeded before analysis")

        await self._limiter.acquire()
        call = self.analyze_company_relevance(lead, content, topic)
        if deadline is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=max(0.0, deadline - loop.time()))
        except asyncio.TimeoutError:
            logger.warning("oracle.deadline_exceeded", extra={"company": lead.display_name})
            return RelevanceVerdict.unknown("Deadline exceeded during analysis")

    async def generate_sales_intelligence(
        self,
        lead: Lead,
        website_content: str | None,
        topic: str,
        social_posts: Sequence[Mapping[str, Any]] | None = None,
    ) -> SalesIntelligence:
        if not self.configured:
            return SalesIntelligence(
                summary=NOT_CONFIGURED_REASONING,
                company_name=lead.name,
                company_domain=lead.domain or lead.resolve_website(),
            )

        prompt = build_intelligence_prompt(lead, website_content, topic, social_posts or [])
        try:
            raw = await self.call_scoring_service(prompt, temperature=0.7, max_tokens=FREEFORM_MAX_TOKENS)
        except OracleError as exc:
            logger.error(
                "oracle.intelligence_failed",
                extra={"company": lead.display_name, "code": exc.code},
            )
            return SalesIntelligence(
                summary=f"Could not generate sales intelligence: {exc}",
                company_name=lead.name,
                company_domain=lead.domain or lead.resolve_website(),
            )
        return parse_sales_intelligence(raw, lead)

    async def filter_posts_by_topic(
        self,
        posts: Sequence[Mapping[str, Any]],
        topic: str,
        *,
        chunk_size: int = DEFAULT_POST_CHUNK_SIZE,
    ) -> list[Mapping[str, Any]]:
        """Keep posts whose id the oracle lists as relevant; a bad chunk contributes nothing."""
        if not posts:
            return []
        if not self.configured:
            logger.warning("oracle.post_filter_skipped", extra={"posts": len(posts)})
            return list(posts)
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")

        system_prompt = POST_FILTER_SYSTEM_PROMPT.format(topic=topic)
        relevant_ids: set[Hashable] = set()
        total_chunks = (len(posts) + chunk_size - 1) // chunk_size
        for chunk_number, start in enumerate(range(0, len(posts), chunk_size), start=1):
            chunk = posts[start : start + chunk_size]
            simplified = [
                {"id": post.get("id"), "text": post.get("caption") or post.get("text") or post.get("content") or ""}
                for post in chunk
            ]
            try:
                raw = await self.call_scoring_service(
                    f"Data:\n{json.dumps(simplified, indent=2, default=str)}",
                    system_prompt=system_prompt,
                    temperature=0.0,
                    max_tokens=FREEFORM_MAX_TOKENS,
                )
            except OracleError as exc:
                logger.error(
                    "oracle.post_chunk_failed",
                    extra={"chunk": chunk_number, "chunks": total_chunks, "code": exc.code},
                )
                continue
            relevant_ids.update(parse_id_array(raw))

        kept = [post for post in posts if _hashable(post.get("id")) in relevant_ids]
        logger.info("oracle.posts_filtered", extra={"input": len(posts), "kept": len(kept)})
        return kept


def _hashable(value: Any) -> Hashable | None:
    return value if isinstance(value, Hashable) else None


def _company_block(lead: Lead, industry_fallback: str = "Unknown") -> str:
    return (
        f"Name: {lead.name or 'Unknown'}\n"
        f"Industry: {lead.industry or industry_fallback}\n"
        f"Location: {lead.location or 'Unknown'}\n"
        f"Size: {lead.estimated_num_employees or 'Unknown'} employees\n"
        f"Description: {lead.short_description or 'N/A'}"
    )


def build_analysis_prompt(lead: Lead, website_content: str | None, topic: str) -> str:
    content = website_content[:RELEVANCE_CONTENT_CHARS] if website_content else "No website content available"
    return (
        "You are a B2B sales analyst. Analyze if this company matches the target profile.\n\n"
        f"**Target Profile/Topic:**\n{topic}\n\n"
        f"**Company Information:**\n{_company_block(lead)}\n\n"
        f"**Website Content Analysis:**\n{content}\n\n"
        "**Task:**\n"
        "Decide whether this company is a good fit for the target profile. Consider:\n"
        "1. Does their business align with the target topic/industry?\n"
        "2. Do they have relevant products/services?\n"
        "3. Are they likely to need the solution implied by the target profile?\n"
        "4. Does their company size/type match the ICP?\n\n"
        "**Response Format (JSON only):**\n"
        "{\n"
        '  "isRelevant": true/false,\n'
        '  "confidence": 0-100,\n'
        '  "score": 0-10,\n'
        '  "reasoning": "Brief explanation (2-3 sentences)",\n'
        '  "keyMatches": ["match1", "match2"],\n'
        '  "concerns": ["concern1", "concern2"]\n'
        "}"
    )


def build_intelligence_prompt(
    lead: Lead,
    website_content: str | None,
    topic: str,
    social_posts: Sequence[Mapping[str, Any]],
) -> str:
    content = (
        website_content[:INTELLIGENCE_CONTENT_CHARS] if website_content else "No website content available"
    )
    social = ""
    if social_posts:
        rendered = json.dumps(list(social_posts[:INTELLIGENCE_MAX_POSTS]), indent=2, default=str)
        social = f"**Social Media Activity:**\n{rendered}\n\n"
    return (
        "You are a professional sales intelligence analyst. Analyze the company below and write a "
        "concise, actionable sales intelligence summary.\n\n"
        f"**Company Information:**\n{_company_block(lead, industry_fallback=topic)}\n\n"
        f"**Website Content:**\n{content}\n\n"
        f"{social}"
        f"**Target Profile:** {topic}\n\n"
        "Write these sections as markdown '##' headers:\n\n"
        "1. **Company Overview:** what they do and their market position\n"
        "2. **Relevance to Target:** fit with the target profile (Score: 0-10)\n"
        "3. **Key Business Signals:** expansion, hiring, or growth indicators\n"
        "4. **Pain Points & Opportunities:** likely needs or challenges\n"
        "5. **Recommended Approach:** timing, messaging, decision makers\n\n"
        "Keep it short and focused on insights that help close deals."
    )
