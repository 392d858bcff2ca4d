"""Request/response models for enrichment and topic matching."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from app.models.analysis import RelevanceVerdict, ScrapedContent, TopicMatch
from app.models.lead import Lead


class LeadStatus(str, Enum):
    RETAINED = "retained"
    EXCLUDED = "excluded"
    NOT_PROCESSED = "not_processed"


class ExclusionReason(str, Enum):
    BELOW_THRESHOLD = "below_threshold"
    NOT_EVALUATED = "not_evaluated"
    BATCH_LIMIT = "batch_limit"


class EnrichmentRequest(BaseModel):
    """Validated enrichment input handed over by the routing layer."""

    leads: list[Lead]
    topic: str
    min_relevance_score: float = Field(default=5.0, ge=0.0, le=10.0)
    enable_scraping: bool = True
    enable_analysis: bool = True
    deadline_seconds: float | None = Field(default=None, gt=0)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> EnrichmentRequest:
        """Accept the public snake_case payload, including the ``icp_description`` alias."""
        raw_leads = payload.get("leads") or []
        return cls(
            leads=[Lead.from_payload(item) for item in raw_leads],
            topic=str(payload.get("topic") or payload.get("icp_description") or ""),
            min_relevance_score=float(payload.get("min_relevance_score", 5.0)),
            enable_scraping=bool(payload.get("enable_website_scraping", True)),
            enable_analysis=bool(payload.get("enable_ai_analysis", True)),
            deadline_seconds=payload.get("deadline_seconds"),
        )


class EnrichedLead(BaseModel):
    """One output record per processed lead."""

    lead: Lead
    website_url: str | None = None
    website_content: str | None = None
    website_scraped: bool = False
    scraped_at: datetime | None = None
    analysis: RelevanceVerdict | None = None
    relevance_score: float | None = None
    cache_hit: bool = False
    status: LeadStatus = LeadStatus.RETAINED
    exclusion_reason: ExclusionReason | None = None

    @property
    def sort_score(self) -> float:
        return self.relevance_score or 0.0


class EnrichmentMetadata(BaseModel):
    total_input: int
    total_processed: int
    total_enriched: int
    total_scraped: int = 0
    total_unevaluated: int = 0
    total_cache_hits: int = 0
    website_scraping_enabled: bool
    ai_analysis_enabled: bool
    min_relevance_score: float
    topic: str
    deadline_exceeded: bool = False


class EnrichmentResult(BaseModel):
    """Ranked leads plus every record that did not make the cut."""

    leads: list[EnrichedLead] = Field(default_factory=list)
    excluded: list[EnrichedLead] = Field(default_factory=list)
    not_processed: list[EnrichedLead] = Field(default_factory=list)
    metadata: EnrichmentMetadata


class WebsiteAnalysis(BaseModel):
    success: bool
    url: str
    content: str = ""
    scraped: ScrapedContent | None = None
    analysis: RelevanceVerdict | None = None
    message: str | None = None


class BatchOutcome(BaseModel):
    batch_id: str
    success: bool
    result: EnrichmentResult | None = None
    error: str | None = None
    error_code: str | None = None


class BatchEnrichmentResult(BaseModel):
    batches: list[BatchOutcome]
    total_batches: int
    successful: int
    failed: int


class TopicMatchOutcome(BaseModel):
    """Binary verdict for one company, tagged with its input position."""

    index: int
    company: Lead
    website_url: str | None = None
    verdict: TopicMatch
    cache_hit: bool = False


class TopicMatchResult(BaseModel):
    matched: list[Lead] = Field(default_factory=list)
    unmatched: list[TopicMatchOutcome] = Field(default_factory=list)
    total_input: int
    total_matched: int
    total_no: int
    total_unknown: int
    max_concurrent: int
    topic: str

    @property
    def filter_rate(self) -> float:
        return self.total_matched / self.total_input if self.total_input else 0.0
