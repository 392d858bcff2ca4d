"""Scrape and oracle verdict models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

MAX_HEADINGS = 10
MAX_BODY_CHARS = 5000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dedupe_labels(values: list[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        label = str(value).strip()
        if not label or label.lower() in seen:
            continue
        seen.add(label.lower())
        ordered.append(label)
    return ordered


class ScrapedContent(BaseModel):
    """Landing page content extracted from a single successful fetch."""

    model_config = ConfigDict(frozen=True)

    url: str
    title: str = ""
    description: str = ""
    headings: list[str] = Field(default_factory=list, max_length=MAX_HEADINGS)
    body_text: str = Field(default="", max_length=MAX_BODY_CHARS)
    fetched_at: datetime = Field(default_factory=_utcnow)


class RelevanceVerdict(BaseModel):
    """Graded oracle outcome. ``is_relevant=None`` means no signal, not a negative one."""

    is_relevant: bool | None = None
    confidence: int = Field(default=0, ge=0, le=100)
    score: float = Field(default=0.0, ge=0.0, le=10.0)
    reasoning: str = ""
    key_matches: list[str] = Field(default_factory=list)
    concerns: list[str] = Field(default_factory=list)

    @field_validator("key_matches", "concerns")
    @classmethod
    def _dedupe(cls, values: list[str]) -> list[str]:
        return _dedupe_labels(values)

    @classmethod
    def unknown(cls, reasoning: str) -> RelevanceVerdict:
        return cls(is_relevant=None, confidence=0, score=0.0, reasoning=reasoning)

    @computed_field  # type: ignore[misc]
    @property
    def evaluated(self) -> bool:
        return self.is_relevant is not None


class TopicMatch(str, Enum):
    """Binary oracle outcome; ``UNKNOWN`` is a non-match that is counted separately."""

    YES = "yes"
    NO = "no"
    UNKNOWN = "unknown"


class SalesIntelligence(BaseModel):
    """Markdown sales brief split into its named sections."""

    summary: str
    relevance_score: int = 0
    company_name: str | None = None
    company_domain: str | None = None
    company_overview: str = ""
    relevance_to_target: str = ""
    business_signals: str = ""
    pain_points: str = ""
    recommended_approach: str = ""
    generated_at: datetime = Field(default_factory=_utcnow)
