"""SQLModel mapping for the website analysis cache."""
# ruff: noqa: UP017

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlalchemy import Column, DateTime, Float, Integer, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql import expression
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


JSON_BACKING_TYPE = sa.JSON().with_variant(JSONB(astext_type=sa.Text()), "postgresql")


class UtcNow(expression.FunctionElement):
    """Dialect-aware server default that pins timestamps to UTC."""

    type = DateTime(timezone=True)
    inherit_cache = True


@compiles(UtcNow)
def _utc_now_default(
    element, compiler, **kwargs
) -> str:  # pragma: no cover - trivial sql generator
    return "CURRENT_TIMESTAMP"


@compiles(UtcNow, "postgresql")
def _utc_now_default_postgres(
    element, compiler, **kwargs
) -> str:  # pragma: no cover - trivial sql generator
    return "timezone('utc', now())"


class AnalysisCacheRecord(SQLModel, table=True):
    """One cached oracle outcome per (domain, topic, kind)."""

    __tablename__ = "website_analysis_cache"
    __table_args__ = (
        sa.UniqueConstraint("domain", "topic", "kind", name="uq_analysis_cache_key"),
        sa.Index("ix_analysis_cache_analyzed_at", "analyzed_at"),
    )

    id: UUID = Field(
        default_factory=uuid4,
        sa_column=Column(Uuid(as_uuid=True), primary_key=True, nullable=False),
    )
    domain: str = Field(sa_column=Column(String(length=255), nullable=False))
    topic: str = Field(sa_column=Column(Text, nullable=False))
    kind: str = Field(sa_column=Column(String(length=32), nullable=False))
    verdict: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSON_BACKING_TYPE, nullable=True),
    )
    topic_match: str | None = Field(
        default=None,
        sa_column=Column(String(length=16), nullable=True),
    )
    relevance_score: float | None = Field(
        default=None,
        sa_column=Column(Float, nullable=True),
    )
    content_digest: str = Field(
        default="",
        sa_column=Column(String(length=64), nullable=False, server_default=""),
    )
    analysis_text: str = Field(
        default="",
        sa_column=Column(Text, nullable=False, server_default=""),
    )
    hit_count: int = Field(
        default=1,
        sa_column=Column(Integer, nullable=False, server_default="1"),
    )
    last_accessed_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=UtcNow()),
    )
    analyzed_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=UtcNow()),
    )
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=UtcNow()),
    )
    updated_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(
            DateTime(timezone=True),
            nullable=False,
            server_default=UtcNow(),
            onupdate=UtcNow(),
        ),
    )
