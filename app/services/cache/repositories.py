"""Backends for the (domain, topic, kind) analysis cache."""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from enum import Enum
from threading import Lock
from typing import Any, Protocol

from pydantic import BaseModel
from sqlalchemy import delete, update
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine, select

from app.config import settings
from app.models.analysis import RelevanceVerdict, TopicMatch
from app.models.cache_record import AnalysisCacheRecord
from app.models.lead import normalize_domain
from app.observability.metrics import metrics
from app.services.cache.errors import ResultCacheError

logger = logging.getLogger(__name__)

DEFAULT_FRESHNESS_DAYS = 7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CacheKind(str, Enum):
    RELEVANCE = "relevance"
    TOPIC_MATCH = "topic_match"


class CacheEntry(BaseModel):
    """Cached oracle outcome plus maintenance metadata."""

    domain: str
    topic: str
    kind: CacheKind
    verdict: RelevanceVerdict | None = None
    topic_match: TopicMatch | None = None
    content_digest: str = ""
    analysis_text: str = ""
    hit_count: int = 1
    last_accessed_at: datetime
    analyzed_at: datetime
    created_at: datetime


def content_digest(text: str | None) -> str:
    return hashlib.sha256((text or "").encode("utf-8")).hexdigest()


def normalize_topic(topic: str | None) -> str:
    return " ".join((topic or "").split()).lower()


def cache_key(domain: str | None, topic: str | None, kind: CacheKind) -> tuple[str, str, CacheKind]:
    return normalize_domain(domain), normalize_topic(topic), CacheKind(kind)


class ResultCache(Protocol):
    """Persistence contract for cached verdicts."""

    def lookup(
        self, domain: str, topic: str, kind: CacheKind = CacheKind.RELEVANCE
    ) -> CacheEntry | None:
        ...

    def upsert(
        self,
        domain: str,
        topic: str,
        *,
        kind: CacheKind = CacheKind.RELEVANCE,
        verdict: RelevanceVerdict | None = None,
        topic_match: TopicMatch | None = None,
        analysis_text: str = "",
    ) -> CacheEntry:
        ...

    def prune(self, older_than_days: int | None = None) -> int:
        ...


class InMemoryResultCache(ResultCache):
    """Thread-safe cache used for CLI runs and tests."""

    def __init__(
        self,
        *,
        freshness_days: int = DEFAULT_FRESHNESS_DAYS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._entries: dict[tuple[str, str, CacheKind], CacheEntry] = {}
        self._freshness = timedelta(days=freshness_days)
        self._clock = clock
        self._lock = Lock()

    def lookup(
        self, domain: str, topic: str, kind: CacheKind = CacheKind.RELEVANCE
    ) -> CacheEntry | None:
        key = cache_key(domain, topic, kind)
        if not key[0]:
            return None
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or now - entry.analyzed_at >= self._freshness:
                metrics.increment("cache.miss", tags={"repository": "memory", "kind": key[2].value})
                return None
            entry = entry.model_copy(update={"hit_count": entry.hit_count + 1, "last_accessed_at": now})
            self._entries[key] = entry
        metrics.increment("cache.hit", tags={"repository": "memory", "kind": key[2].value})
        logger.info("cache.hit", extra={"domain": key[0], "kind": key[2].value, "backend": "memory"})
        return entry

    def upsert(
        self,
        domain: str,
        topic: str,
        *,
        kind: CacheKind = CacheKind.RELEVANCE,
        verdict: RelevanceVerdict | None = None,
        topic_match: TopicMatch | None = None,
        analysis_text: str = "",
    ) -> CacheEntry:
        key = cache_key(domain, topic, kind)
        if not key[0]:
            raise ResultCacheError("Cannot cache an entry without a domain.", code="422_INVALID_CACHE_KEY")
        now = self._clock()
        with self._lock:
            previous = self._entries.get(key)
            entry = CacheEntry(
                domain=key[0],
                topic=key[1],
                kind=key[2],
                verdict=verdict,
                topic_match=topic_match,
                content_digest=content_digest(analysis_text),
                analysis_text=analysis_text,
                hit_count=previous.hit_count + 1 if previous else 1,
                last_accessed_at=now,
                analyzed_at=now,
                created_at=previous.created_at if previous else now,
            )
            self._entries[key] = entry
        metrics.increment("cache.persisted", tags={"repository": "memory", "kind": key[2].value})
        return entry

    def prune(self, older_than_days: int | None = None) -> int:
        days = settings.cache_prune_days if older_than_days is None else older_than_days
        cutoff = self._clock() - timedelta(days=days)
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.analyzed_at < cutoff]
            for key in expired:
                del self._entries[key]
        logger.info("cache.pruned", extra={"removed": len(expired), "backend": "memory"})
        return len(expired)


class SQLResultCache(ResultCache):
    """SQLModel-backed cache stored in the ``website_analysis_cache`` table."""

    def __init__(
        self,
        database_url: str,
        *,
        freshness_days: int = DEFAULT_FRESHNESS_DAYS,
        pool_min_size: int | None = None,
        pool_max_size: int | None = None,
        auto_create_schema: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not database_url:
            raise ValueError("DATABASE_URL is required for SQLResultCache.")

        parsed_url = make_url(database_url)
        sync_url, connect_args, drivername = _coerce_sync_database_url(parsed_url)
        pool_min = max(pool_min_size or settings.db_pool_min_size, 1)
        pool_max = max(pool_max_size or settings.db_pool_max_size, pool_min)
        is_sqlite = drivername.startswith("sqlite")
        engine_kwargs: dict[str, Any] = {
            "echo": settings.debug,
            "connect_args": connect_args,
            "pool_pre_ping": not is_sqlite,
        }
        if not is_sqlite:
            engine_kwargs["pool_size"] = pool_min
            engine_kwargs["max_overflow"] = max(pool_max - pool_min, 0)

        self._engine: Engine = create_engine(sync_url, **engine_kwargs)
        if auto_create_schema:
            SQLModel.metadata.create_all(self._engine, tables=[AnalysisCacheRecord.__table__])
        self._freshness = timedelta(days=freshness_days)
        self._clock = clock
        self._metrics_tags = {"repository": "sqlite" if is_sqlite else "postgres"}

    def dispose(self) -> None:
        """Close the underlying SQLAlchemy engine."""
        self._engine.dispose()

    def lookup(
        self, domain: str, topic: str, kind: CacheKind = CacheKind.RELEVANCE
    ) -> CacheEntry | None:
        key = cache_key(domain, topic, kind)
        if not key[0]:
            return None
        now = self._clock()
        tags = {**self._metrics_tags, "kind": key[2].value}
        try:
            with self._session() as session:
                record = session.exec(
                    select(AnalysisCacheRecord).where(
                        AnalysisCacheRecord.domain == key[0],
                        AnalysisCacheRecord.topic == key[1],
                        AnalysisCacheRecord.kind == key[2].value,
                        AnalysisCacheRecord.analyzed_at > _as_naive(now - self._freshness, self._is_sqlite),
                    )
                ).first()
                if record is None:
                    metrics.increment("cache.miss", tags=tags)
                    return None
                session.exec(
                    update(AnalysisCacheRecord)
                    .where(AnalysisCacheRecord.id == record.id)
                    .values(
                        hit_count=AnalysisCacheRecord.hit_count + 1,
                        last_accessed_at=now,
                    )
                )
                session.commit()
                session.refresh(record)
                entry = _to_entry(record)
        except SQLAlchemyError as exc:
            logger.exception("cache.error", extra={"domain": key[0], "operation": "lookup"})
            raise ResultCacheError("Failed to read cached analysis.") from exc
        metrics.increment("cache.hit", tags=tags)
        logger.info(
            "cache.hit",
            extra={"domain": key[0], "kind": key[2].value, "backend": self._metrics_tags["repository"]},
        )
        return entry

    def upsert(
        self,
        domain: str,
        topic: str,
        *,
        kind: CacheKind = CacheKind.RELEVANCE,
        verdict: RelevanceVerdict | None = None,
        topic_match: TopicMatch | None = None,
        analysis_text: str = "",
    ) -> CacheEntry:
        key = cache_key(domain, topic, kind)
        if not key[0]:
            raise ResultCacheError("Cannot cache an entry without a domain.", code="422_INVALID_CACHE_KEY")
        now = self._clock()
        values: dict[str, Any] = {
            "verdict": verdict.model_dump(mode="json", exclude={"evaluated"}) if verdict else None,
            "topic_match": topic_match.value if topic_match else None,
            "relevance_score": verdict.score if verdict else None,
            "content_digest": content_digest(analysis_text),
            "analysis_text": analysis_text,
            "last_accessed_at": now,
            "analyzed_at": now,
        }
        try:
            with self._session() as session:
                if not self._update_existing(session, key, values):
                    session.add(
                        AnalysisCacheRecord(
                            domain=key[0],
                            topic=key[1],
                            kind=key[2].value,
                            hit_count=1,
                            created_at=now,
                            updated_at=now,
                            **values,
                        )
                    )
                    try:
                        session.commit()
                    except IntegrityError:
                        # Concurrent insert of the same key won; fold into its row.
                        session.rollback()
                        self._update_existing(session, key, values)
                        session.commit()
                else:
                    session.commit()
                record = self._get(session, key)
                entry = _to_entry(record)
        except SQLAlchemyError as exc:
            logger.exception("cache.error", extra={"domain": key[0], "operation": "upsert"})
            raise ResultCacheError("Failed to persist cached analysis.") from exc
        metrics.increment("cache.persisted", tags={**self._metrics_tags, "kind": key[2].value})
        return entry

    def prune(self, older_than_days: int | None = None) -> int:
        days = settings.cache_prune_days if older_than_days is None else older_than_days
        cutoff = _as_naive(self._clock() - timedelta(days=days), self._is_sqlite)
        try:
            with self._session() as session:
                result = session.exec(
                    delete(AnalysisCacheRecord).where(AnalysisCacheRecord.analyzed_at < cutoff)
                )
                session.commit()
                removed = result.rowcount or 0
        except SQLAlchemyError as exc:
            logger.exception("cache.error", extra={"operation": "prune"})
            raise ResultCacheError("Failed to prune cached analyses.") from exc
        logger.info(
            "cache.pruned",
            extra={"removed": removed, "days": days, "backend": self._metrics_tags["repository"]},
        )
        return removed

    @property
    def _is_sqlite(self) -> bool:
        return self._metrics_tags["repository"] == "sqlite"

    def _update_existing(
        self, session: Session, key: tuple[str, str, CacheKind], values: dict[str, Any]
    ) -> bool:
        result = session.exec(
            update(AnalysisCacheRecord)
            .where(
                AnalysisCacheRecord.domain == key[0],
                AnalysisCacheRecord.topic == key[1],
                AnalysisCacheRecord.kind == key[2].value,
            )
            .values(hit_count=AnalysisCacheRecord.hit_count + 1, **values)
        )
        return bool(result.rowcount)

    @staticmethod
    def _get(session: Session, key: tuple[str, str, CacheKind]) -> AnalysisCacheRecord:
        return session.exec(
            select(AnalysisCacheRecord).where(
                AnalysisCacheRecord.domain == key[0],
                AnalysisCacheRecord.topic == key[1],
                AnalysisCacheRecord.kind == key[2].value,
            )
        ).one()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with Session(self._engine) as session:
            yield session


def _as_naive(value: datetime, is_sqlite: bool) -> datetime:
    """SQLite stores timestamps without an offset; compare in naive UTC there."""
    if is_sqlite and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _to_entry(record: AnalysisCacheRecord) -> CacheEntry:
    return CacheEntry(
        domain=record.domain,
        topic=record.topic,
        kind=CacheKind(record.kind),
        verdict=RelevanceVerdict.model_validate(record.verdict) if record.verdict else None,
        topic_match=TopicMatch(record.topic_match) if record.topic_match else None,
        content_digest=record.content_digest,
        analysis_text=record.analysis_text,
        hit_count=record.hit_count,
        last_accessed_at=_aware(record.last_accessed_at),
        analyzed_at=_aware(record.analyzed_at),
        created_at=_aware(record.created_at),
    )


def _coerce_sync_database_url(url: URL) -> tuple[str, dict[str, Any], str]:
    """Convert async connection strings into sync SQLAlchemy URLs."""
    drivername = url.drivername
    connect_args: dict[str, Any] = {}
    if drivername.endswith("+asyncpg"):
        drivername = drivername.replace("+asyncpg", "+psycopg2")
    elif drivername.endswith("+aiosqlite"):
        drivername = "sqlite"
    sync_url = url.set(drivername=drivername)
    query = dict(sync_url.query) if sync_url.query else {}
    if query.pop("ssl", None) is not None and drivername.startswith("postgresql"):
        connect_args["sslmode"] = "require"
    sync_url = sync_url.set(query=query)
    if drivername.startswith("sqlite"):
        connect_args.setdefault("check_same_thread", False)
    return sync_url.render_as_string(hide_password=False), connect_args, drivername


def build_result_cache(database_url: str | None = None) -> ResultCache:
    """Instantiate a ResultCache using DATABASE_URL when available."""
    resolved_url = database_url or settings.database_url
    if not resolved_url:
        logger.info("cache.repository.initialized", extra={"backend": "memory"})
        return InMemoryResultCache(freshness_days=settings.cache_freshness_days)
    try:
        cache = SQLResultCache(
            resolved_url,
            freshness_days=settings.cache_freshness_days,
            pool_min_size=settings.db_pool_min_size,
            pool_max_size=settings.db_pool_max_size,
            auto_create_schema=True,
        )
        logger.info("cache.repository.initialized", extra={"backend": "database"})
        return cache
    except Exception:
        logger.exception("cache.repository.init_failed", extra={"backend": "database"})
        raise
