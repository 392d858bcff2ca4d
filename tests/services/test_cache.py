from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from app.models.analysis import RelevanceVerdict, TopicMatch
from app.services.cache.errors import ResultCacheError
from app.services.cache.repositories import (
    CacheKind,
    InMemoryResultCache,
    SQLResultCache,
    build_result_cache,
    content_digest,
)


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


def _verdict(score: float = 8.0) -> RelevanceVerdict:
    return RelevanceVerdict(
        is_relevant=True, confidence=80, score=score, reasoning="Fits.", key_matches=["cloud"]
    )


@pytest.fixture(params=["memory", "sqlite"])
def cache_and_clock(request, tmp_path: Path, stub_metrics):
    clock = _Clock()
    if request.param == "memory":
        yield InMemoryResultCache(clock=clock), clock
        return
    cache = SQLResultCache(
        f"sqlite:///{tmp_path / 'cache.db'}",
        auto_create_schema=True,
        clock=clock,
    )
    yield cache, clock
    cache.dispose()


def test_upsert_then_lookup_returns_verdict(cache_and_clock):
    cache, _ = cache_and_clock

    cache.upsert("https://www.Acme.example/about", "Cloud Infrastructure", verdict=_verdict(), analysis_text="Title: Acme")
    entry = cache.lookup("acme.example", "cloud   infrastructure")

    assert entry is not None
    assert entry.domain == "acme.example"
    assert entry.verdict == _verdict()
    assert entry.analysis_text == "Title: Acme"
    assert entry.content_digest == content_digest("Title: Acme")
    assert entry.hit_count == 2


def test_lookup_misses_after_freshness_window_but_row_survives(cache_and_clock):
    cache, clock = cache_and_clock
    cache.upsert("acme.example", "cloud", verdict=_verdict())

    clock.advance(days=6, hours=23)
    assert cache.lookup("acme.example", "cloud") is not None

    clock.advance(days=1)
    assert cache.lookup("acme.example", "cloud") is None

    cache.upsert("acme.example", "cloud", verdict=_verdict(3.0))
    refreshed = cache.lookup("acme.example", "cloud")
    assert refreshed is not None
    assert refreshed.verdict.score == 3.0


def test_upsert_overwrites_and_counts_hits(cache_and_clock):
    cache, _ = cache_and_clock

    first = cache.upsert("acme.example", "cloud", verdict=_verdict(8.0))
    second = cache.upsert("acme.example", "cloud", verdict=_verdict(2.0))

    assert first.hit_count == 1
    assert second.hit_count == 2
    assert second.verdict.score == 2.0
    assert second.created_at == first.created_at


def test_kinds_do_not_overwrite_each_other(cache_and_clock):
    cache, _ = cache_and_clock

    cache.upsert("acme.example", "cloud", verdict=_verdict())
    cache.upsert("acme.example", "cloud", kind=CacheKind.TOPIC_MATCH, topic_match=TopicMatch.NO)

    graded = cache.lookup("acme.example", "cloud", CacheKind.RELEVANCE)
    binary = cache.lookup("acme.example", "cloud", CacheKind.TOPIC_MATCH)
    assert graded.verdict.score == 8.0
    assert graded.topic_match is None
    assert binary.topic_match is TopicMatch.NO
    assert binary.verdict is None


def test_prune_removes_only_old_entries(cache_and_clock):
    cache, clock = cache_and_clock
    cache.upsert("old.example", "cloud", verdict=_verdict())
    clock.advance(days=10)
    cache.upsert("new.example", "cloud", verdict=_verdict())

    removed = cache.prune(7)

    assert removed == 1
    assert cache.lookup("new.example", "cloud") is not None
    assert cache.prune(7) == 0


def test_missing_domain_is_never_cached(cache_and_clock):
    cache, _ = cache_and_clock

    assert cache.lookup("", "cloud") is None
    with pytest.raises(ResultCacheError) as excinfo:
        cache.upsert("", "cloud", verdict=_verdict())
    assert excinfo.value.code == "422_INVALID_CACHE_KEY"


def test_cache_emits_hit_and_miss_metrics(cache_and_clock, stub_metrics):
    cache, _ = cache_and_clock

    cache.lookup("acme.example", "cloud")
    cache.upsert("acme.example", "cloud", verdict=_verdict())
    cache.lookup("acme.example", "cloud")

    assert stub_metrics.counted("cache.miss") == 1
    assert stub_metrics.counted("cache.hit") == 1
    assert stub_metrics.counted("cache.persisted") == 1


def test_memory_cache_hit_counter_survives_concurrent_access(stub_metrics):
    cache = InMemoryResultCache()
    cache.upsert("acme.example", "cloud", verdict=_verdict())

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda _: cache.lookup("acme.example", "cloud"), range(200)))

    entry = cache.lookup("acme.example", "cloud")
    assert entry.hit_count == 202


def test_build_result_cache_defaults_to_memory(monkeypatch):
    from app.services.cache import repositories

    monkeypatch.setattr(repositories.settings, "database_url", None)

    assert isinstance(build_result_cache(), InMemoryResultCache)
