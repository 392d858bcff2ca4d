from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from app.clients.llm import AnthropicScoringClient, build_scoring_client
from app.models.analysis import TopicMatch
from app.models.lead import Lead
from app.services.analysis.errors import (
    OracleNotConfiguredError,
    OracleProviderError,
    OracleRateLimitError,
)
from app.services.analysis.oracle import OracleConfig, RelevanceOracle
from app.services.analysis.rate_limit import RateLimiter
from tests.helpers.scoring_stub import StubScoringClient, no_sleep

VERDICT = json.dumps(
    {
        "isRelevant": True,
        "confidence": 90,
        "score": 8,
        "reasoning": "Cloud hosting provider.",
        "keyMatches": ["cloud"],
        "concerns": [],
    }
)


def _oracle(client=None, **config) -> RelevanceOracle:
    return RelevanceOracle(
        OracleConfig(api_key="test-key", call_interval_seconds=0, **config),
        client=client,
        sleep=no_sleep,
    )


@pytest.mark.asyncio
async def test_analyze_company_relevance_parses_verdict(stub_metrics):
    client = StubScoringClient([VERDICT])
    oracle = _oracle(client)

    verdict = await oracle.analyze_company_relevance(
        Lead(name="Acme Cloud", industry="Hosting"), "Title: Acme Cloud", "cloud infrastructure"
    )

    assert verdict.score == 8.0
    assert verdict.is_relevant is True
    call = client.calls[0]
    assert call["json_mode"] is True
    assert "cloud infrastructure" in call["prompt"]
    assert "Acme Cloud" in call["prompt"]
    assert "Title: Acme Cloud" in call["prompt"]
    assert stub_metrics.counted("oracle.calls") == 1


@pytest.mark.asyncio
async def test_missing_credential_yields_unknown_without_calls(stub_metrics):
    oracle = RelevanceOracle(OracleConfig(api_key=None), sleep=no_sleep)

    assert oracle.configured is False
    verdict = await oracle.analyze_company_relevance(Lead(name="Acme"), "content", "topic")
    match = await oracle.check_company_topic_relation("https://acme.example", "content", "topic")

    assert verdict.evaluated is False
    assert verdict.score == 0.0
    assert verdict.reasoning == "AI analysis not configured"
    assert match is TopicMatch.UNKNOWN
    assert stub_metrics.counted("oracle.calls") == 0
    with pytest.raises(OracleNotConfiguredError):
        await oracle.call_scoring_service("hello")


@pytest.mark.asyncio
async def test_rate_limited_calls_are_retried_with_backoff(stub_metrics):
    sleeps: list[float] = []

    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    client = StubScoringClient([OracleRateLimitError(), OracleRateLimitError(), VERDICT])
    oracle = RelevanceOracle(
        OracleConfig(api_key="k", retry_attempts=3, call_interval_seconds=0),
        client=client,
        sleep=record_sleep,
    )

    raw = await oracle.call_scoring_service("prompt")

    assert raw == VERDICT
    assert len(client.calls) == 3
    assert len(sleeps) == 2
    assert sleeps[1] > sleeps[0]


@pytest.mark.asyncio
async def test_rate_limit_exhaustion_becomes_unknown_verdict(stub_metrics):
    client = StubScoringClient([OracleRateLimitError()])
    oracle = _oracle(client, retry_attempts=2)

    verdict = await oracle.analyze_company_relevance(Lead(name="Acme"), "content", "topic")

    assert len(client.calls) == 2
    assert verdict.evaluated is False
    assert verdict.reasoning.startswith("Analysis failed")
    assert stub_metrics.counted("oracle.errors", code="429_RATE_LIMIT") == 1


@pytest.mark.asyncio
async def test_provider_errors_are_not_retried(stub_metrics):
    client = StubScoringClient([OracleProviderError("boom")])
    oracle = _oracle(client)

    verdict = await oracle.analyze_company_relevance(Lead(name="Acme"), "content", "topic")

    assert len(client.calls) == 1
    assert verdict.is_relevant is None
    assert verdict.score == 0.0


@pytest.mark.asyncio
async def test_malformed_response_is_unknown_with_zero_score(stub_metrics):
    oracle = _oracle(StubScoringClient(["Sure! The company looks great."]))

    verdict = await oracle.analyze_company_relevance(Lead(name="Acme"), "content", "topic")

    assert verdict.evaluated is False
    assert verdict.score == 0.0


@pytest.mark.asyncio
async def test_topic_relation_truncates_content_and_reads_yes(stub_metrics):
    client = StubScoringClient(["YES"])
    oracle = _oracle(client)

    match = await oracle.check_company_topic_relation("https://acme.example", "x" * 5000, "cloud")

    assert match is TopicMatch.YES
    prompt = client.calls[0]["prompt"]
    assert "x" * 3000 + "..." in prompt
    assert "x" * 3001 not in prompt
    assert client.calls[0]["temperature"] == 0.0
    assert "cloud" in client.calls[0]["system_prompt"]


@pytest.mark.asyncio
async def test_topic_relation_empty_content_is_unknown_without_call(stub_metrics):
    client = StubScoringClient(["YES"])
    oracle = _oracle(client)

    assert await oracle.check_company_topic_relation("https://a.example", "  ", "cloud") is TopicMatch.UNKNOWN
    assert client.calls == []


@pytest.mark.asyncio
async def test_topic_relation_provider_error_is_unknown(stub_metrics):
    oracle = _oracle(StubScoringClient([OracleProviderError("down")]))

    match = await oracle.check_company_topic_relation("https://a.example", "content", "cloud")

    assert match is TopicMatch.UNKNOWN


@pytest.mark.asyncio
async def test_analyze_companies_sorts_by_score_descending_stably(stub_metrics):
    scores = {"Alpha": 4, "Beta": 9, "Gamma": 4, "Delta": 7}

    def responder(prompt: str) -> str:
        name = next(name for name in scores if f"Name: {name}" in prompt)
        return json.dumps({"isRelevant": True, "confidence": 50, "score": scores[name]})

    oracle = _oracle(StubScoringClient(responder=responder))
    leads = [(Lead(name=name), f"{name} content") for name in scores]

    scored = await oracle.analyze_companies(leads, "topic")

    assert [entry.lead.name for entry in scored] == ["Beta", "Delta", "Alpha", "Gamma"]
    assert [entry.index for entry in scored] == [1, 3, 0, 2]


@pytest.mark.asyncio
async def test_analyze_companies_paces_calls_through_limiter(stub_metrics):
    class _CountingLimiter(RateLimiter):
        def __init__(self) -> None:
            super().__init__(rate_per_second=None)
            self.acquired = 0

        async def acquire(self) -> float:
            self.acquired += 1
            return 0.0

    limiter = _CountingLimiter()
    oracle = RelevanceOracle(
        OracleConfig(api_key="k"),
        client=StubScoringClient([VERDICT]),
        rate_limiter=limiter,
        sleep=no_sleep,
    )

    await oracle.analyze_companies([(Lead(name="A"), "a"), (Lead(name="B"), "b")], "topic")

    assert limiter.acquired == 2


@pytest.mark.asyncio
async def test_analyze_companies_marks_unscored_leads_after_deadline(stub_metrics):
    client = StubScoringClient([VERDICT], delay=0.2)
    oracle = _oracle(client)
    loop = asyncio.get_running_loop()

    scored = await oracle.analyze_companies(
        [(Lead(name="A"), "a"), (Lead(name="B"), "b")], "topic", deadline=loop.time() + 0.05
    )

    assert len(scored) == 2
    assert all(entry.verdict.evaluated is False for entry in scored)
    assert all("Deadline exceeded" in entry.verdict.reasoning for entry in scored)


@pytest.mark.asyncio
async def test_filter_posts_by_topic_chunks_and_unions_ids(stub_metrics):
    posts = [{"id": idx, "caption": f"post {idx}"} for idx in range(45)]
    responses = ["[0, 5]", "garbage without ids", "Relevant: [44]"]
    client = StubScoringClient(responses)
    oracle = _oracle(client)

    kept = await oracle.filter_posts_by_topic(posts, "conference travel", chunk_size=20)

    assert [post["id"] for post in kept] == [0, 5, 44]
    assert len(client.calls) == 3
    first_chunk = json.loads(client.calls[0]["prompt"].split("Data:\n", 1)[1])
    assert len(first_chunk) == 20
    assert first_chunk[1] == {"id": 1, "text": "post 1"}


@pytest.mark.asyncio
async def test_filter_posts_without_credential_returns_posts_unchanged(stub_metrics):
    oracle = RelevanceOracle(OracleConfig(api_key=None), sleep=no_sleep)
    posts = [{"id": 1, "text": "hello"}]

    assert await oracle.filter_posts_by_topic(posts, "topic") == posts
    assert await oracle.filter_posts_by_topic([], "topic") == []


@pytest.mark.asyncio
async def test_generate_sales_intelligence_parses_sections(stub_metrics):
    brief = "## Company Overview\nAcme hosts containers.\n\n## Relevance to Target\nScore: 9\n"
    client = StubScoringClient([brief])
    oracle = _oracle(client)
    posts = [{"id": idx, "text": f"post {idx}"} for idx in range(8)]

    intel = await oracle.generate_sales_intelligence(
        Lead(name="Acme", domain="acme.example"), "Title: Acme", "cloud", social_posts=posts
    )

    assert intel.relevance_score == 9
    assert intel.company_overview == "Acme hosts containers."
    assert intel.company_domain == "acme.example"
    prompt = client.calls[0]["prompt"]
    assert "Social Media Activity" in prompt
    assert '"post 4"' in prompt
    assert '"post 5"' not in prompt


@pytest.mark.asyncio
async def test_generate_sales_intelligence_without_credential_is_placeholder(stub_metrics):
    oracle = RelevanceOracle(OracleConfig(api_key=None), sleep=no_sleep)

    intel = await oracle.generate_sales_intelligence(Lead(name="Acme"), None, "cloud")

    assert intel.relevance_score == 0
    assert intel.summary == "AI analysis not configured"


def test_build_scoring_client_requires_key_and_known_provider():
    assert build_scoring_client("openai", None) is None
    assert build_scoring_client("anthropic", "") is None
    with pytest.raises(ValueError):
        build_scoring_client("mystery", "key")


@pytest.mark.asyncio
async def test_anthropic_client_maps_statuses():
    statuses = iter([200, 429, 500])

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["x-api-key"] == "secret"
        assert request.url.path == "/v1/messages"
        status = next(statuses)
        if status == 200:
            body = json.loads(request.content)
            assert body["system"] == "be brief"
            return httpx.Response(200, json={"content": [{"type": "text", "text": " YES "}]})
        return httpx.Response(status, json={"error": {"message": "nope"}})

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://api.anthropic.test"
    ) as http_client:
        client = AnthropicScoringClient("secret", http_client=http_client)
        kwargs = {
            "prompt": "Is it related?",
            "system_prompt": "be brief",
            "model": "claude-test",
            "temperature": 0.0,
            "max_tokens": 10,
        }
        assert await client.complete(**kwargs) == "YES"
        with pytest.raises(OracleRateLimitError):
            await client.complete(**kwargs)
        with pytest.raises(OracleProviderError) as excinfo:
            await client.complete(**kwargs)

    assert excinfo.value.code == "502_ORACLE_UPSTREAM"


@pytest.mark.asyncio
async def test_aclose_releases_the_client_the_oracle_built():
    oracle = RelevanceOracle(OracleConfig(provider="anthropic", api_key="k", call_interval_seconds=0))
    http_client = oracle._client._http
    assert http_client.is_closed is False

    await oracle.aclose()

    assert http_client.is_closed is True


@pytest.mark.asyncio
async def test_aclose_leaves_injected_clients_open():
    scoring = StubScoringClient([VERDICT])
    oracle = RelevanceOracle(OracleConfig(api_key="k", call_interval_seconds=0), client=scoring)

    await oracle.aclose()
    await RelevanceOracle(OracleConfig(api_key=None)).aclose()

    assert scoring.closed is False
