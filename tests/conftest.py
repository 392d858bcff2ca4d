import pytest

from app.observability import metrics as metrics_module
from app.services.analysis import oracle as oracle_module
from app.services.cache import repositories as repositories_module
from app.services.enrichment import pipeline as pipeline_module
from app.services.enrichment import topic_matcher as topic_matcher_module
from app.services.scraping import fetcher as fetcher_module
from tests.helpers.metrics_stub import StubMetrics

_METRIC_MODULES = (
    fetcher_module,
    oracle_module,
    repositories_module,
    pipeline_module,
    topic_matcher_module,
)


@pytest.fixture
def stub_metrics(monkeypatch):
    """Route every module-level ``metrics`` reference to one recorder."""
    stub = StubMetrics()
    for module in _METRIC_MODULES:
        monkeypatch.setattr(module, "metrics", stub)
    monkeypatch.setattr(metrics_module, "metrics", stub)
    return stub


@pytest.fixture
def sample_leads():
    """Three leads used by the cloud-infrastructure scenario."""
    return [
        {"name": "Acme Cloud", "website": "acmecloud.example", "industry": "Cloud hosting"},
        {"name": "Bakery Co", "website": "https://bakery.example"},
        {"name": "No Site Inc"},
    ]


@pytest.fixture
def cloud_scenario_leads():
    """One infrastructure company next to two bakeries, every one with a live site."""
    return [
        {"name": "Acme Cloud", "website": "acmecloud.example", "industry": "Cloud hosting"},
        {"name": "Bakery Co", "website": "https://bakery.example"},
        {"name": "Corner Bakery", "domain": "cornerbakery.example"},
    ]
