from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from app.config import settings
from pipelines import enrich_leads

LEADS = [
    {"name": "GPU Cloud", "website": "gpu.example"},
    {"name": "Florist", "website": "florist.example"},
]


@pytest.fixture(autouse=True)
def _offline_settings(monkeypatch):
    monkeypatch.setattr(settings, "database_url", None)
    monkeypatch.setattr(settings, "openai_api_key", None)
    monkeypatch.setattr(settings, "anthropic_api_key", None)
    monkeypatch.setattr(settings, "scraper_batch_delay_seconds", 0.0)


def _write_leads(tmp_path: Path, payload) -> Path:
    path = tmp_path / "leads.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_cli_writes_enrichment_result(tmp_path: Path, stub_metrics):
    input_path = _write_leads(tmp_path, {"leads": LEADS})
    output_path = tmp_path / "out" / "result.json"

    exit_code = enrich_leads.main(
        [
            "--input",
            str(input_path),
            "--topic",
            "GPU cloud",
            "--no-scraping",
            "--no-analysis",
            "--output",
            str(output_path),
        ]
    )

    assert exit_code == 0
    payload = json.loads(output_path.read_text(encoding="utf-8"))
    assert [record["lead"]["name"] for record in payload["leads"]] == ["GPU Cloud", "Florist"]
    assert payload["metadata"]["total_input"] == 2
    assert payload["metadata"]["ai_analysis_enabled"] is False


def test_cli_match_only_uses_topic_filter(tmp_path: Path, monkeypatch, capsys, stub_metrics):
    real_client = httpx.AsyncClient

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html><title>Some landing page</title></html>")

    monkeypatch.setattr(
        enrich_leads.httpx,
        "AsyncClient",
        lambda: real_client(transport=httpx.MockTransport(handler)),
    )
    input_path = _write_leads(tmp_path, LEADS)

    exit_code = enrich_leads.main(["--input", str(input_path), "--topic", "GPU", "--match-only"])

    assert exit_code == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["total_input"] == 2
    assert payload["total_matched"] == 0
    assert payload["total_unknown"] == 2
    assert payload["filter_rate"] == 0.0


def test_cli_reports_invalid_input(tmp_path: Path, stub_metrics):
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")

    assert enrich_leads.main(["--input", str(bad), "--topic", "GPU"]) == 1
    assert enrich_leads.main(["--input", str(tmp_path / "missing.json"), "--topic", "GPU"]) == 1


def test_cli_rejects_empty_lead_list(tmp_path: Path, stub_metrics):
    input_path = _write_leads(tmp_path, [])

    assert enrich_leads.main(["--input", str(input_path), "--topic", "GPU"]) == 1


def test_load_leads_rejects_non_list_payload(tmp_path: Path):
    input_path = _write_leads(tmp_path, {"leads": "nope"})

    with pytest.raises(enrich_leads.LeadInputError) as excinfo:
        enrich_leads.load_leads(input_path)

    assert excinfo.value.code == "E_INPUT_INVALID"


def test_min_score_argument_is_bounded(tmp_path: Path):
    with pytest.raises(SystemExit):
        enrich_leads.parse_args(["--input", "x.json", "--topic", "t", "--min-score", "11"])


def test_cli_closes_oracle_on_success_and_failure(tmp_path: Path, monkeypatch, stub_metrics):
    closed: list[bool] = []

    async def fake_aclose(self) -> None:
        closed.append(True)

    monkeypatch.setattr(enrich_leads.RelevanceOracle, "aclose", fake_aclose)
    good = _write_leads(tmp_path, LEADS)
    args = ["--topic", "GPU", "--no-scraping", "--no-analysis", "--output", str(tmp_path / "o.json")]
    assert enrich_leads.main(["--input", str(good), *args]) == 0

    empty = tmp_path / "empty.json"
    empty.write_text("[]", encoding="utf-8")
    assert enrich_leads.main(["--input", str(empty), "--topic", "GPU"]) == 1

    assert closed == [True, True]


def test_cli_accepts_structured_descriptive_fields(tmp_path: Path, stub_metrics):
    input_path = _write_leads(
        tmp_path,
        [
            {
                "name": "Acme",
                "website": "acme.example",
                "location": {"city": "Austin", "state": "TX"},
                "estimated_num_employees": 120.0,
            }
        ],
    )
    output_path = tmp_path / "result.json"

    exit_code = enrich_leads.main(
        [
            "--input",
            str(input_path),
            "--topic",
            "GPU",
            "--no-scraping",
            "--no-analysis",
            "--output",
            str(output_path),
        ]
    )

    assert exit_code == 0
    lead = json.loads(output_path.read_text(encoding="utf-8"))["leads"][0]["lead"]
    assert lead["location"] == "Austin, TX"
    assert lead["estimated_num_employees"] == 120


def test_cli_reports_malformed_lead_record(tmp_path: Path, stub_metrics):
    input_path = _write_leads(tmp_path, [{"name": "Acme", "website": {"url": "acme.example"}}])

    assert enrich_leads.main(["--input", str(input_path), "--topic", "GPU"]) == 1
    with pytest.raises(enrich_leads.LeadInputError) as excinfo:
        enrich_leads.load_leads(input_path)
    assert excinfo.value.code == "E_INPUT_INVALID"
    assert "lead 0" in str(excinfo.value)
