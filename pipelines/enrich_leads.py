"""Enrich a JSON file of leads against a topic and write the ranked result."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import httpx
from pydantic import ValidationError

from app.config import settings
from app.models.enrichment import EnrichmentRequest
from app.models.lead import Lead
from app.services.analysis.oracle import OracleConfig, RelevanceOracle
from app.services.cache.errors import ResultCacheError
from app.services.cache.repositories import build_result_cache
from app.services.enrichment.errors import EnrichmentInputError
from app.services.enrichment.pipeline import build_enrichment_pipeline
from app.services.enrichment.topic_matcher import ParallelTopicMatcher

logger = logging.getLogger("pipelines.enrich_leads")


class LeadInputError(RuntimeError):
    """Raised when the input file cannot be read as a list of leads."""

    def __init__(self, message: str, code: str = "E_INPUT_INVALID") -> None:
        super().__init__(message)
        self.code = code


def _score(value: str) -> float:
    try:
        score = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"{value!r} is not a number.") from exc
    if not 0 <= score <= 10:
        raise argparse.ArgumentTypeError("--min-score must be between 0 and 10.")
    return score


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Score leads against a target topic.")
    parser.add_argument("--input", type=Path, required=True, help="JSON file with a list of leads.")
    parser.add_argument("--topic", required=True, help="Target profile or topic description.")
    parser.add_argument(
        "--min-score",
        type=_score,
        default=settings.enrichment_default_min_score,
        help="Minimum relevance score (0-10) a lead needs to be kept.",
    )
    parser.add_argument("--no-scraping", action="store_true", help="Skip landing page fetches.")
    parser.add_argument("--no-analysis", action="store_true", help="Skip oracle scoring.")
    parser.add_argument(
        "--match-only",
        action="store_true",
        help="Run the YES/NO topic filter instead of graded scoring.",
    )
    parser.add_argument(
        "--max-concurrent",
        type=int,
        default=settings.topic_match_max_concurrency,
        help="Parallel companies per window in --match-only mode (1-10).",
    )
    parser.add_argument(
        "--deadline",
        type=float,
        default=None,
        help="Seconds before pending fetches and scores are abandoned.",
    )
    parser.add_argument("--output", type=Path, default=None, help="Write JSON here instead of stdout.")
    return parser.parse_args(argv)


def load_leads(path: Path) -> list[Lead]:
    try:
        payload: Any = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise LeadInputError(f"Input file not found: {path}", code="E_INPUT_MISSING") from exc
    except json.JSONDecodeError as exc:
        raise LeadInputError(f"Input file is not valid JSON: {exc}") from exc

    records = payload.get("leads") if isinstance(payload, dict) else payload
    if not isinstance(records, list):
        raise LeadInputError("Input must be a JSON list of leads or an object with a 'leads' list.")
    leads: list[Lead] = []
    for position, item in enumerate(records):
        if not isinstance(item, dict):
            continue
        try:
            leads.append(Lead.from_payload(item))
        except ValidationError as exc:
            fields = ", ".join(".".join(str(loc) for loc in error["loc"]) for error in exc.errors())
            raise LeadInputError(f"Input lead {position} is invalid: {fields}") from exc
    return leads


async def run(args: argparse.Namespace) -> dict[str, Any]:
    leads = load_leads(args.input)
    cache = build_result_cache()
    oracle = RelevanceOracle(OracleConfig.from_settings())
    try:
        async with httpx.AsyncClient() as http_client:
            pipeline = build_enrichment_pipeline(http_client, cache=cache, oracle=oracle)
            if args.match_only:
                matcher = ParallelTopicMatcher(
                    fetcher=pipeline.fetch_pool.fetcher, oracle=oracle, cache=cache
                )
                result = await matcher.filter_companies(
                    leads, args.topic, max_concurrent=args.max_concurrent
                )
                payload = result.model_dump(mode="json")
                payload["filter_rate"] = round(result.filter_rate, 4)
                return payload

            request = EnrichmentRequest(
                leads=leads,
                topic=args.topic,
                min_relevance_score=args.min_score,
                enable_scraping=not args.no_scraping,
                enable_analysis=not args.no_analysis,
                deadline_seconds=args.deadline,
            )
            result = await pipeline.enrich(request)
            return result.model_dump(mode="json")
    finally:
        await oracle.aclose()


def write_output(payload: dict[str, Any], output: Path | None) -> None:
    rendered = json.dumps(payload, indent=2, default=str)
    if output is None:
        print(rendered)
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(rendered, encoding="utf-8")
    logger.info("enrich_leads.output_written", extra={"path": str(output)})


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for `python -m pipelines.enrich_leads`."""
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    args = parse_args(argv)
    try:
        payload = asyncio.run(run(args))
    except (LeadInputError, EnrichmentInputError, ResultCacheError) as exc:
        logger.error("enrich_leads.failed", extra={"code": exc.code, "error": str(exc)})
        return 1
    write_output(payload, args.output)
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
