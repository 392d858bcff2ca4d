"""Delete cached website analyses older than the retention horizon."""

from __future__ import annotations

import argparse
import json
import logging
from collections.abc import Sequence
from datetime import datetime, timezone

from app.config import settings
from app.services.cache.errors import ResultCacheError
from app.services.cache.repositories import build_result_cache

logger = logging.getLogger("tools.prune_analysis_cache")


def _positive_days(value: str) -> int:
    try:
        days = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"{value!r} is not a valid integer day count.") from exc
    if days <= 0:
        raise argparse.ArgumentTypeError("Prune horizon must be greater than zero days.")
    return days


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Prune stale rows from the website analysis cache.")
    parser.add_argument(
        "--days",
        type=_positive_days,
        default=settings.cache_prune_days,
        help=f"Delete entries analyzed more than this many days ago (default {settings.cache_prune_days}).",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Override DATABASE_URL for this run.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    args = parse_args(argv)
    cache = build_result_cache(args.database_url)
    try:
        removed = cache.prune(args.days)
    except ResultCacheError as exc:
        logger.error("Cache prune failed: %s (code=%s)", exc, exc.code)
        return 1

    summary = {
        "run_at": datetime.now(timezone.utc).isoformat(),
        "days": args.days,
        "removed": removed,
    }
    print(json.dumps(summary))
    logger.info("Cache prune summary removed=%s days=%s", removed, args.days)
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
