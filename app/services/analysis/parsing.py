"""Parsers for raw oracle text.

Failure modes:

* ``parse_relevance_verdict``: anything that is not a JSON object (after
  stripping code fences and surrounding prose) yields an unknown verdict with
  ``score=0``. Numeric fields that are not finite numbers become 0; finite
  values are clamped to their ranges.
* ``parse_topic_answer``: ``None`` is UNKNOWN, text containing YES is YES,
  everything else is NO.
* ``parse_id_array``: a response without a JSON array of ids contributes [].
"""

from __future__ import annotations

import json
import logging
import math
import re
from collections.abc import Hashable
from typing import Any

from app.models.analysis import RelevanceVerdict, SalesIntelligence, TopicMatch
from app.models.lead import Lead

logger = logging.getLogger(__name__)

PARSE_FAILURE_REASONING = "Failed to parse AI response"
DEFAULT_INTELLIGENCE_SCORE = 5
INTELLIGENCE_SECTIONS = {
    "company_overview": "Company Overview",
    "relevance_to_target": "Relevance to Target",
    "business_signals": "Key Business Signals",
    "pain_points": "Pain Points & Opportunities",
    "recommended_approach": "Recommended Approach",
}
_SCORE_PATTERN = re.compile(r"score[*:\s]+(\d+)", re.IGNORECASE)
_TRUE_LABELS = {"true", "yes", "1"}
_FALSE_LABELS = {"false", "no", "0"}


def parse_json_object(raw_text: str) -> dict[str, Any]:
    """Best-effort JSON decoding that tolerates code fences or prose."""
    candidate = (raw_text or "").strip()
    if candidate.startswith("```"):
        candidate = "\n".join(
            line for line in candidate.splitlines() if not line.strip().startswith("```")
        ).strip()
    start = candidate.find("{")
    end = candidate.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("Response did not contain JSON object.")
    payload = json.loads(candidate[start : end + 1])
    if not isinstance(payload, dict):
        raise ValueError("Response JSON was not an object.")
    return payload


def parse_relevance_verdict(raw_text: str | None) -> RelevanceVerdict:
    try:
        payload = parse_json_object(raw_text or "")
    except ValueError:
        logger.warning("oracle.parse_error", extra={"preview": (raw_text or "")[:120]})
        return RelevanceVerdict.unknown(PARSE_FAILURE_REASONING)

    reasoning = payload.get("reasoning")
    is_relevant = _coerce_bool(payload.get("isRelevant", payload.get("is_relevant")))
    # a score without a usable relevance flag is not a verdict
    score = _coerce_number(payload.get("score"), 0.0, 10.0) if is_relevant is not None else 0.0
    return RelevanceVerdict(
        is_relevant=is_relevant,
        confidence=int(_coerce_number(payload.get("confidence"), 0, 100)),
        score=score,
        reasoning=reasoning.strip() if isinstance(reasoning, str) else "",
        key_matches=_coerce_labels(payload.get("keyMatches", payload.get("key_matches"))),
        concerns=_coerce_labels(payload.get("concerns")),
    )


def parse_topic_answer(raw_text: str | None) -> TopicMatch:
    if raw_text is None:
        return TopicMatch.UNKNOWN
    return TopicMatch.YES if "YES" in raw_text.strip().upper() else TopicMatch.NO


def parse_id_array(raw_text: str | None) -> list[Hashable]:
    text = raw_text or ""
    start = text.find("[")
    end = text.rfind("]")
    if start == -1 or end <= start:
        return []
    try:
        values = json.loads(text[start : end + 1])
    except ValueError:
        logger.warning("oracle.id_array_parse_error", extra={"preview": text[:120]})
        return []
    if not isinstance(values, list):
        return []
    return [value for value in values if isinstance(value, (int, str)) and not isinstance(value, bool)]


def extract_section(text: str, title: str) -> str:
    """Return the body under a markdown heading such as ``## 1. **Company Overview:**``."""
    pattern = re.compile(
        rf"^#+\s*(?:\d+\.\s*)?\**\s*{re.escape(title)}\s*:?\s*\**\s*:?\s*$\n(.*?)(?=^#+\s|\Z)",
        re.IGNORECASE | re.MULTILINE | re.DOTALL,
    )
    match = pattern.search(text or "")
    return match.group(1).strip() if match else ""


def parse_sales_intelligence(raw_text: str, lead: Lead) -> SalesIntelligence:
    match = _SCORE_PATTERN.search(raw_text)
    score = int(match.group(1)) if match else DEFAULT_INTELLIGENCE_SCORE
    sections = {field: extract_section(raw_text, title) for field, title in INTELLIGENCE_SECTIONS.items()}
    return SalesIntelligence(
        summary=raw_text,
        relevance_score=max(0, min(score, 10)),
        company_name=lead.name,
        company_domain=lead.domain or lead.resolve_website(),
        **sections,
    )


def _coerce_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_LABELS:
            return True
        if lowered in _FALSE_LABELS:
            return False
    return None


def _coerce_number(value: Any, lower: float, upper: float) -> float:
    if isinstance(value, bool) or value is None:
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return float(max(lower, min(upper, number)))


def _coerce_labels(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if not isinstance(value, (list, tuple, set)):
        return []
    return [str(item) for item in value if isinstance(item, (str, int, float)) and not isinstance(item, bool)]
