"""Turns scraped landing pages into the bounded text block sent to the oracle."""

from __future__ import annotations

from app.models.analysis import ScrapedContent

MAX_ANALYSIS_CHARS = 2000
MAX_CONTENT_CHARS = 2000
MIN_SECTION_CHARS = 10
HEADING_SEPARATOR = " | "


def extract_text_for_analysis(scraped: ScrapedContent | None) -> str:
    if scraped is None:
        return ""

    sections = (
        ("Title", scraped.title),
        ("Description", scraped.description),
        ("Key Sections", HEADING_SEPARATOR.join(h for h in scraped.headings if h)),
        ("Content", scraped.body_text[:MAX_CONTENT_CHARS]),
    )
    parts = [
        f"{label}: {value.strip()}"
        for label, value in sections
        if len((value or "").strip()) > MIN_SECTION_CHARS
    ]
    return "\n\n".join(parts)[:MAX_ANALYSIS_CHARS]
