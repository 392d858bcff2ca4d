"""Normalized lead records consumed by the enrichment pipeline."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

WEBSITE_FIELDS = ("website", "domain", "website_url")
_NAME_ALIASES = ("company", "companyName", "company_name")
_ALLOWED_SCHEMES = {"http", "https"}


class Lead(BaseModel):
    """Company/lead record; unknown keys from upstream sources are preserved."""

    model_config = ConfigDict(extra="allow")

    name: str | None = None
    industry: str | None = None
    location: str | None = None
    estimated_num_employees: int | str | None = None
    short_description: str | None = None
    website: str | None = None
    domain: str | None = None
    website_url: str | None = None

    @field_validator("industry", "location", "short_description", mode="before")
    @classmethod
    def _flatten_text(cls, value: object) -> object:
        """Lead exports often nest these as objects or lists; keep the readable parts."""
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, Mapping):
            value = list(value.values())
        if isinstance(value, (list, tuple)):
            parts = [str(part).strip() for part in value if part is not None]
            return ", ".join(part for part in parts if part) or None
        return str(value)

    @field_validator("estimated_num_employees", mode="before")
    @classmethod
    def _coerce_headcount(cls, value: object) -> object:
        if isinstance(value, float):
            return int(value) if value.is_integer() else str(value)
        return value

    @model_validator(mode="before")
    @classmethod
    def _coerce_name(cls, values: object) -> object:
        if not isinstance(values, Mapping):
            return values
        if values.get("name"):
            return values
        for alias in _NAME_ALIASES:
            candidate = values.get(alias)
            if isinstance(candidate, str) and candidate.strip():
                return {**values, "name": candidate.strip()}
        return values

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | Lead) -> Lead:
        if isinstance(payload, Lead):
            return payload
        return cls.model_validate(dict(payload))

    def resolve_website(self) -> str | None:
        """Return the first populated website-like field."""
        for field in WEBSITE_FIELDS:
            value = getattr(self, field, None)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None

    @property
    def display_name(self) -> str:
        return self.name or self.resolve_website() or "Unknown"

    def as_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


def normalize_url(value: str | None) -> str:
    """Prepend https:// to bare domains; return "" when the result is not an http(s) URL."""
    raw = str(value or "").strip()
    if not raw:
        return ""
    if "://" not in raw:
        raw = f"https://{raw}"
    try:
        parsed = urlsplit(raw)
    except ValueError:
        return ""
    if parsed.scheme.lower() not in _ALLOWED_SCHEMES:
        return ""
    host = (parsed.hostname or "").strip(".")
    if not host or " " in host:
        return ""
    return raw


def normalize_domain(value: str | None) -> str:
    """Lowercase host without scheme, credentials, port, or a leading www."""
    raw = str(value or "").strip().lower()
    if not raw:
        return ""
    if "://" not in raw:
        raw = f"http://{raw}"
    try:
        parsed = urlsplit(raw)
    except ValueError:
        return ""
    host = (parsed.hostname or "").strip(".")
    if host.startswith("www."):
        host = host[4:]
    return host
