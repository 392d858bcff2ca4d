"""Errors surfaced to callers of the enrichment pipeline and topic matcher."""

from __future__ import annotations


class EnrichmentInputError(RuntimeError):
    """Raised before any I/O when a request cannot be processed as given."""

    def __init__(self, message: str, code: str = "422_INVALID_ENRICHMENT_REQUEST") -> None:
        super().__init__(message)
        self.code = code
