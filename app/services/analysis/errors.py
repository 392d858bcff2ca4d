"""Errors raised inside the relevance oracle. None of them escape its public methods."""

from __future__ import annotations


class OracleError(RuntimeError):
    """Base exception for scoring-service failures."""

    def __init__(self, message: str, code: str = "502_ORACLE_UPSTREAM") -> None:
        super().__init__(message)
        self.code = code


class OracleNotConfiguredError(OracleError):
    """Raised when no credential/provider is available."""

    def __init__(self, message: str = "AI analysis not configured") -> None:
        super().__init__(message, code="503_ORACLE_NOT_CONFIGURED")


class OracleProviderError(OracleError):
    """Raised when the upstream provider fails or times out."""


class OracleRateLimitError(OracleProviderError):
    """Raised on HTTP 429 from the provider."""

    def __init__(self, message: str = "Rate limited by scoring service") -> None:
        super().__init__(message, code="429_RATE_LIMIT")


class OracleResponseError(OracleError):
    """Raised when a provider response carries no usable text."""
