"""Errors raised by result cache backends."""

from __future__ import annotations


class ResultCacheError(RuntimeError):
    """Raised when a cache backend fails to read, write, or prune entries."""

    def __init__(self, message: str, code: str = "500_CACHE_BACKEND") -> None:
        super().__init__(message)
        self.code = code
