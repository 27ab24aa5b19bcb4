"""
Exception types raised by the page cache.
"""
from typing import Optional


class PageCacheError(Exception):
    """Base class for page cache errors."""


class ConfigError(PageCacheError, ValueError):
    """
    Invalid cache configuration (schedule string, TTL, timezone).

    Raised at construction time and never recovered from.
    `reason` is a short machine-readable tag such as "field count".
    """

    def __init__(self, reason: str, detail: Optional[str] = None):
        self.reason = reason
        self.detail = detail
        message = f"{reason}: {detail}" if detail else reason
        super().__init__(message)


class EntryStoreError(PageCacheError, OSError):
    """Entry store read, write or delete failure."""

    def __init__(self, operation: str, key: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.key = key
        self.cause = cause
        super().__init__(f"Entry store {operation} failed for {key}: {cause}")


class MethodNotAllowed(PageCacheError):
    """A non-GET request reached a route where caching is enforced."""

    def __init__(self, method: str, key: str):
        self.method = method
        self.key = key
        super().__init__(f"Only GET requests can be cached (got {method})")
