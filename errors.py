#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Optional


class ConfigError(RuntimeError):
    """Raised when configuration or a required input file is missing or invalid."""


class FetchError(Exception):
    """Base class for feed fetch failures.

    Attributes:
        url: The request URL that failed, when known.
        retryable: Whether FeedClient may retry the request.
    """

    retryable = False

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class FetchTimeoutError(FetchError):
    """The request did not complete within the per-attempt timeout."""

    retryable = True


class ConnectionResetFetchError(FetchError):
    """The connection was reset, refused or dropped mid-response."""

    retryable = True


class HttpStatusError(FetchError):
    """The server answered with a non-2xx status."""

    def __init__(self, status: int, url: Optional[str] = None):
        super().__init__(f"Request failed with status code {status}", url)
        self.status = status


class MalformedPayloadError(FetchError):
    """The response body is not a readable feed envelope."""


class StoreError(RuntimeError):
    """Raised when reading or writing local state fails."""


class BusyError(RuntimeError):
    """Raised when a run is started while another run owns the same store."""


class WalkerClosedError(RuntimeError):
    """Raised when a run is requested on a walker that was destroyed."""


class LockConflictError(RuntimeError):
    """Raised when another process holds the data directory lock."""

    def __init__(self, lock_path: str):
        super().__init__(f"Data directory is locked by another process: {lock_path}")
        self.lock_path = lock_path


__all__ = [
    "BusyError",
    "ConfigError",
    "ConnectionResetFetchError",
    "FetchError",
    "FetchTimeoutError",
    "HttpStatusError",
    "LockConflictError",
    "MalformedPayloadError",
    "StoreError",
    "WalkerClosedError",
]
