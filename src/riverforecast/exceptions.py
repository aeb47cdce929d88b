"""Exception types for riverforecast.

Only StorageError and NoDataAvailableError are expected to reach callers of
the fallback layer. FetchError is recovered locally by serving stale cache,
and malformed cached payloads never raise at all: the codec returns a
DecodeError value instead (see riverforecast.cache.codec).
"""

from typing import Optional


class RiverForecastError(Exception):
    """Base class for all riverforecast errors."""


class StorageError(RiverForecastError):
    """Backing store or cache directory is unreachable or corrupt."""


class FetchError(RiverForecastError):
    """Upstream API failure (timeout, non-success status, transport error).

    Attributes:
        status_code: HTTP status code if the server answered, else None
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class FileMissingError(RiverForecastError):
    """A file-cache row points at a file that no longer exists on disk."""


class NoDataAvailableError(RiverForecastError):
    """No cached data of any freshness and the remote fetch was impossible.

    Attributes:
        category: Data category that was requested
        reach_id: Reach identifier that was requested
        cause: FetchError that triggered the fallback, None if offline
    """

    def __init__(self, category, reach_id: str, cause: Optional[Exception] = None):
        self.category = category
        self.reach_id = reach_id
        self.cause = cause
        if cause is None:
            reason = "no network connection"
        else:
            reason = f"fetch failed: {cause}"
        super().__init__(
            f"No data available for {category.value} of reach {reach_id} ({reason})"
        )
