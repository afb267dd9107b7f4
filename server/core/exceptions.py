"""Cache core exception hierarchy."""

from typing import Optional

from constants import is_retryable_status


class CacheCoreError(Exception):
    """Base exception for all cache core errors."""


class StoreUnavailableError(CacheCoreError):
    """The shared key-value store is not connected or not reachable."""


class UpstreamError(CacheCoreError):
    """An upstream fetch failed with a non-2xx status or a network error.

    ``status`` is None when no response was received at all.
    """

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        if self.status is None:
            return True
        return is_retryable_status(self.status)
