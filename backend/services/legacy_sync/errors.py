"""
Legacy Material Request Sync - Exceptions

Only LegacyFetchError is allowed to escape a sync run. Everything raised while
processing a single row is caught and reported as a row-level error.
"""

from typing import Optional


class LegacySyncError(Exception):
    """Base exception for the legacy sync engine."""


class LegacyFetchError(LegacySyncError):
    """The legacy system could not be read (network, timeout, non-2xx)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RequestNumberExhaustedError(LegacySyncError):
    """No free request number was found within the allowed suffix range."""
