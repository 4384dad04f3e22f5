# src/estuary_sync/exceptions.py
"""Custom exceptions for the estuary-sync application."""

from typing import Optional


class EstuarySyncError(Exception):
    """Base exception for all application-specific errors."""

    pass


class ConfigError(EstuarySyncError):
    """Raised for configuration-related issues."""

    pass


class SourceError(EstuarySyncError):
    """Raised when the source database cannot be queried or updated."""

    pass


class StagingError(EstuarySyncError):
    """Raised when a staged object cannot be read, written or parsed."""

    pass


class IndexRequestError(EstuarySyncError):
    """Raised when a request to the search index fails as a whole."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code: Optional[int] = status_code


class NoCheckpointLogsError(EstuarySyncError):
    """Raised when no checkpoint log exists for the requested workflow."""

    pass
