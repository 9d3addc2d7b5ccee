"""Custom exceptions for Gmail Sync."""

from __future__ import annotations

from typing import Any

from gmail_sync.core.models import ErrorCategory


class GmailSyncError(Exception):
    """Base exception for all Gmail Sync errors."""


class AuthenticationError(GmailSyncError):
    """Missing, expired or scope-insufficient Gmail credentials."""


class ProviderError(GmailSyncError):
    """A Gmail API call failed.

    The category is decided from the HTTP status and Google error reason
    when the error is raised, so callers never inspect the message text.
    """

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        status_code: int | None = None,
        response: Any = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.status_code = status_code
        self.response = response


class RateLimitError(ProviderError):
    """Gmail API rate limit exceeded after retries."""

    def __init__(self, message: str, *, status_code: int | None = 429, response: Any = None) -> None:
        super().__init__(
            message,
            category=ErrorCategory.RATE_LIMITED,
            status_code=status_code,
            response=response,
        )


class ParseError(GmailSyncError):
    """Failed to parse a raw Gmail message."""


class StorageError(GmailSyncError):
    """A database write failed for a reason other than a duplicate."""


class SyncAlreadyRunningError(GmailSyncError):
    """A sync was requested while another one is in progress."""
