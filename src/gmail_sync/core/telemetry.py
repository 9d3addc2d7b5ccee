"""Bounded in-memory log of sync errors and Gmail API calls."""

from __future__ import annotations

import logging
import threading
import traceback
from collections import deque
from dataclasses import replace

from gmail_sync.core.exceptions import AuthenticationError, ParseError, ProviderError, StorageError
from gmail_sync.core.models import ApiCallRecord, ErrorCategory, SyncError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ERRORS = 50
DEFAULT_MAX_API_CALLS = 20

# category -> (label, suggested remedy)
ERROR_CATEGORIES: dict[ErrorCategory, tuple[str, str]] = {
    ErrorCategory.INSUFFICIENT_SCOPE: (
        "Insufficient OAuth scope",
        "Disconnect and re-authorize the Gmail account with the gmail.readonly scope.",
    ),
    ErrorCategory.PERMISSION_DENIED: (
        "Permission denied",
        "Check that the Gmail API is enabled for the project and the account granted access.",
    ),
    ErrorCategory.AUTH_EXPIRED: (
        "Authentication expired",
        "Re-run the authorization flow to obtain a fresh token.",
    ),
    ErrorCategory.RATE_LIMITED: (
        "Rate limit exceeded",
        "Reduce the batch size or wait for the per-user quota to reset.",
    ),
    ErrorCategory.NOT_FOUND: (
        "Not found",
        "The message or history id no longer exists; it will be skipped.",
    ),
    ErrorCategory.TRANSIENT: (
        "Transient provider error",
        "Usually temporary; the message will be picked up by a later incremental sync.",
    ),
    ErrorCategory.PARSE: (
        "Malformed message",
        "The message structure could not be parsed and was skipped.",
    ),
    ErrorCategory.STORAGE: (
        "Storage failure",
        "Check the database file is writable and not locked by another process.",
    ),
    ErrorCategory.UNKNOWN: (
        "Unexpected error",
        "Inspect the stack trace attached to this error.",
    ),
}


def classify(category: ErrorCategory) -> tuple[str, str]:
    """Return the human-readable label and remedy for a category."""
    return ERROR_CATEGORIES.get(category, ERROR_CATEGORIES[ErrorCategory.UNKNOWN])


def category_of(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, ProviderError):
        return exc.category
    if isinstance(exc, AuthenticationError):
        return ErrorCategory.AUTH_EXPIRED
    if isinstance(exc, ParseError):
        return ErrorCategory.PARSE
    if isinstance(exc, StorageError):
        return ErrorCategory.STORAGE
    return ErrorCategory.UNKNOWN


def error_from_exception(
    operation: str,
    exc: BaseException,
    *,
    message_id: str | None = None,
    is_critical: bool = False,
    retry_count: int = 0,
) -> SyncError:
    """Build a SyncError carrying the exception text, trace and provider response."""
    return SyncError(
        operation=operation,
        error=str(exc),
        message_id=message_id,
        stack_trace="".join(traceback.format_exception(exc)),
        api_response=exc.response if isinstance(exc, ProviderError) else None,
        retry_count=retry_count,
        is_critical=is_critical,
        category=category_of(exc),
    )


class TelemetryLog:
    """Ring buffers of the most recent errors and API calls.

    Oldest entries are evicted first; iteration order is chronological.
    """

    def __init__(
        self,
        max_errors: int = DEFAULT_MAX_ERRORS,
        max_api_calls: int = DEFAULT_MAX_API_CALLS,
    ) -> None:
        self._errors: deque[SyncError] = deque(maxlen=max_errors)
        self._api_calls: deque[ApiCallRecord] = deque(maxlen=max_api_calls)
        self._lock = threading.Lock()

    def record_error(self, error: SyncError) -> SyncError:
        """Attach the category label and remedy, then append the error."""
        label, remedy = classify(error.category)
        error = replace(error, category_label=label, remedy=remedy)
        with self._lock:
            self._errors.append(error)
        return error

    def record_api_call(self, record: ApiCallRecord) -> None:
        with self._lock:
            self._api_calls.append(record)

    def clear_errors(self) -> None:
        with self._lock:
            self._errors.clear()
        logger.info("Cleared sync error log")

    def clear(self) -> None:
        with self._lock:
            self._errors.clear()
            self._api_calls.clear()

    @property
    def errors(self) -> tuple[SyncError, ...]:
        with self._lock:
            return tuple(self._errors)

    @property
    def api_calls(self) -> tuple[ApiCallRecord, ...]:
        with self._lock:
            return tuple(self._api_calls)
