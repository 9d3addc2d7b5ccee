"""Gmail API client for message listing, fetching, batch fetching and history."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from google.auth.exceptions import RefreshError
from googleapiclient.discovery import Resource
from googleapiclient.errors import HttpError
from googleapiclient.http import BatchHttpRequest

from gmail_sync.core.exceptions import ProviderError, RateLimitError
from gmail_sync.core.models import (
    ApiCallRecord,
    ErrorCategory,
    HistoryPage,
    MessagePage,
    MessageStub,
)
from gmail_sync.core.telemetry import TelemetryLog

logger = logging.getLogger(__name__)

# Gmail rejects batch requests with more than 100 calls.
BATCH_LIMIT = 100

_SCOPE_REASONS = {"insufficientPermissions", "ACCESS_TOKEN_SCOPE_INSUFFICIENT"}
_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "RATE_LIMIT_EXCEEDED"}


def _error_reasons(exc: HttpError) -> set[str]:
    """Collect the machine-readable ``reason`` codes of a Google API error."""
    details = getattr(exc, "error_details", None)
    if not isinstance(details, list):
        return set()
    return {d["reason"] for d in details if isinstance(d, dict) and d.get("reason")}


def classify_error(exc: BaseException) -> ErrorCategory:
    """Map an exception raised by the Google client to an ErrorCategory."""
    if isinstance(exc, ProviderError):
        return exc.category
    if isinstance(exc, RefreshError):
        return ErrorCategory.AUTH_EXPIRED
    if not isinstance(exc, HttpError):
        return ErrorCategory.TRANSIENT

    status = exc.status_code
    reasons = _error_reasons(exc)
    if status == 429 or reasons & _RATE_LIMIT_REASONS:
        return ErrorCategory.RATE_LIMITED
    if status == 401:
        return ErrorCategory.AUTH_EXPIRED
    if status == 403:
        if reasons & _SCOPE_REASONS:
            return ErrorCategory.INSUFFICIENT_SCOPE
        return ErrorCategory.PERMISSION_DENIED
    if status == 404:
        return ErrorCategory.NOT_FOUND
    if status is not None and status >= 500:
        return ErrorCategory.TRANSIENT
    return ErrorCategory.UNKNOWN


def status_of(exc: BaseException) -> int | None:
    return exc.status_code if isinstance(exc, HttpError) else None


def _response_of(exc: BaseException) -> Any:
    if isinstance(exc, HttpError):
        return exc.content.decode("utf-8", errors="replace") if exc.content else ""
    return str(exc)


class GmailClient:
    """Thin wrapper around the Gmail API that records every call in a TelemetryLog.

    The underlying ``Resource`` may be passed directly or built lazily from
    ``service_factory`` once credentials are available.
    """

    def __init__(
        self,
        service: Resource | None = None,
        user_id: str = "me",
        *,
        service_factory: Callable[[], Resource] | None = None,
        telemetry: TelemetryLog | None = None,
        max_retries: int = 5,
        initial_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 60.0,
        num_retries: int = 3,
    ) -> None:
        if service is None and service_factory is None:
            raise ValueError("Either service or service_factory is required")
        self._service = service
        self._service_factory = service_factory
        self._user_id = user_id
        self._telemetry = telemetry
        self._max_retries = max_retries
        self._initial_backoff = initial_backoff_seconds
        self._max_backoff = max_backoff_seconds
        self._num_retries = num_retries

    @property
    def service(self) -> Resource:
        if self._service is None:
            assert self._service_factory is not None
            self._service = self._service_factory()
        return self._service

    def _record(
        self,
        endpoint: str,
        method: str,
        started: float,
        status_code: int,
        response: Any = "success",
    ) -> None:
        if self._telemetry is None:
            return
        elapsed_ms = (time.monotonic() - started) * 1000
        self._telemetry.record_api_call(
            ApiCallRecord(
                endpoint=endpoint,
                method=method,
                status_code=status_code,
                response_time_ms=round(elapsed_ms, 2),
                response=response if status_code >= 400 else "success",
                timestamp=datetime.now(UTC),
            )
        )

    def _sleep_backoff(self, backoff: float, context: str, attempt: int) -> float:
        sleep_time = min(backoff, self._max_backoff)
        jitter = random.uniform(0, sleep_time)
        logger.warning(
            "Rate limited during %s (attempt %d/%d), sleeping %.2fs",
            context, attempt + 1, self._max_retries, jitter,
        )
        time.sleep(jitter)
        return min(backoff * 2, self._max_backoff)

    def _execute_with_retry(
        self, request: Any, context: str, endpoint: str, method: str = "GET"
    ) -> Any:
        """Execute a single API request with exponential backoff on rate limits.

        Raises:
            RateLimitError: When retries are exhausted on rate limit errors.
            ProviderError: On any other API error, with its category set.
        """
        backoff = self._initial_backoff

        for attempt in range(self._max_retries + 1):
            started = time.monotonic()
            try:
                response = request.execute(num_retries=self._num_retries)
            except Exception as e:
                status = status_of(e)
                self._record(endpoint, method, started, status or 0, _response_of(e))
                category = classify_error(e)
                if category is ErrorCategory.RATE_LIMITED:
                    if attempt >= self._max_retries:
                        raise RateLimitError(
                            f"Rate limited during {context} after "
                            f"{self._max_retries} retries: {e}",
                            status_code=status,
                            response=_response_of(e),
                        ) from e
                    backoff = self._sleep_backoff(backoff, context, attempt)
                    continue
                raise ProviderError(
                    f"Failed to {context}: {e}",
                    category=category,
                    status_code=status,
                    response=_response_of(e),
                ) from e
            self._record(endpoint, method, started, 200)
            return response

        raise RateLimitError(f"Rate limited during {context} after {self._max_retries} retries")

    def get_profile(self) -> dict[str, Any]:
        """Return the account profile (emailAddress, messagesTotal, historyId, ...)."""
        request = self.service.users().getProfile(userId=self._user_id)
        return self._execute_with_retry(request, "get profile", "users/me/profile")

    def list_messages(
        self,
        query: str = "",
        page_size: int = 100,
        page_token: str | None = None,
    ) -> MessagePage:
        """Fetch one page of message ids matching ``query``.

        Args:
            query: Gmail search query.
            page_size: Number of ids per page (1-500).
            page_token: Continuation token from a previous page.
        """
        kwargs: dict[str, Any] = {
            "userId": self._user_id,
            "maxResults": page_size,
        }
        if query:
            kwargs["q"] = query
        if page_token:
            kwargs["pageToken"] = page_token

        request = self.service.users().messages().list(**kwargs)
        response = self._execute_with_retry(request, "list messages", "users/me/messages")

        stubs = tuple(
            MessageStub(message_id=msg["id"], thread_id=msg.get("threadId", ""))
            for msg in response.get("messages", [])
        )
        logger.debug("Listed %d message IDs (page)", len(stubs))
        return MessagePage(
            stubs=stubs,
            next_page_token=response.get("nextPageToken"),
            result_size_estimate=int(response.get("resultSizeEstimate", 0)),
        )

    def get_message(self, message_id: str, fmt: str = "full") -> dict[str, Any]:
        """Fetch a single message."""
        request = self.service.users().messages().get(
            userId=self._user_id, id=message_id, format=fmt
        )
        return self._execute_with_retry(
            request, f"get message {message_id}", f"users/me/messages/{message_id}"
        )

    def get_messages_batch(self, message_ids: list[str], fmt: str = "full") -> list[dict[str, Any]]:
        """Fetch full message bodies using HTTP batch requests.

        Ids whose individual sub-request fails are left out of the result;
        callers detect them by comparing ids.

        Raises:
            RateLimitError: When a chunk stays rate limited after retries.
            ProviderError: When a batch request as a whole fails.
        """
        results: list[dict[str, Any]] = []
        for start in range(0, len(message_ids), BATCH_LIMIT):
            results.extend(self._fetch_batch_chunk(message_ids[start : start + BATCH_LIMIT], fmt))
        logger.debug("Batch fetched %d/%d messages", len(results), len(message_ids))
        return results

    def _fetch_batch_chunk(self, message_ids: list[str], fmt: str) -> list[dict[str, Any]]:
        backoff = self._initial_backoff
        fetched: dict[str, dict[str, Any]] = {}
        pending = list(message_ids)

        for attempt in range(self._max_retries + 1):
            rate_limited: list[str] = []
            failed: list[str] = []

            def _callback(
                request_id: str,
                response: dict[str, Any] | None,
                exception: Exception | None,
            ) -> None:
                if exception is not None:
                    if classify_error(exception) is ErrorCategory.RATE_LIMITED:
                        rate_limited.append(request_id)
                    else:
                        logger.warning("Batch fetch error for %s: %s", request_id, exception)
                        failed.append(request_id)
                elif response:
                    fetched[request_id] = response

            batch: BatchHttpRequest = self.service.new_batch_http_request(callback=_callback)
            for msg_id in pending:
                batch.add(
                    self.service.users().messages().get(userId=self._user_id, id=msg_id, format=fmt),
                    request_id=msg_id,
                )

            started = time.monotonic()
            try:
                batch.execute()
            except Exception as e:
                status = status_of(e)
                self._record("batch/gmail/v1", "POST", started, status or 0, _response_of(e))
                category = classify_error(e)
                if category is not ErrorCategory.RATE_LIMITED:
                    raise ProviderError(
                        f"Batch request failed: {e}",
                        category=category,
                        status_code=status,
                        response=_response_of(e),
                    ) from e
                rate_limited = [mid for mid in pending if mid not in fetched]
            else:
                self._record("batch/gmail/v1", "POST", started, 200)

            if not rate_limited:
                if failed:
                    logger.warning(
                        "Batch had %d errors out of %d requests", len(failed), len(message_ids)
                    )
                return [fetched[mid] for mid in message_ids if mid in fetched]

            if attempt >= self._max_retries:
                raise RateLimitError(
                    f"Rate limited during batch fetch after {self._max_retries} retries"
                )
            pending = rate_limited
            backoff = self._sleep_backoff(backoff, "batch fetch", attempt)

        raise RateLimitError(f"Rate limited during batch fetch after {self._max_retries} retries")

    def get_history(self, start_history_id: str, page_token: str | None = None) -> HistoryPage:
        """Fetch one page of mailbox history since ``start_history_id``.

        Only ``messageAdded`` events are requested; deletions are not applied.
        """
        kwargs: dict[str, Any] = {
            "userId": self._user_id,
            "startHistoryId": start_history_id,
            "historyTypes": ["messageAdded"],
        }
        if page_token:
            kwargs["pageToken"] = page_token

        request = self.service.users().history().list(**kwargs)
        response = self._execute_with_retry(request, "list history", "users/me/history")

        added: list[str] = []
        for item in response.get("history", []):
            for entry in item.get("messagesAdded", []):
                msg_id = entry.get("message", {}).get("id")
                if msg_id and msg_id not in added:
                    added.append(msg_id)

        return HistoryPage(
            added_message_ids=tuple(added),
            history_id=str(response.get("historyId", start_history_id)),
            next_page_token=response.get("nextPageToken"),
        )
