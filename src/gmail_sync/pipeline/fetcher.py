"""Page-at-a-time message fetching with per-message fallback."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from gmail_sync.core.exceptions import GmailSyncError
from gmail_sync.core.interfaces import ProviderClient
from gmail_sync.core.telemetry import TelemetryLog, error_from_exception

logger = logging.getLogger(__name__)


@dataclass
class FetchedPage:
    """Full message bodies for one listed page."""

    page_token: str | None
    next_page_token: str | None
    requested_ids: list[str] = field(default_factory=list)
    messages: list[dict[str, Any]] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)
    listed_count: int = 0

    @property
    def exhausted(self) -> bool:
        return self.listed_count == 0


class BatchFetcher:
    """Turns "get the next N messages" into Gmail list and batch-get calls.

    A failed batch call degrades to one ``get_message`` per id. Individual
    failures are logged to the TelemetryLog and the message is left out.
    """

    def __init__(
        self,
        client: ProviderClient,
        telemetry: TelemetryLog,
        *,
        inter_batch_delay_seconds: float = 0.25,
        message_format: str = "full",
    ) -> None:
        self._client = client
        self._telemetry = telemetry
        self._delay = inter_batch_delay_seconds
        self._format = message_format

    def fetch_page(
        self,
        query: str,
        batch_size: int,
        page_token: str | None = None,
        *,
        skip: int = 0,
        limit: int | None = None,
    ) -> FetchedPage:
        """List one page of ids and fetch their bodies.

        Args:
            query: Gmail search query.
            batch_size: Page size requested from the list API.
            page_token: Continuation token, None for the first page.
            skip: Ids at the head of the page that were already processed.
            limit: Maximum number of ids to fetch from this page.

        Raises:
            GmailSyncError: If the list call itself fails.
        """
        page = self._client.list_messages(query=query, page_size=batch_size, page_token=page_token)
        ids = page.ids[skip:]
        if limit is not None:
            ids = ids[: max(limit, 0)]

        result = FetchedPage(
            page_token=page_token,
            next_page_token=page.next_page_token,
            requested_ids=ids,
            listed_count=len(page.ids),
        )
        if ids:
            result.messages, result.failed_ids = self.fetch_bodies(ids)
        return result

    def fetch_bodies(self, message_ids: list[str]) -> tuple[list[dict[str, Any]], list[str]]:
        """Fetch full bodies, falling back to per-message calls.

        Returns:
            The fetched messages in request order and the ids that failed.
        """
        fetched: dict[str, dict[str, Any]] = {}
        try:
            for raw in self._client.get_messages_batch(message_ids, self._format):
                if isinstance(raw, dict) and raw.get("id"):
                    fetched[raw["id"]] = raw
        except GmailSyncError as e:
            logger.warning(
                "Batch fetch of %d messages failed, fetching individually: %s",
                len(message_ids), e,
            )
            self._telemetry.record_error(error_from_exception("get_messages_batch", e))

        missing = [mid for mid in message_ids if mid not in fetched]
        if missing and len(missing) < len(message_ids):
            logger.info("Batch response omitted %d messages, fetching individually", len(missing))

        failed: list[str] = []
        for msg_id in missing:
            try:
                fetched[msg_id] = self._client.get_message(msg_id, self._format)
            except GmailSyncError as e:
                logger.warning("Failed to fetch message %s: %s", msg_id, e)
                self._telemetry.record_error(
                    error_from_exception("get_message", e, message_id=msg_id, retry_count=1)
                )
                failed.append(msg_id)

        return [fetched[mid] for mid in message_ids if mid in fetched], failed

    def fetch_message(self, message_id: str) -> dict[str, Any] | None:
        """Fetch one message, logging and returning None on failure."""
        try:
            return self._client.get_message(message_id, self._format)
        except GmailSyncError as e:
            logger.warning("Failed to fetch message %s: %s", message_id, e)
            self._telemetry.record_error(error_from_exception("get_message", e, message_id=message_id))
            return None

    def throttle(self) -> None:
        """Pause between batches to stay under the provider's rate limits."""
        if self._delay > 0:
            time.sleep(self._delay)
