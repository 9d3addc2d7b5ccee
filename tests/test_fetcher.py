"""Tests for BatchFetcher: batch fetch with per-message fallback."""

from __future__ import annotations

from typing import Any
from unittest.mock import patch

import pytest

from conftest import FakeGmailClient
from gmail_sync.core.exceptions import ProviderError
from gmail_sync.core.models import ErrorCategory
from gmail_sync.core.telemetry import TelemetryLog
from gmail_sync.pipeline.fetcher import BatchFetcher


@pytest.fixture
def telemetry() -> TelemetryLog:
    return TelemetryLog()


@pytest.fixture
def fetcher(fake_client: FakeGmailClient, telemetry: TelemetryLog) -> BatchFetcher:
    return BatchFetcher(fake_client, telemetry, inter_batch_delay_seconds=0.0)


class TestFetchPage:
    def test_first_page(self, fetcher: BatchFetcher, fake_client: FakeGmailClient) -> None:
        page = fetcher.fetch_page("q", 2)

        assert page.page_token is None
        assert page.next_page_token == "2"
        assert page.requested_ids == ["msg_1", "msg_2"]
        assert [m["id"] for m in page.messages] == ["msg_1", "msg_2"]
        assert page.failed_ids == []
        assert fake_client.list_calls[0] == {"query": "q", "page_size": 2, "page_token": None}

    def test_skip_and_limit_within_page(self, fetcher: BatchFetcher) -> None:
        page = fetcher.fetch_page("q", 3, "0", skip=1, limit=1)

        assert page.requested_ids == ["msg_2"]
        assert page.listed_count == 3
        assert not page.exhausted

    def test_empty_listing_is_exhausted(self, telemetry: TelemetryLog) -> None:
        fetcher = BatchFetcher(FakeGmailClient([]), telemetry, inter_batch_delay_seconds=0.0)
        page = fetcher.fetch_page("q", 10)
        assert page.exhausted
        assert page.messages == []

    def test_list_failure_propagates(
        self, fetcher: BatchFetcher, fake_client: FakeGmailClient
    ) -> None:
        fake_client.list_errors[1] = ProviderError("Failed to list messages: 500")
        with pytest.raises(ProviderError):
            fetcher.fetch_page("q", 2)


class TestFetchBodies:
    def test_batch_failure_degrades_to_individual_fetches(
        self, fetcher: BatchFetcher, fake_client: FakeGmailClient, telemetry: TelemetryLog
    ) -> None:
        fake_client.batch_error = ProviderError("Batch request failed: 500")

        messages, failed = fetcher.fetch_bodies(["msg_1", "msg_2", "msg_3"])

        assert [m["id"] for m in messages] == ["msg_1", "msg_2", "msg_3"]
        assert failed == []
        assert fake_client.get_calls == ["msg_1", "msg_2", "msg_3"]
        (error,) = telemetry.errors
        assert error.operation == "get_messages_batch"
        assert error.is_critical is False

    def test_individual_failure_is_logged_and_skipped(
        self, fetcher: BatchFetcher, fake_client: FakeGmailClient, telemetry: TelemetryLog
    ) -> None:
        fake_client.message_errors["msg_2"] = ProviderError(
            "Failed to get message msg_2", category=ErrorCategory.TRANSIENT, status_code=500
        )

        messages, failed = fetcher.fetch_bodies(["msg_1", "msg_2", "msg_3"])

        assert [m["id"] for m in messages] == ["msg_1", "msg_3"]
        assert failed == ["msg_2"]
        assert fake_client.get_calls == ["msg_2"]
        (error,) = telemetry.errors
        assert error.operation == "get_message"
        assert error.message_id == "msg_2"
        assert error.retry_count == 1
        assert error.category is ErrorCategory.TRANSIENT

    def test_preserves_request_order(self, fetcher: BatchFetcher) -> None:
        messages, _ = fetcher.fetch_bodies(["msg_3", "msg_1"])
        assert [m["id"] for m in messages] == ["msg_3", "msg_1"]


class TestFetchMessage:
    def test_returns_message(self, fetcher: BatchFetcher) -> None:
        raw: dict[str, Any] | None = fetcher.fetch_message("msg_1")
        assert raw is not None and raw["id"] == "msg_1"

    def test_failure_returns_none_and_logs(
        self, fetcher: BatchFetcher, telemetry: TelemetryLog
    ) -> None:
        assert fetcher.fetch_message("missing") is None
        assert telemetry.errors[0].category is ErrorCategory.NOT_FOUND


def test_throttle_sleeps_configured_delay(
    fake_client: FakeGmailClient, telemetry: TelemetryLog
) -> None:
    fetcher = BatchFetcher(fake_client, telemetry, inter_batch_delay_seconds=0.25)
    with patch("gmail_sync.pipeline.fetcher.time.sleep") as mock_sleep:
        fetcher.throttle()
    mock_sleep.assert_called_once_with(0.25)
