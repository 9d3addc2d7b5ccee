"""Tests for MessageNormalizer: raw Gmail API payloads to NormalizedMessage."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from unittest.mock import patch

import pytest

from conftest import make_raw_message
from gmail_sync.core.exceptions import ParseError
from gmail_sync.core.normalizer import EPOCH, MessageNormalizer, mime_category, strip_html


@pytest.fixture
def normalizer() -> MessageNormalizer:
    return MessageNormalizer()


class TestHeaders:
    def test_sender_is_lowercased_with_display_name(
        self, normalizer: MessageNormalizer, plain_raw: dict[str, Any]
    ) -> None:
        message = normalizer.normalize(plain_raw)
        assert message.sender == "alice@example.com"
        assert message.sender_name == "Alice Example"

    def test_recipient_lists(self, normalizer: MessageNormalizer, plain_raw: dict[str, Any]) -> None:
        message = normalizer.normalize(plain_raw)
        assert message.to == ("me@example.com", "bob@example.com")
        assert message.cc == ("carol@example.com",)
        assert message.bcc == ()
        assert message.recipient_names == {"me@example.com": "Me", "carol@example.com": "Carol"}

    def test_threading_headers(self, normalizer: MessageNormalizer, plain_raw: dict[str, Any]) -> None:
        message = normalizer.normalize(plain_raw)
        assert message.in_reply_to == "<prev@example.com>"
        assert message.references == ("<root@example.com>", "<prev@example.com>")

    def test_header_names_are_case_insensitive(self, normalizer: MessageNormalizer) -> None:
        raw = make_raw_message("m1", subject=None, extra_headers=[{"name": "SUBJECT", "value": "Hi"}])
        assert normalizer.normalize(raw).subject == "Hi"

    def test_missing_subject_uses_placeholder(self, normalizer: MessageNormalizer) -> None:
        raw = make_raw_message("m1", subject=None)
        assert normalizer.normalize(raw).subject == "(no subject)"

    def test_missing_from_leaves_sender_empty(self, normalizer: MessageNormalizer) -> None:
        raw = make_raw_message("m1", sender="undisclosed-recipients:;")
        message = normalizer.normalize(raw)
        assert message.sender == ""
        assert normalizer.contacts_for(message) == [("me@example.com", "")]

    def test_duplicate_recipients_collapsed(self, normalizer: MessageNormalizer) -> None:
        raw = make_raw_message("m1", to="a@example.com, A@EXAMPLE.com, b@example.com")
        assert normalizer.normalize(raw).to == ("a@example.com", "b@example.com")


class TestBody:
    def test_prefers_plain_text(self, normalizer: MessageNormalizer) -> None:
        raw = make_raw_message("m1", plain="plain body", html_body="<p>html body</p>")
        message = normalizer.normalize(raw)
        assert message.text == "plain body"
        assert message.body_format == "plain"

    def test_html_only_is_extracted(
        self, normalizer: MessageNormalizer, html_raw: dict[str, Any]
    ) -> None:
        message = normalizer.normalize(html_raw)
        assert message.body_format == "html"
        assert "Friday" in message.text
        assert "<b>" not in message.text
        assert "color: red" not in message.text

    def test_html_falls_back_to_tag_stripping(
        self, normalizer: MessageNormalizer, html_raw: dict[str, Any]
    ) -> None:
        with patch("gmail_sync.core.normalizer.trafilatura.extract", return_value=None):
            message = normalizer.normalize(html_raw)
        assert message.text == "Meeting moved to Friday & room 4."
        assert message.body_format == "html"

    def test_snippet_used_when_no_body(self, normalizer: MessageNormalizer) -> None:
        raw = make_raw_message("m1", plain=None, snippet="Tom &amp; Jerry")
        raw["payload"] = {"mimeType": "text/plain", "headers": raw["payload"]["headers"]}
        message = normalizer.normalize(raw)
        assert message.text == "Tom & Jerry"
        assert message.body_format == "snippet"

    def test_empty_body_and_snippet(self, normalizer: MessageNormalizer) -> None:
        raw = make_raw_message("m1", plain=None, snippet="")
        raw["payload"] = {"headers": raw["payload"]["headers"]}
        message = normalizer.normalize(raw)
        assert message.text == ""
        assert message.body_format == "empty"

    def test_nested_multipart(self, normalizer: MessageNormalizer, attachment_raw: dict[str, Any]) -> None:
        assert normalizer.normalize(attachment_raw).text == "See attached."


class TestAttachments:
    def test_collects_metadata_and_categories(
        self, normalizer: MessageNormalizer, attachment_raw: dict[str, Any]
    ) -> None:
        message = normalizer.normalize(attachment_raw)
        assert [a.filename for a in message.attachments] == ["report.pdf", "chart.png"]
        assert message.attachments[0].size == 2048
        assert message.attachment_categories == ("document", "image")

    def test_no_attachments(self, normalizer: MessageNormalizer, plain_raw: dict[str, Any]) -> None:
        assert normalizer.normalize(plain_raw).attachments == ()

    @pytest.mark.parametrize(
        ("mime_type", "category"),
        [
            ("image/jpeg", "image"),
            ("application/pdf", "document"),
            ("application/vnd.openxmlformats-officedocument.wordprocessingml.document", "document"),
            ("text/calendar", "calendar"),
            ("application/zip", "archive"),
            ("application/octet-stream", "other"),
            ("", "other"),
        ],
    )
    def test_mime_category(self, mime_type: str, category: str) -> None:
        assert mime_category(mime_type) == category


class TestTimestamp:
    def test_internal_date_milliseconds(self, normalizer: MessageNormalizer) -> None:
        raw = make_raw_message("m1", internal_date="1705314600000")
        assert normalizer.normalize(raw).timestamp == datetime(2024, 1, 15, 10, 30, tzinfo=UTC)

    def test_date_header_when_internal_date_missing(self, normalizer: MessageNormalizer) -> None:
        raw = make_raw_message(
            "m1",
            internal_date=None,
            extra_headers=[{"name": "Date", "value": "Mon, 15 Jan 2024 11:30:00 +0100"}],
        )
        assert normalizer.normalize(raw).timestamp == datetime(2024, 1, 15, 10, 30, tzinfo=UTC)

    def test_unparseable_date_falls_back_to_epoch(self, normalizer: MessageNormalizer) -> None:
        raw = make_raw_message(
            "m1", internal_date="soon", extra_headers=[{"name": "Date", "value": "not a date"}]
        )
        assert normalizer.normalize(raw).timestamp == EPOCH


class TestMalformed:
    def test_non_dict_raises_parse_error(self, normalizer: MessageNormalizer) -> None:
        with pytest.raises(ParseError):
            normalizer.normalize("not a message")  # type: ignore[arg-type]

    def test_missing_id_raises_parse_error(self, normalizer: MessageNormalizer) -> None:
        raw = make_raw_message("m1")
        del raw["id"]
        with pytest.raises(ParseError):
            normalizer.normalize(raw)

    def test_invalid_payload_raises_parse_error(self, normalizer: MessageNormalizer) -> None:
        raw = make_raw_message("m1")
        raw["payload"] = ["not", "a", "dict"]
        with pytest.raises(ParseError, match="invalid payload"):
            normalizer.normalize(raw)

    def test_missing_payload_is_tolerated(self, normalizer: MessageNormalizer) -> None:
        message = normalizer.normalize({"id": "m1", "threadId": "t1", "snippet": "hi"})
        assert message.message_id == "m1"
        assert message.text == "hi"
        assert message.subject == "(no subject)"


class TestContactsFor:
    def test_sender_first_then_recipients_deduplicated(
        self, normalizer: MessageNormalizer
    ) -> None:
        raw = make_raw_message(
            "m1",
            sender="Alice <alice@example.com>",
            to="Bob <bob@example.com>, alice@example.com",
            cc="bob@example.com, Dan <dan@example.com>",
        )
        pairs = normalizer.contacts_for(normalizer.normalize(raw))
        assert pairs == [
            ("alice@example.com", "Alice"),
            ("bob@example.com", "Bob"),
            ("dan@example.com", "Dan"),
        ]


def test_strip_html_decodes_entities() -> None:
    assert strip_html("<div>a&nbsp;&lt;b&gt;<script>x()</script></div>") == "a <b>"
