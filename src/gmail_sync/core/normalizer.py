"""Normalize raw Gmail API messages into canonical NormalizedMessage records."""

from __future__ import annotations

import base64
import html
import logging
import re
from datetime import UTC, datetime
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any

import trafilatura

from gmail_sync.core.exceptions import ParseError
from gmail_sync.core.models import AttachmentInfo, NormalizedMessage

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

_WANTED_HEADERS = {
    "subject", "from", "to", "cc", "bcc", "date", "message-id", "in-reply-to", "references",
}
_SCRIPT_STYLE_RE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")

# (mime prefix or exact type, category); first match wins
_MIME_CATEGORIES: tuple[tuple[str, str], ...] = (
    ("image/", "image"),
    ("video/", "video"),
    ("audio/", "audio"),
    ("application/pdf", "document"),
    ("application/msword", "document"),
    ("application/vnd.openxmlformats-officedocument", "document"),
    ("application/vnd.ms-", "document"),
    ("application/vnd.oasis.opendocument", "document"),
    ("text/calendar", "calendar"),
    ("application/ics", "calendar"),
    ("text/", "text"),
    ("application/zip", "archive"),
    ("application/x-7z", "archive"),
    ("application/x-rar", "archive"),
    ("application/gzip", "archive"),
)


def mime_category(mime_type: str) -> str:
    """Simplify a MIME type into a coarse category."""
    mime_type = (mime_type or "").lower()
    for prefix, category in _MIME_CATEGORIES:
        if mime_type.startswith(prefix):
            return category
    return "other"


def strip_html(markup: str) -> str:
    """Remove tags and decode entities, collapsing whitespace."""
    text = _SCRIPT_STYLE_RE.sub(" ", markup)
    text = _TAG_RE.sub(" ", text)
    text = html.unescape(text)
    return _WS_RE.sub(" ", text).strip()


class MessageNormalizer:
    """Converts one raw Gmail message (format=full) into a NormalizedMessage."""

    def normalize(self, raw_message: dict[str, Any]) -> NormalizedMessage:
        """Normalize a raw Gmail API message dict.

        Raises:
            ParseError: If the message structure cannot be parsed at all.
        """
        if not isinstance(raw_message, dict):
            raise ParseError(f"Expected a message dict, got {type(raw_message).__name__}")

        try:
            message_id = raw_message["id"]
            payload = raw_message.get("payload") or {}
            if not isinstance(payload, dict):
                raise ParseError(f"Message {message_id} has an invalid payload")

            headers = self._extract_headers(payload)
            sender_name, sender = self._parse_sender(headers.get("from", ""))
            to, to_names = self._parse_addresses(headers.get("to", ""))
            cc, cc_names = self._parse_addresses(headers.get("cc", ""))
            bcc, bcc_names = self._parse_addresses(headers.get("bcc", ""))
            plain_text, html_body = self._walk_parts(payload)
            snippet = html.unescape(raw_message.get("snippet", "") or "")
            text, body_format = self._best_text(plain_text, html_body, snippet)

            return NormalizedMessage(
                message_id=message_id,
                thread_id=raw_message.get("threadId", "") or "",
                timestamp=self._timestamp(raw_message.get("internalDate"), headers.get("date", "")),
                subject=headers.get("subject") or "(no subject)",
                sender=sender,
                sender_name=sender_name,
                to=to,
                cc=cc,
                bcc=bcc,
                text=text,
                body_format=body_format,
                attachments=tuple(self._collect_attachments(payload)),
                label_ids=tuple(raw_message.get("labelIds", []) or ()),
                snippet=snippet,
                in_reply_to=headers.get("in-reply-to", ""),
                references=tuple(headers.get("references", "").split()),
                recipient_names={**bcc_names, **cc_names, **to_names},
            )
        except ParseError:
            raise
        except Exception as e:
            raise ParseError(f"Failed to parse message {raw_message.get('id', '?')}: {e}") from e

    @staticmethod
    def contacts_for(message: NormalizedMessage) -> list[tuple[str, str]]:
        """Return (address, display name) pairs for the sender and every recipient."""
        seen: set[str] = set()
        pairs: list[tuple[str, str]] = []
        if message.sender:
            seen.add(message.sender)
            pairs.append((message.sender, message.sender_name))
        for address in (*message.to, *message.cc, *message.bcc):
            if address in seen:
                continue
            seen.add(address)
            pairs.append((address, message.recipient_names.get(address, "")))
        return pairs

    @staticmethod
    def _extract_headers(payload: dict[str, Any]) -> dict[str, str]:
        headers: dict[str, str] = {}
        for h in payload.get("headers", []) or []:
            name = (h.get("name") or "").lower()
            if name in _WANTED_HEADERS and name not in headers:
                headers[name] = h.get("value") or ""
        return headers

    @staticmethod
    def _parse_sender(value: str) -> tuple[str, str]:
        pairs = getaddresses([value]) if value else []
        for name, address in pairs:
            if "@" in address:
                return name.strip(), address.strip().lower()
        return "", ""

    @staticmethod
    def _parse_addresses(value: str) -> tuple[tuple[str, ...], dict[str, str]]:
        if not value:
            return (), {}
        addresses: list[str] = []
        names: dict[str, str] = {}
        for name, address in getaddresses([value]):
            address = address.strip().lower()
            if "@" not in address or address in addresses:
                continue
            addresses.append(address)
            if name.strip():
                names[address] = name.strip()
        return tuple(addresses), names

    def _walk_parts(self, part: dict[str, Any]) -> tuple[str | None, str | None]:
        """Recursively walk MIME parts to find the first text/plain and text/html bodies."""
        plain_text: str | None = None
        html_body: str | None = None
        mime_type = (part.get("mimeType") or "").lower()
        data = (part.get("body") or {}).get("data")

        if mime_type == "text/plain" and data and not part.get("filename"):
            plain_text = self._decode_body(data)
        elif mime_type == "text/html" and data and not part.get("filename"):
            html_body = self._decode_body(data)

        for sub_part in part.get("parts", []) or []:
            if sub_part.get("filename"):
                continue
            sub_plain, sub_html = self._walk_parts(sub_part)
            if sub_plain and not plain_text:
                plain_text = sub_plain
            if sub_html and not html_body:
                html_body = sub_html

        return plain_text, html_body

    def _collect_attachments(self, part: dict[str, Any]) -> list[AttachmentInfo]:
        found: list[AttachmentInfo] = []
        body = part.get("body") or {}
        filename = part.get("filename")
        if filename and (body.get("attachmentId") or body.get("size")):
            mime_type = part.get("mimeType") or "application/octet-stream"
            found.append(
                AttachmentInfo(
                    filename=filename,
                    mime_type=mime_type,
                    size=int(body.get("size") or 0),
                    category=mime_category(mime_type),
                )
            )
        for sub_part in part.get("parts", []) or []:
            found.extend(self._collect_attachments(sub_part))
        return found

    @staticmethod
    def _best_text(plain_text: str | None, html_body: str | None, snippet: str) -> tuple[str, str]:
        """Pick plain text, then extracted HTML, then the snippet."""
        if plain_text and plain_text.strip():
            return plain_text.strip(), "plain"

        if html_body:
            extracted: str | None = None
            try:
                extracted = trafilatura.extract(
                    html_body,
                    output_format="txt",
                    favor_recall=True,
                    include_links=False,
                    include_tables=True,
                )
            except Exception as e:
                logger.warning("Trafilatura extraction failed: %s", e)
            if not extracted:
                extracted = strip_html(html_body)
            if extracted:
                return extracted.strip(), "html"

        if snippet:
            return snippet, "snippet"
        return "", "empty"

    @staticmethod
    def _decode_body(data: str) -> str:
        """Decode base64url-encoded body data."""
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")

    @staticmethod
    def _timestamp(internal_date: Any, date_header: str) -> datetime:
        """Prefer Gmail's internalDate (ms since epoch), then the Date header."""
        if internal_date not in (None, ""):
            try:
                return datetime.fromtimestamp(int(internal_date) / 1000, tz=UTC)
            except (TypeError, ValueError, OverflowError, OSError):
                logger.warning("Invalid internalDate: %r", internal_date)

        if date_header:
            try:
                parsed = parsedate_to_datetime(date_header)
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=UTC)
                return parsed.astimezone(UTC)
            except (TypeError, ValueError):
                logger.warning("Failed to parse date: %s", date_header)

        return EPOCH
