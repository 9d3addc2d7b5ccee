"""Shared fixtures for Gmail Sync tests."""

from __future__ import annotations

import base64
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from gmail_sync.config.settings import GmailSyncSettings
from gmail_sync.core.exceptions import ProviderError
from gmail_sync.core.models import ErrorCategory, HistoryPage, MessagePage, MessageStub
from gmail_sync.core.telemetry import TelemetryLog
from gmail_sync.pipeline.orchestrator import SyncOrchestrator
from gmail_sync.storage.communications import CommunicationRepository
from gmail_sync.storage.config_store import ConfigStore
from gmail_sync.storage.contacts import ContactRepository
from gmail_sync.storage.database import Database
from gmail_sync.storage.runs import SyncRunLog


def encode_body(text: str) -> str:
    """Base64url-encode a body the way the Gmail API does (no padding)."""
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def make_raw_message(
    message_id: str,
    *,
    thread_id: str | None = None,
    sender: str = "Alice Example <alice@example.com>",
    to: str = "me@example.com",
    cc: str | None = None,
    subject: str | None = "Hello",
    plain: str | None = "Hello there.",
    html_body: str | None = None,
    internal_date: str | None = "1705314600000",
    snippet: str = "Hello there.",
    label_ids: tuple[str, ...] = ("INBOX",),
    extra_headers: list[dict[str, str]] | None = None,
    attachments: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Build a raw Gmail API message (format=full)."""
    headers = [{"name": "From", "value": sender}, {"name": "To", "value": to}]
    if subject is not None:
        headers.append({"name": "Subject", "value": subject})
    if cc:
        headers.append({"name": "Cc", "value": cc})
    headers.extend(extra_headers or [])

    parts: list[dict[str, Any]] = []
    if plain is not None:
        parts.append({"mimeType": "text/plain", "body": {"data": encode_body(plain)}})
    if html_body is not None:
        parts.append({"mimeType": "text/html", "body": {"data": encode_body(html_body)}})

    if attachments:
        body_part = {"mimeType": "multipart/alternative", "parts": parts}
        payload = {
            "mimeType": "multipart/mixed",
            "headers": headers,
            "parts": [body_part, *attachments],
        }
    elif len(parts) == 1:
        payload = {"headers": headers, **parts[0]}
    else:
        payload = {"mimeType": "multipart/alternative", "headers": headers, "parts": parts}

    raw: dict[str, Any] = {
        "id": message_id,
        "threadId": thread_id or f"thread_{message_id}",
        "labelIds": list(label_ids),
        "snippet": snippet,
        "payload": payload,
    }
    if internal_date is not None:
        raw["internalDate"] = internal_date
    return raw


class FakeGmailClient:
    """In-memory mailbox honoring the provider contract.

    Page tokens are the string offset of the next page. Failures can be
    injected per call type.
    """

    def __init__(self, messages: list[dict[str, Any]] | None = None) -> None:
        self.messages: list[dict[str, Any]] = list(messages or [])
        self.estimate: int | None = None
        # 1-based list call number -> error raised by that call
        self.list_errors: dict[int, Exception] = {}
        self.batch_error: Exception | None = None
        self.message_errors: dict[str, Exception] = {}
        self.history_pages: list[HistoryPage] = []
        self.history_error: Exception | None = None
        self.list_calls: list[dict[str, Any]] = []
        self.batch_calls: list[list[str]] = []
        self.get_calls: list[str] = []
        self.on_get: Any = None

    def list_messages(
        self, query: str = "", page_size: int = 100, page_token: str | None = None
    ) -> MessagePage:
        self.list_calls.append({"query": query, "page_size": page_size, "page_token": page_token})
        error = self.list_errors.pop(len(self.list_calls), None)
        if error is not None:
            raise error
        start = int(page_token or 0)
        chunk = self.messages[start : start + page_size]
        end = start + len(chunk)
        return MessagePage(
            stubs=tuple(MessageStub(m["id"], m.get("threadId", "")) for m in chunk),
            next_page_token=str(end) if end < len(self.messages) else None,
            result_size_estimate=(
                self.estimate if self.estimate is not None else len(self.messages)
            ),
        )

    def _lookup(self, message_id: str) -> dict[str, Any]:
        for message in self.messages:
            if message["id"] == message_id:
                return message
        raise ProviderError(
            f"Failed to get message {message_id}: not found",
            category=ErrorCategory.NOT_FOUND,
            status_code=404,
        )

    def get_message(self, message_id: str, fmt: str = "full") -> dict[str, Any]:
        self.get_calls.append(message_id)
        if self.on_get is not None:
            self.on_get(message_id)
        if message_id in self.message_errors:
            raise self.message_errors[message_id]
        return self._lookup(message_id)

    def get_messages_batch(self, message_ids: list[str], fmt: str = "full") -> list[dict[str, Any]]:
        self.batch_calls.append(list(message_ids))
        if self.batch_error is not None:
            raise self.batch_error
        found = []
        for message_id in message_ids:
            if self.on_get is not None:
                self.on_get(message_id)
            if message_id not in self.message_errors:
                found.append(self._lookup(message_id))
        return found

    def get_history(self, start_history_id: str, page_token: str | None = None) -> HistoryPage:
        if self.history_error is not None:
            raise self.history_error
        index = int(page_token or 0)
        return self.history_pages[index]


class FakeAuth:
    def __init__(self, authorized: bool = True, profile: dict[str, Any] | None = None) -> None:
        self.authorized = authorized
        self.profile = profile if profile is not None else {
            "emailAddress": "me@example.com",
            "messagesTotal": 5,
            "historyId": "1000",
        }

    def load_stored_credentials(self) -> bool:
        return self.authorized

    def get_profile(self) -> dict[str, Any]:
        return self.profile


@pytest.fixture
def plain_raw() -> dict[str, Any]:
    """Raw Gmail message with a text/plain body."""
    return make_raw_message(
        "msg_plain",
        sender='"Alice Example" <Alice@Example.com>',
        to="Me <me@example.com>, bob@example.com",
        cc="Carol <carol@example.com>",
        subject="Quarterly numbers",
        plain="Hi,\n\nThe numbers are attached.\n",
        extra_headers=[
            {"name": "In-Reply-To", "value": "<prev@example.com>"},
            {"name": "References", "value": "<root@example.com> <prev@example.com>"},
        ],
    )


@pytest.fixture
def html_raw() -> dict[str, Any]:
    """Raw Gmail message with only a text/html body."""
    return make_raw_message(
        "msg_html",
        plain=None,
        html_body=(
            "<html><head><style>p {color: red}</style></head>"
            "<body><p>Meeting moved to <b>Friday</b> &amp; room 4.</p></body></html>"
        ),
        snippet="Meeting moved to Friday &amp; room 4.",
    )


@pytest.fixture
def attachment_raw() -> dict[str, Any]:
    """Raw multipart/mixed message with two attachments."""
    return make_raw_message(
        "msg_attach",
        plain="See attached.",
        attachments=[
            {
                "mimeType": "application/pdf",
                "filename": "report.pdf",
                "body": {"attachmentId": "att_1", "size": 2048},
            },
            {
                "mimeType": "image/png",
                "filename": "chart.png",
                "body": {"attachmentId": "att_2", "size": 512},
            },
        ],
    )


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> Path:
    """Temporary database path for tests."""
    return tmp_path / "test.db"


@pytest.fixture
def db(tmp_db_path: Path) -> Iterator[Database]:
    """Connected database with the schema applied."""
    database = Database(tmp_db_path)
    database.connect()
    yield database
    database.close()


@pytest.fixture
def config_store(db: Database) -> ConfigStore:
    return ConfigStore(db)


@pytest.fixture
def contacts(db: Database) -> ContactRepository:
    return ContactRepository(db)


@pytest.fixture
def communications(db: Database) -> CommunicationRepository:
    return CommunicationRepository(db)


@pytest.fixture
def settings(tmp_path: Path) -> GmailSyncSettings:
    """Settings with no inter-batch delay and fast retries."""
    return GmailSyncSettings(
        credentials_path=tmp_path / "credentials" / "client_secret.json",
        token_path=tmp_path / "credentials" / "token.json",
        database_path=tmp_path / "test.db",
        inter_batch_delay_seconds=0.0,
        initial_backoff_seconds=0.0,
        max_backoff_seconds=0.0,
        progress_save_interval=2,
    )


@pytest.fixture
def mailbox() -> list[dict[str, Any]]:
    """Five messages from three distinct senders."""
    senders = [
        "Alice Example <alice@example.com>",
        "Bob <bob@example.com>",
        "Alice Example <alice@example.com>",
        "carol@example.com",
        "Bob <bob@example.com>",
    ]
    return [
        make_raw_message(
            f"msg_{i}",
            sender=sender,
            subject=f"Message {i}",
            plain=f"Body of message {i}",
            internal_date=str(1705314600000 + i * 60_000),
        )
        for i, sender in enumerate(senders, start=1)
    ]


@pytest.fixture
def fake_client(mailbox: list[dict[str, Any]]) -> FakeGmailClient:
    return FakeGmailClient(mailbox)


@pytest.fixture
def fake_auth() -> FakeAuth:
    return FakeAuth()


@pytest.fixture
def orchestrator(
    db: Database,
    fake_auth: FakeAuth,
    fake_client: FakeGmailClient,
    contacts: ContactRepository,
    communications: CommunicationRepository,
    config_store: ConfigStore,
    settings: GmailSyncSettings,
) -> Iterator[SyncOrchestrator]:
    """Orchestrator over the fake mailbox and a real SQLite store."""
    orch = SyncOrchestrator(
        fake_auth,
        fake_client,
        contacts,
        communications,
        config_store,
        settings=settings,
        telemetry=TelemetryLog(settings.max_detailed_errors, settings.max_api_calls),
        run_log=SyncRunLog(db),
    )
    yield orch
    orch.stop()
    orch.join(timeout=5)
