"""Dataclasses and enums for the Gmail Sync domain model."""

from __future__ import annotations

from dataclasses import FrozenInstanceError, dataclass, field, fields, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class SyncStatus(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


class ConnectionStatus(StrEnum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"


class Direction(StrEnum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class MessageType(StrEnum):
    DIRECT = "direct"
    THIRD_PARTY = "third_party"
    GROUP = "group"


class ErrorCategory(StrEnum):
    """Failure categories attached to every SyncError."""

    INSUFFICIENT_SCOPE = "insufficient_scope"
    PERMISSION_DENIED = "permission_denied"
    AUTH_EXPIRED = "auth_expired"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    PARSE = "parse"
    STORAGE = "storage"
    UNKNOWN = "unknown"


# ---------- provider responses ----------


@dataclass(frozen=True)
class MessageStub:
    """Lightweight message reference from Gmail list API."""

    message_id: str
    thread_id: str


@dataclass(frozen=True)
class MessagePage:
    """One page of the Gmail list API."""

    stubs: tuple[MessageStub, ...] = ()
    next_page_token: str | None = None
    result_size_estimate: int = 0

    @property
    def ids(self) -> list[str]:
        return [stub.message_id for stub in self.stubs]


@dataclass(frozen=True)
class HistoryPage:
    """One page of the Gmail history API, reduced to added message ids."""

    added_message_ids: tuple[str, ...] = ()
    history_id: str = ""
    next_page_token: str | None = None


# ---------- normalized message ----------


@dataclass(frozen=True)
class AttachmentInfo:
    filename: str
    mime_type: str
    size: int = 0
    category: str = "other"


@dataclass(frozen=True)
class NormalizedMessage:
    """Canonical representation of one Gmail message."""

    message_id: str
    thread_id: str
    timestamp: datetime
    subject: str = "(no subject)"
    sender: str = ""
    sender_name: str = ""
    to: tuple[str, ...] = ()
    cc: tuple[str, ...] = ()
    bcc: tuple[str, ...] = ()
    text: str = ""
    body_format: str = "empty"
    attachments: tuple[AttachmentInfo, ...] = ()
    label_ids: tuple[str, ...] = ()
    snippet: str = ""
    in_reply_to: str = ""
    references: tuple[str, ...] = ()
    recipient_names: dict[str, str] = field(default_factory=dict, compare=False)

    @property
    def attachment_categories(self) -> tuple[str, ...]:
        return tuple(sorted({a.category for a in self.attachments}))


# ---------- stored records ----------


@dataclass(frozen=True)
class ContactIdentifier:
    contact_id: int
    identifier_type: str
    identifier_value: str
    confidence_score: float = 1.0
    verified: bool = False
    source: str | None = None
    id: int | None = None


@dataclass(frozen=True)
class Contact:
    id: int
    name: str
    primary_email: str | None = None
    display_name: str | None = None
    message_count: int = 0
    first_communication: str | None = None
    last_communication: str | None = None
    identifiers: tuple[ContactIdentifier, ...] = ()


@dataclass(frozen=True)
class Communication:
    """Storage-ready communication record."""

    source_message_id: str
    direction: Direction
    timestamp: datetime
    source: str = "gmail"
    contact_id: int | None = None
    subject: str | None = None
    content: str | None = None
    content_type: str = "email"
    message_type: MessageType = MessageType.DIRECT
    thread_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: int | None = None


# ---------- telemetry ----------


@dataclass(frozen=True)
class SyncError:
    """One failure observed during a sync run."""

    operation: str
    error: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    message_id: str | None = None
    stack_trace: str | None = None
    api_response: Any = None
    retry_count: int = 0
    is_critical: bool = False
    category: ErrorCategory = ErrorCategory.UNKNOWN
    category_label: str = ""
    remedy: str = ""


@dataclass(frozen=True)
class ApiCallRecord:
    endpoint: str
    method: str
    status_code: int
    response_time_ms: float
    response: Any = "success"
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


# ---------- sync control ----------


@dataclass(frozen=True)
class SyncOptions:
    """Options accepted by SyncOrchestrator.start()."""

    batch_size: int = 100
    max_messages: int | None = None
    query: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    focus_addresses: tuple[str, ...] = ()
    resume_from_last_sync: bool = False


@dataclass(frozen=True)
class SyncCheckpoint:
    """Exact position of a full sync, persisted so a paused run can resume.

    ``page_token`` is the token that produced the page being processed and
    ``page_offset`` the number of ids already consumed from that page.
    """

    query: str
    batch_size: int
    page_token: str | None = None
    page_offset: int = 0
    max_messages: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncCheckpoint:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


_PERSISTED_TIMES = ("start_time", "end_time")


@dataclass
class SyncProgress:
    """Mutable progress of a sync run.

    The orchestrator owns the live instance; callers only ever see read-only
    copies made by ``snapshot()`` and returned by ``SyncOrchestrator.get_progress()``.
    """

    status: SyncStatus = SyncStatus.IDLE
    total_messages: int = 0
    processed_messages: int = 0
    failed_messages: int = 0
    duplicate_messages: int = 0
    current_batch: int = 0
    total_batches: int = 0
    start_time: datetime | None = None
    end_time: datetime | None = None
    messages_per_second: float = 0.0
    estimated_seconds_remaining: float | None = None
    connection_status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    current_operation: str = "Idle"
    operation_details: str = "Service ready to start sync"
    last_synced_message_id: str | None = None
    error: str | None = None
    detailed_errors: tuple[SyncError, ...] = ()
    api_call_log: tuple[ApiCallRecord, ...] = ()

    def __setattr__(self, name: str, value: Any) -> None:
        if self.__dict__.get("_read_only"):
            raise FrozenInstanceError(f"cannot assign to field {name!r}")
        super().__setattr__(name, value)

    def snapshot(self, **changes: Any) -> SyncProgress:
        """Return a read-only copy, optionally with some fields replaced."""
        copy = replace(self, **changes)
        object.__setattr__(copy, "_read_only", True)
        return copy

    def update_rate(self, now: datetime | None = None) -> None:
        """Recompute throughput and remaining-time estimates."""
        if self.start_time is None:
            return
        now = now or datetime.now(UTC)
        elapsed = (now - self.start_time).total_seconds()
        if elapsed <= 0 or self.processed_messages == 0:
            self.messages_per_second = 0.0
            self.estimated_seconds_remaining = None
            return
        self.messages_per_second = self.processed_messages / elapsed
        remaining = max(self.total_messages - self.processed_messages, 0)
        self.estimated_seconds_remaining = remaining / self.messages_per_second

    def to_dict(self) -> dict[str, Any]:
        """Serializable form used for persistence; telemetry is not persisted."""
        data: dict[str, Any] = {}
        for f in fields(self):
            if f.name in ("detailed_errors", "api_call_log"):
                continue
            value = getattr(self, f.name)
            if f.name in _PERSISTED_TIMES and value is not None:
                value = value.isoformat()
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncProgress:
        known = {f.name for f in fields(cls)} - {"detailed_errors", "api_call_log"}
        kwargs = {k: v for k, v in data.items() if k in known}
        for name in _PERSISTED_TIMES:
            if kwargs.get(name):
                kwargs[name] = datetime.fromisoformat(kwargs[name])
        if "status" in kwargs:
            kwargs["status"] = SyncStatus(kwargs["status"])
        if "connection_status" in kwargs:
            kwargs["connection_status"] = ConnectionStatus(kwargs["connection_status"])
        return cls(**kwargs)
