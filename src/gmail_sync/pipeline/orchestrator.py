"""Sync orchestrator: state machine and control surface for mailbox synchronization."""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from gmail_sync.config.settings import GmailSyncSettings
from gmail_sync.core.exceptions import (
    AuthenticationError,
    GmailSyncError,
    ParseError,
    ProviderError,
    StorageError,
    SyncAlreadyRunningError,
)
from gmail_sync.core.interfaces import AuthProvider, KeyValueStore, ProviderClient
from gmail_sync.core.models import (
    Communication,
    ConnectionStatus,
    Direction,
    ErrorCategory,
    NormalizedMessage,
    SyncCheckpoint,
    SyncError,
    SyncOptions,
    SyncProgress,
    SyncStatus,
)
from gmail_sync.core.normalizer import MessageNormalizer
from gmail_sync.core.telemetry import TelemetryLog, error_from_exception
from gmail_sync.pipeline.fetcher import BatchFetcher
from gmail_sync.storage.communications import CommunicationRepository
from gmail_sync.storage.config_store import (
    CHECKPOINT_KEY,
    HISTORY_ID_KEY,
    PROGRESS_KEY,
    USER_EMAIL_KEY,
)
from gmail_sync.storage.contacts import ContactRepository
from gmail_sync.storage.runs import SyncRunLog

logger = logging.getLogger(__name__)

SOURCE = "gmail"
MAX_CONSECUTIVE_LIST_FAILURES = 3
FATAL_CATEGORIES = {
    ErrorCategory.AUTH_EXPIRED,
    ErrorCategory.INSUFFICIENT_SCOPE,
    ErrorCategory.PERMISSION_DENIED,
}


def build_query(options: SyncOptions, excluded: str = "-in:spam -in:trash") -> str:
    """Conjoin the custom query, focus addresses, date bounds and standing exclusions."""
    parts: list[str] = []
    if options.query and options.query.strip():
        parts.append(options.query.strip())
    focus = [a.strip() for a in options.focus_addresses if a and a.strip()]
    if focus:
        terms = " OR ".join(f"from:{a} OR to:{a}" for a in focus)
        parts.append(f"({terms})")
    if options.start_date:
        parts.append(f"after:{options.start_date.strftime('%Y/%m/%d')}")
    if options.end_date:
        parts.append(f"before:{options.end_date.strftime('%Y/%m/%d')}")
    if excluded:
        parts.append(excluded)
    return " ".join(parts)


class SyncOrchestrator:
    """Runs one Gmail sync at a time and exposes its progress.

    ``start`` validates and returns immediately; the batch loop runs on a
    background thread. ``pause`` and ``stop`` only set flags that the loop
    checks between batches and between messages, so a request already in
    flight always completes.

    State machine::

        idle --start--> running --pause--> paused --resume--> running
        running --(exhausted)--> completed
        running/paused --stop--> idle
        any --(auth rejected / unexpected exception)--> error
    """

    def __init__(
        self,
        auth: AuthProvider,
        client: ProviderClient,
        contacts: ContactRepository,
        communications: CommunicationRepository,
        config_store: KeyValueStore,
        *,
        settings: GmailSyncSettings | None = None,
        telemetry: TelemetryLog | None = None,
        normalizer: MessageNormalizer | None = None,
        run_log: SyncRunLog | None = None,
    ) -> None:
        self._settings = settings or GmailSyncSettings()
        self._auth = auth
        self._client = client
        self._contacts = contacts
        self._communications = communications
        self._config = config_store
        self._run_log = run_log
        self._telemetry = telemetry or TelemetryLog(
            self._settings.max_detailed_errors, self._settings.max_api_calls
        )
        self._normalizer = normalizer or MessageNormalizer()
        self._fetcher = BatchFetcher(
            client,
            self._telemetry,
            inter_batch_delay_seconds=self._settings.inter_batch_delay_seconds,
        )

        self._lock = threading.Lock()
        self._running = False
        self._pause_requested = threading.Event()
        self._stop_requested = threading.Event()
        self._worker: threading.Thread | None = None
        self._progress = SyncProgress()
        self._checkpoint: SyncCheckpoint | None = None
        self._user_email: str | None = None
        self._run_id: int | None = None
        self._run_kind = "full"
        self._save_due = False
        # ids consumed by the current incremental run, skipped when it resumes
        self._handled_ids: set[str] = set()

    @property
    def telemetry(self) -> TelemetryLog:
        return self._telemetry

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    # ---------- control surface ----------

    def start(self, options: SyncOptions | None = None) -> SyncProgress:
        """Start a full sync in the background.

        Raises:
            SyncAlreadyRunningError: If a sync is in progress; nothing is changed.
            AuthenticationError: If no usable credentials are stored.
        """
        options = options or SyncOptions(batch_size=self._settings.batch_size)
        batch_size = max(1, min(options.batch_size, self._settings.max_batch_size))
        options = replace(options, batch_size=batch_size)

        self._acquire()
        try:
            checkpoint = self._load_checkpoint() if options.resume_from_last_sync else None
            resuming = checkpoint is not None
            if resuming:
                query = checkpoint.query
                options = replace(
                    options, batch_size=checkpoint.batch_size, max_messages=checkpoint.max_messages
                )
            else:
                self._config.delete(CHECKPOINT_KEY)
                query = build_query(options, self._settings.excluded_query)
                checkpoint = SyncCheckpoint(
                    query=query, batch_size=options.batch_size, max_messages=options.max_messages
                )
            self._begin_run(resuming, "full", query)
            self._checkpoint = checkpoint
            self._verify_auth()
        except AuthenticationError as e:
            self._fail(e, "load_stored_credentials")
            self._finish_run()
            raise
        except BaseException:
            self._release()
            raise

        self._worker = threading.Thread(
            target=self._run_full_sync,
            args=(options, resuming),
            name="gmail-sync",
            daemon=True,
        )
        self._worker.start()
        return self.get_progress()

    def pause(self) -> SyncProgress:
        """Ask the running sync to pause at the next check point."""
        with self._lock:
            if self._running and self._progress.status is SyncStatus.RUNNING:
                self._pause_requested.set()
                self._progress.status = SyncStatus.PAUSED
                self._progress.current_operation = "Paused"
                self._progress.operation_details = "Sync paused by request"
                logger.info("Pause requested")
        return self.get_progress()

    def resume(self, options: SyncOptions | None = None) -> SyncProgress:
        """Resume a paused sync from its last checkpoint.

        ``options`` only apply when no checkpoint was persisted, in which
        case a new full sync is started.
        """
        with self._lock:
            paused = self._progress.status is SyncStatus.PAUSED
        if not paused:
            logger.info("Resume ignored: no paused sync")
            return self.get_progress()

        # A pausing worker exits within one message.
        self.join()
        if self._run_kind == "incremental":
            # The history cursor only advances on completion, so rerunning picks up the rest.
            self._incremental_sync(resuming=True)
            return self.get_progress()
        options = options or SyncOptions(batch_size=self._settings.batch_size)
        return self.start(replace(options, resume_from_last_sync=True))

    def stop(self) -> SyncProgress:
        """Stop the sync; a stopped sync cannot be resumed."""
        with self._lock:
            if self._running or self._progress.status is SyncStatus.PAUSED:
                self._stop_requested.set()
                self._pause_requested.clear()
                self._progress.status = SyncStatus.IDLE
                self._progress.end_time = datetime.now(UTC)
                self._progress.current_operation = "Stopped"
                self._progress.operation_details = "Sync stopped by request"
                logger.info("Stop requested")
        self._config.delete(CHECKPOINT_KEY)
        self._save_progress()
        return self.get_progress()

    def incremental_sync(self) -> None:
        """Catch up on messages added since the stored history cursor.

        Without a cursor, or when Gmail reports the cursor expired, a full
        sync is started instead. Runs in the calling thread.
        """
        self._incremental_sync(resuming=False)

    def _incremental_sync(self, resuming: bool) -> None:
        cursor = self._config.get(HISTORY_ID_KEY)
        if not cursor:
            logger.info("No previous sync found, starting full sync")
            self.start()
            return

        self._acquire()
        expired = False
        try:
            self._begin_run(resuming, "incremental", f"history:{cursor}")
            self._verify_auth()
            expired = self._run_incremental(cursor, resuming)
        except Exception as e:
            self._fail(e, "incremental_sync")
            raise
        finally:
            self._finish_run()

        if expired:
            logger.warning("History cursor %s expired, falling back to full sync", cursor)
            self._config.delete(HISTORY_ID_KEY)
            self.start()

    def get_progress(self) -> SyncProgress:
        """Return a read-only copy of the current progress, including telemetry."""
        with self._lock:
            return self._progress.snapshot(
                detailed_errors=self._telemetry.errors,
                api_call_log=self._telemetry.api_calls,
            )

    def clear_errors(self) -> SyncProgress:
        self._telemetry.clear_errors()
        return self.get_progress()

    def load_progress(self) -> SyncProgress:
        """Restore the last persisted progress snapshot.

        A run that was interrupted while running comes back as paused so it
        can be resumed from its checkpoint.
        """
        data = self._config.get_json(PROGRESS_KEY)
        if not isinstance(data, dict):
            return self.get_progress()
        try:
            restored = SyncProgress.from_dict(data)
        except (TypeError, ValueError) as e:
            logger.warning("Ignoring unreadable saved progress: %s", e)
            return self.get_progress()
        if restored.status is SyncStatus.RUNNING:
            restored.status = SyncStatus.PAUSED
            restored.current_operation = "Paused"
            restored.operation_details = "Interrupted sync can be resumed"
        restored.connection_status = ConnectionStatus.DISCONNECTED
        with self._lock:
            if not self._running:
                self._progress = restored
        return self.get_progress()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the background worker. Returns True once it has exited."""
        worker = self._worker
        if worker is None:
            return True
        worker.join(timeout)
        return not worker.is_alive()

    # ---------- run lifecycle ----------

    def _acquire(self) -> None:
        with self._lock:
            if self._running:
                raise SyncAlreadyRunningError("Sync is already running")
            self._running = True

    def _release(self) -> None:
        with self._lock:
            self._running = False

    def _begin_run(self, resuming: bool, kind: str, query: str) -> None:
        self._pause_requested.clear()
        self._stop_requested.clear()
        self._save_due = False
        now = datetime.now(UTC)
        with self._lock:
            if resuming:
                self._progress.status = SyncStatus.RUNNING
                self._progress.end_time = None
                self._progress.error = None
                self._progress.current_operation = "Resuming"
                self._progress.operation_details = "Continuing from the last checkpoint"
                if self._progress.start_time is None:
                    self._progress.start_time = now
            else:
                self._progress = SyncProgress(
                    status=SyncStatus.RUNNING,
                    start_time=now,
                    current_operation="Starting",
                    operation_details=f"Query: {query}",
                )
        self._run_kind = kind
        self._run_id = self._run_log.start_run(kind, query) if self._run_log else None
        logger.info("Starting %s sync (%s)", kind, query)

    def _verify_auth(self) -> None:
        if not self._auth.load_stored_credentials():
            raise AuthenticationError("Gmail authentication required")

    def _fail(self, exc: BaseException, operation: str) -> None:
        """Move the run to the error state, keeping the message."""
        self._telemetry.record_error(error_from_exception(operation, exc, is_critical=True))
        with self._lock:
            self._progress.status = SyncStatus.ERROR
            self._progress.error = str(exc)
            self._progress.end_time = datetime.now(UTC)
            self._progress.current_operation = "Error"
            self._progress.operation_details = str(exc)
            if isinstance(exc, AuthenticationError) or (
                isinstance(exc, ProviderError) and exc.category in FATAL_CATEGORIES
            ):
                self._progress.connection_status = ConnectionStatus.DISCONNECTED
        logger.error("Sync failed during %s: %s", operation, exc)

    def _finish_run(self) -> None:
        self._save_progress()
        if self._run_log and self._run_id is not None:
            with self._lock:
                final = replace(self._progress)
            self._run_log.complete_run(self._run_id, final)
            self._run_id = None
        self._release()

    def _halted(self) -> bool:
        return self._pause_requested.is_set() or self._stop_requested.is_set()

    # ---------- full sync ----------

    def _run_full_sync(self, options: SyncOptions, resuming: bool) -> None:
        try:
            profile = self._load_profile()
            if (not resuming or not self._progress.total_messages) and not self._estimate(options):
                return
            self._batch_loop(options.batch_size)
            self._complete_full_sync(profile)
        except Exception as e:
            logger.exception("Unexpected error in sync loop")
            self._fail(e, "sync_loop")
        finally:
            self._finish_run()

    def _estimate(self, options: SyncOptions) -> bool:
        """Estimate the total with a 1-result list call. False if nothing to do."""
        assert self._checkpoint is not None
        with self._lock:
            self._progress.current_operation = "Estimating"
            self._progress.operation_details = "Counting messages matching the query"
        page = self._client.list_messages(query=self._checkpoint.query, page_size=1)
        estimate = page.result_size_estimate
        total = min(estimate, options.max_messages) if options.max_messages else estimate

        with self._lock:
            self._progress.connection_status = ConnectionStatus.CONNECTED
            self._progress.total_messages = total
            self._progress.total_batches = math.ceil(total / options.batch_size)
            if total == 0:
                self._progress.status = SyncStatus.COMPLETED
                self._progress.end_time = datetime.now(UTC)
                self._progress.current_operation = "Completed"
                self._progress.operation_details = "No messages match the query"
        logger.info(
            "Gmail sync: %d messages in %d batches", total, math.ceil(total / options.batch_size)
        )
        return total > 0

    def _batch_loop(self, batch_size: int) -> None:
        assert self._checkpoint is not None
        page_token = self._checkpoint.page_token
        skip = self._checkpoint.page_offset
        list_failures = 0

        while not self._halted():
            with self._lock:
                limit = self._progress.total_messages
                consumed = self._progress.processed_messages + self._progress.failed_messages
                batch_no = self._progress.current_batch + 1
                self._progress.current_operation = f"Fetching batch {batch_no}"
                self._progress.operation_details = (
                    f"{consumed}/{limit} messages, batch {batch_no}/{self._progress.total_batches}"
                )
            remaining = limit - consumed
            if remaining <= 0:
                break

            try:
                page = self._fetcher.fetch_page(
                    self._checkpoint.query, batch_size, page_token, skip=skip, limit=remaining
                )
            except ProviderError as e:
                if e.category in FATAL_CATEGORIES:
                    raise
                if page_token and e.status_code in (400, 404):
                    # Relist from the top, skipping as many ids as were already consumed.
                    logger.warning("Saved page token was rejected, restarting the listing: %s", e)
                    page_token, skip = None, consumed
                    self._telemetry.record_error(error_from_exception("list_messages", e))
                    self._fetcher.throttle()
                    continue
                list_failures += 1
                self._telemetry.record_error(
                    error_from_exception("list_messages", e, retry_count=list_failures)
                )
                with self._lock:
                    self._progress.connection_status = ConnectionStatus.RECONNECTING
                if list_failures >= MAX_CONSECUTIVE_LIST_FAILURES:
                    raise
                logger.warning("Listing batch %d failed (%d), retrying: %s", batch_no, list_failures, e)
                self._fetcher.throttle()
                continue

            list_failures = 0
            if page.exhausted:
                break

            with self._lock:
                self._progress.connection_status = ConnectionStatus.CONNECTED
                self._progress.current_operation = f"Processing batch {batch_no}"

            by_id = {raw.get("id"): raw for raw in page.messages}
            position = 0
            for msg_id in page.requested_ids:
                if self._halted():
                    break
                if position == 0 and skip == 0:
                    # A page resumed mid-way was already counted.
                    with self._lock:
                        self._progress.current_batch += 1
                raw = by_id.get(msg_id)
                if raw is None:
                    with self._lock:
                        self._progress.failed_messages += 1
                else:
                    self._process_message(raw)
                position += 1
                with self._lock:
                    self._checkpoint = replace(
                        self._checkpoint, page_token=page_token, page_offset=skip + position
                    )
                self._save_if_due()

            if position < len(page.requested_ids):
                break

            logger.info(
                "Processed batch %d/%d (%d messages)",
                self._progress.current_batch,
                self._progress.total_batches,
                self._progress.processed_messages,
            )
            self._fetcher.throttle()
            if not page.next_page_token:
                break
            # A skip longer than this page carries over to the next one.
            page_token, skip = page.next_page_token, max(skip - page.listed_count, 0)
            with self._lock:
                self._checkpoint = replace(self._checkpoint, page_token=page_token, page_offset=skip)

    def _complete_full_sync(self, profile: dict[str, Any]) -> None:
        with self._lock:
            stopped = self._stop_requested.is_set()
            paused = self._pause_requested.is_set()
            if not stopped and not paused:
                self._progress.status = SyncStatus.COMPLETED
                self._progress.end_time = datetime.now(UTC)
                self._progress.current_operation = "Completed"
                self._progress.operation_details = (
                    f"{self._progress.processed_messages} messages processed"
                )
            checkpoint = self._checkpoint
            if not paused:
                self._checkpoint = None

        if paused and checkpoint is not None:
            self._config.set_json(CHECKPOINT_KEY, checkpoint.to_dict())
            logger.info("Sync paused at %s", checkpoint)
            return
        self._config.delete(CHECKPOINT_KEY)
        if stopped:
            return

        history_id = profile.get("historyId")
        if history_id and not self._config.get(HISTORY_ID_KEY):
            self._config.set(HISTORY_ID_KEY, str(history_id))
        logger.info("Gmail sync completed: %d messages processed", self._progress.processed_messages)

    # ---------- incremental sync ----------

    def _run_incremental(self, cursor: str, resuming: bool = False) -> bool:
        """Process history since ``cursor``. Returns True if the cursor has expired.

        A resumed run skips the ids it already consumed before pausing.
        """
        self._load_profile()
        with self._lock:
            self._progress.current_operation = "Reading history"
            self._progress.operation_details = f"Changes since history id {cursor}"

        added: list[str] = []
        new_cursor = cursor
        page_token: str | None = None
        while True:
            try:
                page = self._client.get_history(cursor, page_token)
            except ProviderError as e:
                if e.category is ErrorCategory.NOT_FOUND:
                    return True
                raise
            added.extend(mid for mid in page.added_message_ids if mid not in added)
            new_cursor = page.history_id or new_cursor
            page_token = page.next_page_token
            if not page_token:
                break

        if not resuming:
            self._handled_ids = set()
        pending = [mid for mid in added if mid not in self._handled_ids]
        with self._lock:
            consumed = self._progress.processed_messages + self._progress.failed_messages
            self._progress.connection_status = ConnectionStatus.CONNECTED
            self._progress.total_messages = consumed + len(pending)
            self._progress.total_batches = 1 if added else 0
            self._progress.current_batch = 1 if added else 0
            self._progress.current_operation = "Processing new messages"

        for msg_id in pending:
            if self._halted():
                logger.info("Incremental sync halted; cursor stays at %s", cursor)
                return False
            raw = self._fetcher.fetch_message(msg_id)
            if raw is None:
                with self._lock:
                    self._progress.failed_messages += 1
            else:
                self._process_message(raw)
            self._handled_ids.add(msg_id)
            self._save_if_due()

        self._config.set(HISTORY_ID_KEY, new_cursor)
        with self._lock:
            self._progress.status = SyncStatus.COMPLETED
            self._progress.end_time = datetime.now(UTC)
            self._progress.current_operation = "Completed"
            self._progress.operation_details = (
                f"{len(added)} new messages, history id {new_cursor}"
            )
        logger.info("Incremental sync completed. New history ID: %s", new_cursor)
        return False

    # ---------- per-message pipeline ----------

    def _process_message(self, raw: dict[str, Any]) -> bool:
        """Normalize, resolve contacts and store one message.

        Parse and storage failures are logged and counted; anything else
        propagates and fails the run.
        """
        msg_id = raw.get("id") if isinstance(raw, dict) else None
        try:
            message = self._normalizer.normalize(raw)
            created = self._store(message)
        except (ParseError, StorageError) as e:
            logger.warning("Skipping message %s: %s", msg_id, e)
            operation = "normalize" if isinstance(e, ParseError) else "store"
            self._telemetry.record_error(error_from_exception(operation, e, message_id=msg_id))
            with self._lock:
                self._progress.failed_messages += 1
            return False

        with self._lock:
            self._progress.processed_messages += 1
            if not created:
                self._progress.duplicate_messages += 1
            self._progress.last_synced_message_id = message.message_id
            self._progress.update_rate()
            # The caller saves once its position has moved past this message.
            if self._progress.processed_messages % self._settings.progress_save_interval == 0:
                self._save_due = True
        return True

    def _store(self, message: NormalizedMessage) -> bool:
        contact_id: int | None = None
        for address, name in self._normalizer.contacts_for(message):
            contact = self._contacts.find_or_create_by_email(address, name or None)
            if address == message.sender:
                contact_id = contact.id

        direction = (
            Direction.OUTGOING
            if self._user_email and message.sender == self._user_email
            else Direction.INCOMING
        )
        record = Communication(
            source=SOURCE,
            source_message_id=message.message_id,
            contact_id=contact_id,
            direction=direction,
            timestamp=message.timestamp,
            subject=message.subject,
            content=message.text,
            thread_id=message.thread_id or None,
            metadata={
                "to": list(message.to),
                "cc": list(message.cc),
                "bcc": list(message.bcc),
                "labels": list(message.label_ids),
                "snippet": message.snippet,
                "attachment_count": len(message.attachments),
                "attachment_categories": list(message.attachment_categories),
                "in_reply_to": message.in_reply_to,
                "references": list(message.references),
                "body_format": message.body_format,
            },
        )
        _, created = self._communications.create(record)
        if created and contact_id is not None:
            self._contacts.record_communication(contact_id, message.timestamp)
        return created

    # ---------- persistence ----------

    def _load_profile(self) -> dict[str, Any]:
        """Fetch the account profile and cache the user's address."""
        try:
            profile = self._auth.get_profile() or {}
        except GmailSyncError as e:
            logger.warning("Could not load Gmail profile: %s", e)
            self._telemetry.record_error(error_from_exception("get_profile", e))
            profile = {}

        email = (profile.get("emailAddress") or "").strip().lower()
        if email:
            self._config.set(USER_EMAIL_KEY, email)
        else:
            email = self._config.get(USER_EMAIL_KEY) or ""
        self._user_email = email or None
        return profile

    def _load_checkpoint(self) -> SyncCheckpoint | None:
        data = self._config.get_json(CHECKPOINT_KEY)
        if not isinstance(data, dict):
            return None
        try:
            return SyncCheckpoint.from_dict(data)
        except TypeError as e:
            logger.warning("Ignoring unreadable checkpoint: %s", e)
            return None

    def _save_if_due(self) -> None:
        with self._lock:
            due, self._save_due = self._save_due, False
        if due:
            self._save_progress()

    def _save_progress(self) -> None:
        with self._lock:
            data = self._progress.to_dict()
            checkpoint = self._checkpoint if self._progress.status is SyncStatus.RUNNING else None
        try:
            self._config.set_json(PROGRESS_KEY, data)
            if checkpoint is not None:
                self._config.set_json(CHECKPOINT_KEY, checkpoint.to_dict())
        except Exception as e:
            logger.error("Error saving sync progress: %s", e)
            self._telemetry.record_error(
                SyncError(
                    operation="save_progress",
                    error=str(e),
                    category=ErrorCategory.STORAGE,
                )
            )
