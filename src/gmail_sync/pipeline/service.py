"""Wiring of the sync engine: settings → auth, client, storage → orchestrator."""

from __future__ import annotations

import logging
from typing import Any

from gmail_sync.config.settings import GmailSyncSettings
from gmail_sync.core.auth import GmailAuth
from gmail_sync.core.gmail_client import GmailClient
from gmail_sync.core.telemetry import TelemetryLog
from gmail_sync.pipeline.orchestrator import SyncOrchestrator
from gmail_sync.storage.communications import CommunicationRepository
from gmail_sync.storage.config_store import HISTORY_ID_KEY, USER_EMAIL_KEY, ConfigStore
from gmail_sync.storage.contacts import ContactRepository
from gmail_sync.storage.database import Database
from gmail_sync.storage.runs import SyncRunLog

logger = logging.getLogger(__name__)


class GmailSyncService:
    """Owns the database connection and builds the orchestrator on first use.

    The Gmail service itself is only built when the first API call is made,
    so commands that only read local state never touch the network.
    """

    def __init__(self, settings: GmailSyncSettings | None = None) -> None:
        self._settings = settings or GmailSyncSettings()
        self._telemetry = TelemetryLog(
            self._settings.max_detailed_errors, self._settings.max_api_calls
        )
        self._db: Database | None = None
        self._auth: GmailAuth | None = None
        self._orchestrator: SyncOrchestrator | None = None
        self._config: ConfigStore | None = None
        self._communications: CommunicationRepository | None = None
        self._contacts: ContactRepository | None = None
        self._runs: SyncRunLog | None = None

    @property
    def auth(self) -> GmailAuth:
        if self._auth is None:
            self._auth = GmailAuth(
                self._settings.credentials_path,
                self._settings.token_path,
                telemetry=self._telemetry,
            )
        return self._auth

    @property
    def orchestrator(self) -> SyncOrchestrator:
        if self._orchestrator is None:
            self._ensure_storage()
            client = GmailClient(
                service_factory=self.auth.build_service,
                telemetry=self._telemetry,
                max_retries=self._settings.max_retries,
                initial_backoff_seconds=self._settings.initial_backoff_seconds,
                max_backoff_seconds=self._settings.max_backoff_seconds,
                num_retries=self._settings.num_retries,
            )
            self._orchestrator = SyncOrchestrator(
                self.auth,
                client,
                self._contacts,
                self._communications,
                self._config,
                settings=self._settings,
                telemetry=self._telemetry,
                run_log=self._runs,
            )
            self._orchestrator.load_progress()
        return self._orchestrator

    def _ensure_storage(self) -> None:
        if self._db is None:
            self._settings.ensure_directories()
            self._db = Database(self._settings.database_path)
            self._db.connect()
            self._config = ConfigStore(self._db)
            self._contacts = ContactRepository(self._db)
            self._communications = CommunicationRepository(self._db)
            self._runs = SyncRunLog(self._db)

    def authorize(self) -> str:
        """Run the consent flow and return the authorized account address."""
        self._settings.ensure_directories()
        self.auth.authorize()
        profile = self.auth.get_profile()
        email = profile.get("emailAddress", "")
        if email:
            self._ensure_storage()
            self._config.set(USER_EMAIL_KEY, email.lower())
        return email

    def get_status(self) -> dict[str, Any]:
        """Summarize local state: stored counts, cursor and recent runs."""
        self._ensure_storage()
        return {
            "communications": self._communications.count(),
            "contacts": self._contacts.count(),
            "user_email": self._config.get(USER_EMAIL_KEY),
            "history_id": self._config.get(HISTORY_ID_KEY),
            "recent_runs": self._runs.recent_runs(5),
        }

    def close(self) -> None:
        """Pause any background sync, wait for it briefly, then close the database.

        A worker that outlives the wait keeps the database open.
        """
        if self._orchestrator is not None and self._orchestrator.is_running:
            self._orchestrator.pause()
            if not self._orchestrator.join(timeout=5):
                logger.warning("Sync worker still running at shutdown")
                return
        if self._db is not None:
            self._db.close()
            self._db = None
