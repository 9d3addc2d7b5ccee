"""Tests for GmailSyncService wiring against a temporary database."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from gmail_sync.config.settings import GmailSyncSettings
from gmail_sync.core.exceptions import AuthenticationError
from gmail_sync.core.models import SyncStatus
from gmail_sync.pipeline.service import GmailSyncService
from gmail_sync.storage.config_store import USER_EMAIL_KEY


def test_status_of_empty_store(settings: GmailSyncSettings) -> None:
    service = GmailSyncService(settings=settings)
    try:
        status = service.get_status()
    finally:
        service.close()

    assert status == {
        "communications": 0,
        "contacts": 0,
        "user_email": None,
        "history_id": None,
        "recent_runs": [],
    }
    assert settings.database_path.exists()


def test_orchestrator_built_once(settings: GmailSyncSettings) -> None:
    service = GmailSyncService(settings=settings)
    try:
        first = service.orchestrator
        assert service.orchestrator is first
        assert first.get_progress().status is SyncStatus.IDLE
    finally:
        service.close()


def test_start_without_token_reports_auth_error(settings: GmailSyncSettings) -> None:
    service = GmailSyncService(settings=settings)
    try:
        orchestrator = service.orchestrator
        with pytest.raises(AuthenticationError):
            orchestrator.start()
        progress = orchestrator.get_progress()
        runs = service.get_status()["recent_runs"]
    finally:
        service.close()

    assert progress.status is SyncStatus.ERROR
    assert runs[0]["status"] == "error"


def test_authorize_stores_account(settings: GmailSyncSettings) -> None:
    service = GmailSyncService(settings=settings)
    with (
        patch.object(service.auth, "authorize"),
        patch.object(service.auth, "get_profile", return_value={"emailAddress": "Me@Example.com"}),
    ):
        email = service.authorize()

    try:
        assert email == "Me@Example.com"
        assert service._config is not None
        assert service._config.get(USER_EMAIL_KEY) == "me@example.com"
    finally:
        service.close()


class TestClose:
    def test_pauses_running_worker_before_closing(self, settings: GmailSyncSettings) -> None:
        service = GmailSyncService(settings=settings)
        service.get_status()
        worker = MagicMock(is_running=True)
        worker.join.return_value = True
        service._orchestrator = worker

        service.close()

        worker.pause.assert_called_once()
        worker.join.assert_called_once_with(timeout=5)
        assert service._db is None

    def test_keeps_database_open_while_worker_lingers(self, settings: GmailSyncSettings) -> None:
        service = GmailSyncService(settings=settings)
        service.get_status()
        worker = MagicMock(is_running=True)
        worker.join.return_value = False
        service._orchestrator = worker

        service.close()

        db = service._db
        try:
            assert db is not None
            assert db.conn.execute("SELECT 1").fetchone()[0] == 1
        finally:
            if db is not None:
                db.close()
