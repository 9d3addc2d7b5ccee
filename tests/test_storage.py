"""Tests for the SQLite database, config store and run log."""

from __future__ import annotations

from pathlib import Path

from gmail_sync.core.models import SyncProgress, SyncStatus
from gmail_sync.storage.config_store import ConfigStore
from gmail_sync.storage.database import Database
from gmail_sync.storage.runs import SyncRunLog


class TestDatabase:
    def test_creates_tables(self, db: Database) -> None:
        rows = db.conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        names = {row["name"] for row in rows}
        assert {"contacts", "contact_identifiers", "communications", "app_config", "sync_runs"} <= names

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        nested = tmp_path / "a" / "b" / "test.db"
        with Database(nested):
            pass
        assert nested.exists()

    def test_in_memory(self) -> None:
        with Database(":memory:") as database:
            assert database.conn.execute("SELECT COUNT(*) FROM contacts").fetchone()[0] == 0

    def test_connect_is_idempotent_on_schema(self, tmp_db_path: Path) -> None:
        with Database(tmp_db_path):
            pass
        with Database(tmp_db_path) as database:
            assert database.conn.execute("SELECT COUNT(*) FROM app_config").fetchone()[0] == 0


class TestConfigStore:
    def test_get_missing_returns_none(self, config_store: ConfigStore) -> None:
        assert config_store.get("missing") is None

    def test_set_overwrites(self, config_store: ConfigStore) -> None:
        config_store.set("k", "1")
        config_store.set("k", "2")
        assert config_store.get("k") == "2"

    def test_delete(self, config_store: ConfigStore) -> None:
        config_store.set("k", "1")
        config_store.delete("k")
        assert config_store.get("k") is None

    def test_json_roundtrip(self, config_store: ConfigStore) -> None:
        config_store.set_json("blob", {"a": [1, 2], "b": None})
        assert config_store.get_json("blob") == {"a": [1, 2], "b": None}

    def test_corrupt_json_returns_none(self, config_store: ConfigStore) -> None:
        config_store.set("blob", "{not json")
        assert config_store.get_json("blob") is None


class TestSyncRunLog:
    def test_start_and_complete(self, db: Database) -> None:
        runs = SyncRunLog(db)
        run_id = runs.start_run("full", "-in:spam")
        runs.complete_run(
            run_id,
            SyncProgress(
                status=SyncStatus.COMPLETED,
                total_messages=3,
                processed_messages=3,
            ),
        )

        (row,) = runs.recent_runs()
        assert row["run_id"] == run_id
        assert row["kind"] == "full"
        assert row["status"] == "completed"
        assert row["processed_messages"] == 3
        assert row["completed_at"] is not None

    def test_recent_runs_newest_first(self, db: Database) -> None:
        runs = SyncRunLog(db)
        first = runs.start_run("full")
        second = runs.start_run("incremental")
        assert [r["run_id"] for r in runs.recent_runs()] == [second, first]
