"""SQLite connection and schema for contacts, communications and sync state."""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path

logger = logging.getLogger(__name__)

SCHEMA = """
    CREATE TABLE IF NOT EXISTS contacts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        display_name TEXT,
        primary_email TEXT UNIQUE,
        message_count INTEGER NOT NULL DEFAULT 0,
        first_communication TEXT,
        last_communication TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS contact_identifiers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        contact_id INTEGER NOT NULL,
        identifier_type TEXT NOT NULL,
        identifier_value TEXT NOT NULL,
        confidence_score REAL NOT NULL DEFAULT 1.0,
        verified INTEGER NOT NULL DEFAULT 0,
        source TEXT,
        created_at TEXT NOT NULL,
        FOREIGN KEY (contact_id) REFERENCES contacts(id) ON DELETE CASCADE,
        UNIQUE (contact_id, identifier_type, identifier_value)
    );

    CREATE INDEX IF NOT EXISTS idx_identifiers_value
        ON contact_identifiers(identifier_type, identifier_value);

    CREATE TABLE IF NOT EXISTS communications (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        source TEXT NOT NULL,
        source_message_id TEXT NOT NULL,
        contact_id INTEGER,
        direction TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        subject TEXT,
        content TEXT,
        content_type TEXT NOT NULL DEFAULT 'email',
        message_type TEXT NOT NULL DEFAULT 'direct',
        thread_id TEXT,
        metadata TEXT,
        created_at TEXT NOT NULL,
        FOREIGN KEY (contact_id) REFERENCES contacts(id) ON DELETE SET NULL,
        UNIQUE (source, source_message_id)
    );

    CREATE INDEX IF NOT EXISTS idx_communications_timestamp ON communications(timestamp);
    CREATE INDEX IF NOT EXISTS idx_communications_contact ON communications(contact_id);
    CREATE INDEX IF NOT EXISTS idx_communications_thread ON communications(thread_id);

    CREATE TABLE IF NOT EXISTS app_config (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS sync_runs (
        run_id INTEGER PRIMARY KEY AUTOINCREMENT,
        kind TEXT NOT NULL,
        query TEXT NOT NULL DEFAULT '',
        started_at TEXT NOT NULL,
        completed_at TEXT,
        status TEXT NOT NULL DEFAULT 'running',
        total_messages INTEGER DEFAULT 0,
        processed_messages INTEGER DEFAULT 0,
        failed_messages INTEGER DEFAULT 0,
        error_message TEXT DEFAULT ''
    );
"""


class Database:
    """Owns the SQLite connection shared by the repositories.

    The sync worker thread and callers polling for results use the same
    connection, so writes are serialized with ``lock``.
    """

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = db_path if db_path == ":memory:" else Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self.lock = threading.RLock()

    def connect(self) -> None:
        """Open database connection and ensure schema exists."""
        if isinstance(self._db_path, Path):
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys=ON")
        if isinstance(self._db_path, Path):
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)
        logger.debug("Connected to %s", self._db_path)

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> Database:
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn
