"""Key-value settings persisted in the app_config table."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

from gmail_sync.storage.database import Database

logger = logging.getLogger(__name__)

PROGRESS_KEY = "gmail_sync_progress"
CHECKPOINT_KEY = "gmail_sync_checkpoint"
HISTORY_ID_KEY = "gmail_last_history_id"
USER_EMAIL_KEY = "user_email"


class ConfigStore:
    """String values keyed by name, with JSON helpers for structured blobs."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def get(self, key: str) -> str | None:
        with self._db.lock:
            row = self._db.conn.execute(
                "SELECT value FROM app_config WHERE key = ?", (key,)
            ).fetchone()
        return row["value"] if row else None

    def set(self, key: str, value: str) -> None:
        now = datetime.now(UTC).isoformat()
        with self._db.lock:
            self._db.conn.execute(
                """INSERT INTO app_config (key, value, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET
                       value = excluded.value,
                       updated_at = excluded.updated_at""",
                (key, value, now),
            )
            self._db.conn.commit()

    def delete(self, key: str) -> None:
        with self._db.lock:
            self._db.conn.execute("DELETE FROM app_config WHERE key = ?", (key,))
            self._db.conn.commit()

    def get_json(self, key: str) -> Any:
        """Return the decoded JSON value, or None if missing or corrupt."""
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring corrupt JSON stored under %s", key)
            return None

    def set_json(self, key: str, value: Any) -> None:
        self.set(key, json.dumps(value))
