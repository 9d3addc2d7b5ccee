"""Audit log of sync runs."""

from __future__ import annotations

from datetime import UTC, datetime

from gmail_sync.core.models import SyncProgress
from gmail_sync.storage.database import Database


class SyncRunLog:
    """Records when each full or incremental sync started and how it ended."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def start_run(self, kind: str, query: str = "") -> int:
        """Record the start of a run. Returns the run_id."""
        now = datetime.now(UTC).isoformat()
        with self._db.lock:
            cursor = self._db.conn.execute(
                "INSERT INTO sync_runs (kind, query, started_at) VALUES (?, ?, ?)",
                (kind, query, now),
            )
            self._db.conn.commit()
        return cursor.lastrowid or 0

    def complete_run(self, run_id: int, progress: SyncProgress) -> None:
        """Record the outcome of a run from its final progress."""
        now = datetime.now(UTC).isoformat()
        with self._db.lock:
            self._db.conn.execute(
                """UPDATE sync_runs SET
                   completed_at = ?, status = ?, total_messages = ?,
                   processed_messages = ?, failed_messages = ?, error_message = ?
                   WHERE run_id = ?""",
                (
                    now,
                    str(progress.status),
                    progress.total_messages,
                    progress.processed_messages,
                    progress.failed_messages,
                    progress.error or "",
                    run_id,
                ),
            )
            self._db.conn.commit()

    def recent_runs(self, limit: int = 10) -> list[dict]:
        with self._db.lock:
            rows = self._db.conn.execute(
                "SELECT * FROM sync_runs ORDER BY run_id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [dict(row) for row in rows]
