"""Idempotent storage of canonical communication records."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import UTC, datetime

from gmail_sync.core.exceptions import StorageError
from gmail_sync.core.models import Communication, Direction, MessageType
from gmail_sync.storage.database import Database

logger = logging.getLogger(__name__)


class CommunicationRepository:
    """Stores communications keyed by (source, source_message_id).

    Re-inserting a message that is already stored is an expected outcome
    of at-least-once delivery and returns the existing row.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def create(self, record: Communication) -> tuple[Communication, bool]:
        """Insert a communication.

        Returns:
            The stored record and whether it was newly created.

        Raises:
            StorageError: On any database failure other than a duplicate.
        """
        now = datetime.now(UTC).isoformat()
        with self._db.lock:
            try:
                cursor = self._db.conn.execute(
                    """INSERT INTO communications
                       (source, source_message_id, contact_id, direction, timestamp,
                        subject, content, content_type, message_type, thread_id,
                        metadata, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        record.source,
                        record.source_message_id,
                        record.contact_id,
                        str(record.direction),
                        record.timestamp.isoformat(),
                        record.subject,
                        record.content,
                        record.content_type,
                        str(record.message_type),
                        record.thread_id,
                        json.dumps(record.metadata) if record.metadata else None,
                        now,
                    ),
                )
                self._db.conn.commit()
            except sqlite3.IntegrityError as e:
                self._db.conn.rollback()
                existing = self.find_by_source(record.source, record.source_message_id)
                if existing is None:
                    # Not the (source, source_message_id) constraint, e.g. a bad contact_id.
                    raise StorageError(
                        f"Failed to store message {record.source_message_id}: {e}"
                    ) from e
                logger.debug("Message %s already stored", record.source_message_id)
                return existing, False
            except sqlite3.Error as e:
                self._db.conn.rollback()
                raise StorageError(
                    f"Failed to store message {record.source_message_id}: {e}"
                ) from e

        stored = self.find_by_id(cursor.lastrowid)
        assert stored is not None
        return stored, True

    def find_by_id(self, communication_id: int) -> Communication | None:
        rows = self._select(
            "SELECT * FROM communications WHERE id = ?",
            (communication_id,),
            f"communication {communication_id}",
        )
        return self._to_communication(rows[0]) if rows else None

    def find_by_source(self, source: str, source_message_id: str) -> Communication | None:
        rows = self._select(
            "SELECT * FROM communications WHERE source = ? AND source_message_id = ?",
            (source, source_message_id),
            f"message {source_message_id}",
        )
        return self._to_communication(rows[0]) if rows else None

    def find_by_thread(self, thread_id: str) -> list[Communication]:
        rows = self._select(
            "SELECT * FROM communications WHERE thread_id = ? ORDER BY timestamp ASC",
            (thread_id,),
            f"thread {thread_id}",
        )
        return [self._to_communication(row) for row in rows]

    def find_by_contact(
        self, contact_id: int, limit: int = 50, offset: int = 0
    ) -> list[Communication]:
        rows = self._select(
            """SELECT * FROM communications WHERE contact_id = ?
               ORDER BY timestamp DESC LIMIT ? OFFSET ?""",
            (contact_id, limit, offset),
            f"communications of contact {contact_id}",
        )
        return [self._to_communication(row) for row in rows]

    def count(self, source: str | None = None) -> int:
        if source is None:
            rows = self._select("SELECT COUNT(*) FROM communications", (), "communication count")
        else:
            rows = self._select(
                "SELECT COUNT(*) FROM communications WHERE source = ?",
                (source,),
                "communication count",
            )
        return rows[0][0]

    def _select(self, sql: str, params: tuple, what: str) -> list[sqlite3.Row]:
        try:
            with self._db.lock:
                return self._db.conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read {what}: {e}") from e

    @staticmethod
    def _to_communication(row: sqlite3.Row) -> Communication:
        return Communication(
            id=row["id"],
            source=row["source"],
            source_message_id=row["source_message_id"],
            contact_id=row["contact_id"],
            direction=Direction(row["direction"]),
            timestamp=datetime.fromisoformat(row["timestamp"]),
            subject=row["subject"],
            content=row["content"],
            content_type=row["content_type"],
            message_type=MessageType(row["message_type"]),
            thread_id=row["thread_id"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        )
