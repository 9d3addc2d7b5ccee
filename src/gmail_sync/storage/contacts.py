"""Contact resolution: one durable contact per normalized email address."""

from __future__ import annotations

import logging
import sqlite3
from datetime import UTC, datetime

from gmail_sync.core.exceptions import StorageError
from gmail_sync.core.models import Contact, ContactIdentifier
from gmail_sync.storage.database import Database

logger = logging.getLogger(__name__)

IDENTIFIER_TYPES = {"email", "phone", "name_variation"}


def normalize_email(address: str) -> str:
    return address.strip().lower()


class ContactRepository:
    """Finds or creates contacts keyed by email address.

    Uniqueness is enforced by the UNIQUE constraint on ``primary_email``;
    a constraint violation on insert means another writer got there first,
    so the row is re-read instead of raising.
    """

    def __init__(self, db: Database, source: str = "gmail") -> None:
        self._db = db
        self._source = source

    def find_by_id(self, contact_id: int) -> Contact | None:
        try:
            with self._db.lock:
                row = self._db.conn.execute(
                    "SELECT * FROM contacts WHERE id = ?", (contact_id,)
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read contact {contact_id}: {e}") from e
        return self._to_contact(row) if row else None

    def find_by_email(self, address: str) -> Contact | None:
        """Look up by primary email first, then by email identifiers."""
        email = normalize_email(address)
        try:
            with self._db.lock:
                row = self._db.conn.execute(
                    "SELECT * FROM contacts WHERE primary_email = ?", (email,)
                ).fetchone()
                if row is None:
                    row = self._db.conn.execute(
                        """SELECT c.* FROM contacts c
                           JOIN contact_identifiers ci ON c.id = ci.contact_id
                           WHERE ci.identifier_type = 'email' AND ci.identifier_value = ?""",
                        (email,),
                    ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to look up contact {email}: {e}") from e
        return self._to_contact(row) if row else None

    def find_or_create_by_email(self, address: str, display_name: str | None = None) -> Contact:
        """Return the contact for ``address``, creating it on first sight.

        Raises:
            ValueError: If the address is empty.
            StorageError: On database failures other than a lost insert race.
        """
        email = normalize_email(address)
        if not email:
            raise ValueError("Email address is required")
        name = (display_name or "").strip()

        contact = self.find_by_email(email)
        if contact is not None:
            return self._refresh_name(contact, name)

        now = datetime.now(UTC).isoformat()
        with self._db.lock:
            try:
                cursor = self._db.conn.execute(
                    """INSERT INTO contacts
                       (name, display_name, primary_email, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?)""",
                    (name or email, name or None, email, now, now),
                )
                contact_id = cursor.lastrowid
                self._insert_identifier(contact_id, "email", email, 1.0, now)
                if name:
                    self._insert_identifier(contact_id, "name_variation", name, 0.8, now)
                self._db.conn.commit()
            except sqlite3.IntegrityError:
                self._db.conn.rollback()
                logger.debug("Contact %s was inserted concurrently; re-reading", email)
                contact = self.find_by_email(email)
                if contact is None:
                    raise StorageError(f"Contact {email} vanished after a unique violation")
                return contact
            except sqlite3.Error as e:
                self._db.conn.rollback()
                raise StorageError(f"Failed to create contact {email}: {e}") from e

        logger.debug("Created contact %d for %s", contact_id, email)
        created = self.find_by_id(contact_id)
        assert created is not None
        return created

    def _refresh_name(self, contact: Contact, name: str) -> Contact:
        """Fill in a previously unknown name and remember new name variants."""
        if not name:
            return contact
        now = datetime.now(UTC).isoformat()
        try:
            with self._db.lock:
                if contact.display_name is None or contact.name == contact.primary_email:
                    self._db.conn.execute(
                        "UPDATE contacts SET name = ?, display_name = ?, updated_at = ? WHERE id = ?",
                        (name, name, now, contact.id),
                    )
                self._insert_identifier(contact.id, "name_variation", name, 0.8, now)
                self._db.conn.commit()
        except sqlite3.Error as e:
            self._db.conn.rollback()
            raise StorageError(f"Failed to update contact {contact.id}: {e}") from e
        return self.find_by_id(contact.id) or contact

    def add_identifier(
        self,
        contact_id: int,
        identifier_type: str,
        value: str,
        *,
        confidence_score: float = 1.0,
        verified: bool = False,
    ) -> None:
        """Attach an extra email/phone/name variant to a contact (ignored if present)."""
        if identifier_type not in IDENTIFIER_TYPES:
            raise ValueError(f"Invalid identifier type: {identifier_type}")
        if identifier_type == "email":
            value = normalize_email(value)
        now = datetime.now(UTC).isoformat()
        with self._db.lock:
            try:
                self._insert_identifier(
                    contact_id, identifier_type, value, confidence_score, now, verified
                )
                self._db.conn.commit()
            except sqlite3.Error as e:
                self._db.conn.rollback()
                raise StorageError(f"Failed to add identifier to contact {contact_id}: {e}") from e

    def get_identifiers(self, contact_id: int) -> list[ContactIdentifier]:
        try:
            with self._db.lock:
                rows = self._db.conn.execute(
                    """SELECT * FROM contact_identifiers WHERE contact_id = ?
                       ORDER BY confidence_score DESC, id""",
                    (contact_id,),
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read identifiers of contact {contact_id}: {e}") from e
        return [
            ContactIdentifier(
                id=row["id"],
                contact_id=row["contact_id"],
                identifier_type=row["identifier_type"],
                identifier_value=row["identifier_value"],
                confidence_score=row["confidence_score"],
                verified=bool(row["verified"]),
                source=row["source"],
            )
            for row in rows
        ]

    def record_communication(self, contact_id: int, timestamp: datetime) -> None:
        """Bump message count and widen the first/last communication window."""
        ts = timestamp.isoformat()
        with self._db.lock:
            try:
                self._db.conn.execute(
                    """UPDATE contacts SET
                           message_count = message_count + 1,
                           first_communication = CASE
                               WHEN first_communication IS NULL OR first_communication > ?
                               THEN ? ELSE first_communication END,
                           last_communication = CASE
                               WHEN last_communication IS NULL OR last_communication < ?
                               THEN ? ELSE last_communication END,
                           updated_at = ?
                       WHERE id = ?""",
                    (ts, ts, ts, ts, datetime.now(UTC).isoformat(), contact_id),
                )
                self._db.conn.commit()
            except sqlite3.Error as e:
                self._db.conn.rollback()
                raise StorageError(f"Failed to update counters of contact {contact_id}: {e}") from e

    def count(self) -> int:
        try:
            with self._db.lock:
                return self._db.conn.execute("SELECT COUNT(*) FROM contacts").fetchone()[0]
        except sqlite3.Error as e:
            raise StorageError(f"Failed to count contacts: {e}") from e

    def _insert_identifier(
        self,
        contact_id: int,
        identifier_type: str,
        value: str,
        confidence_score: float,
        now: str,
        verified: bool = False,
    ) -> None:
        self._db.conn.execute(
            """INSERT OR IGNORE INTO contact_identifiers
               (contact_id, identifier_type, identifier_value, confidence_score,
                verified, source, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (contact_id, identifier_type, value, confidence_score, int(verified), self._source, now),
        )

    def _to_contact(self, row: sqlite3.Row) -> Contact:
        return Contact(
            id=row["id"],
            name=row["name"],
            display_name=row["display_name"],
            primary_email=row["primary_email"],
            message_count=row["message_count"],
            first_communication=row["first_communication"],
            last_communication=row["last_communication"],
            identifiers=tuple(self.get_identifiers(row["id"])),
        )
