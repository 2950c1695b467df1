"""Summary: SQLite storage implementation for Missiv.

Importance: Provides a durable backend behind the same store contract as memory.
Alternatives: Use an ORM or an external database server.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, Mapping

from missiv.errors import AlreadyExists, InvalidState, NotFound, PreconditionFailed, Unavailable
from missiv.models import (
    Account,
    Contact,
    Conversation,
    Desk,
    DeskPreferences,
    Miv,
    Notification,
    NotificationType,
    utc_now,
)
from missiv.sequencing import next_seq_no
from missiv.storage.base import (
    EntityStore,
    apply_contact_changes,
    check_participants,
    ensure_immutable_fields,
    merge_preferences,
)


logger = logging.getLogger(__name__)

_MIV_COLUMNS = (
    "id, conversation_id, seq_no, from_desk, to_desk, subject, body, is_encrypted, is_ack, "
    "is_forgotten, created_at, sent_at, received_at, read_at, legacy_state"
)
_NOTIFICATION_COLUMNS = (
    "id, desk_id, type, miv_id, conversation_id, message, read, created_at, read_at"
)
_CONTACT_COLUMNS = (
    "id, desk_id, name, first_name, last_name, greeting_name, desk_id_ref, notes, "
    "created_at, updated_at"
)
_CONVERSATION_COLUMNS = (
    "id, subject, desk_id, participants, miv_count, is_archived, created_at, updated_at"
)


class SqliteStore(EntityStore):
    """Summary: SQLite-backed entity store.

    Importance: Keeps conversations across restarts with the same atomicity guarantees.
    Alternatives: Snapshot the memory store to disk periodically.

    Writes are serialized by a process lock and run inside ``BEGIN IMMEDIATE``
    transactions so sequence allocation and insertion commit together.
    """

    def __init__(
        self,
        db_path: str,
        clock: Callable[[], datetime] = utc_now,
        timeout: float = 5.0,
    ) -> None:
        """Summary: Initialize the storage with a database path.

        Importance: Allows configurable database location per environment.
        Alternatives: Hardcode a default path in the class.
        """

        self._db_path = Path(db_path)
        self._clock = clock
        self._timeout = timeout
        self._write_lock = threading.Lock()

    def initialize(self) -> None:
        """Summary: Create tables if they do not exist.

        Importance: Ensures the database is ready before the first request.
        Alternatives: Run migrations using a dedicated migration tool.
        """

        with self._transaction() as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    username TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    display_name TEXT NOT NULL,
                    email TEXT,
                    desks TEXT NOT NULL,
                    active_desk TEXT,
                    security_answer_hashes TEXT NOT NULL,
                    created_at TEXT,
                    updated_at TEXT
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS desks (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    public_key TEXT,
                    private_key BLOB,
                    preferences TEXT NOT NULL,
                    created_at TEXT,
                    updated_at TEXT
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    subject TEXT,
                    desk_id TEXT NOT NULL,
                    participants TEXT NOT NULL,
                    miv_count INTEGER NOT NULL,
                    is_archived INTEGER NOT NULL,
                    created_at TEXT,
                    updated_at TEXT
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS mivs (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL,
                    seq_no INTEGER NOT NULL,
                    from_desk TEXT NOT NULL,
                    to_desk TEXT NOT NULL,
                    subject TEXT,
                    body TEXT,
                    is_encrypted INTEGER NOT NULL,
                    is_ack INTEGER NOT NULL,
                    is_forgotten INTEGER NOT NULL,
                    created_at TEXT,
                    sent_at TEXT,
                    received_at TEXT,
                    read_at TEXT,
                    legacy_state TEXT,
                    UNIQUE(conversation_id, seq_no)
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS notifications (
                    id TEXT PRIMARY KEY,
                    desk_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    miv_id TEXT,
                    conversation_id TEXT,
                    message TEXT,
                    read INTEGER NOT NULL,
                    created_at TEXT,
                    read_at TEXT
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS contacts (
                    id TEXT PRIMARY KEY,
                    desk_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    first_name TEXT,
                    last_name TEXT,
                    greeting_name TEXT,
                    desk_id_ref TEXT,
                    notes TEXT,
                    created_at TEXT,
                    updated_at TEXT
                )
                """
            )
            connection.execute(
                "CREATE INDEX IF NOT EXISTS idx_mivs_conversation ON mivs (conversation_id, seq_no)"
            )
            connection.execute(
                "CREATE INDEX IF NOT EXISTS idx_notifications_desk ON notifications (desk_id)"
            )

    # Accounts

    def create_account(self, account: Account) -> Account:
        created_at = account.created_at or self._clock()
        stored = replace(
            account,
            id=account.id or _new_id("acc"),
            created_at=created_at,
            updated_at=created_at,
        )
        with self._transaction() as connection:
            try:
                connection.execute(
                    """
                    INSERT INTO accounts (
                        id, username, password_hash, display_name, email, desks, active_desk,
                        security_answer_hashes, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    _account_params(stored),
                )
            except sqlite3.IntegrityError as exc:
                raise AlreadyExists(f"Username already exists: {account.username}") from exc
        logger.info("Created account %s.", stored.id)
        return stored

    def get_account(self, account_id: str) -> Account:
        with self._connection() as connection:
            return self._fetch_account(connection, account_id)

    def get_account_by_username(self, username: str) -> Account:
        with self._connection() as connection:
            row = connection.execute(
                "SELECT * FROM accounts WHERE username = ?", (username,)
            ).fetchone()
        if row is None:
            raise NotFound("account", username)
        return _row_to_account(row)

    def update_account(self, account: Account) -> Account:
        with self._transaction() as connection:
            row = connection.execute(
                "SELECT created_at FROM accounts WHERE id = ?", (account.id,)
            ).fetchone()
            if row is None:
                raise NotFound("account", account.id)
            stored = replace(
                account, created_at=_parse_time(row["created_at"]), updated_at=self._clock()
            )
            try:
                connection.execute(
                    """
                    UPDATE accounts SET username = ?, password_hash = ?, display_name = ?,
                        email = ?, desks = ?, active_desk = ?, security_answer_hashes = ?,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        stored.username,
                        stored.password_hash,
                        stored.display_name,
                        stored.email,
                        json.dumps(list(stored.desks)),
                        stored.active_desk,
                        json.dumps(list(stored.security_answer_hashes)),
                        _format_time(stored.updated_at),
                        stored.id,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise AlreadyExists(f"Username already exists: {account.username}") from exc
        return stored

    def attach_desk(self, account_id: str, desk_id: str) -> Account:
        with self._transaction() as connection:
            existing = self._fetch_account(connection, account_id)
            desk = self._fetch_desk(connection, desk_id)
            if desk.account_id != account_id:
                raise InvalidState(f"Desk {desk_id} belongs to account {desk.account_id}")
            if desk_id in existing.desks:
                return existing
            stored = replace(
                existing,
                desks=existing.desks + (desk_id,),
                active_desk=existing.active_desk or desk_id,
                updated_at=self._clock(),
            )
            connection.execute(
                "UPDATE accounts SET desks = ?, active_desk = ?, updated_at = ? WHERE id = ?",
                (
                    json.dumps(list(stored.desks)),
                    stored.active_desk,
                    _format_time(stored.updated_at),
                    account_id,
                ),
            )
        return stored

    def set_active_desk(self, account_id: str, desk_id: str) -> Account:
        with self._transaction() as connection:
            existing = self._fetch_account(connection, account_id)
            if desk_id not in existing.desks:
                raise InvalidState(f"Desk {desk_id} does not belong to account {account_id}")
            stored = replace(existing, active_desk=desk_id, updated_at=self._clock())
            connection.execute(
                "UPDATE accounts SET active_desk = ?, updated_at = ? WHERE id = ?",
                (desk_id, _format_time(stored.updated_at), account_id),
            )
        return stored

    def set_password_hash(self, account_id: str, password_hash: str) -> Account:
        with self._transaction() as connection:
            existing = self._fetch_account(connection, account_id)
            stored = replace(existing, password_hash=password_hash, updated_at=self._clock())
            connection.execute(
                "UPDATE accounts SET password_hash = ?, updated_at = ? WHERE id = ?",
                (password_hash, _format_time(stored.updated_at), account_id),
            )
        return stored

    # Desks

    def create_desk(self, desk: Desk, private_key: bytes) -> Desk:
        if not desk.id:
            raise InvalidState("Desk id must be allocated before creation")
        created_at = desk.created_at or self._clock()
        stored = replace(desk, created_at=created_at, updated_at=created_at)
        with self._transaction() as connection:
            try:
                connection.execute(
                    """
                    INSERT INTO desks (
                        id, account_id, name, public_key, private_key, preferences,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        stored.id,
                        stored.account_id,
                        stored.name,
                        stored.public_key,
                        private_key,
                        json.dumps(asdict(stored.preferences)),
                        _format_time(stored.created_at),
                        _format_time(stored.updated_at),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise AlreadyExists(f"Desk already exists: {desk.id}") from exc
        logger.info("Created desk %s for account %s.", stored.id, stored.account_id)
        return stored

    def get_desk(self, desk_id: str) -> Desk:
        with self._connection() as connection:
            return self._fetch_desk(connection, desk_id)

    def get_desk_private_key(self, desk_id: str) -> bytes:
        with self._connection() as connection:
            row = connection.execute(
                "SELECT private_key FROM desks WHERE id = ?", (desk_id,)
            ).fetchone()
        if row is None:
            raise NotFound("desk private key", desk_id)
        return bytes(row["private_key"])

    def update_desk(self, desk: Desk) -> Desk:
        with self._transaction() as connection:
            row = connection.execute(
                "SELECT created_at FROM desks WHERE id = ?", (desk.id,)
            ).fetchone()
            if row is None:
                raise NotFound("desk", desk.id)
            stored = replace(desk, created_at=_parse_time(row["created_at"]), updated_at=self._clock())
            connection.execute(
                """
                UPDATE desks SET account_id = ?, name = ?, public_key = ?, preferences = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    stored.account_id,
                    stored.name,
                    stored.public_key,
                    json.dumps(asdict(stored.preferences)),
                    _format_time(stored.updated_at),
                    stored.id,
                ),
            )
        return stored

    def patch_desk(
        self,
        desk_id: str,
        name: str | None = None,
        preferences: Mapping[str, object] | None = None,
    ) -> Desk:
        with self._transaction() as connection:
            existing = self._fetch_desk(connection, desk_id)
            stored = replace(
                existing,
                name=existing.name if name is None else name,
                preferences=merge_preferences(existing.preferences, preferences),
                updated_at=self._clock(),
            )
            connection.execute(
                "UPDATE desks SET name = ?, preferences = ?, updated_at = ? WHERE id = ?",
                (
                    stored.name,
                    json.dumps(asdict(stored.preferences)),
                    _format_time(stored.updated_at),
                    desk_id,
                ),
            )
        return stored

    def list_desks_by_account(self, account_id: str) -> list[Desk]:
        with self._connection() as connection:
            rows = connection.execute(
                "SELECT * FROM desks WHERE account_id = ? ORDER BY rowid ASC", (account_id,)
            ).fetchall()
        return [_row_to_desk(row) for row in rows]

    # Conversations

    def create_conversation(
        self, conversation: Conversation, first_miv: Miv | None = None
    ) -> tuple[Conversation, Miv | None]:
        now = self._clock()
        stored = replace(
            conversation,
            id=conversation.id or _new_id("conv"),
            participants=(),
            miv_count=0,
            created_at=conversation.created_at or now,
            updated_at=conversation.created_at or now,
        )
        with self._transaction() as connection:
            try:
                connection.execute(
                    f"INSERT INTO conversations ({_CONVERSATION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    _conversation_params(stored),
                )
            except sqlite3.IntegrityError as exc:
                raise AlreadyExists(f"Conversation already exists: {stored.id}") from exc
            miv = None
            if first_miv is not None:
                miv = self._append(
                    connection, replace(first_miv, conversation_id=stored.id), None
                )
                stored = self._fetch_conversation(connection, stored.id)
        logger.info("Created conversation %s.", stored.id)
        return stored, miv

    def get_conversation(self, conversation_id: str) -> Conversation:
        with self._connection() as connection:
            return self._fetch_conversation(connection, conversation_id)

    def update_conversation(self, conversation: Conversation) -> Conversation:
        with self._transaction() as connection:
            existing = self._fetch_conversation(connection, conversation.id)
            if conversation.participants != existing.participants:
                raise InvalidState("Conversation participants cannot change")
            stored = replace(
                conversation,
                miv_count=existing.miv_count,
                created_at=existing.created_at,
                updated_at=self._clock(),
            )
            connection.execute(
                """
                UPDATE conversations SET subject = ?, desk_id = ?, is_archived = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    stored.subject,
                    stored.desk_id,
                    int(stored.is_archived),
                    _format_time(stored.updated_at),
                    stored.id,
                ),
            )
        return stored

    def set_conversation_archived(self, conversation_id: str, archived: bool) -> Conversation:
        with self._transaction() as connection:
            existing = self._fetch_conversation(connection, conversation_id)
            if existing.is_archived == archived:
                return existing
            stored = replace(existing, is_archived=archived, updated_at=self._clock())
            connection.execute(
                "UPDATE conversations SET is_archived = ?, updated_at = ? WHERE id = ?",
                (int(archived), _format_time(stored.updated_at), conversation_id),
            )
        return stored

    def list_conversations_by_desk(self, desk_id: str) -> list[Conversation]:
        # Participants are stored as a JSON array; match the quoted desk id.
        pattern = f'%"{desk_id}"%'
        with self._connection() as connection:
            rows = connection.execute(
                f"""
                SELECT {_CONVERSATION_COLUMNS} FROM conversations
                WHERE desk_id = ? OR participants LIKE ?
                ORDER BY updated_at DESC, rowid DESC
                """,
                (desk_id, pattern),
            ).fetchall()
        return [_row_to_conversation(row) for row in rows]

    # Mivs

    def next_seq_no(self, conversation_id: str) -> int:
        with self._connection() as connection:
            self._fetch_conversation(connection, conversation_id)
            return next_seq_no(self._fetch_mivs(connection, conversation_id))

    def append_miv(self, miv: Miv, archived: bool | None = None) -> Miv:
        with self._transaction() as connection:
            return self._append(connection, miv, archived)

    def get_conversation_mivs(self, conversation_id: str) -> list[Miv]:
        with self._connection() as connection:
            self._fetch_conversation(connection, conversation_id)
            return self._fetch_mivs(connection, conversation_id)

    def get_miv(self, miv_id: str) -> Miv:
        with self._connection() as connection:
            return self._fetch_miv(connection, miv_id)

    def update_miv(self, miv: Miv) -> Miv:
        with self._transaction() as connection:
            existing = self._fetch_miv(connection, miv.id)
            ensure_immutable_fields(existing, miv)
            self._write_mutable_miv_fields(connection, miv)
        return miv

    def set_miv_legacy_state(self, miv_id: str, expected: str, new: str) -> Miv:
        with self._transaction() as connection:
            existing = self._fetch_miv(connection, miv_id)
            if existing.legacy_state != expected:
                raise PreconditionFailed(
                    f"Miv {miv_id} legacy state is {existing.legacy_state!r}, not {expected!r}"
                )
            connection.execute(
                "UPDATE mivs SET legacy_state = ? WHERE id = ?", (new, miv_id)
            )
        return replace(existing, legacy_state=new)

    def mark_miv_read(self, miv_id: str, desk_id: str) -> Miv:
        with self._transaction() as connection:
            existing = self._fetch_miv(connection, miv_id)
            if existing.to_desk != desk_id:
                raise InvalidState(f"Miv {miv_id} is not addressed to desk {desk_id}")
            if existing.read_at is not None:
                raise PreconditionFailed(f"Miv {miv_id} is already read")
            now = self._clock()
            stored = replace(existing, read_at=now, received_at=existing.received_at or now)
            self._write_mutable_miv_fields(connection, stored)
        return stored

    def mark_conversation_read(self, conversation_id: str, desk_id: str) -> int:
        with self._transaction() as connection:
            self._fetch_conversation(connection, conversation_id)
            now = _format_time(self._clock())
            cursor = connection.execute(
                """
                UPDATE mivs SET read_at = ?, received_at = COALESCE(received_at, ?)
                WHERE conversation_id = ? AND to_desk = ? AND read_at IS NULL
                """,
                (now, now, conversation_id, desk_id),
            )
            return cursor.rowcount

    def set_miv_forgotten(self, miv_id: str, desk_id: str) -> Miv:
        with self._transaction() as connection:
            existing = self._fetch_miv(connection, miv_id)
            if existing.from_desk != desk_id:
                raise InvalidState(f"Only the sender can forget miv {miv_id}")
            stored = replace(existing, is_forgotten=True)
            self._write_mutable_miv_fields(connection, stored)
        return stored

    # Notifications

    def create_notification(self, notification: Notification) -> Notification:
        stored = replace(
            notification,
            id=notification.id or _new_id("notif"),
            created_at=notification.created_at or self._clock(),
        )
        with self._transaction() as connection:
            try:
                connection.execute(
                    f"INSERT INTO notifications ({_NOTIFICATION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        stored.id,
                        stored.desk_id,
                        stored.type.value,
                        stored.miv_id,
                        stored.conversation_id,
                        stored.message,
                        int(stored.read),
                        _format_time(stored.created_at),
                        _format_time(stored.read_at),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise AlreadyExists(f"Notification already exists: {stored.id}") from exc
        return stored

    def get_notification(self, notification_id: str) -> Notification:
        with self._connection() as connection:
            row = connection.execute(
                f"SELECT {_NOTIFICATION_COLUMNS} FROM notifications WHERE id = ?",
                (notification_id,),
            ).fetchone()
        if row is None:
            raise NotFound("notification", notification_id)
        return _row_to_notification(row)

    def list_notifications_by_desk(
        self, desk_id: str, unread_only: bool = False
    ) -> list[Notification]:
        query = f"SELECT {_NOTIFICATION_COLUMNS} FROM notifications WHERE desk_id = ?"
        if unread_only:
            query += " AND read = 0"
        with self._connection() as connection:
            rows = connection.execute(query + " ORDER BY rowid ASC", (desk_id,)).fetchall()
        return [_row_to_notification(row) for row in rows]

    def mark_notification_read(self, notification_id: str) -> Notification:
        with self._transaction() as connection:
            row = connection.execute(
                f"SELECT {_NOTIFICATION_COLUMNS} FROM notifications WHERE id = ?",
                (notification_id,),
            ).fetchone()
            if row is None:
                raise NotFound("notification", notification_id)
            existing = _row_to_notification(row)
            if existing.read:
                return existing
            stored = replace(existing, read=True, read_at=self._clock())
            connection.execute(
                "UPDATE notifications SET read = 1, read_at = ? WHERE id = ?",
                (_format_time(stored.read_at), notification_id),
            )
        return stored

    # Contacts

    def create_contact(self, contact: Contact) -> Contact:
        now = self._clock()
        stored = replace(
            contact,
            id=contact.id or _new_id("contact"),
            created_at=contact.created_at or now,
            updated_at=now,
        )
        with self._transaction() as connection:
            try:
                connection.execute(
                    f"INSERT INTO contacts ({_CONTACT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    _contact_params(stored),
                )
            except sqlite3.IntegrityError as exc:
                raise AlreadyExists(f"Contact already exists: {stored.id}") from exc
        return stored

    def get_contact(self, contact_id: str) -> Contact:
        with self._connection() as connection:
            row = connection.execute(
                f"SELECT {_CONTACT_COLUMNS} FROM contacts WHERE id = ?", (contact_id,)
            ).fetchone()
        if row is None:
            raise NotFound("contact", contact_id)
        return _row_to_contact(row)

    def list_contacts_by_desk(self, desk_id: str) -> list[Contact]:
        with self._connection() as connection:
            rows = connection.execute(
                f"SELECT {_CONTACT_COLUMNS} FROM contacts WHERE desk_id = ? ORDER BY rowid ASC",
                (desk_id,),
            ).fetchall()
        return [_row_to_contact(row) for row in rows]

    def update_contact(self, contact: Contact) -> Contact:
        with self._transaction() as connection:
            row = connection.execute(
                "SELECT desk_id, created_at FROM contacts WHERE id = ?", (contact.id,)
            ).fetchone()
            if row is None:
                raise NotFound("contact", contact.id)
            if row["desk_id"] != contact.desk_id:
                raise InvalidState("A contact cannot move to another desk")
            stored = replace(
                contact, created_at=_parse_time(row["created_at"]), updated_at=self._clock()
            )
            connection.execute(
                """
                UPDATE contacts SET name = ?, first_name = ?, last_name = ?, greeting_name = ?,
                    desk_id_ref = ?, notes = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    stored.name,
                    stored.first_name,
                    stored.last_name,
                    stored.greeting_name,
                    stored.desk_id_ref,
                    stored.notes,
                    _format_time(stored.updated_at),
                    stored.id,
                ),
            )
        return stored

    def patch_contact(self, contact_id: str, changes: Mapping[str, object]) -> Contact:
        with self._transaction() as connection:
            row = connection.execute(
                f"SELECT {_CONTACT_COLUMNS} FROM contacts WHERE id = ?", (contact_id,)
            ).fetchone()
            if row is None:
                raise NotFound("contact", contact_id)
            stored = replace(
                apply_contact_changes(_row_to_contact(row), changes), updated_at=self._clock()
            )
            connection.execute(
                """
                UPDATE contacts SET name = ?, first_name = ?, last_name = ?, greeting_name = ?,
                    desk_id_ref = ?, notes = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    stored.name,
                    stored.first_name,
                    stored.last_name,
                    stored.greeting_name,
                    stored.desk_id_ref,
                    stored.notes,
                    _format_time(stored.updated_at),
                    contact_id,
                ),
            )
        return stored

    def delete_contact(self, contact_id: str) -> None:
        with self._transaction() as connection:
            cursor = connection.execute("DELETE FROM contacts WHERE id = ?", (contact_id,))
            if cursor.rowcount == 0:
                raise NotFound("contact", contact_id)

    def get_contact_by_desk_ref(self, desk_id: str, desk_id_ref: str) -> Contact:
        with self._connection() as connection:
            row = connection.execute(
                f"""
                SELECT {_CONTACT_COLUMNS} FROM contacts
                WHERE desk_id = ? AND desk_id_ref = ?
                ORDER BY rowid ASC LIMIT 1
                """,
                (desk_id, desk_id_ref),
            ).fetchone()
        if row is None:
            raise NotFound("contact", desk_id_ref)
        return _row_to_contact(row)

    # Helpers

    def _append(self, connection: sqlite3.Connection, miv: Miv, archived: bool | None) -> Miv:
        conversation = self._fetch_conversation(connection, miv.conversation_id)
        participants = check_participants(conversation, miv)
        now = self._clock()
        stored = replace(
            miv,
            id=miv.id or _new_id("cmiv"),
            seq_no=next_seq_no(self._fetch_mivs(connection, conversation.id)),
            created_at=miv.created_at or now,
            sent_at=miv.sent_at or now,
        )
        try:
            connection.execute(
                f"""
                INSERT INTO mivs ({_MIV_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    stored.id,
                    stored.conversation_id,
                    stored.seq_no,
                    stored.from_desk,
                    stored.to_desk,
                    stored.subject,
                    stored.body,
                    int(stored.is_encrypted),
                    int(stored.is_ack),
                    int(stored.is_forgotten),
                    _format_time(stored.created_at),
                    _format_time(stored.sent_at),
                    _format_time(stored.received_at),
                    _format_time(stored.read_at),
                    stored.legacy_state,
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise AlreadyExists(f"Miv already exists: {stored.id}") from exc
        is_archived = conversation.is_archived if archived is None else archived
        connection.execute(
            """
            UPDATE conversations SET participants = ?, miv_count = miv_count + 1,
                is_archived = ?, updated_at = ?
            WHERE id = ?
            """,
            (json.dumps(list(participants)), int(is_archived), _format_time(now), conversation.id),
        )
        return stored

    def _fetch_account(self, connection: sqlite3.Connection, account_id: str) -> Account:
        row = connection.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
        if row is None:
            raise NotFound("account", account_id)
        return _row_to_account(row)

    def _fetch_desk(self, connection: sqlite3.Connection, desk_id: str) -> Desk:
        row = connection.execute("SELECT * FROM desks WHERE id = ?", (desk_id,)).fetchone()
        if row is None:
            raise NotFound("desk", desk_id)
        return _row_to_desk(row)

    def _fetch_conversation(self, connection: sqlite3.Connection, conversation_id: str) -> Conversation:
        row = connection.execute(
            f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = ?",
            (conversation_id,),
        ).fetchone()
        if row is None:
            raise NotFound("conversation", conversation_id)
        return _row_to_conversation(row)

    def _fetch_mivs(self, connection: sqlite3.Connection, conversation_id: str) -> list[Miv]:
        rows = connection.execute(
            f"SELECT {_MIV_COLUMNS} FROM mivs WHERE conversation_id = ? ORDER BY seq_no ASC",
            (conversation_id,),
        ).fetchall()
        return [_row_to_miv(row) for row in rows]

    def _fetch_miv(self, connection: sqlite3.Connection, miv_id: str) -> Miv:
        row = connection.execute(
            f"SELECT {_MIV_COLUMNS} FROM mivs WHERE id = ?", (miv_id,)
        ).fetchone()
        if row is None:
            raise NotFound("miv", miv_id)
        return _row_to_miv(row)

    def _write_mutable_miv_fields(self, connection: sqlite3.Connection, miv: Miv) -> None:
        connection.execute(
            """
            UPDATE mivs SET is_forgotten = ?, sent_at = ?, received_at = ?, read_at = ?,
                legacy_state = ?
            WHERE id = ?
            """,
            (
                int(miv.is_forgotten),
                _format_time(miv.sent_at),
                _format_time(miv.received_at),
                _format_time(miv.read_at),
                miv.legacy_state,
                miv.id,
            ),
        )

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Summary: Run a write as one immediate transaction under the process lock.

        Importance: Makes read-modify-write sequences atomic against every other writer.
        Alternatives: Rely on SQLite's implicit deferred transactions.
        """

        with self._write_lock, self._connection() as connection:
            connection.execute("BEGIN IMMEDIATE")
            try:
                yield connection
            except BaseException:
                connection.rollback()
                raise
            connection.commit()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Summary: Context manager for SQLite connections.

        Importance: Ensures connections are closed cleanly and backend faults surface as Unavailable.
        Alternatives: Keep a single long-lived connection.
        """

        try:
            connection = sqlite3.connect(
                self._db_path, timeout=self._timeout, isolation_level=None
            )
        except sqlite3.Error as exc:
            raise Unavailable(f"Cannot open database {self._db_path}: {exc}") from exc
        connection.row_factory = sqlite3.Row
        try:
            yield connection
        except sqlite3.IntegrityError as exc:
            raise AlreadyExists(f"Constraint violated: {exc}") from exc
        except sqlite3.DatabaseError as exc:
            logger.warning("SQLite operation failed: %s", exc)
            raise Unavailable(f"Storage unavailable: {exc}") from exc
        finally:
            connection.close()


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _format_time(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _account_params(account: Account) -> tuple:
    return (
        account.id,
        account.username,
        account.password_hash,
        account.display_name,
        account.email,
        json.dumps(list(account.desks)),
        account.active_desk,
        json.dumps(list(account.security_answer_hashes)),
        _format_time(account.created_at),
        _format_time(account.updated_at),
    )


def _conversation_params(conversation: Conversation) -> tuple:
    return (
        conversation.id,
        conversation.subject,
        conversation.desk_id,
        json.dumps(list(conversation.participants)),
        conversation.miv_count,
        int(conversation.is_archived),
        _format_time(conversation.created_at),
        _format_time(conversation.updated_at),
    )


def _contact_params(contact: Contact) -> tuple:
    return (
        contact.id,
        contact.desk_id,
        contact.name,
        contact.first_name,
        contact.last_name,
        contact.greeting_name,
        contact.desk_id_ref,
        contact.notes,
        _format_time(contact.created_at),
        _format_time(contact.updated_at),
    )


def _row_to_account(row: sqlite3.Row) -> Account:
    return Account(
        id=row["id"],
        username=row["username"],
        password_hash=row["password_hash"],
        display_name=row["display_name"],
        email=row["email"] or "",
        desks=tuple(json.loads(row["desks"])),
        active_desk=row["active_desk"] or "",
        security_answer_hashes=tuple(json.loads(row["security_answer_hashes"])),
        created_at=_parse_time(row["created_at"]),
        updated_at=_parse_time(row["updated_at"]),
    )


def _row_to_desk(row: sqlite3.Row) -> Desk:
    return Desk(
        id=row["id"],
        account_id=row["account_id"],
        name=row["name"],
        public_key=row["public_key"] or "",
        preferences=DeskPreferences(**json.loads(row["preferences"])),
        created_at=_parse_time(row["created_at"]),
        updated_at=_parse_time(row["updated_at"]),
    )


def _row_to_conversation(row: sqlite3.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        subject=row["subject"],
        desk_id=row["desk_id"],
        participants=tuple(json.loads(row["participants"])),
        miv_count=row["miv_count"],
        is_archived=bool(row["is_archived"]),
        created_at=_parse_time(row["created_at"]),
        updated_at=_parse_time(row["updated_at"]),
    )


def _row_to_miv(row: sqlite3.Row) -> Miv:
    return Miv(
        id=row["id"],
        conversation_id=row["conversation_id"],
        seq_no=row["seq_no"],
        from_desk=row["from_desk"],
        to_desk=row["to_desk"],
        subject=row["subject"],
        body=row["body"],
        is_encrypted=bool(row["is_encrypted"]),
        is_ack=bool(row["is_ack"]),
        is_forgotten=bool(row["is_forgotten"]),
        created_at=_parse_time(row["created_at"]),
        sent_at=_parse_time(row["sent_at"]),
        received_at=_parse_time(row["received_at"]),
        read_at=_parse_time(row["read_at"]),
        legacy_state=row["legacy_state"],
    )


def _row_to_notification(row: sqlite3.Row) -> Notification:
    return Notification(
        id=row["id"],
        desk_id=row["desk_id"],
        type=NotificationType(row["type"]),
        miv_id=row["miv_id"],
        conversation_id=row["conversation_id"],
        message=row["message"],
        read=bool(row["read"]),
        created_at=_parse_time(row["created_at"]),
        read_at=_parse_time(row["read_at"]),
    )


def _row_to_contact(row: sqlite3.Row) -> Contact:
    return Contact(
        id=row["id"],
        desk_id=row["desk_id"],
        name=row["name"],
        first_name=row["first_name"] or "",
        last_name=row["last_name"] or "",
        greeting_name=row["greeting_name"] or "",
        desk_id_ref=row["desk_id_ref"] or "",
        notes=row["notes"] or "",
        created_at=_parse_time(row["created_at"]),
        updated_at=_parse_time(row["updated_at"]),
    )
