"""Summary: In-memory storage implementation for Missiv.

Importance: Reference store keeping every entity resident under one lock domain.
Alternatives: Start directly with the SQLite backend.
"""

from __future__ import annotations

import itertools
import logging
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from typing import Callable, Mapping

from missiv.errors import AlreadyExists, InvalidState, NotFound, PreconditionFailed
from missiv.models import Account, Contact, Conversation, Desk, Miv, Notification, utc_now
from missiv.sequencing import next_seq_no
from missiv.storage.base import (
    EntityStore,
    apply_contact_changes,
    check_participants,
    ensure_immutable_fields,
    merge_preferences,
)
from missiv.storage.locks import ReadWriteLock


logger = logging.getLogger(__name__)


class MemoryStore(EntityStore):
    """Summary: Map-of-maps store guarded by a single reader/writer lock.

    Importance: Reads run concurrently; each write, compound or not, is one critical section.
    Alternatives: Lock per entity type, at the cost of cross-type atomicity.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        """Summary: Initialize empty entity maps.

        Importance: Allows an injected clock for deterministic timestamps in tests.
        Alternatives: Read the system clock directly everywhere.
        """

        self._clock = clock
        self._lock = ReadWriteLock()
        self._counters: dict[str, itertools.count] = defaultdict(lambda: itertools.count(1))
        self._accounts: dict[str, Account] = {}
        self._account_ids_by_username: dict[str, str] = {}
        self._desks: dict[str, Desk] = {}
        self._desk_private_keys: dict[str, bytes] = {}
        self._conversations: dict[str, Conversation] = {}
        self._conversation_mivs: dict[str, list[Miv]] = {}
        self._miv_conversations: dict[str, str] = {}
        self._notifications: dict[str, Notification] = {}
        self._notification_ids_by_desk: dict[str, list[str]] = defaultdict(list)
        self._contacts: dict[str, Contact] = {}
        self._contact_ids_by_desk: dict[str, list[str]] = defaultdict(list)

    # Accounts

    def create_account(self, account: Account) -> Account:
        with self._lock.write():
            if account.username in self._account_ids_by_username:
                raise AlreadyExists(f"Username already exists: {account.username}")
            account_id = account.id or self._next_id("acc")
            if account_id in self._accounts:
                raise AlreadyExists(f"Account already exists: {account_id}")
            created_at = account.created_at or self._clock()
            stored = replace(account, id=account_id, created_at=created_at, updated_at=created_at)
            self._accounts[account_id] = stored
            self._account_ids_by_username[stored.username] = account_id
        logger.info("Created account %s.", account_id)
        return stored

    def get_account(self, account_id: str) -> Account:
        with self._lock.read():
            return self._require(self._accounts, "account", account_id)

    def get_account_by_username(self, username: str) -> Account:
        with self._lock.read():
            account_id = self._account_ids_by_username.get(username)
            if account_id is None:
                raise NotFound("account", username)
            return self._accounts[account_id]

    def update_account(self, account: Account) -> Account:
        with self._lock.write():
            existing = self._require(self._accounts, "account", account.id)
            if account.username != existing.username:
                if account.username in self._account_ids_by_username:
                    raise AlreadyExists(f"Username already exists: {account.username}")
                del self._account_ids_by_username[existing.username]
                self._account_ids_by_username[account.username] = account.id
            stored = replace(account, created_at=existing.created_at, updated_at=self._clock())
            self._accounts[account.id] = stored
            return stored

    def attach_desk(self, account_id: str, desk_id: str) -> Account:
        with self._lock.write():
            existing = self._require(self._accounts, "account", account_id)
            desk = self._require(self._desks, "desk", desk_id)
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
            self._accounts[account_id] = stored
            return stored

    def set_active_desk(self, account_id: str, desk_id: str) -> Account:
        with self._lock.write():
            existing = self._require(self._accounts, "account", account_id)
            if desk_id not in existing.desks:
                raise InvalidState(f"Desk {desk_id} does not belong to account {account_id}")
            stored = replace(existing, active_desk=desk_id, updated_at=self._clock())
            self._accounts[account_id] = stored
            return stored

    def set_password_hash(self, account_id: str, password_hash: str) -> Account:
        with self._lock.write():
            existing = self._require(self._accounts, "account", account_id)
            stored = replace(existing, password_hash=password_hash, updated_at=self._clock())
            self._accounts[account_id] = stored
            return stored

    # Desks

    def create_desk(self, desk: Desk, private_key: bytes) -> Desk:
        with self._lock.write():
            if not desk.id:
                raise InvalidState("Desk id must be allocated before creation")
            if desk.id in self._desks:
                raise AlreadyExists(f"Desk already exists: {desk.id}")
            created_at = desk.created_at or self._clock()
            stored = replace(desk, created_at=created_at, updated_at=created_at)
            self._desks[desk.id] = stored
            self._desk_private_keys[desk.id] = private_key
        logger.info("Created desk %s for account %s.", desk.id, desk.account_id)
        return stored

    def get_desk(self, desk_id: str) -> Desk:
        with self._lock.read():
            return self._require(self._desks, "desk", desk_id)

    def get_desk_private_key(self, desk_id: str) -> bytes:
        with self._lock.read():
            return self._require(self._desk_private_keys, "desk private key", desk_id)

    def update_desk(self, desk: Desk) -> Desk:
        with self._lock.write():
            existing = self._require(self._desks, "desk", desk.id)
            stored = replace(desk, created_at=existing.created_at, updated_at=self._clock())
            self._desks[desk.id] = stored
            return stored

    def patch_desk(
        self,
        desk_id: str,
        name: str | None = None,
        preferences: Mapping[str, object] | None = None,
    ) -> Desk:
        with self._lock.write():
            existing = self._require(self._desks, "desk", desk_id)
            stored = replace(
                existing,
                name=existing.name if name is None else name,
                preferences=merge_preferences(existing.preferences, preferences),
                updated_at=self._clock(),
            )
            self._desks[desk_id] = stored
            return stored

    def list_desks_by_account(self, account_id: str) -> list[Desk]:
        with self._lock.read():
            return [desk for desk in self._desks.values() if desk.account_id == account_id]

    # Conversations

    def create_conversation(
        self, conversation: Conversation, first_miv: Miv | None = None
    ) -> tuple[Conversation, Miv | None]:
        with self._lock.write():
            conversation_id = conversation.id or self._next_id("conv")
            if conversation_id in self._conversations:
                raise AlreadyExists(f"Conversation already exists: {conversation_id}")
            now = self._clock()
            stored = replace(
                conversation,
                id=conversation_id,
                participants=(),
                miv_count=0,
                created_at=conversation.created_at or now,
                updated_at=conversation.created_at or now,
            )
            if first_miv is not None:
                check_participants(stored, first_miv)
            self._conversations[conversation_id] = stored
            self._conversation_mivs[conversation_id] = []
            miv = None
            if first_miv is not None:
                miv = self._append(replace(first_miv, conversation_id=conversation_id), None)
                stored = self._conversations[conversation_id]
        logger.info("Created conversation %s.", conversation_id)
        return stored, miv

    def get_conversation(self, conversation_id: str) -> Conversation:
        with self._lock.read():
            return self._require(self._conversations, "conversation", conversation_id)

    def update_conversation(self, conversation: Conversation) -> Conversation:
        with self._lock.write():
            existing = self._require(self._conversations, "conversation", conversation.id)
            if conversation.participants != existing.participants:
                raise InvalidState("Conversation participants cannot change")
            stored = replace(
                conversation,
                miv_count=existing.miv_count,
                created_at=existing.created_at,
                updated_at=self._clock(),
            )
            self._conversations[conversation.id] = stored
            return stored

    def set_conversation_archived(self, conversation_id: str, archived: bool) -> Conversation:
        with self._lock.write():
            existing = self._require(self._conversations, "conversation", conversation_id)
            if existing.is_archived == archived:
                return existing
            stored = replace(existing, is_archived=archived, updated_at=self._clock())
            self._conversations[conversation_id] = stored
            return stored

    def list_conversations_by_desk(self, desk_id: str) -> list[Conversation]:
        with self._lock.read():
            found = [
                conversation
                for conversation in self._conversations.values()
                if conversation.desk_id == desk_id or desk_id in conversation.participants
            ]
        found.sort(key=lambda item: item.updated_at, reverse=True)
        return found

    # Mivs

    def next_seq_no(self, conversation_id: str) -> int:
        with self._lock.read():
            mivs = self._require(self._conversation_mivs, "conversation", conversation_id)
            return next_seq_no(mivs)

    def append_miv(self, miv: Miv, archived: bool | None = None) -> Miv:
        with self._lock.write():
            return self._append(miv, archived)

    def get_conversation_mivs(self, conversation_id: str) -> list[Miv]:
        with self._lock.read():
            return list(self._require(self._conversation_mivs, "conversation", conversation_id))

    def get_miv(self, miv_id: str) -> Miv:
        with self._lock.read():
            return self._locate_miv(miv_id)[1]

    def update_miv(self, miv: Miv) -> Miv:
        with self._lock.write():
            index, existing = self._locate_miv(miv.id)
            ensure_immutable_fields(existing, miv)
            self._conversation_mivs[existing.conversation_id][index] = miv
            return miv

    def set_miv_legacy_state(self, miv_id: str, expected: str, new: str) -> Miv:
        with self._lock.write():
            index, existing = self._locate_miv(miv_id)
            if existing.legacy_state != expected:
                raise PreconditionFailed(
                    f"Miv {miv_id} legacy state is {existing.legacy_state!r}, not {expected!r}"
                )
            stored = replace(existing, legacy_state=new)
            self._conversation_mivs[existing.conversation_id][index] = stored
            return stored

    def mark_miv_read(self, miv_id: str, desk_id: str) -> Miv:
        with self._lock.write():
            index, existing = self._locate_miv(miv_id)
            if existing.to_desk != desk_id:
                raise InvalidState(f"Miv {miv_id} is not addressed to desk {desk_id}")
            if existing.read_at is not None:
                raise PreconditionFailed(f"Miv {miv_id} is already read")
            now = self._clock()
            stored = replace(existing, read_at=now, received_at=existing.received_at or now)
            self._conversation_mivs[existing.conversation_id][index] = stored
            return stored

    def mark_conversation_read(self, conversation_id: str, desk_id: str) -> int:
        with self._lock.write():
            mivs = self._require(self._conversation_mivs, "conversation", conversation_id)
            now = self._clock()
            marked = 0
            for index, miv in enumerate(mivs):
                if miv.to_desk == desk_id and miv.read_at is None:
                    mivs[index] = replace(miv, read_at=now, received_at=miv.received_at or now)
                    marked += 1
            return marked

    def set_miv_forgotten(self, miv_id: str, desk_id: str) -> Miv:
        with self._lock.write():
            index, existing = self._locate_miv(miv_id)
            if existing.from_desk != desk_id:
                raise InvalidState(f"Only the sender can forget miv {miv_id}")
            stored = replace(existing, is_forgotten=True)
            self._conversation_mivs[existing.conversation_id][index] = stored
            return stored

    # Notifications

    def create_notification(self, notification: Notification) -> Notification:
        with self._lock.write():
            notification_id = notification.id or self._next_id("notif")
            if notification_id in self._notifications:
                raise AlreadyExists(f"Notification already exists: {notification_id}")
            stored = replace(
                notification,
                id=notification_id,
                created_at=notification.created_at or self._clock(),
            )
            self._notifications[notification_id] = stored
            self._notification_ids_by_desk[stored.desk_id].append(notification_id)
            return stored

    def get_notification(self, notification_id: str) -> Notification:
        with self._lock.read():
            return self._require(self._notifications, "notification", notification_id)

    def list_notifications_by_desk(
        self, desk_id: str, unread_only: bool = False
    ) -> list[Notification]:
        with self._lock.read():
            notifications = [
                self._notifications[notification_id]
                for notification_id in self._notification_ids_by_desk.get(desk_id, [])
            ]
        if unread_only:
            return [notification for notification in notifications if not notification.read]
        return notifications

    def mark_notification_read(self, notification_id: str) -> Notification:
        with self._lock.write():
            existing = self._require(self._notifications, "notification", notification_id)
            if existing.read:
                return existing
            stored = replace(existing, read=True, read_at=self._clock())
            self._notifications[notification_id] = stored
            return stored

    # Contacts

    def create_contact(self, contact: Contact) -> Contact:
        with self._lock.write():
            contact_id = contact.id or self._next_id("contact")
            if contact_id in self._contacts:
                raise AlreadyExists(f"Contact already exists: {contact_id}")
            now = self._clock()
            stored = replace(
                contact, id=contact_id, created_at=contact.created_at or now, updated_at=now
            )
            self._contacts[contact_id] = stored
            self._contact_ids_by_desk[stored.desk_id].append(contact_id)
            return stored

    def get_contact(self, contact_id: str) -> Contact:
        with self._lock.read():
            return self._require(self._contacts, "contact", contact_id)

    def list_contacts_by_desk(self, desk_id: str) -> list[Contact]:
        with self._lock.read():
            return [
                self._contacts[contact_id]
                for contact_id in self._contact_ids_by_desk.get(desk_id, [])
            ]

    def update_contact(self, contact: Contact) -> Contact:
        with self._lock.write():
            existing = self._require(self._contacts, "contact", contact.id)
            if contact.desk_id != existing.desk_id:
                raise InvalidState("A contact cannot move to another desk")
            stored = replace(contact, created_at=existing.created_at, updated_at=self._clock())
            self._contacts[contact.id] = stored
            return stored

    def patch_contact(self, contact_id: str, changes: Mapping[str, object]) -> Contact:
        with self._lock.write():
            existing = self._require(self._contacts, "contact", contact_id)
            stored = replace(apply_contact_changes(existing, changes), updated_at=self._clock())
            self._contacts[contact_id] = stored
            return stored

    def delete_contact(self, contact_id: str) -> None:
        with self._lock.write():
            existing = self._require(self._contacts, "contact", contact_id)
            del self._contacts[contact_id]
            self._contact_ids_by_desk[existing.desk_id].remove(contact_id)

    def get_contact_by_desk_ref(self, desk_id: str, desk_id_ref: str) -> Contact:
        with self._lock.read():
            for contact_id in self._contact_ids_by_desk.get(desk_id, []):
                contact = self._contacts[contact_id]
                if contact.desk_id_ref == desk_id_ref:
                    return contact
        raise NotFound("contact", desk_id_ref)

    # Helpers; callers hold the lock.

    def _append(self, miv: Miv, archived: bool | None) -> Miv:
        conversation = self._require(self._conversations, "conversation", miv.conversation_id)
        mivs = self._conversation_mivs[conversation.id]
        participants = check_participants(conversation, miv)
        miv_id = miv.id or self._next_id("cmiv")
        if miv_id in self._miv_conversations:
            raise AlreadyExists(f"Miv already exists: {miv_id}")
        now = self._clock()
        stored = replace(
            miv,
            id=miv_id,
            seq_no=next_seq_no(mivs),
            created_at=miv.created_at or now,
            sent_at=miv.sent_at or now,
        )
        mivs.append(stored)
        self._miv_conversations[miv_id] = conversation.id
        self._conversations[conversation.id] = replace(
            conversation,
            participants=participants,
            miv_count=len(mivs),
            is_archived=conversation.is_archived if archived is None else archived,
            updated_at=now,
        )
        return stored

    def _locate_miv(self, miv_id: str) -> tuple[int, Miv]:
        conversation_id = self._miv_conversations.get(miv_id)
        if conversation_id is None:
            raise NotFound("miv", miv_id)
        for index, miv in enumerate(self._conversation_mivs[conversation_id]):
            if miv.id == miv_id:
                return index, miv
        raise NotFound("miv", miv_id)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._counters[prefix])}"

    @staticmethod
    def _require(mapping: dict, entity: str, key: str):
        try:
            return mapping[key]
        except KeyError:
            raise NotFound(entity, key) from None
