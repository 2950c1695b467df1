"""Summary: Entity store contract shared by every Missiv backend.

Importance: Lets the engine run on memory or durable storage without changes.
Alternatives: Couple services to a single concrete storage class.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import fields, replace
from typing import Mapping

from missiv.errors import InvalidState
from missiv.models import (
    Account,
    Contact,
    Conversation,
    Desk,
    DeskPreferences,
    Miv,
    Notification,
)


class EntityStore(ABC):
    """Summary: Abstract create/get/update/list operations per entity type.

    Importance: Defines the single consistency domain owning all entities.
    Alternatives: Give each entity type its own repository object.

    Every method returns immutable snapshots. Lookups of absent keys raise
    ``NotFound``; uniqueness violations raise ``AlreadyExists``.
    """

    # Accounts

    @abstractmethod
    def create_account(self, account: Account) -> Account:
        """Summary: Store a new account, assigning an id when missing."""

    @abstractmethod
    def get_account(self, account_id: str) -> Account:
        """Summary: Fetch an account by id."""

    @abstractmethod
    def get_account_by_username(self, username: str) -> Account:
        """Summary: Fetch an account by its unique username."""

    @abstractmethod
    def update_account(self, account: Account) -> Account:
        """Summary: Replace an existing account and stamp updated_at."""

    @abstractmethod
    def attach_desk(self, account_id: str, desk_id: str) -> Account:
        """Summary: Append a desk id to an account in one write.

        Importance: Concurrent desk creation for one account must not drop desks.
        Alternatives: Read the account and write back an extended copy.

        The desk becomes active when the account has no active desk yet.
        """

    @abstractmethod
    def set_active_desk(self, account_id: str, desk_id: str) -> Account:
        """Summary: Activate one of the account's desks; ``InvalidState`` for foreign desks."""

    @abstractmethod
    def set_password_hash(self, account_id: str, password_hash: str) -> Account:
        """Summary: Replace only the password hash of an account."""

    # Desks

    @abstractmethod
    def create_desk(self, desk: Desk, private_key: bytes) -> Desk:
        """Summary: Store a new desk together with its private key."""

    @abstractmethod
    def get_desk(self, desk_id: str) -> Desk:
        """Summary: Fetch a desk by id."""

    @abstractmethod
    def get_desk_private_key(self, desk_id: str) -> bytes:
        """Summary: Fetch the private key provisioned for a desk."""

    @abstractmethod
    def update_desk(self, desk: Desk) -> Desk:
        """Summary: Replace an existing desk and stamp updated_at."""

    @abstractmethod
    def patch_desk(
        self,
        desk_id: str,
        name: str | None = None,
        preferences: Mapping[str, object] | None = None,
    ) -> Desk:
        """Summary: Rename a desk and merge preference changes in one write.

        Importance: Edits made at the same time to different fields all survive.
        Alternatives: Replace the whole desk from a snapshot taken earlier.
        """

    @abstractmethod
    def list_desks_by_account(self, account_id: str) -> list[Desk]:
        """Summary: List desks owned by an account in creation order."""

    # Conversations

    @abstractmethod
    def create_conversation(
        self, conversation: Conversation, first_miv: Miv | None = None
    ) -> tuple[Conversation, Miv | None]:
        """Summary: Create a conversation, optionally with its first miv, atomically.

        Importance: A conversation must never be observable without its opening miv.
        Alternatives: Create the conversation and append the miv in two writes.
        """

    @abstractmethod
    def get_conversation(self, conversation_id: str) -> Conversation:
        """Summary: Fetch a conversation by id."""

    @abstractmethod
    def update_conversation(self, conversation: Conversation) -> Conversation:
        """Summary: Replace an existing conversation and stamp updated_at."""

    @abstractmethod
    def set_conversation_archived(self, conversation_id: str, archived: bool) -> Conversation:
        """Summary: Set the archived flag; a no-op when it already has that value."""

    @abstractmethod
    def list_conversations_by_desk(self, desk_id: str) -> list[Conversation]:
        """Summary: List conversations a desk created or takes part in, newest activity first."""

    # Mivs

    @abstractmethod
    def next_seq_no(self, conversation_id: str) -> int:
        """Summary: Peek at the sequence number the next appended miv would get."""

    @abstractmethod
    def append_miv(self, miv: Miv, archived: bool | None = None) -> Miv:
        """Summary: Stamp the next sequence number and append a miv in one critical section.

        Importance: Concurrent appenders can never share a sequence number.
        Alternatives: Allocate the number and insert under separate locks.

        When ``archived`` is given the conversation flag is set in the same
        section, after the miv is recorded.
        """

    @abstractmethod
    def get_conversation_mivs(self, conversation_id: str) -> list[Miv]:
        """Summary: Snapshot of a conversation's mivs ordered by sequence number."""

    @abstractmethod
    def get_miv(self, miv_id: str) -> Miv:
        """Summary: Fetch a miv by id across all conversations."""

    @abstractmethod
    def update_miv(self, miv: Miv) -> Miv:
        """Summary: Replace the mutable fields (read_at, forgotten, legacy state) of a miv."""

    @abstractmethod
    def set_miv_legacy_state(self, miv_id: str, expected: str, new: str) -> Miv:
        """Summary: Move a miv's legacy marker from ``expected`` to ``new``.

        Raises ``PreconditionFailed`` when the current marker is not ``expected``.
        Other mutable fields are left as stored.
        """

    @abstractmethod
    def mark_miv_read(self, miv_id: str, desk_id: str) -> Miv:
        """Summary: Set read_at when unset.

        Raises ``InvalidState`` when the miv is not addressed to the desk and
        ``PreconditionFailed`` when it was already read.
        """

    @abstractmethod
    def mark_conversation_read(self, conversation_id: str, desk_id: str) -> int:
        """Summary: Mark every unread miv addressed to a desk read; return the count."""

    @abstractmethod
    def set_miv_forgotten(self, miv_id: str, desk_id: str) -> Miv:
        """Summary: Set the forgotten flag of a miv sent by the desk."""

    # Notifications

    @abstractmethod
    def create_notification(self, notification: Notification) -> Notification:
        """Summary: Store a new notification."""

    @abstractmethod
    def get_notification(self, notification_id: str) -> Notification:
        """Summary: Fetch a notification by id."""

    @abstractmethod
    def list_notifications_by_desk(
        self, desk_id: str, unread_only: bool = False
    ) -> list[Notification]:
        """Summary: List a desk's notifications in creation order."""

    @abstractmethod
    def mark_notification_read(self, notification_id: str) -> Notification:
        """Summary: Set the read flag and timestamp; idempotent."""

    # Contacts

    @abstractmethod
    def create_contact(self, contact: Contact) -> Contact:
        """Summary: Store a new contact."""

    @abstractmethod
    def get_contact(self, contact_id: str) -> Contact:
        """Summary: Fetch a contact by id."""

    @abstractmethod
    def list_contacts_by_desk(self, desk_id: str) -> list[Contact]:
        """Summary: List a desk's contacts in creation order."""

    @abstractmethod
    def update_contact(self, contact: Contact) -> Contact:
        """Summary: Replace an existing contact and stamp updated_at."""

    @abstractmethod
    def patch_contact(self, contact_id: str, changes: Mapping[str, object]) -> Contact:
        """Summary: Apply field changes to a stored contact in one write."""

    @abstractmethod
    def delete_contact(self, contact_id: str) -> None:
        """Summary: Remove a contact."""

    @abstractmethod
    def get_contact_by_desk_ref(self, desk_id: str, desk_id_ref: str) -> Contact:
        """Summary: Find a desk's contact pointing at another desk id."""


IMMUTABLE_MIV_FIELDS = (
    "conversation_id",
    "from_desk",
    "to_desk",
    "subject",
    "body",
    "seq_no",
    "is_encrypted",
    "is_ack",
    "created_at",
)


def ensure_immutable_fields(existing: Miv, updated: Miv) -> None:
    """Summary: Reject updates that touch the immutable part of a miv.

    Importance: Only read_at, forgotten and legacy markers may change after creation.
    Alternatives: Silently copy mutable fields and ignore the rest.
    """

    changed = [
        name
        for name in IMMUTABLE_MIV_FIELDS
        if getattr(existing, name) != getattr(updated, name)
    ]
    if changed:
        raise InvalidState(f"Miv {existing.id} fields are immutable", {"fields": changed})


def check_participants(conversation: Conversation, miv: Miv) -> tuple[str, ...]:
    """Summary: Validate a miv's desks against the conversation's bound pair.

    Importance: A conversation's participant set is fixed by its first miv.
    Alternatives: Allow any desk to post into any conversation.
    """

    if miv.from_desk == miv.to_desk:
        raise InvalidState("A miv cannot be addressed to its sender")
    participants = conversation.participants or (miv.from_desk, miv.to_desk)
    if {miv.from_desk, miv.to_desk} != set(participants):
        raise InvalidState(
            f"Desks {miv.from_desk} and {miv.to_desk} are not the participants "
            f"of conversation {conversation.id}",
            {"participants": list(participants)},
        )
    return participants


CONTACT_PATCH_FIELDS = ("name", "first_name", "last_name", "greeting_name", "desk_id_ref", "notes")


def merge_preferences(
    preferences: DeskPreferences, changes: Mapping[str, object] | None
) -> DeskPreferences:
    """Summary: Overlay preference changes on stored preferences.

    Importance: Unknown keys are rejected instead of silently dropped.
    Alternatives: Accept arbitrary keys and ignore the unknown ones.
    """

    if not changes:
        return preferences
    known = {item.name for item in fields(DeskPreferences)}
    unknown = sorted(set(changes) - known)
    if unknown:
        raise InvalidState(f"Unknown desk preference: {', '.join(unknown)}", {"keys": unknown})
    return replace(preferences, **changes)


def apply_contact_changes(contact: Contact, changes: Mapping[str, object]) -> Contact:
    """Summary: Apply editable field changes to a contact snapshot."""

    unknown = sorted(set(changes) - set(CONTACT_PATCH_FIELDS))
    if unknown:
        raise InvalidState(f"Contact fields cannot be edited: {', '.join(unknown)}")
    return replace(contact, **changes)
