"""Summary: Core application services for Missiv.

Importance: Orchestrates accounts, desks, conversations, notifications, and contacts over the store.
Alternatives: Call the entity store directly from every entrypoint.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from missiv.errors import AlreadyExists, InvalidState, NotFound, PreconditionFailed
from missiv.identity import (
    generate_desk_id,
    generate_key_pair,
    hash_secret,
    normalize_answer,
    normalize_desk_id,
    verify_secret,
)
from missiv.models import (
    LEGACY_OUT,
    LEGACY_UNANSWERED,
    Account,
    BasketState,
    Contact,
    Conversation,
    Desk,
    DeskPreferences,
    Miv,
    Notification,
    NotificationType,
)
from missiv.notifications import NotificationDispatcher
from missiv.projection import (
    ConversationSummary,
    ProjectedMiv,
    archived_summaries,
    basket_mivs,
    project_conversation,
    summarize,
)
from missiv.sequencing import counterparty_of
from missiv.storage.base import EntityStore


logger = logging.getLogger(__name__)

PRIMARY_DESK_NAME = "Primary Desk"
_DESK_ID_ATTEMPTS = 10


@dataclass(frozen=True)
class ConversationView:
    """Summary: A conversation with every miv projected for one desk.

    Importance: Same thread renders differently for sender and recipient.
    Alternatives: Return raw mivs and project on the client.
    """

    conversation: Conversation
    mivs: list[ProjectedMiv]


@dataclass(frozen=True)
class BasketView:
    """Summary: Contents of one basket for a desk.

    Importance: ARCHIVED lists whole conversations while other baskets list mivs.
    Alternatives: Use separate endpoints per basket type.
    """

    basket: BasketState
    mivs: list[ProjectedMiv] = field(default_factory=list)
    conversations: list[ConversationSummary] = field(default_factory=list)


@dataclass(frozen=True)
class DeskService:
    """Summary: Provisions and edits desks for accounts.

    Importance: Every desk gets a unique number and a key pair at creation.
    Alternatives: Let accounts send from a single implicit address.
    """

    store: EntityStore
    default_preferences: DeskPreferences = field(default_factory=DeskPreferences)

    def create_desk(self, account_id: str, name: str) -> Desk:
        """Summary: Create a desk and attach it to an account.

        Importance: The first desk of an account becomes its active desk.
        Alternatives: Require an explicit switch after creation.
        """

        if not name.strip():
            raise InvalidState("Desk name is required")
        self.store.get_account(account_id)
        key_pair = generate_key_pair()
        desk = None
        for _ in range(_DESK_ID_ATTEMPTS):
            candidate = Desk(
                id=generate_desk_id(),
                account_id=account_id,
                name=name.strip(),
                public_key=key_pair.public_key,
                preferences=self.default_preferences,
            )
            try:
                desk = self.store.create_desk(candidate, key_pair.private_key)
                break
            except AlreadyExists:
                logger.debug("Desk id %s already taken, retrying.", candidate.id)
        if desk is None:
            raise AlreadyExists("Could not allocate a free desk id")
        self.store.attach_desk(account_id, desk.id)
        return desk

    def get_desk(self, desk_id: str) -> Desk:
        return self.store.get_desk(normalize_desk_id(desk_id))

    def list_desks(self, account_id: str) -> list[Desk]:
        self.store.get_account(account_id)
        return self.store.list_desks_by_account(account_id)

    def update_desk(
        self,
        desk_id: str,
        name: str | None = None,
        preferences: dict[str, object] | None = None,
    ) -> Desk:
        """Summary: Rename a desk or change its rendering preferences.

        Importance: Only supplied fields change; unknown preference keys are rejected.
        Alternatives: Replace the whole desk record on each edit.
        """

        if name is not None:
            name = name.strip()
            if not name:
                raise InvalidState("Desk name is required")
        return self.store.patch_desk(normalize_desk_id(desk_id), name=name, preferences=preferences)

    def switch_desk(self, account_id: str, desk_id: str) -> Account:
        """Summary: Make one of the account's desks the active one."""

        return self.store.set_active_desk(account_id, normalize_desk_id(desk_id))


@dataclass(frozen=True)
class AccountService:
    """Summary: Registers accounts and verifies their credentials.

    Importance: Accounts own desks; secrets are stored only as salted hashes.
    Alternatives: Use an external identity provider.
    """

    store: EntityStore
    desks: DeskService

    def register(
        self,
        username: str,
        password: str,
        display_name: str,
        email: str = "",
        security_answers: Iterable[str] = (),
    ) -> tuple[Account, Desk]:
        """Summary: Create an account together with its primary desk.

        Importance: A new account can send mivs immediately after registering.
        Alternatives: Create desks in a separate onboarding step.
        """

        username = username.strip()
        if not username or not password:
            raise InvalidState("Username and password are required")
        account = self.store.create_account(
            Account(
                username=username,
                password_hash=hash_secret(password),
                display_name=display_name.strip() or username,
                email=email.strip(),
                security_answer_hashes=tuple(
                    hash_secret(normalize_answer(answer)) for answer in security_answers
                ),
            )
        )
        desk = self.desks.create_desk(account.id, PRIMARY_DESK_NAME)
        logger.info("Registered account %s with desk %s.", account.username, desk.id)
        return self.store.get_account(account.id), desk

    def login(self, username: str, password: str) -> Account:
        """Summary: Return the account when the password matches."""

        try:
            account = self.store.get_account_by_username(username.strip())
        except NotFound:
            raise InvalidState("Invalid username or password") from None
        if not verify_secret(password, account.password_hash):
            raise InvalidState("Invalid username or password")
        return account

    def get_account(self, account_id: str) -> Account:
        return self.store.get_account(account_id)

    def recover_password(
        self, username: str, security_answers: Iterable[str], new_password: str
    ) -> Account:
        """Summary: Reset a password after checking every security answer.

        Importance: Lets users regain access without an email channel.
        Alternatives: Send a reset link by email.
        """

        if not new_password:
            raise InvalidState("New password is required")
        try:
            account = self.store.get_account_by_username(username.strip())
        except NotFound:
            raise InvalidState("Security answers do not match") from None
        answers = [normalize_answer(answer) for answer in security_answers]
        hashes = account.security_answer_hashes
        if not hashes or len(answers) != len(hashes):
            raise InvalidState("Security answers do not match")
        if not all(verify_secret(answer, stored) for answer, stored in zip(answers, hashes)):
            raise InvalidState("Security answers do not match")
        logger.info("Password recovered for account %s.", account.id)
        return self.store.set_password_hash(account.id, hash_secret(new_password))


@dataclass(frozen=True)
class ConversationService:
    """Summary: Drives the lifecycle of conversations and their mivs.

    Importance: Appends, archive transitions, reads, and forgets all flow through here.
    Alternatives: Let each transport handler sequence store calls itself.
    """

    store: EntityStore
    dispatcher: NotificationDispatcher
    legacy_read_receipts: bool = False

    def create_conversation(
        self,
        from_desk: str,
        to_desk: str,
        subject: str,
        body: str,
        is_encrypted: bool = False,
    ) -> tuple[Conversation, Miv]:
        """Summary: Open a conversation with its first miv.

        Importance: The conversation and miv number 1 become visible together.
        Alternatives: Create an empty conversation and append separately.
        """

        from_desk = normalize_desk_id(from_desk)
        to_desk = normalize_desk_id(to_desk)
        self.store.get_desk(from_desk)
        self.store.get_desk(to_desk)
        if from_desk == to_desk:
            raise InvalidState("A desk cannot start a conversation with itself")
        first_miv = Miv(
            conversation_id="",
            from_desk=from_desk,
            to_desk=to_desk,
            subject=subject,
            body=body,
            is_encrypted=is_encrypted,
            legacy_state=LEGACY_OUT if self.legacy_read_receipts else None,
        )
        conversation, miv = self.store.create_conversation(
            Conversation(subject=subject, desk_id=from_desk), first_miv
        )
        self.dispatcher.notify_new_miv(miv)
        return conversation, miv

    def get_conversation(self, conversation_id: str, desk_id: str) -> ConversationView:
        """Summary: Fetch a conversation projected for the viewing desk.

        Importance: Viewing never marks anything read.
        Alternatives: Mark incoming mivs read on every fetch.
        """

        conversation = self.store.get_conversation(conversation_id)
        mivs = self.store.get_conversation_mivs(conversation_id)
        return ConversationView(
            conversation=conversation,
            mivs=project_conversation(mivs, normalize_desk_id(desk_id)),
        )

    def list_conversations(self, desk_id: str) -> list[ConversationSummary]:
        """Summary: List a desk's conversations with latest miv and unread count."""

        desk_id = normalize_desk_id(desk_id)
        return [
            summarize(conversation, mivs, desk_id)
            for conversation, mivs in self._threads(desk_id)
        ]

    def reply(
        self,
        conversation_id: str,
        desk_id: str,
        body: str,
        is_ack: bool = False,
        is_encrypted: bool = False,
    ) -> Miv:
        """Summary: Append a reply addressed to the other party.

        Importance: Replies reopen archived threads; acknowledgements close them.
        Alternatives: Require clients to manage the archived flag.
        """

        desk_id = normalize_desk_id(desk_id)
        conversation = self.store.get_conversation(conversation_id)
        mivs = self.store.get_conversation_mivs(conversation_id)
        recipient = counterparty_of(mivs, desk_id)
        if recipient is None:
            raise InvalidState(f"Could not determine recipient in conversation {conversation_id}")
        if conversation.participants and desk_id not in conversation.participants:
            raise InvalidState(f"Desk {desk_id} is not part of conversation {conversation_id}")
        miv = self.store.append_miv(
            Miv(
                conversation_id=conversation_id,
                from_desk=desk_id,
                to_desk=recipient,
                subject=conversation.subject,
                body=body,
                is_encrypted=is_encrypted,
                is_ack=is_ack,
                legacy_state=LEGACY_OUT if self.legacy_read_receipts else None,
            ),
            archived=is_ack,
        )
        logger.info("Appended miv %s as #%s to conversation %s.", miv.id, miv.seq_no, conversation_id)
        self.dispatcher.notify_reply(miv)
        return miv

    def archive(self, conversation_id: str) -> Conversation:
        return self.store.set_conversation_archived(conversation_id, True)

    def unarchive(self, conversation_id: str) -> Conversation:
        return self.store.set_conversation_archived(conversation_id, False)

    def mark_read(self, miv_id: str, desk_id: str) -> Miv:
        """Summary: Mark a miv addressed to the desk as read.

        Importance: Moves the miv from IN to PENDING; repeating it changes nothing.
        Alternatives: Treat a repeated read as an error.
        """

        try:
            miv = self.store.mark_miv_read(miv_id, normalize_desk_id(desk_id))
        except PreconditionFailed:
            logger.debug("Miv %s already read.", miv_id)
            return self.store.get_miv(miv_id)
        if self.legacy_read_receipts:
            self.dispatcher.notify_read_receipt(miv)
        return miv

    def mark_conversation_read(self, conversation_id: str, desk_id: str) -> int:
        count = self.store.mark_conversation_read(conversation_id, normalize_desk_id(desk_id))
        logger.info("Marked %s mivs read in conversation %s.", count, conversation_id)
        return count

    def forget(self, miv_id: str, desk_id: str) -> Miv:
        """Summary: Hide a sent miv from the sender's SENT basket."""

        return self.store.set_miv_forgotten(miv_id, normalize_desk_id(desk_id))

    def list_basket(self, desk_id: str, basket: BasketState) -> BasketView:
        """Summary: Collect a desk's basket across all its conversations.

        Importance: Backs the IN, PENDING, SENT, and ARCHIVED views.
        Alternatives: Filter client-side from the full conversation list.
        """

        desk_id = normalize_desk_id(desk_id)
        if basket == BasketState.NONE:
            raise InvalidState("Mivs without a basket cannot be listed")
        threads = self._threads(desk_id)
        if basket == BasketState.ARCHIVED:
            summaries = [summarize(conversation, mivs, desk_id) for conversation, mivs in threads]
            return BasketView(basket=basket, conversations=archived_summaries(summaries))
        return BasketView(basket=basket, mivs=basket_mivs(threads, desk_id, basket))

    def _threads(self, desk_id: str) -> list[tuple[Conversation, list[Miv]]]:
        return [
            (conversation, self.store.get_conversation_mivs(conversation.id))
            for conversation in self.store.list_conversations_by_desk(desk_id)
        ]


@dataclass(frozen=True)
class NotificationService:
    """Summary: Lists and acknowledges a desk's notifications.

    Importance: Reading a notification is independent of reading the miv.
    Alternatives: Delete notifications when their miv is read.
    """

    store: EntityStore
    legacy_read_receipts: bool = False

    def list_notifications(self, desk_id: str, unread_only: bool = False) -> list[Notification]:
        return self.store.list_notifications_by_desk(normalize_desk_id(desk_id), unread_only)

    def unread_count(self, desk_id: str) -> int:
        return len(self.list_notifications(desk_id, unread_only=True))

    def mark_read(self, notification_id: str) -> Notification:
        """Summary: Mark a notification read.

        Importance: With legacy read receipts on, reading a receipt moves its miv from OUT to UNANSWERED.
        Alternatives: Keep notification reads free of side effects.
        """

        notification = self.store.mark_notification_read(notification_id)
        if self.legacy_read_receipts and notification.type == NotificationType.READ_RECEIPT:
            try:
                self.store.set_miv_legacy_state(notification.miv_id, LEGACY_OUT, LEGACY_UNANSWERED)
            except PreconditionFailed:
                logger.debug("Miv %s is not OUT; receipt read left it alone.", notification.miv_id)
            else:
                logger.info(
                    "Miv %s moved to %s by read receipt.", notification.miv_id, LEGACY_UNANSWERED
                )
        return notification


@dataclass(frozen=True)
class ContactService:
    """Summary: Manages a desk's address book.

    Importance: Contacts reference other desks without enforcing that they exist.
    Alternatives: Derive contacts from conversation history.
    """

    store: EntityStore

    def create_contact(
        self,
        desk_id: str,
        name: str,
        desk_id_ref: str,
        first_name: str = "",
        last_name: str = "",
        greeting_name: str = "",
        notes: str = "",
    ) -> Contact:
        """Summary: Add a contact to a desk's address book."""

        desk_id = normalize_desk_id(desk_id)
        self.store.get_desk(desk_id)
        if not name.strip() or not desk_id_ref.strip():
            raise InvalidState("Contact name and desk id are required")
        return self.store.create_contact(
            Contact(
                desk_id=desk_id,
                name=name.strip(),
                desk_id_ref=normalize_desk_id(desk_id_ref),
                first_name=first_name,
                last_name=last_name,
                greeting_name=greeting_name,
                notes=notes,
            )
        )

    def get_contact(self, contact_id: str) -> Contact:
        return self.store.get_contact(contact_id)

    def list_contacts(self, desk_id: str) -> list[Contact]:
        return self.store.list_contacts_by_desk(normalize_desk_id(desk_id))

    def update_contact(
        self,
        contact_id: str,
        name: str = "",
        desk_id_ref: str = "",
        first_name: str = "",
        last_name: str = "",
        greeting_name: str = "",
        notes: str = "",
    ) -> Contact:
        """Summary: Edit a contact.

        Importance: Name and desk reference survive blank edits; the free-form fields are replaced as given.
        Alternatives: Patch only the fields present in the request.
        """

        changes: dict[str, object] = {
            "first_name": first_name,
            "last_name": last_name,
            "greeting_name": greeting_name,
            "notes": notes,
        }
        if name.strip():
            changes["name"] = name.strip()
        if normalize_desk_id(desk_id_ref):
            changes["desk_id_ref"] = normalize_desk_id(desk_id_ref)
        return self.store.patch_contact(contact_id, changes)

    def delete_contact(self, contact_id: str) -> None:
        self.store.delete_contact(contact_id)
        logger.info("Deleted contact %s.", contact_id)

    def find_by_desk_ref(self, desk_id: str, desk_id_ref: str) -> Contact:
        return self.store.get_contact_by_desk_ref(
            normalize_desk_id(desk_id), normalize_desk_id(desk_id_ref)
        )
