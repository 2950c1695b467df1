"""Summary: Domain model dataclasses for Missiv.

Importance: Defines the entities owned by the store and shared across services.
Alternatives: Use Pydantic models or ORM classes directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utc_now() -> datetime:
    """Summary: Return the current time as an aware UTC datetime.

    Importance: Single clock used for every created/updated/read timestamp.
    Alternatives: Store naive local timestamps.
    """

    return datetime.now(timezone.utc)


class BasketState(str, Enum):
    """Summary: Perspective-dependent display bucket of a miv.

    Importance: Drives the IN/PENDING/SENT/ARCHIVED views of every desk.
    Alternatives: Persist a single state string on each miv.
    """

    IN = "IN"
    PENDING = "PENDING"
    SENT = "SENT"
    ARCHIVED = "ARCHIVED"
    NONE = ""


class NotificationType(str, Enum):
    """Summary: Kinds of notification a desk can receive."""

    NEW_MIV = "NEW_MIV"
    REPLY = "REPLY"
    READ_RECEIPT = "READ_RECEIPT"


LEGACY_OUT = "OUT"
LEGACY_UNANSWERED = "UNANSWERED"


@dataclass(frozen=True)
class DeskPreferences:
    """Summary: Rendering preferences attached to a desk.

    Importance: Lets each desk compose mivs with its own letter style.
    Alternatives: Keep preferences client-side only.
    """

    auto_indent: bool = True
    font_family: str = "Georgia, serif"
    font_size: str = "14px"
    default_salutation: str = "Dear [User],"
    default_closure: str = "Sincerely,"


@dataclass(frozen=True)
class Account:
    """Summary: Represents an account owning one or more desks.

    Importance: Groups desks under a single login identity.
    Alternatives: Treat every desk as an independent login.
    """

    username: str
    password_hash: str
    display_name: str
    email: str = ""
    id: str = ""
    desks: tuple[str, ...] = ()
    active_desk: str = ""
    security_answer_hashes: tuple[str, ...] = ()
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class Desk:
    """Summary: Represents an addressable mailbox belonging to an account.

    Importance: Desks are the endpoints every miv is sent from and to.
    Alternatives: Address mivs to accounts directly.
    """

    id: str
    account_id: str
    name: str
    public_key: str = ""
    preferences: DeskPreferences = field(default_factory=DeskPreferences)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class Conversation:
    """Summary: Represents a thread between exactly two desks.

    Importance: Carries the metadata used for listing and archiving threads.
    Alternatives: Derive threads from subject lines on the fly.
    """

    subject: str
    desk_id: str
    id: str = ""
    participants: tuple[str, ...] = ()
    miv_count: int = 0
    is_archived: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class Miv:
    """Summary: Represents one message within a conversation sequence.

    Importance: Core unit whose basket state is projected per viewing desk.
    Alternatives: Store mivs outside conversations with thread pointers.
    """

    conversation_id: str
    from_desk: str
    to_desk: str
    subject: str
    body: str
    id: str = ""
    seq_no: int = 0
    is_encrypted: bool = False
    is_ack: bool = False
    is_forgotten: bool = False
    created_at: datetime | None = None
    sent_at: datetime | None = None
    received_at: datetime | None = None
    read_at: datetime | None = None
    legacy_state: str | None = None


@dataclass(frozen=True)
class Notification:
    """Summary: Represents a per-desk notification for a miv event.

    Importance: Keeps desks informed of new mivs without polling conversations.
    Alternatives: Push events over a websocket without persistence.
    """

    desk_id: str
    type: NotificationType
    miv_id: str
    conversation_id: str
    message: str
    id: str = ""
    read: bool = False
    created_at: datetime | None = None
    read_at: datetime | None = None


@dataclass(frozen=True)
class Contact:
    """Summary: Represents an address-book entry owned by a desk.

    Importance: Gives desks friendly names for the desk ids they write to.
    Alternatives: Show raw desk ids everywhere.
    """

    desk_id: str
    name: str
    desk_id_ref: str
    id: str = ""
    first_name: str = ""
    last_name: str = ""
    greeting_name: str = ""
    notes: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
