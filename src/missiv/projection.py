"""Summary: Perspective-aware basket state projection.

Importance: Derives what each desk sees from the immutable miv sequence on every read.
Alternatives: Persist a state column per miv and per desk.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Sequence

from missiv.models import BasketState, Conversation, Miv


@dataclass(frozen=True)
class ProjectedMiv:
    """Summary: A miv paired with its basket state for one viewing desk.

    Importance: Keeps the derived state next to the stored value without mutating it.
    Alternatives: Copy the miv and overwrite a state attribute.
    """

    miv: Miv
    state: BasketState


@dataclass(frozen=True)
class ConversationSummary:
    """Summary: Conversation listing row for one desk.

    Importance: Powers conversation lists with latest activity and unread badges.
    Alternatives: Return raw conversations and let clients fetch every thread.
    """

    conversation: Conversation
    latest_miv: Miv | None
    unread_count: int


def project_state(miv: Miv, mivs: Iterable[Miv], desk_id: str) -> BasketState:
    """Summary: Compute the basket state of a single miv as seen by a desk.

    Importance: Same miv can be SENT for its author and IN for its recipient.
    Alternatives: Track separate sender and recipient state fields.
    """

    later = [other for other in mivs if other.seq_no > miv.seq_no]
    if miv.to_desk == desk_id:
        if miv.read_at is None:
            return BasketState.IN
        if any(other.from_desk == desk_id for other in later):
            return BasketState.NONE
        return BasketState.PENDING
    if miv.from_desk == desk_id:
        if miv.is_forgotten or any(other.from_desk != desk_id for other in later):
            return BasketState.NONE
        return BasketState.SENT
    return BasketState.NONE


def project_conversation(mivs: Iterable[Miv], desk_id: str) -> list[ProjectedMiv]:
    """Summary: Project every miv of a conversation for a desk.

    Importance: Single reverse sweep keeps whole-thread projection linear.
    Alternatives: Call project_state per miv at quadratic cost.
    """

    ordered = sorted(mivs, key=lambda item: item.seq_no)
    states: list[BasketState] = []
    replied_by_desk = False
    answered_by_other = False
    for miv in reversed(ordered):
        if miv.to_desk == desk_id:
            if miv.read_at is None:
                state = BasketState.IN
            elif replied_by_desk:
                state = BasketState.NONE
            else:
                state = BasketState.PENDING
        elif miv.from_desk == desk_id:
            if miv.is_forgotten or answered_by_other:
                state = BasketState.NONE
            else:
                state = BasketState.SENT
        else:
            state = BasketState.NONE
        states.append(state)
        if miv.from_desk == desk_id:
            replied_by_desk = True
        else:
            answered_by_other = True
    states.reverse()
    return [ProjectedMiv(miv=miv, state=state) for miv, state in zip(ordered, states)]


def unread_count(mivs: Iterable[Miv], desk_id: str) -> int:
    """Summary: Count mivs addressed to a desk that it has not read."""

    return sum(1 for miv in mivs if miv.to_desk == desk_id and miv.read_at is None)


def summarize(conversation: Conversation, mivs: Sequence[Miv], desk_id: str) -> ConversationSummary:
    """Summary: Build the listing row of a conversation for a desk.

    Importance: Combines latest miv and unread count in one pass over a snapshot.
    Alternatives: Store denormalized counters on the conversation.
    """

    latest = max(mivs, key=lambda item: item.seq_no) if mivs else None
    return ConversationSummary(
        conversation=conversation,
        latest_miv=latest,
        unread_count=unread_count(mivs, desk_id),
    )


def basket_mivs(
    threads: Iterable[tuple[Conversation, Sequence[Miv]]],
    desk_id: str,
    basket: BasketState,
) -> list[ProjectedMiv]:
    """Summary: Collect the mivs of a desk that fall into one basket.

    Importance: Backs the IN, PENDING and SENT views across all conversations.
    Alternatives: Maintain per-basket indexes updated on every write.
    """

    if basket in (BasketState.ARCHIVED, BasketState.NONE):
        raise ValueError(f"Basket {basket.value or 'NONE'} does not list mivs")
    items: list[ProjectedMiv] = []
    for conversation, mivs in threads:
        if conversation.is_archived:
            continue
        for projected in project_conversation(mivs, desk_id):
            if projected.state != basket:
                continue
            # Acknowledgements close a thread and expect no answer.
            if basket == BasketState.SENT and projected.miv.is_ack:
                continue
            items.append(projected)
    items.sort(key=lambda item: _sort_key(item.miv.created_at), reverse=True)
    return items


def archived_summaries(summaries: Iterable[ConversationSummary]) -> list[ConversationSummary]:
    """Summary: Select archived conversations for the ARCHIVED basket."""

    return [summary for summary in summaries if summary.conversation.is_archived]


def _sort_key(value: datetime | None) -> datetime:
    return value or datetime.min.replace(tzinfo=timezone.utc)
