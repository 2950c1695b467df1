"""Summary: Tests for basket state projection.

Importance: The same miv must land in different baskets for sender and recipient.
Alternatives: Store one state per miv and accept single-perspective views.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from missiv.models import BasketState, Conversation, Miv
from missiv.projection import (
    archived_summaries,
    basket_mivs,
    project_conversation,
    project_state,
    summarize,
)


A = "2015550001"
B = "3025550002"
C = "4035550003"
START = datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)


def _miv(seq_no: int, from_desk: str, to_desk: str, read: bool = False, **extra: object) -> Miv:
    created_at = START + timedelta(minutes=seq_no)
    return Miv(
        conversation_id=extra.pop("conversation_id", "conv-1"),
        from_desk=from_desk,
        to_desk=to_desk,
        subject="Hello",
        body=f"body {seq_no}",
        id=f"m{seq_no}",
        seq_no=seq_no,
        created_at=extra.pop("created_at", created_at),
        read_at=created_at if read else None,
        **extra,
    )


def _states(mivs: list[Miv], desk_id: str) -> list[BasketState]:
    return [projected.state for projected in project_conversation(mivs, desk_id)]


def test_unread_incoming_is_in_and_outgoing_is_sent() -> None:
    """Summary: Verify the opening miv for both perspectives."""

    mivs = [_miv(1, A, B)]
    assert _states(mivs, A) == [BasketState.SENT]
    assert _states(mivs, B) == [BasketState.IN]


def test_read_incoming_becomes_pending_until_replied() -> None:
    """Summary: Verify IN to PENDING to none as the recipient reads then replies."""

    read = [_miv(1, A, B, read=True)]
    assert _states(read, B) == [BasketState.PENDING]
    replied = read + [_miv(2, B, A)]
    assert _states(replied, B) == [BasketState.NONE, BasketState.SENT]
    assert _states(replied, A) == [BasketState.NONE, BasketState.IN]


def test_forgotten_miv_leaves_sent_basket_only_for_sender() -> None:
    """Summary: Verify forgetting hides a miv from the sender alone."""

    mivs = [_miv(1, A, B, is_forgotten=True)]
    assert _states(mivs, A) == [BasketState.NONE]
    assert _states(mivs, B) == [BasketState.IN]


def test_outsider_sees_nothing() -> None:
    """Summary: Verify a desk outside the conversation gets no basket."""

    assert _states([_miv(1, A, B)], C) == [BasketState.NONE]


def test_sweep_matches_direct_scan() -> None:
    """Summary: Verify the reverse sweep agrees with the per-miv scan.

    Importance: Whole-thread projection must not drift from the single-miv rule.
    Alternatives: Only ever use the quadratic scan.
    """

    mivs = [
        _miv(1, A, B, read=True),
        _miv(2, A, B, read=True),
        _miv(3, B, A, read=True),
        _miv(4, A, B),
        _miv(5, A, B, is_forgotten=True),
        _miv(6, B, A),
    ]
    for desk_id in (A, B, C):
        expected = [project_state(miv, mivs, desk_id) for miv in mivs]
        assert _states(list(reversed(mivs)), desk_id) == expected


def test_projection_ignores_legacy_state() -> None:
    """Summary: Verify legacy markers never influence basket state."""

    plain = [_miv(1, A, B)]
    legacy = [_miv(1, A, B, legacy_state="UNANSWERED")]
    assert _states(plain, A) == _states(legacy, A)


def test_summarize_picks_latest_and_counts_unread() -> None:
    """Summary: Verify listing rows carry the latest miv and unread count."""

    conversation = Conversation(subject="Hello", desk_id=A, id="conv-1")
    mivs = [_miv(1, A, B), _miv(2, A, B), _miv(3, B, A)]
    summary = summarize(conversation, mivs, B)
    assert summary.latest_miv.id == "m3"
    assert summary.unread_count == 2
    assert summarize(conversation, [], B).latest_miv is None


def test_basket_mivs_filters_sorts_and_skips_archived() -> None:
    """Summary: Verify basket collection across conversations.

    Importance: Archived threads and acknowledgements stay out of the working baskets.
    Alternatives: Show every miv in every basket.
    """

    open_thread = Conversation(subject="Open", desk_id=A, id="conv-1")
    closed_thread = Conversation(subject="Closed", desk_id=A, id="conv-2", is_archived=True)
    ack_thread = Conversation(subject="Ack", desk_id=A, id="conv-3")
    threads = [
        (open_thread, [_miv(1, A, B), _miv(2, A, B)]),
        (closed_thread, [_miv(3, A, B, conversation_id="conv-2")]),
        (ack_thread, [_miv(4, B, A, read=True, conversation_id="conv-3"), _miv(5, A, B, is_ack=True, conversation_id="conv-3")]),
    ]
    sent = basket_mivs(threads, A, BasketState.SENT)
    assert [item.miv.id for item in sent] == ["m2", "m1"]
    incoming = basket_mivs(threads, B, BasketState.IN)
    assert [item.miv.id for item in incoming] == ["m5", "m2", "m1"]
    with pytest.raises(ValueError):
        basket_mivs(threads, A, BasketState.ARCHIVED)


def test_archived_summaries_select_archived_threads() -> None:
    """Summary: Verify the ARCHIVED basket lists archived conversations."""

    archived = Conversation(subject="Old", desk_id=A, id="conv-2", is_archived=True)
    active = Conversation(subject="New", desk_id=A, id="conv-1")
    summaries = [summarize(active, [], A), summarize(archived, [], A)]
    assert [item.conversation.id for item in archived_summaries(summaries)] == ["conv-2"]
