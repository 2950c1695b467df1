"""Summary: Tests for the conversation lifecycle.

Importance: Covers create, reply, acknowledge, archive, read, and forget end to end.
Alternatives: Test only the pure projection functions.
"""

from __future__ import annotations

import pytest

from conftest import DESK_A, DESK_B, DESK_C
from missiv.app import AppServices
from missiv.errors import InvalidState, NotFound
from missiv.models import BasketState


def _states(services: AppServices, conversation_id: str, desk_id: str) -> list[BasketState]:
    view = services.conversations.get_conversation(conversation_id, desk_id)
    return [projected.state for projected in view.mivs]


def test_hello_scenario(services: AppServices) -> None:
    """Summary: Verify the two-desk hello exchange basket by basket.

    Importance: Exercises the per-desk projection through the service layer.
    Alternatives: Assert only on stored fields.
    """

    conversation, first = services.conversations.create_conversation(DESK_A, DESK_B, "Hello", "Hi B")
    assert first.seq_no == 1
    assert services.store.get_conversation(conversation.id).miv_count == 1
    assert _states(services, conversation.id, DESK_A) == [BasketState.SENT]
    assert _states(services, conversation.id, DESK_B) == [BasketState.IN]

    services.conversations.mark_read(first.id, DESK_B)
    assert _states(services, conversation.id, DESK_B) == [BasketState.PENDING]

    reply = services.conversations.reply(conversation.id, DESK_B, "Hi A")
    assert reply.seq_no == 2
    assert reply.to_desk == DESK_A
    assert reply.subject == "Hello"
    assert _states(services, conversation.id, DESK_A) == [BasketState.NONE, BasketState.IN]
    assert _states(services, conversation.id, DESK_B) == [BasketState.NONE, BasketState.SENT]

    services.conversations.mark_read(reply.id, DESK_A)
    assert _states(services, conversation.id, DESK_A)[1] == BasketState.PENDING


def test_viewing_does_not_mark_read(services: AppServices) -> None:
    """Summary: Verify fetching a conversation leaves read_at untouched."""

    conversation, first = services.conversations.create_conversation(DESK_A, DESK_B, "Quiet", "psst")
    services.conversations.get_conversation(conversation.id, DESK_B)
    assert services.store.get_miv(first.id).read_at is None


def test_acknowledgement_archives_and_reply_reopens(services: AppServices) -> None:
    """Summary: Verify ack archives after recording and a later reply unarchives.

    Importance: Acknowledgement both answers and closes the thread.
    Alternatives: Require an explicit archive call after acknowledging.
    """

    conversation, _ = services.conversations.create_conversation(DESK_A, DESK_B, "Invoice", "Attached")
    ack = services.conversations.reply(conversation.id, DESK_B, "Thanks", is_ack=True)
    closed = services.store.get_conversation(conversation.id)
    assert closed.is_archived is True
    assert closed.miv_count == 2
    assert [miv.id for miv in services.store.get_conversation_mivs(conversation.id)][-1] == ack.id

    services.conversations.reply(conversation.id, DESK_A, "One more thing")
    assert services.store.get_conversation(conversation.id).is_archived is False


def test_archive_is_idempotent_and_reply_unarchives(services: AppServices) -> None:
    """Summary: Verify explicit archive toggling."""

    conversation, _ = services.conversations.create_conversation(DESK_A, DESK_B, "Later", "...")
    assert services.conversations.archive(conversation.id).is_archived is True
    assert services.conversations.archive(conversation.id).is_archived is True
    services.conversations.reply(conversation.id, DESK_B, "back")
    assert services.store.get_conversation(conversation.id).is_archived is False
    services.conversations.archive(conversation.id)
    assert services.conversations.unarchive(conversation.id).is_archived is False


def test_mark_read_twice_is_a_no_op(services: AppServices) -> None:
    """Summary: Verify repeated mark-read returns the same state."""

    _, miv = services.conversations.create_conversation(DESK_A, DESK_B, "Once", "read me")
    first = services.conversations.mark_read(miv.id, DESK_B)
    second = services.conversations.mark_read(miv.id, DESK_B)
    assert first == second
    with pytest.raises(NotFound):
        services.conversations.mark_read("cmiv-missing", DESK_B)
    with pytest.raises(InvalidState):
        services.conversations.mark_read(miv.id, DESK_A)


def test_forget_hides_from_sender_sent_basket(services: AppServices) -> None:
    """Summary: Verify forgetting removes a miv from SENT but not from the recipient's IN."""

    _, miv = services.conversations.create_conversation(DESK_A, DESK_B, "Oops", "wrong desk")
    services.conversations.forget(miv.id, DESK_A)
    assert services.conversations.list_basket(DESK_A, BasketState.SENT).mivs == []
    incoming = services.conversations.list_basket(DESK_B, BasketState.IN).mivs
    assert [item.miv.id for item in incoming] == [miv.id]
    with pytest.raises(InvalidState):
        services.conversations.forget(miv.id, DESK_B)


def test_create_conversation_validates_desks(services: AppServices) -> None:
    """Summary: Verify unknown recipients and self-addressed conversations are rejected."""

    with pytest.raises(NotFound):
        services.conversations.create_conversation(DESK_A, "9995550000", "Hello", "anyone?")
    with pytest.raises(InvalidState):
        services.conversations.create_conversation(DESK_A, DESK_A, "Hello", "me")


def test_desk_ids_accept_phone_formatting(services: AppServices) -> None:
    """Summary: Verify punctuated desk ids address the same desk."""

    conversation, miv = services.conversations.create_conversation(
        "(201) 555-0001", "302-555-0002", "Formatted", "hi"
    )
    assert miv.from_desk == DESK_A
    assert miv.to_desk == DESK_B
    assert conversation.desk_id == DESK_A


def test_reply_from_outsider_is_rejected(services: AppServices) -> None:
    """Summary: Verify a desk outside the conversation cannot reply."""

    conversation, _ = services.conversations.create_conversation(DESK_A, DESK_B, "Private", "just us")
    with pytest.raises(InvalidState):
        services.conversations.reply(conversation.id, DESK_C, "let me in")
    with pytest.raises(NotFound):
        services.conversations.reply("conv-missing", DESK_A, "hello?")


def test_list_conversations_summaries(services: AppServices) -> None:
    """Summary: Verify listing carries latest miv and per-desk unread counts."""

    first, _ = services.conversations.create_conversation(DESK_A, DESK_B, "First", "one")
    second, _ = services.conversations.create_conversation(DESK_C, DESK_B, "Second", "two")
    services.conversations.reply(first.id, DESK_A, "follow up")

    summaries = services.conversations.list_conversations(DESK_B)
    assert [summary.conversation.id for summary in summaries] == [first.id, second.id]
    assert summaries[0].latest_miv.body == "follow up"
    assert summaries[0].unread_count == 2
    assert [summary.conversation.id for summary in services.conversations.list_conversations(DESK_C)] == [second.id]


def test_mark_conversation_read(services: AppServices) -> None:
    """Summary: Verify bulk read empties the IN basket for that conversation."""

    conversation, _ = services.conversations.create_conversation(DESK_A, DESK_B, "Bulk", "one")
    services.conversations.reply(conversation.id, DESK_A, "two")
    assert services.conversations.mark_conversation_read(conversation.id, DESK_B) == 2
    assert services.conversations.list_basket(DESK_B, BasketState.IN).mivs == []
    pending = services.conversations.list_basket(DESK_B, BasketState.PENDING).mivs
    assert len(pending) == 2


def test_baskets_across_conversations(services: AppServices) -> None:
    """Summary: Verify IN, SENT, and ARCHIVED views over several threads.

    Importance: Basket views are what each desk actually works from.
    Alternatives: Let clients rebuild baskets from conversation lists.
    """

    open_thread, _ = services.conversations.create_conversation(DESK_A, DESK_B, "Open", "still open")
    closed_thread, _ = services.conversations.create_conversation(DESK_A, DESK_B, "Closed", "done soon")
    services.conversations.reply(closed_thread.id, DESK_B, "ack", is_ack=True)

    sent_a = services.conversations.list_basket(DESK_A, BasketState.SENT)
    assert [item.miv.conversation_id for item in sent_a.mivs] == [open_thread.id]
    assert services.conversations.list_basket(DESK_B, BasketState.SENT).mivs == []

    archived = services.conversations.list_basket(DESK_A, BasketState.ARCHIVED)
    assert [summary.conversation.id for summary in archived.conversations] == [closed_thread.id]
    assert archived.mivs == []
    with pytest.raises(InvalidState):
        services.conversations.list_basket(DESK_A, BasketState.NONE)
