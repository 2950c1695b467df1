"""Summary: Per-conversation sequence numbering for mivs.

Importance: Guarantees a gapless, strictly increasing order inside each conversation.
Alternatives: Order mivs by creation timestamp only.
"""

from __future__ import annotations

from typing import Iterable

from missiv.errors import InvalidState
from missiv.models import Miv


def next_seq_no(mivs: Iterable[Miv]) -> int:
    """Summary: Compute the sequence number for the next miv.

    Importance: Must be evaluated inside the same write section as the append.
    Alternatives: Keep a separate counter per conversation.
    """

    return max((miv.seq_no for miv in mivs), default=0) + 1


def validate_sequence(mivs: Iterable[Miv]) -> None:
    """Summary: Check that sequence numbers form the run 1..n.

    Importance: Detects corrupted or partially restored conversations.
    Alternatives: Trust the storage layer without verification.
    """

    seq_nos = sorted(miv.seq_no for miv in mivs)
    expected = list(range(1, len(seq_nos) + 1))
    if seq_nos != expected:
        raise InvalidState(
            "Conversation sequence is not gapless",
            {"seq_nos": seq_nos},
        )


def counterparty_of(mivs: Iterable[Miv], desk_id: str) -> str | None:
    """Summary: Find the other party of a conversation relative to a desk.

    Importance: Replies are addressed without the caller naming a recipient.
    Alternatives: Require the recipient on every reply.
    """

    for miv in mivs:
        if miv.from_desk != desk_id:
            return miv.from_desk
        if miv.to_desk != desk_id:
            return miv.to_desk
    return None
