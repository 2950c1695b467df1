"""Summary: Tests for notification dispatch and reading.

Importance: Every miv event must notify its recipient exactly once.
Alternatives: Poll conversations instead of storing notifications.
"""

from __future__ import annotations

import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from pathlib import Path

import pytest

from conftest import DESK_A, DESK_B, build_config
from missiv.app import AppServices, build_services
from missiv.errors import Unavailable
from missiv.models import LEGACY_OUT, LEGACY_UNANSWERED, Desk, Miv, NotificationType
from missiv.notifications import NotificationDispatcher
from missiv.storage.memory_store import MemoryStore


def test_new_conversation_notifies_recipient(services: AppServices) -> None:
    """Summary: Verify the opening miv creates one NEW_MIV notification."""

    conversation, miv = services.conversations.create_conversation(DESK_A, DESK_B, "Hello", "Hi B")
    notifications = services.notifications.list_notifications(DESK_B)
    assert len(notifications) == 1
    notification = notifications[0]
    assert notification.type == NotificationType.NEW_MIV
    assert notification.miv_id == miv.id
    assert notification.conversation_id == conversation.id
    assert notification.message == f"New message from {DESK_A}: Hello"
    assert services.notifications.list_notifications(DESK_A) == []


def test_reply_and_ack_texts(services: AppServices) -> None:
    """Summary: Verify reply and acknowledgement notification texts."""

    conversation, _ = services.conversations.create_conversation(DESK_A, DESK_B, "Plans", "Dinner?")
    services.conversations.reply(conversation.id, DESK_B, "Sure")
    services.conversations.reply(conversation.id, DESK_A, "Great", is_ack=True)
    to_a = services.notifications.list_notifications(DESK_A)
    to_b = services.notifications.list_notifications(DESK_B)
    assert [item.message for item in to_a] == [f"Reply from {DESK_B} in: Plans"]
    assert to_b[-1].message == f"ACK from {DESK_A} in: Plans"
    assert {item.type for item in to_a + to_b[1:]} == {NotificationType.REPLY}


def test_mark_notification_read_is_independent_and_idempotent(services: AppServices) -> None:
    """Summary: Verify reading a notification leaves the miv unread.

    Importance: Notifications and mivs have separate read state.
    Alternatives: Mark the miv read together with its notification.
    """

    _, miv = services.conversations.create_conversation(DESK_A, DESK_B, "Hello", "Hi")
    notification = services.notifications.list_notifications(DESK_B)[0]
    assert services.notifications.unread_count(DESK_B) == 1
    first = services.notifications.mark_read(notification.id)
    second = services.notifications.mark_read(notification.id)
    assert first.read and second.read_at == first.read_at
    assert services.notifications.unread_count(DESK_B) == 0
    assert services.notifications.list_notifications(DESK_B, unread_only=True) == []
    assert services.store.get_miv(miv.id).read_at is None


def test_failed_notification_does_not_fail_the_miv(
    services: AppServices, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    """Summary: Verify notification failures are logged and swallowed.

    Importance: Notification delivery is best-effort relative to the miv write.
    Alternatives: Roll the miv back when its notification fails.
    """

    def _fail(notification: object) -> None:
        raise Unavailable("notification storage down")

    monkeypatch.setattr(services.store, "create_notification", _fail)
    with caplog.at_level(logging.ERROR, logger="missiv.notifications"):
        conversation, miv = services.conversations.create_conversation(DESK_A, DESK_B, "Hello", "Hi")
    assert services.store.get_miv(miv.id).conversation_id == conversation.id
    assert "Failed to create NEW_MIV notification" in caplog.text


def test_dispatcher_returns_created_notification() -> None:
    """Summary: Verify the dispatcher addresses read receipts to the sender."""

    dispatcher = NotificationDispatcher(store=MemoryStore())
    miv = Miv(conversation_id="conv-1", from_desk=DESK_A, to_desk=DESK_B, subject="Hi", body="x", id="cmiv-1")
    receipt = dispatcher.notify_read_receipt(miv)
    assert receipt.desk_id == DESK_A
    assert receipt.type == NotificationType.READ_RECEIPT


def test_legacy_read_receipts_disabled_by_default(services: AppServices) -> None:
    """Summary: Verify no receipts or legacy markers without the flag."""

    _, miv = services.conversations.create_conversation(DESK_A, DESK_B, "Hello", "Hi")
    services.conversations.mark_read(miv.id, DESK_B)
    assert services.store.get_miv(miv.id).legacy_state is None
    assert services.notifications.list_notifications(DESK_A) == []


def test_legacy_read_receipt_moves_out_to_unanswered(legacy_services: AppServices) -> None:
    """Summary: Verify the legacy receipt flow when enabled.

    Importance: Keeps single-perspective consumers of the old OUT state working.
    Alternatives: Drop the legacy marker entirely.
    """

    services = legacy_services
    _, miv = services.conversations.create_conversation(DESK_A, DESK_B, "Hello", "Hi")
    assert miv.legacy_state == LEGACY_OUT
    services.conversations.mark_read(miv.id, DESK_B)
    services.conversations.mark_read(miv.id, DESK_B)
    receipts = services.notifications.list_notifications(DESK_A)
    assert [item.type for item in receipts] == [NotificationType.READ_RECEIPT]

    services.notifications.mark_read(receipts[0].id)
    assert services.store.get_miv(miv.id).legacy_state == LEGACY_UNANSWERED


def test_legacy_receipt_leaves_other_markers_alone(legacy_services: AppServices) -> None:
    """Summary: Verify only mivs still marked OUT are moved."""

    services = legacy_services
    _, miv = services.conversations.create_conversation(DESK_A, DESK_B, "Hello", "Hi")
    services.store.update_miv(replace(services.store.get_miv(miv.id), legacy_state=None))
    services.conversations.mark_read(miv.id, DESK_B)
    receipt = services.notifications.list_notifications(DESK_A)[0]
    services.notifications.mark_read(receipt.id)
    assert services.store.get_miv(miv.id).legacy_state is None


def test_legacy_receipt_keeps_concurrent_forgets(legacy_services: AppServices) -> None:
    """Summary: Verify receipt reads and sender forgets racing on one miv both land.

    Importance: The OUT to UNANSWERED move must not write back a stale miv.
    Alternatives: Serialize notification reads behind conversation writes.
    """

    services = legacy_services
    mivs = []
    for index in range(12):
        _, miv = services.conversations.create_conversation(DESK_A, DESK_B, f"Note {index}", "Hi")
        services.conversations.mark_read(miv.id, DESK_B)
        mivs.append(miv)
    receipts = services.notifications.list_notifications(DESK_A)
    assert len(receipts) == len(mivs)

    with ThreadPoolExecutor(max_workers=8) as executor:
        reads = [executor.submit(services.notifications.mark_read, item.id) for item in receipts]
        forgets = [executor.submit(services.conversations.forget, miv.id, DESK_A) for miv in mivs]
        for future in reads + forgets:
            future.result()

    for miv in mivs:
        stored = services.store.get_miv(miv.id)
        assert stored.is_forgotten is True
        assert stored.read_at is not None
        assert stored.legacy_state == LEGACY_UNANSWERED


class _NotificationInsertsFail:
    """Summary: SQLite connection proxy whose notification inserts fail."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        self.__dict__["_inner"] = connection

    def execute(self, sql: str, *params: object) -> sqlite3.Cursor:
        if "INSERT INTO notifications" in sql:
            raise sqlite3.DatabaseError("database disk image is malformed")
        return self._inner.execute(sql, *params)

    def __getattr__(self, name: str) -> object:
        return getattr(self._inner, name)

    def __setattr__(self, name: str, value: object) -> None:
        setattr(self._inner, name, value)


def test_sqlite_database_error_in_notification_is_swallowed(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    """Summary: Verify a corrupt notification write leaves committed mivs in place.

    Importance: Any SQLite fault in the notification write stays best-effort.
    Alternatives: Wrap only lock timeouts and let other database errors fail the reply.
    """

    services = build_services(
        build_config(db_path=str(tmp_path / "notify.db"), storage_backend="sqlite")
    )
    for desk_id in (DESK_A, DESK_B):
        services.store.create_desk(Desk(id=desk_id, account_id="acc-test", name=desk_id), b"k")

    real_connect = sqlite3.connect

    def _connect(*args: object, **kwargs: object) -> _NotificationInsertsFail:
        return _NotificationInsertsFail(real_connect(*args, **kwargs))

    monkeypatch.setattr(sqlite3, "connect", _connect)
    with caplog.at_level(logging.ERROR, logger="missiv.notifications"):
        conversation, _ = services.conversations.create_conversation(DESK_A, DESK_B, "Hello", "Hi")
        reply = services.conversations.reply(conversation.id, DESK_B, "Hi A")
    monkeypatch.undo()

    assert reply.seq_no == 2
    assert [miv.seq_no for miv in services.store.get_conversation_mivs(conversation.id)] == [1, 2]
    assert services.notifications.list_notifications(DESK_A) == []
    assert services.notifications.list_notifications(DESK_B) == []
    assert "Failed to create REPLY notification" in caplog.text
