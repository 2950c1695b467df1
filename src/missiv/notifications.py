"""Summary: Notification dispatch for miv events.

Importance: Tells the recipient desk about new mivs, replies, and read receipts.
Alternatives: Let desks poll conversations for changes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from missiv.errors import MissivError
from missiv.models import Miv, Notification, NotificationType
from missiv.storage.base import EntityStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationDispatcher:
    """Summary: Creates one notification per triggering miv event.

    Importance: Notification writes are best-effort and never fail the miv write.
    Alternatives: Write the miv and its notification in one transaction.
    """

    store: EntityStore

    def notify_new_miv(self, miv: Miv) -> Notification | None:
        """Summary: Notify the recipient of a conversation's opening miv."""

        return self._dispatch(
            miv.to_desk,
            NotificationType.NEW_MIV,
            miv,
            f"New message from {miv.from_desk}: {miv.subject}",
        )

    def notify_reply(self, miv: Miv) -> Notification | None:
        """Summary: Notify the recipient of a reply or acknowledgement.

        Importance: Acknowledgements close the thread, so the text says so.
        Alternatives: Use a separate notification type for acknowledgements.
        """

        prefix = "ACK" if miv.is_ack else "Reply"
        return self._dispatch(
            miv.to_desk,
            NotificationType.REPLY,
            miv,
            f"{prefix} from {miv.from_desk} in: {miv.subject}",
        )

    def notify_read_receipt(self, miv: Miv) -> Notification | None:
        """Summary: Tell the sender that the recipient opened a miv."""

        return self._dispatch(
            miv.from_desk,
            NotificationType.READ_RECEIPT,
            miv,
            f"{miv.to_desk} read: {miv.subject}",
        )

    def _dispatch(
        self, desk_id: str, notification_type: NotificationType, miv: Miv, message: str
    ) -> Notification | None:
        notification = Notification(
            desk_id=desk_id,
            type=notification_type,
            miv_id=miv.id,
            conversation_id=miv.conversation_id,
            message=message,
        )
        try:
            return self.store.create_notification(notification)
        except MissivError:
            logger.exception(
                "Failed to create %s notification for miv %s.", notification_type.value, miv.id
            )
            return None
