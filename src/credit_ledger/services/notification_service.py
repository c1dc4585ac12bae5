from __future__ import annotations

import logging
from typing import Any, Dict

from ..db.base import BaseDBManager
from ..models.notification import (
    NotificationEvent,
    NotificationStatus,
    NotificationType,
)
from ..notifications.queue import AsyncNotificationQueue


logger = logging.getLogger(__name__)


class NotificationService:
    """
    Orchestrates notification creation and dispatch via a message queue.

    Callers treat every method as best-effort: a notification that cannot be
    stored or queued never affects the ledger operation that triggered it.
    """

    def __init__(
        self,
        db: BaseDBManager,
        queue: AsyncNotificationQueue,
        low_credit_threshold: int,
    ) -> None:
        self._db = db
        self._queue = queue
        self._low_credit_threshold = low_credit_threshold

    async def notify_low_credits(self, account_id: str, balance: int) -> bool:
        if balance > self._low_credit_threshold:
            return False

        await self._dispatch(
            account_id,
            NotificationType.LOW_CREDITS,
            {"current_credits": balance, "threshold": self._low_credit_threshold},
        )
        return True

    async def flag_unrefunded_debit(
        self, account_id: str, amount: int, reason: str, error: str
    ) -> None:
        """
        Record a debit whose refund failed so it can be reconciled by hand.
        """
        logger.warning(
            "Flagging %s un-refunded credits on account %s for reconciliation",
            amount,
            account_id,
        )
        await self._dispatch(
            account_id,
            NotificationType.REFUND_FAILED,
            {"amount": amount, "reason": reason},
            error_message=error,
        )

    async def notify_transaction_error(
        self, account_id: str, message: str, details: Dict[str, Any]
    ) -> None:
        await self._dispatch(
            account_id,
            NotificationType.TRANSACTION_ERROR,
            {"message": message, "details": details},
        )

    async def _dispatch(
        self,
        account_id: str,
        notification_type: NotificationType,
        payload: Dict[str, Any],
        error_message: str | None = None,
    ) -> None:
        event = NotificationEvent(
            account_id=account_id,
            notification_type=notification_type,
            payload=payload,
            status=NotificationStatus.PENDING,
            error_message=error_message,
        )
        event = await self._db.add_notification_event(event)

        await self._queue.enqueue(
            {
                "notification_id": event.id,
                "type": event.notification_type.value,
                "account_id": account_id,
                "payload": event.payload,
            }
        )
