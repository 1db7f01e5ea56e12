from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict

from ..db.base import BaseDBManager
from ..models.base import utcnow
from ..models.notification import (
    NotificationEvent,
    NotificationStatus,
    NotificationType,
)
from ..models.transaction import Transaction
from ..notifications.queue import AsyncNotificationQueue
from .balance_projector import project


logger = logging.getLogger(__name__)


class NotificationService:
    """
    Orchestrates notification creation and dispatch via a message queue.

    Notifications are side effects of ledger writes: a failure here is
    logged and never propagates to the operation that triggered it.
    """

    def __init__(
        self,
        db: BaseDBManager,
        queue: AsyncNotificationQueue,
        low_credit_threshold: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._queue = queue
        self._low_credit_threshold = low_credit_threshold
        self._clock = clock

    async def publish_balance_changed(self, tx: Transaction) -> None:
        """Push channel for dashboards, in place of periodic balance polling."""
        await self._emit(
            tx.account_id,
            NotificationType.BALANCE_CHANGED,
            {
                "transaction_id": tx.id,
                "sequence": tx.sequence,
                "kind": tx.kind.value,
                "amount": tx.amount,
                "balance_after": tx.balance_after,
            },
        )

    async def notify_low_credits(self, account_id: str) -> None:
        try:
            batches = await self._db.get_batches(account_id)
        except Exception:
            logger.exception("Could not load balance of account %s for low credit check", account_id)
            return
        balance = project(account_id, batches, self._clock())
        if balance.available > self._low_credit_threshold:
            return
        await self._emit(
            account_id,
            NotificationType.LOW_CREDITS,
            {"available": balance.available, "threshold": self._low_credit_threshold},
        )

    async def notify_expiring_credits(self, account_id: str, within_days: int) -> None:
        try:
            batches = await self._db.get_batches(account_id)
        except Exception:
            logger.exception("Could not load batches of account %s for expiry check", account_id)
            return
        balance = project(account_id, batches, self._clock(), threshold_days=within_days)
        total = balance.breakdown.expiring_soon
        if total <= 0:
            return
        await self._emit(
            account_id,
            NotificationType.EXPIRING_CREDITS,
            {
                "expiring_credits": total,
                "within_days": within_days,
                "next_expiry": balance.breakdown.next_expiry.isoformat()
                if balance.breakdown.next_expiry
                else None,
            },
        )

    async def notify_ledger_alert(
        self, account_id: str, message: str, details: Dict[str, Any]
    ) -> None:
        await self._emit(
            account_id,
            NotificationType.LEDGER_ALERT,
            {"message": message, "details": details},
        )

    async def _emit(
        self,
        account_id: str,
        notification_type: NotificationType,
        payload: Dict[str, Any],
    ) -> None:
        event = NotificationEvent(
            account_id=account_id,
            notification_type=notification_type,
            payload=payload,
            status=NotificationStatus.PENDING,
        )
        try:
            event = await self._db.add_notification_event(event)
            await self._queue.enqueue(
                {
                    "notification_id": event.id,
                    "type": event.notification_type.value,
                    "account_id": account_id,
                    "payload": event.payload,
                }
            )
        except Exception:
            logger.exception(
                "Failed to dispatch %s notification for account %s",
                notification_type.value,
                account_id,
            )
