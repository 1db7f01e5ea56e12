from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class NotificationType(str, Enum):
    BALANCE_CHANGED = "balance_changed"
    LOW_CREDITS = "low_credits"
    EXPIRING_CREDITS = "expiring_credits"
    LEDGER_ALERT = "ledger_alert"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class NotificationEvent(DBSerializableModel):
    """
    Stored representation of notifications for auditing/monitoring.
    """

    collection_name: ClassVar[str] = "credit_notifications"

    id: Optional[str] = Field(default=None)
    account_id: str
    notification_type: NotificationType
    payload: dict = Field(default_factory=dict)
    status: NotificationStatus = NotificationStatus.PENDING
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    sent_at: Optional[datetime] = None
