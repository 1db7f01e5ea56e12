from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum


class BillingPeriod(str, Enum):
    DAILY = "daily"
    MONTHLY = "monthly"
    YEARLY = "yearly"

    def length(self) -> timedelta:
        if self is BillingPeriod.DAILY:
            return timedelta(days=1)
        if self is BillingPeriod.MONTHLY:
            return timedelta(days=30)
        return timedelta(days=365)

    def period_end(self, start: datetime) -> datetime:
        """Expiry of credits granted for a billing cycle starting at `start`."""
        return start + self.length()
