from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class CreditSource(str, Enum):
    PURCHASE = "purchase"
    SUBSCRIPTION_RENEWAL = "subscription_renewal"
    BONUS = "bonus"
    ADJUSTMENT = "adjustment"


class CreditBatch(DBSerializableModel):
    """
    A discrete grant of credits with its own remaining balance and optional expiry.

    `amount` is the original grant and never changes. `remaining` is free to
    reserve, `held` is earmarked by open reservations. Batches are never
    deleted; expired ones are kept with `remaining == held == 0`.
    """

    collection_name: ClassVar[str] = "credit_batches"
    indexes: ClassVar[tuple[tuple[str, ...], ...]] = (
        ("account_id", "expired", "expires_at"),
    )

    id: Optional[str] = Field(default=None)
    account_id: str
    amount: int
    remaining: int
    held: int = 0
    source: CreditSource
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = Field(
        default=None, description="None means the credits never expire."
    )
    expired: bool = False
    expired_at: Optional[datetime] = None
    external_ref: Optional[str] = Field(
        default=None,
        description="Payment or charge identifier that produced this batch.",
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def is_due(self, as_of: datetime) -> bool:
        """True when the batch has passed its expiry but was not retired yet."""
        return (
            not self.expired
            and self.expires_at is not None
            and self.expires_at <= as_of
        )

    def is_active(self, as_of: datetime) -> bool:
        return not self.expired and not self.is_due(as_of)

    def invariant_errors(self) -> list[str]:
        errors: list[str] = []
        if self.remaining < 0:
            errors.append(f"remaining is negative ({self.remaining})")
        if self.held < 0:
            errors.append(f"held is negative ({self.held})")
        if self.remaining + self.held > self.amount:
            errors.append(
                f"remaining + held ({self.remaining} + {self.held}) exceeds amount ({self.amount})"
            )
        return errors
