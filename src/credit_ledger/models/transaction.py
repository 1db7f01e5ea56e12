from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from pydantic import Field, model_validator

from .base import DBSerializableModel, utcnow


class TransactionKind(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"
    EXPIRE = "expire"
    RELEASE = "release"


class TransactionReason(str, Enum):
    PURCHASE = "purchase"
    SUBSCRIPTION_RENEWAL = "subscription_renewal"
    BONUS = "bonus"
    ADJUSTMENT = "adjustment"
    TASK_CONSUMPTION = "task_consumption"
    EXPIRED = "expired"
    RELEASED = "released"


class Transaction(DBSerializableModel):
    """
    Immutable ledger entry.

    `amount` is signed from the account's perspective and always equals
    `balance_after - balance_before`. `sequence` totally orders the entries
    of one account.
    """

    collection_name: ClassVar[str] = "credit_transactions"
    indexes: ClassVar[tuple[tuple[str, ...], ...]] = (
        ("account_id", "sequence"),
        ("account_id", "external_ref"),
        ("account_id", "related_task_id"),
    )

    id: Optional[str] = Field(default=None)
    account_id: str
    sequence: int = 0
    kind: TransactionKind
    amount: int
    reason: TransactionReason
    related_task_id: Optional[str] = None
    related_reservation_id: Optional[str] = None
    related_batch_id: Optional[str] = None
    balance_before: int
    balance_after: int
    created_at: datetime = Field(default_factory=utcnow)
    description: Optional[str] = None
    external_ref: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_balance_delta(self) -> "Transaction":
        if self.balance_after - self.balance_before != self.amount:
            raise ValueError(
                "balance_after - balance_before must equal amount "
                f"({self.balance_after} - {self.balance_before} != {self.amount})"
            )
        return self
