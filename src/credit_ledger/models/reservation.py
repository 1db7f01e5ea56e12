from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, List, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel, utcnow


class ReservationStatus(str, Enum):
    HELD = "held"
    COMMITTED = "committed"
    RELEASED = "released"
    EXPIRED_TIMEOUT = "expired-timeout"

    @property
    def is_terminal(self) -> bool:
        return self is not ReservationStatus.HELD

    @property
    def is_released(self) -> bool:
        return self in (ReservationStatus.RELEASED, ReservationStatus.EXPIRED_TIMEOUT)


class BatchAllocation(BaseModel):
    batch_id: str
    amount: int


class Reservation(DBSerializableModel):
    """
    Provisional hold against an account's balance tied to one task.

    Moves from `held` to exactly one terminal status; `batch_allocations`
    records which batches funded the hold, in the order they were drawn.
    """

    collection_name: ClassVar[str] = "credit_reservations"
    indexes: ClassVar[tuple[tuple[str, ...], ...]] = (
        ("account_id", "task_id"),
        ("status", "created_at"),
    )

    id: Optional[str] = Field(default=None)
    account_id: str
    task_id: str
    amount: int
    status: ReservationStatus = ReservationStatus.HELD
    batch_allocations: List[BatchAllocation] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    transaction_id: Optional[str] = Field(
        default=None,
        description="Terminal transaction returned again on idempotent repeats.",
    )

    def require_id(self) -> str:
        if self.id is None:
            raise ValueError("Reservation must have id to be resolved")
        return self.id
