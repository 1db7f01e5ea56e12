"""
Batch selection for reservations.

Pure functions over batch snapshots: they decide which batches fund a hold
and how much each contributes, without touching storage. The ledger store
applies the resulting plan inside the account's critical section.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from ..models.batch import CreditBatch
from ..models.reservation import BatchAllocation


class ConsumptionPolicy(str, Enum):
    EXPIRING_FIRST = "expiring_first"
    FIFO = "fifo"


def _expiring_first_key(batch: CreditBatch) -> Tuple[int, datetime, datetime, str]:
    # Batches with an expiry sort before permanent ones; ties by age, then id
    has_no_expiry = 1 if batch.expires_at is None else 0
    expires_at = batch.expires_at or datetime.max.replace(tzinfo=batch.created_at.tzinfo)
    return (has_no_expiry, expires_at, batch.created_at, batch.id or "")


def _fifo_key(batch: CreditBatch) -> Tuple[datetime, str]:
    return (batch.created_at, batch.id or "")


_ORDERINGS: dict[ConsumptionPolicy, Callable[[CreditBatch], tuple]] = {
    ConsumptionPolicy.EXPIRING_FIRST: _expiring_first_key,
    ConsumptionPolicy.FIFO: _fifo_key,
}


def order_batches(
    batches: Iterable[CreditBatch],
    as_of: datetime,
    policy: ConsumptionPolicy = ConsumptionPolicy.EXPIRING_FIRST,
) -> List[CreditBatch]:
    """Active batches with free credits, in the order they should be consumed."""
    candidates = [b for b in batches if b.is_active(as_of) and b.remaining > 0]
    return sorted(candidates, key=_ORDERINGS[policy])


def plan_allocations(
    batches: Sequence[CreditBatch],
    amount: int,
    as_of: datetime,
    policy: ConsumptionPolicy = ConsumptionPolicy.EXPIRING_FIRST,
) -> Optional[List[BatchAllocation]]:
    """
    Walk the ordered batches taking `min(remaining, still_needed)` from each.

    Returns the allocations in draw order, or None when the active batches
    cannot cover `amount`. The input batches are not modified.
    """
    still_needed = amount
    allocations: List[BatchAllocation] = []
    for batch in order_batches(batches, as_of, policy):
        if still_needed == 0:
            break
        taken = min(batch.remaining, still_needed)
        allocations.append(BatchAllocation(batch_id=batch.id or "", amount=taken))
        still_needed -= taken
    if still_needed > 0:
        return None
    return allocations


def available_credits(batches: Iterable[CreditBatch], as_of: datetime) -> int:
    return sum(b.remaining for b in batches if b.is_active(as_of))


def ledger_total(batches: Iterable[CreditBatch]) -> int:
    """Free plus held credits over non-retired batches; what transactions track."""
    return sum(b.remaining + b.held for b in batches if not b.expired)
