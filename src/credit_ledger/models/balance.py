from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class ExpiringCredits(BaseModel):
    batch_id: str
    amount: int
    expires_at: datetime


class BalanceBreakdown(BaseModel):
    permanent: int = 0
    expiring_soon: int = 0
    threshold_days: int
    expiring: List[ExpiringCredits] = Field(default_factory=list)
    next_expiry: Optional[datetime] = None


class AccountBalance(BaseModel):
    """
    Read-side projection of an account's active batches.

    `total` is the ledger balance (free plus held credits) and matches the
    `balance_after` of the account's latest transaction. `available` is what
    a new reservation can draw on; the breakdown is computed over it.
    """

    account_id: str
    total: int = 0
    available: int = 0
    held: int = 0
    breakdown: BalanceBreakdown
    as_of: datetime
