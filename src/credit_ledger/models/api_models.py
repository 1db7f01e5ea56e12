from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .balance import AccountBalance, ExpiringCredits
from .reservation import Reservation
from .subscription import BillingPeriod
from .transaction import Transaction


class PurchaseGrantRequest(BaseModel):
    account_id: str
    amount: int
    payment_ref: str
    description: str | None = None


class RenewalGrantRequest(BaseModel):
    account_id: str
    amount: int
    period: BillingPeriod = BillingPeriod.MONTHLY
    payment_ref: str
    plan: str | None = None


class BonusGrantRequest(BaseModel):
    account_id: str
    amount: int
    expires_in_days: int | None = None
    description: str | None = None


class AdjustmentGrantRequest(BaseModel):
    account_id: str
    amount: int
    reason: str
    operator: str | None = None


class ReserveRequest(BaseModel):
    account_id: str
    amount: int


class CancelTaskRequest(BaseModel):
    account_id: str


class UnfreezeRequest(BaseModel):
    operator: str


class TransactionResponse(BaseModel):
    transaction: Transaction


class ReservationResponse(BaseModel):
    reservation: Reservation


class BalanceResponse(BaseModel):
    balance: AccountBalance


class HistoryResponse(BaseModel):
    items: List[Transaction] = Field(default_factory=list)
    next_cursor: Optional[str] = None


class SweepResponse(BaseModel):
    accounts_swept: int
    expired_transactions: int
    reservations_released: int
    expiry_notices: int = 0
    failed_accounts: List[str] = Field(default_factory=list)
    as_of: datetime


class CreditCheckResponse(BaseModel):
    account_id: str
    amount: int
    has_enough: bool


class ExpiringCreditsResponse(BaseModel):
    account_id: str
    days_ahead: int
    total: int
    items: List[ExpiringCredits] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    detail: str
    code: str
