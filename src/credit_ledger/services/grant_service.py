from __future__ import annotations

from datetime import timedelta
from typing import Optional

from ..errors import InvalidAmount
from ..models.batch import CreditSource
from ..models.subscription import BillingPeriod
from ..models.transaction import Transaction
from .ledger_store import LedgerStore


class CreditGrantService:
    """
    Entry point for everything that adds credits: payment webhooks,
    subscription renewals and admin grants.

    Grants carrying a payment reference are idempotent on it, so a webhook
    delivered twice credits the account once.
    """

    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    async def grant_purchase(
        self,
        account_id: str,
        amount: int,
        payment_ref: str,
        description: str | None = None,
        correlation_id: str | None = None,
    ) -> Transaction:
        """Purchased credits never expire."""
        return await self._store.credit(
            account_id=account_id,
            amount=amount,
            source=CreditSource.PURCHASE,
            expires_at=None,
            description=description or f"Purchase of {amount} credits",
            external_ref=payment_ref,
            correlation_id=correlation_id,
        )

    async def grant_subscription_renewal(
        self,
        account_id: str,
        amount: int,
        period: BillingPeriod,
        payment_ref: str,
        plan: str | None = None,
        correlation_id: str | None = None,
    ) -> Transaction:
        """Credits for one billing cycle, expiring when the cycle ends."""
        now = self._store.now()
        metadata = {"billing_period": period.value}
        if plan is not None:
            metadata["plan"] = plan
        return await self._store.credit(
            account_id=account_id,
            amount=amount,
            source=CreditSource.SUBSCRIPTION_RENEWAL,
            expires_at=period.period_end(now),
            description=f"{plan or 'Subscription'} {period.value} renewal",
            external_ref=payment_ref,
            metadata=metadata,
            correlation_id=correlation_id,
        )

    async def grant_bonus(
        self,
        account_id: str,
        amount: int,
        expires_in_days: Optional[int] = None,
        description: str | None = None,
        external_ref: str | None = None,
        correlation_id: str | None = None,
    ) -> Transaction:
        if expires_in_days is not None and expires_in_days <= 0:
            raise InvalidAmount(
                "expires_in_days must be positive", {"expires_in_days": expires_in_days}
            )
        expires_at = None
        if expires_in_days is not None:
            expires_at = self._store.now() + timedelta(days=expires_in_days)
        return await self._store.credit(
            account_id=account_id,
            amount=amount,
            source=CreditSource.BONUS,
            expires_at=expires_at,
            description=description or "Bonus credits",
            external_ref=external_ref,
            correlation_id=correlation_id,
        )

    async def grant_adjustment(
        self,
        account_id: str,
        amount: int,
        reason: str,
        operator: str | None = None,
        external_ref: str | None = None,
        correlation_id: str | None = None,
    ) -> Transaction:
        """Manual admin top-up; `reason` is kept on the transaction for audit."""
        metadata = {"reason": reason}
        if operator is not None:
            metadata["operator"] = operator
        return await self._store.credit(
            account_id=account_id,
            amount=amount,
            source=CreditSource.ADJUSTMENT,
            description=reason,
            external_ref=external_ref,
            metadata=metadata,
            correlation_id=correlation_id,
        )
