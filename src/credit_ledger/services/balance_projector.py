from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Iterable, List, Optional, Tuple

from ..cache.base import AsyncCacheBackend
from ..db.base import BaseDBManager
from ..models.account import AccountState
from ..models.balance import AccountBalance, BalanceBreakdown, ExpiringCredits
from ..models.base import utcnow
from ..models.batch import CreditBatch

if TYPE_CHECKING:
    from .expiration_sweeper import ExpirationSweeper


def project(
    account_id: str,
    batches: Iterable[CreditBatch],
    as_of: datetime,
    threshold_days: int = 7,
) -> AccountBalance:
    """
    Compute an account's balance from a snapshot of its batches.

    Retired batches and batches already past their expiry count for nothing,
    whether or not a sweep has run yet.
    """
    active = [b for b in batches if b.is_active(as_of)]
    horizon = as_of + timedelta(days=threshold_days)

    breakdown = BalanceBreakdown(threshold_days=threshold_days)
    expiring: List[ExpiringCredits] = []
    for batch in active:
        if batch.expires_at is None:
            breakdown.permanent += batch.remaining
            continue
        if batch.remaining <= 0:
            continue
        expiring.append(
            ExpiringCredits(
                batch_id=batch.id or "",
                amount=batch.remaining,
                expires_at=batch.expires_at,
            )
        )
        if batch.expires_at <= horizon:
            breakdown.expiring_soon += batch.remaining

    expiring.sort(key=lambda e: (e.expires_at, e.batch_id))
    breakdown.expiring = expiring
    breakdown.next_expiry = expiring[0].expires_at if expiring else None

    return AccountBalance(
        account_id=account_id,
        total=sum(b.remaining + b.held for b in active),
        available=sum(b.remaining for b in active),
        held=sum(b.held for b in active),
        breakdown=breakdown,
        as_of=as_of,
    )


class BalanceProjector:
    """
    The one place account balances are computed.

    Reads take a version-checked snapshot instead of the writer lock, and
    cached projections are keyed by the account version, so a cache hit is
    always as fresh as the store.
    """

    def __init__(
        self,
        db: BaseDBManager,
        cache: Optional[AsyncCacheBackend] = None,
        sweeper: Optional["ExpirationSweeper"] = None,
        threshold_days: int = 7,
        cache_ttl_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._cache = cache
        self._sweeper = sweeper
        self._threshold_days = threshold_days
        self._cache_ttl_seconds = cache_ttl_seconds
        self._clock = clock

    @staticmethod
    def _cache_key(account_id: str, version: int, threshold_days: int) -> str:
        return f"balance:{account_id}:v{version}:d{threshold_days}"

    async def get_balance(
        self, account_id: str, threshold_days: Optional[int] = None
    ) -> AccountBalance:
        threshold = self._threshold_days if threshold_days is None else threshold_days
        now = self._clock()
        if self._sweeper is not None:
            await self._sweeper.sweep_account_quietly(account_id, as_of=now)

        state, batches = await self._snapshot(account_id)

        # Due batches are excluded by `project`; caching would freeze that exclusion
        has_due = any(b.is_due(now) for b in batches)
        key = self._cache_key(account_id, state.version, threshold)
        if self._cache is not None and not has_due:
            cached = await self._cache.get(key)
            if cached is not None and self._fresh_for(cached, now):
                return cached.model_copy(update={"as_of": now})

        balance = project(account_id, batches, now, threshold)
        if self._cache is not None and not has_due:
            await self._cache.set(key, balance, ttl_seconds=self._cache_ttl_seconds)
        return balance

    async def get_expiring_credits(
        self, account_id: str, days_ahead: int = 7
    ) -> List[ExpiringCredits]:
        """Batches with free credits expiring within `days_ahead` days, earliest first."""
        balance = await self.get_balance(account_id, threshold_days=days_ahead)
        horizon = balance.as_of + timedelta(days=days_ahead)
        return [e for e in balance.breakdown.expiring if e.expires_at <= horizon]

    async def has_enough_credits(self, account_id: str, amount: int) -> bool:
        balance = await self.get_balance(account_id)
        return balance.available >= amount

    async def _snapshot(self, account_id: str) -> Tuple[AccountState, List[CreditBatch]]:
        async def read() -> Tuple[AccountState, List[CreditBatch]]:
            state = await self._db.get_account_state(account_id)
            batches = await self._db.get_batches(account_id)
            return state, batches

        return await self._db.read_consistent(account_id, read)

    @staticmethod
    def _fresh_for(cached: AccountBalance, now: datetime) -> bool:
        # The breakdown depends on time: reuse only while no batch crossed its
        # expiry or entered the expiring-soon window since it was computed
        window = timedelta(days=cached.breakdown.threshold_days)
        for entry in cached.breakdown.expiring:
            if entry.expires_at <= now:
                return False
            if (entry.expires_at <= cached.as_of + window) != (entry.expires_at <= now + window):
                return False
        return True
