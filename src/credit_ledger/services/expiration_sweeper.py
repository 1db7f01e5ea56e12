from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Set

from pydantic import BaseModel, Field

from ..db.base import BaseDBManager
from ..errors import LedgerError
from ..logging.ledger_logger import LedgerLogger
from ..models.transaction import Transaction, TransactionKind
from .ledger_store import LedgerStore
from .notification_service import NotificationService
from .reservation_manager import ConsumptionReservationManager
from .retry import NOT_RETRYABLE, retry_with_backoff


logger = logging.getLogger(__name__)


class SweepReport(BaseModel):
    as_of: datetime
    accounts_swept: int = 0
    expired_transactions: List[Transaction] = Field(default_factory=list)
    reservations_released: int = 0
    expiry_notices: int = 0
    failed_accounts: List[str] = Field(default_factory=list)


class ExpirationSweeper:
    """
    Retires expired batches and times out stale reservations.

    Runs both lazily (from reads, via `sweep_account_quietly`) and
    periodically (`run_periodically`). Every mutation goes through the
    ledger store, so sweeping shares the account's critical section with
    reservations and grants. With a notifier, an account is told about its
    expiring credits once each time one of its batches enters the
    `expiry_notice_days` window.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        store: LedgerStore,
        reservations: Optional[ConsumptionReservationManager] = None,
        notifier: Optional[NotificationService] = None,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        expiry_notice_days: int = 7,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._store = store
        self._reservations = reservations
        self._notifier = notifier
        self._max_attempts = max(1, max_attempts)
        self._backoff_seconds = backoff_seconds
        self._expiry_notice_days = expiry_notice_days
        # Batches already announced; only those still inside the notice window are kept
        self._noticed_batches: Set[str] = set()

    async def sweep_account(
        self, account_id: str, as_of: Optional[datetime] = None
    ) -> List[Transaction]:
        return await self._store.expire_due_batches(account_id, as_of=as_of)

    async def sweep_account_quietly(
        self, account_id: str, as_of: Optional[datetime] = None
    ) -> List[Transaction]:
        """Lazy sweep for read paths; a failure leaves the read to exclude due batches."""
        as_of = as_of or self._store.now()
        batches = await self._db.get_batches(account_id)
        if not any(b.is_due(as_of) for b in batches):
            return []
        try:
            return await self.sweep_account(account_id, as_of=as_of)
        except LedgerError as exc:
            logger.warning("Lazy sweep of account %s failed: %s", account_id, exc)
            return []

    async def sweep_all(self, as_of: Optional[datetime] = None) -> SweepReport:
        as_of = as_of or self._store.now()
        report = SweepReport(as_of=as_of)

        for account_id in await self._db.get_accounts_with_due_batches(as_of):
            written = await self._sweep_with_retry(account_id, as_of)
            if written is None:
                report.failed_accounts.append(account_id)
                continue
            report.accounts_swept += 1
            # Releases forced by the expiry are part of `written` but are not expirations
            report.expired_transactions.extend(
                tx for tx in written if tx.kind == TransactionKind.EXPIRE
            )

        if self._reservations is not None:
            released = await self._reservations.release_timed_out(now=as_of)
            report.reservations_released = len(released)

        report.expiry_notices = await self._notify_expiring(as_of)

        if report.expired_transactions or report.reservations_released or report.failed_accounts:
            await self._ledger.log_system(
                message="Expiration sweep finished",
                details={
                    "as_of": as_of.isoformat(),
                    "accounts_swept": report.accounts_swept,
                    "expired_transactions": len(report.expired_transactions),
                    "reservations_released": report.reservations_released,
                    "failed_accounts": report.failed_accounts,
                },
            )
        logger.info(
            "Sweep at %s: %d accounts, %d expirations, %d timeouts, %d notices, %d failures",
            as_of.isoformat(),
            report.accounts_swept,
            len(report.expired_transactions),
            report.reservations_released,
            report.expiry_notices,
            len(report.failed_accounts),
        )
        return report

    async def _sweep_with_retry(
        self, account_id: str, as_of: datetime
    ) -> Optional[List[Transaction]]:
        try:
            return await retry_with_backoff(
                lambda: self.sweep_account(account_id, as_of=as_of),
                attempts=self._max_attempts,
                backoff=self._backoff_seconds,
                label=f"Sweep of account {account_id}",
            )
        except NOT_RETRYABLE as exc:
            # Frozen until an operator intervenes; retrying cannot help
            logger.error("Skipping account %s in this sweep: %s", account_id, exc)
            return None
        except LedgerError as exc:
            logger.error(
                "Sweep of account %s failed after %d attempts: %s",
                account_id,
                self._max_attempts,
                exc,
            )
            await self._ledger.log_error(
                message="Expiration sweep failed",
                details={"error": str(exc), "code": exc.code, "attempts": self._max_attempts},
                account_id=account_id,
            )
            return None

    async def _notify_expiring(self, as_of: datetime) -> int:
        if self._notifier is None or self._expiry_notice_days <= 0:
            return 0
        horizon = as_of + timedelta(days=self._expiry_notice_days)
        batches = [
            b
            for b in await self._db.get_batches_expiring_between(as_of, horizon)
            if b.id is not None and b.remaining > 0
        ]
        accounts = sorted({b.account_id for b in batches if b.id not in self._noticed_batches})
        self._noticed_batches = {b.id for b in batches if b.id is not None}
        for account_id in accounts:
            await self._notifier.notify_expiring_credits(
                account_id, within_days=self._expiry_notice_days
            )
        return len(accounts)

    async def run_periodically(self, interval: float, stop_event: asyncio.Event) -> None:
        """Sweep every `interval` seconds until `stop_event` is set."""
        logger.info("Expiration sweeper started, interval %.1fs", interval)
        while not stop_event.is_set():
            try:
                await self.sweep_all()
            except Exception:
                # A broken sweep must not kill the loop; the next tick retries
                logger.exception("Expiration sweep crashed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Expiration sweeper stopped")
