from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from ..db.base import BaseDBManager
from ..errors import LedgerError, ReservationClosed, UnknownReservation
from ..models.reservation import Reservation, ReservationStatus
from ..models.transaction import Transaction
from .allocation import ConsumptionPolicy
from .ledger_store import LedgerStore
from .retry import NOT_RETRYABLE, retry_with_backoff


logger = logging.getLogger(__name__)

_SETTLED = NOT_RETRYABLE + (ReservationClosed, UnknownReservation)


class ConsumptionReservationManager:
    """
    Per-task view of the reserve -> commit/release protocol.

    The reservation status is the single exactly-once state machine: a task
    is charged only by committing its held reservation, and every other
    outcome (failure, cancellation, timeout) releases it.
    """

    def __init__(
        self,
        db: BaseDBManager,
        store: LedgerStore,
        reservation_timeout_seconds: int = 30 * 60,
        policy: Optional[ConsumptionPolicy] = None,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
    ) -> None:
        self._db = db
        self._store = store
        self._timeout = timedelta(seconds=reservation_timeout_seconds)
        self._policy = policy
        self._max_attempts = max(1, max_attempts)
        self._backoff_seconds = backoff_seconds

    async def reserve(
        self,
        account_id: str,
        amount: int,
        task_id: str,
        correlation_id: str | None = None,
    ) -> Reservation:
        return await self._store.reserve(
            account_id=account_id,
            amount=amount,
            task_id=task_id,
            policy=self._policy,
            correlation_id=correlation_id,
        )

    async def commit(
        self, reservation_id: str, correlation_id: str | None = None
    ) -> Transaction:
        return await self._store.commit(reservation_id, correlation_id=correlation_id)

    async def release(
        self, reservation_id: str, correlation_id: str | None = None
    ) -> Transaction:
        return await self._store.release(reservation_id, correlation_id=correlation_id)

    async def get_reservation(self, reservation_id: str) -> Reservation:
        return await self._store.get_reservation(reservation_id)

    async def find_active_for_task(
        self, account_id: str, task_id: str
    ) -> Optional[Reservation]:
        """The task's reservation that is still `held`, if any."""
        for reservation in await self._db.get_reservations_for_task(account_id, task_id):
            if reservation.status == ReservationStatus.HELD:
                return reservation
        return None

    async def find_latest_for_task(
        self, account_id: str, task_id: str
    ) -> Optional[Reservation]:
        reservations = await self._db.get_reservations_for_task(account_id, task_id)
        return reservations[-1] if reservations else None

    async def release_timed_out(self, now: Optional[datetime] = None) -> List[Transaction]:
        """
        Auto-release every reservation held longer than the timeout.

        Released reservations end as `expired-timeout`. A busy account is
        retried with backoff; a failure on one reservation is logged and does
        not stop the others.
        """
        now = now or self._store.now()
        cutoff = now - self._timeout
        released: List[Transaction] = []
        for reservation in await self._db.get_stale_reservations(cutoff):
            reservation_id = reservation.require_id()
            try:
                tx = await retry_with_backoff(
                    lambda: self._store.release(reservation_id, timed_out=True),
                    attempts=self._max_attempts,
                    backoff=self._backoff_seconds,
                    give_up_on=_SETTLED,
                    label=f"Timeout release of reservation {reservation_id}",
                )
            except ReservationClosed as exc:
                # Committed by the task between the query and the lock
                logger.info("Skipping timed out reservation %s: %s", reservation_id, exc)
                continue
            except LedgerError as exc:
                logger.error(
                    "Could not release timed out reservation %s for account %s: %s",
                    reservation_id,
                    reservation.account_id,
                    exc,
                )
                continue
            logger.info(
                "Released reservation %s for task %s after %s",
                reservation_id,
                reservation.task_id,
                now - reservation.created_at,
            )
            released.append(tx)
        return released
