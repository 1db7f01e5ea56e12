from __future__ import annotations

import logging
from typing import Optional

from ..errors import ReservationClosed
from ..logging.ledger_logger import LedgerLogger
from ..models.reservation import Reservation
from ..models.transaction import Transaction
from .reservation_manager import ConsumptionReservationManager


logger = logging.getLogger(__name__)


class TaskLifecycleHook:
    """
    Glue between the enhancement task pipeline and the ledger.

    A task holds credits from submission; success commits the hold, while
    failure and cancellation release it so the task is never charged.
    """

    def __init__(
        self,
        reservations: ConsumptionReservationManager,
        ledger: LedgerLogger,
    ) -> None:
        self._reservations = reservations
        self._ledger = ledger

    async def on_task_submitted(
        self,
        account_id: str,
        task_id: str,
        cost: int,
        correlation_id: str | None = None,
    ) -> Reservation:
        """Raises `InsufficientBalance` when the task must not start."""
        return await self._reservations.reserve(
            account_id, cost, task_id, correlation_id=correlation_id
        )

    async def on_task_succeeded(
        self, account_id: str, task_id: str, correlation_id: str | None = None
    ) -> Optional[Transaction]:
        reservation = await self._reservations.find_latest_for_task(account_id, task_id)
        if reservation is None:
            logger.warning("Task %s of account %s succeeded without a reservation", task_id, account_id)
            return None
        return await self._reservations.commit(
            reservation.require_id(), correlation_id=correlation_id
        )

    async def on_task_failed(
        self, account_id: str, task_id: str, correlation_id: str | None = None
    ) -> Optional[Transaction]:
        return await self._release_active(account_id, task_id, correlation_id)

    async def on_task_cancelled(
        self, account_id: str, task_id: str, correlation_id: str | None = None
    ) -> Optional[Transaction]:
        return await self._release_active(account_id, task_id, correlation_id)

    async def retry_task(
        self,
        account_id: str,
        task_id: str,
        cost: int,
        correlation_id: str | None = None,
    ) -> Reservation:
        """Release whatever the previous attempt still holds, then hold credits again."""
        await self._release_active(account_id, task_id, correlation_id)
        await self._ledger.log_transaction(
            account_id=account_id,
            message="Task retry requested",
            details={"task_id": task_id, "cost": cost},
            correlation_id=correlation_id,
        )
        return await self._reservations.reserve(
            account_id, cost, task_id, correlation_id=correlation_id
        )

    async def cancel_task(
        self, account_id: str, task_id: str, correlation_id: str | None = None
    ) -> Optional[Transaction]:
        """Admin cancel: a no-op once the task's reservation is already resolved."""
        return await self._release_active(account_id, task_id, correlation_id)

    async def delete_task(
        self, account_id: str, task_id: str, correlation_id: str | None = None
    ) -> None:
        # Deleting a task record never touches the ledger
        await self._ledger.log_system(
            message="Task deleted",
            details={"task_id": task_id, "correlation_id": correlation_id},
            account_id=account_id,
        )

    async def _release_active(
        self, account_id: str, task_id: str, correlation_id: str | None
    ) -> Optional[Transaction]:
        reservation = await self._reservations.find_active_for_task(account_id, task_id)
        if reservation is None:
            return None
        try:
            return await self._reservations.release(
                reservation.require_id(), correlation_id=correlation_id
            )
        except ReservationClosed:
            # Committed between the lookup and the release
            logger.info("Reservation %s for task %s was committed concurrently", reservation.id, task_id)
            return None
