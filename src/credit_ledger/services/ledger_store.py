from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Dict, Iterable, List, Optional

from ..db.base import BaseDBManager
from ..errors import (
    AccountFrozen,
    BatchInvariantViolation,
    InsufficientBalance,
    InvalidAmount,
    InvalidExpiry,
    ReservationClosed,
    ReservationConflict,
    UnknownBatch,
    UnknownReservation,
)
from ..logging.ledger_logger import LedgerLogger
from ..models.base import utcnow
from ..models.batch import CreditBatch, CreditSource
from ..models.reservation import Reservation, ReservationStatus
from ..models.transaction import Transaction, TransactionKind, TransactionReason
from .allocation import ConsumptionPolicy, available_credits, ledger_total, plan_allocations

if TYPE_CHECKING:
    from .notification_service import NotificationService


logger = logging.getLogger(__name__)

_LEDGER_MESSAGES = {
    TransactionKind.CREDIT: "Credits added",
    TransactionKind.DEBIT: "Reserved credits committed",
    TransactionKind.RELEASE: "Reserved credits released",
    TransactionKind.EXPIRE: "Credits expired",
}

RELEASE_CAUSE_REQUESTED = "requested"
RELEASE_CAUSE_TIMEOUT = "timeout"
RELEASE_CAUSE_BATCH_EXPIRED = "batch_expired"


class LedgerStore:
    """
    Sole writer of credit batches, reservations and transactions.

    Every mutating method runs inside the account's critical section
    (`BaseDBManager.account_lock` plus `account_transaction`), so its writes
    land together or not at all. Inside it, due batches are retired first,
    so a batch is never drawn from after its expiry. Batch changes are
    validated on copies before anything is persisted; a failed check rolls
    the section back and freezes the account.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        notifier: Optional["NotificationService"] = None,
        policy: ConsumptionPolicy = ConsumptionPolicy.EXPIRING_FIRST,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._notifier = notifier
        self._policy = policy
        self._clock = clock

    @property
    def policy(self) -> ConsumptionPolicy:
        return self._policy

    def now(self) -> datetime:
        return self._clock()

    async def credit(
        self,
        account_id: str,
        amount: int,
        source: CreditSource,
        expires_at: Optional[datetime] = None,
        description: str | None = None,
        external_ref: str | None = None,
        metadata: Optional[Dict[str, Any]] = None,
        correlation_id: str | None = None,
    ) -> Transaction:
        """
        Grant a new batch of credits and append a `credit` transaction.

        With `external_ref`, a repeated call (e.g. a redelivered payment
        webhook) returns the transaction recorded the first time.
        """
        if amount <= 0:
            raise InvalidAmount("amount must be positive", {"amount": amount})
        now = self._clock()
        if expires_at is not None and expires_at <= now:
            raise InvalidExpiry(
                "expires_at must be in the future", {"expires_at": expires_at.isoformat()}
            )

        async with self._critical_section(account_id):
            await self._ensure_writable(account_id)
            if external_ref is not None:
                existing = await self._db.find_transaction_by_external_ref(
                    account_id, external_ref
                )
                if existing is not None and existing.kind == TransactionKind.CREDIT:
                    logger.info(
                        "Credit for %s with ref %s already recorded as %s",
                        account_id,
                        external_ref,
                        existing.id,
                    )
                    return existing

            written = await self._expire_due_locked(account_id, now)
            before = ledger_total(await self._db.get_batches(account_id))

            batch = CreditBatch(
                account_id=account_id,
                amount=amount,
                remaining=amount,
                held=0,
                source=source,
                created_at=now,
                expires_at=expires_at,
                external_ref=external_ref,
                metadata=dict(metadata or {}),
            )
            self._validate(account_id, [batch], operation="credit")
            batch = await self._db.add_batch(batch)

            tx = await self._append(
                account_id,
                kind=TransactionKind.CREDIT,
                amount=amount,
                reason=TransactionReason(source.value),
                balance_before=before,
                now=now,
                related_batch_id=batch.id,
                description=description,
                external_ref=external_ref,
                metadata=dict(metadata or {}),
            )
            written.append(tx)

        await self._after_write(account_id, written, correlation_id)
        return tx

    async def reserve(
        self,
        account_id: str,
        amount: int,
        task_id: str,
        policy: Optional[ConsumptionPolicy] = None,
        correlation_id: str | None = None,
    ) -> Reservation:
        """
        Hold `amount` credits for `task_id`, all or nothing.

        A task that already holds a reservation for the same amount gets that
        reservation back instead of a second hold.
        """
        if amount <= 0:
            raise InvalidAmount("amount must be positive", {"amount": amount})
        now = self._clock()
        outcome: Reservation | InsufficientBalance
        reused = False

        async with self._critical_section(account_id):
            await self._ensure_writable(account_id)
            written = await self._expire_due_locked(account_id, now)

            existing = await self._find_held_for_task(account_id, task_id)
            if existing is not None:
                if existing.amount != amount:
                    raise ReservationConflict(
                        f"task {task_id} already holds {existing.amount} credits",
                        {"reservation_id": existing.id, "held": existing.amount},
                    )
                outcome = existing
                reused = True
            else:
                batches = await self._db.get_batches(account_id)
                allocations = plan_allocations(batches, amount, now, policy or self._policy)
                if allocations is None:
                    outcome = InsufficientBalance(
                        account_id, amount, available_credits(batches, now)
                    )
                else:
                    by_id = {b.id: b for b in batches}
                    touched: List[CreditBatch] = []
                    for allocation in allocations:
                        batch = by_id[allocation.batch_id]
                        batch.remaining -= allocation.amount
                        batch.held += allocation.amount
                        touched.append(batch)
                    self._validate(account_id, touched, operation="reserve")
                    for batch in touched:
                        await self._db.update_batch(batch)

                    outcome = await self._db.add_reservation(
                        Reservation(
                            account_id=account_id,
                            task_id=task_id,
                            amount=amount,
                            batch_allocations=allocations,
                            created_at=now,
                        )
                    )

        await self._after_write(account_id, written, correlation_id)

        if isinstance(outcome, InsufficientBalance):
            await self._ledger.log_error(
                message="Insufficient credits for reservation",
                details={"task_id": task_id, **outcome.details},
                account_id=account_id,
                correlation_id=correlation_id,
            )
            raise outcome

        reservation = outcome
        if not reused:
            await self._ledger.log_transaction(
                account_id=account_id,
                message="Credits reserved",
                details={
                    "reservation_id": reservation.id,
                    "task_id": task_id,
                    "amount": amount,
                    "allocations": [a.model_dump() for a in reservation.batch_allocations],
                },
                correlation_id=correlation_id,
            )
        return reservation

    async def commit(
        self, reservation_id: str, correlation_id: str | None = None
    ) -> Transaction:
        """
        Turn a held reservation into a permanent `task_consumption` debit.

        Committing an already committed reservation returns the original
        transaction; committing a released one raises `ReservationClosed`.
        """
        reservation = await self._load_reservation(reservation_id)
        account_id = reservation.account_id
        now = self._clock()

        async with self._critical_section(account_id):
            reservation = await self._load_reservation(reservation_id)
            if reservation.status == ReservationStatus.COMMITTED:
                return await self._terminal_transaction(reservation)
            if reservation.status.is_released:
                raise ReservationClosed(
                    f"reservation {reservation_id} was already {reservation.status.value}",
                    {"reservation_id": reservation_id, "status": reservation.status.value},
                )

            await self._ensure_writable(account_id)
            written = await self._expire_due_locked(account_id, now)
            reservation = await self._load_reservation(reservation_id)
            if reservation.status.is_released:
                # Retiring a due batch released this hold; it can no longer be charged
                closed = ReservationClosed(
                    f"reservation {reservation_id} was released because a funding batch expired",
                    {"reservation_id": reservation_id, "status": reservation.status.value},
                )
            else:
                closed = None
                batches = {b.id: b for b in await self._db.get_batches(account_id)}
                before = ledger_total(batches.values())
                touched = self._apply_to_allocated(
                    reservation, batches, held_delta=-1, remaining_delta=0, operation="commit"
                )
                self._validate(account_id, touched, operation="commit")
                for batch in touched:
                    await self._db.update_batch(batch)

                tx = await self._append(
                    account_id,
                    kind=TransactionKind.DEBIT,
                    amount=-reservation.amount,
                    reason=TransactionReason.TASK_CONSUMPTION,
                    balance_before=before,
                    now=now,
                    related_task_id=reservation.task_id,
                    related_reservation_id=reservation.id,
                )
                reservation.status = ReservationStatus.COMMITTED
                reservation.resolved_at = now
                reservation.transaction_id = tx.id
                await self._db.update_reservation(reservation)
                written.append(tx)

        await self._after_write(account_id, written, correlation_id)
        if closed is not None:
            raise closed
        if self._notifier is not None:
            await self._notifier.notify_low_credits(account_id)
        return tx

    async def release(
        self,
        reservation_id: str,
        timed_out: bool = False,
        correlation_id: str | None = None,
    ) -> Transaction:
        """
        Return a held reservation's credits to their batches.

        The appended `release` transaction has amount 0: held credits never
        left the ledger balance. Repeated calls return the same transaction;
        releasing a committed reservation raises `ReservationClosed`.
        """
        reservation = await self._load_reservation(reservation_id)
        account_id = reservation.account_id
        now = self._clock()

        async with self._critical_section(account_id):
            reservation = await self._load_reservation(reservation_id)
            if reservation.status.is_released:
                return await self._terminal_transaction(reservation)
            if reservation.status == ReservationStatus.COMMITTED:
                raise ReservationClosed(
                    f"reservation {reservation_id} was already committed",
                    {"reservation_id": reservation_id, "status": reservation.status.value},
                )

            await self._ensure_writable(account_id)
            written = await self._expire_due_locked(account_id, now)
            reservation = await self._load_reservation(reservation_id)
            if reservation.status.is_released:
                tx = await self._terminal_transaction(reservation)
            else:
                cause = RELEASE_CAUSE_TIMEOUT if timed_out else RELEASE_CAUSE_REQUESTED
                tx = await self._release_locked(reservation, now, cause)
                written.append(tx)

        await self._after_write(account_id, written, correlation_id)
        return tx

    async def expire_batch(
        self, batch_id: str, correlation_id: str | None = None
    ) -> Optional[Transaction]:
        """
        Retire a batch: zero what is left in it and append an `expire` transaction.

        Held reservations drawing on the batch are released first, so they
        can no longer be committed. Returns None when the batch was already
        retired or had nothing left.
        """
        batch = await self._db.get_batch(batch_id)
        if batch is None:
            raise UnknownBatch(f"unknown batch {batch_id}", {"batch_id": batch_id})
        account_id = batch.account_id
        now = self._clock()

        async with self._critical_section(account_id):
            await self._ensure_writable(account_id)
            written = await self._expire_batch_locked(batch_id, now)

        await self._after_write(account_id, written, correlation_id)
        expired = [tx for tx in written if tx.kind == TransactionKind.EXPIRE]
        return expired[-1] if expired else None

    async def expire_due_batches(
        self, account_id: str, as_of: Optional[datetime] = None
    ) -> List[Transaction]:
        """Retire every batch of the account whose expiry is at or before `as_of`."""
        as_of = as_of or self._clock()
        async with self._critical_section(account_id):
            await self._ensure_writable(account_id)
            written = await self._expire_due_locked(account_id, as_of)
        await self._after_write(account_id, written, None)
        return written

    async def unfreeze_account(self, account_id: str, operator: str | None = None) -> None:
        async with self._db.account_lock(account_id):
            await self._db.set_account_frozen(account_id, False)
        await self._ledger.log_system(
            message="Account unfrozen",
            details={"operator": operator},
            account_id=account_id,
        )
        logger.warning("Account %s unfrozen by %s", account_id, operator)

    async def get_reservation(self, reservation_id: str) -> Reservation:
        return await self._load_reservation(reservation_id)

    # Internals; everything below that writes expects the account lock to be held

    async def _ensure_writable(self, account_id: str) -> None:
        state = await self._db.get_account_state(account_id)
        if state.frozen:
            raise AccountFrozen(
                f"account {account_id} is frozen: {state.frozen_reason}",
                {"account_id": account_id, "reason": state.frozen_reason},
            )

    async def _load_reservation(self, reservation_id: str) -> Reservation:
        reservation = await self._db.get_reservation(reservation_id)
        if reservation is None:
            raise UnknownReservation(
                f"unknown reservation {reservation_id}", {"reservation_id": reservation_id}
            )
        return reservation

    async def _find_held_for_task(self, account_id: str, task_id: str) -> Optional[Reservation]:
        for reservation in await self._db.get_reservations_for_task(account_id, task_id):
            if reservation.status == ReservationStatus.HELD:
                return reservation
        return None

    async def _terminal_transaction(self, reservation: Reservation) -> Transaction:
        tx = None
        if reservation.transaction_id is not None:
            tx = await self._db.get_transaction(reservation.transaction_id)
        if tx is None:
            raise self._broken(
                reservation.account_id,
                [f"reservation {reservation.id} is {reservation.status.value} without a transaction"],
                operation="lookup",
            )
        return tx

    def _apply_to_allocated(
        self,
        reservation: Reservation,
        batches: Dict[Optional[str], CreditBatch],
        held_delta: int,
        remaining_delta: int,
        operation: str,
        reverse: bool = False,
    ) -> List[CreditBatch]:
        allocations = list(reservation.batch_allocations)
        if reverse:
            allocations.reverse()
        touched: List[CreditBatch] = []
        for allocation in allocations:
            batch = batches.get(allocation.batch_id)
            if batch is None:
                # Only held reservations get here, and retiring a batch releases them first
                raise self._broken(
                    reservation.account_id,
                    [
                        f"reservation {reservation.id} draws on missing or retired batch "
                        f"{allocation.batch_id}"
                    ],
                    operation,
                )
            batch.held += held_delta * allocation.amount
            batch.remaining += remaining_delta * allocation.amount
            touched.append(batch)
        return touched

    async def _release_locked(
        self, reservation: Reservation, now: datetime, cause: str
    ) -> Transaction:
        account_id = reservation.account_id
        batches = {b.id: b for b in await self._db.get_batches(account_id)}
        before = ledger_total(batches.values())
        touched = self._apply_to_allocated(
            reservation, batches, held_delta=-1, remaining_delta=1, operation="release", reverse=True
        )
        self._validate(account_id, touched, operation="release")
        for batch in touched:
            await self._db.update_batch(batch)

        tx = await self._append(
            account_id,
            kind=TransactionKind.RELEASE,
            amount=0,
            reason=TransactionReason.RELEASED,
            balance_before=before,
            now=now,
            related_task_id=reservation.task_id,
            related_reservation_id=reservation.id,
            metadata={"released_amount": reservation.amount, "cause": cause},
        )
        reservation.status = (
            ReservationStatus.EXPIRED_TIMEOUT
            if cause == RELEASE_CAUSE_TIMEOUT
            else ReservationStatus.RELEASED
        )
        reservation.resolved_at = now
        reservation.transaction_id = tx.id
        await self._db.update_reservation(reservation)
        return tx

    async def _expire_batch_locked(self, batch_id: str, now: datetime) -> List[Transaction]:
        batch = await self._db.get_batch(batch_id)
        if batch is None:
            raise UnknownBatch(f"unknown batch {batch_id}", {"batch_id": batch_id})
        if batch.expired:
            return []

        written: List[Transaction] = []
        held = sorted(
            await self._db.get_held_reservations(batch.account_id), key=lambda r: r.created_at
        )
        for reservation in held:
            if any(a.batch_id == batch_id for a in reservation.batch_allocations):
                written.append(
                    await self._release_locked(reservation, now, RELEASE_CAUSE_BATCH_EXPIRED)
                )

        batches = await self._db.get_batches(batch.account_id)
        before = ledger_total(batches)
        batch = next(b for b in batches if b.id == batch_id)
        zeroed = batch.remaining + batch.held
        batch.remaining = 0
        batch.held = 0
        batch.expired = True
        batch.expired_at = now
        self._validate(batch.account_id, [batch], operation="expire")
        await self._db.update_batch(batch)

        if zeroed > 0:
            written.append(
                await self._append(
                    batch.account_id,
                    kind=TransactionKind.EXPIRE,
                    amount=-zeroed,
                    reason=TransactionReason.EXPIRED,
                    balance_before=before,
                    now=now,
                    related_batch_id=batch_id,
                    metadata={"expires_at": batch.expires_at.isoformat() if batch.expires_at else None},
                )
            )
        return written

    async def _expire_due_locked(self, account_id: str, now: datetime) -> List[Transaction]:
        written: List[Transaction] = []
        for batch in await self._db.get_batches(account_id):
            if batch.is_due(now) and batch.id is not None:
                written.extend(await self._expire_batch_locked(batch.id, now))
        return written

    async def _append(
        self,
        account_id: str,
        kind: TransactionKind,
        amount: int,
        reason: TransactionReason,
        balance_before: int,
        now: datetime,
        related_task_id: str | None = None,
        related_reservation_id: str | None = None,
        related_batch_id: str | None = None,
        description: str | None = None,
        external_ref: str | None = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        tx = Transaction(
            account_id=account_id,
            sequence=await self._db.next_sequence(account_id),
            kind=kind,
            amount=amount,
            reason=reason,
            related_task_id=related_task_id,
            related_reservation_id=related_reservation_id,
            related_batch_id=related_batch_id,
            balance_before=balance_before,
            balance_after=balance_before + amount,
            created_at=now,
            description=description,
            external_ref=external_ref,
            metadata=metadata or {},
        )
        return await self._db.add_transaction(tx)

    def _validate(
        self, account_id: str, batches: Iterable[CreditBatch], operation: str
    ) -> None:
        problems: List[str] = []
        for batch in batches:
            problems.extend(f"batch {batch.id}: {p}" for p in batch.invariant_errors())
        if problems:
            raise self._broken(account_id, problems, operation)

    @staticmethod
    def _broken(account_id: str, problems: List[str], operation: str) -> BatchInvariantViolation:
        reason = f"{operation}: " + "; ".join(problems)
        return BatchInvariantViolation(
            reason, {"account_id": account_id, "operation": operation, "problems": problems}
        )

    @asynccontextmanager
    async def _critical_section(self, account_id: str) -> AsyncIterator[None]:
        """
        Account lock around an all-or-nothing write scope.

        A `BatchInvariantViolation` raised in the body rolls the writes back,
        then freezes the account while the lock is still held; the alert goes
        out after the lock is released.
        """
        violation: Optional[BatchInvariantViolation] = None
        async with self._db.account_lock(account_id):
            try:
                async with self._db.account_transaction(account_id):
                    yield
            except BatchInvariantViolation as exc:
                violation = exc
                await self._freeze(account_id, exc)
        if violation is not None:
            if self._notifier is not None:
                await self._notifier.notify_ledger_alert(
                    account_id,
                    "Ledger invariant violated",
                    {
                        "operation": violation.details.get("operation"),
                        "problems": violation.details.get("problems", []),
                    },
                )
            raise violation

    async def _freeze(self, account_id: str, violation: BatchInvariantViolation) -> None:
        await self._db.set_account_frozen(account_id, True, str(violation))
        logger.critical("Ledger invariant violated on account %s: %s", account_id, violation)
        await self._ledger.log_error(
            message="Ledger invariant violated; account frozen",
            details={
                "operation": violation.details.get("operation"),
                "problems": violation.details.get("problems", []),
            },
            account_id=account_id,
        )

    async def _after_write(
        self,
        account_id: str,
        written: List[Transaction],
        correlation_id: str | None,
    ) -> None:
        for tx in written:
            await self._ledger.log_transaction(
                account_id=account_id,
                message=_LEDGER_MESSAGES[tx.kind],
                details={
                    "transaction_id": tx.id,
                    "sequence": tx.sequence,
                    "amount": tx.amount,
                    "reason": tx.reason.value,
                    "balance_after": tx.balance_after,
                    "reservation_id": tx.related_reservation_id,
                    "task_id": tx.related_task_id,
                },
                correlation_id=correlation_id,
            )
            if self._notifier is not None:
                await self._notifier.publish_balance_changed(tx)
