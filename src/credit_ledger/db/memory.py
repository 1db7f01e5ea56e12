from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, Iterable, List, Optional, TypeVar
from uuid import uuid4

from .base import BaseDBManager
from ..errors import AccountLockTimeout
from ..models.account import AccountState
from ..models.base import DBSerializableModel
from ..models.batch import CreditBatch
from ..models.history import HistoryFilter
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.reservation import Reservation, ReservationStatus
from ..models.transaction import Transaction


TModel = TypeVar("TModel", bound=DBSerializableModel)


def _copy(model: TModel) -> TModel:
    return model.model_copy(deep=True)


@dataclass
class _AccountRows:
    batches: Dict[str, CreditBatch]
    reservations: Dict[str, Reservation]
    transactions: Dict[str, Transaction]
    last_sequence: int


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    Stored models are copied on the way in and out, so callers can only
    change state through the update methods. The account lock is an
    `asyncio.Lock` per account and therefore only serializes callers within
    one event loop.
    """

    def __init__(self, lock_timeout_seconds: float = 10.0) -> None:
        self._accounts: Dict[str, AccountState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._batches: Dict[str, CreditBatch] = {}
        self._reservations: Dict[str, Reservation] = {}
        self._transactions: Dict[str, Transaction] = {}
        self._notifications: List[NotificationEvent] = []
        self._ledger: List[LedgerEntry] = []
        self._id_counter: int = 0
        self._lock_timeout_seconds = lock_timeout_seconds

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    def _state(self, account_id: str) -> AccountState:
        state = self._accounts.get(account_id)
        if state is None:
            state = AccountState(id=account_id)
            self._accounts[account_id] = state
        return state

    @asynccontextmanager
    async def account_lock(self, account_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(account_id, asyncio.Lock())
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self._lock_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise AccountLockTimeout(
                f"could not lock account {account_id}", {"account_id": account_id}
            ) from exc

        token = uuid4().hex
        state = self._state(account_id)
        state.version += 1
        state.locked_by = token
        # The asyncio lock never lapses; the lease only informs readers
        state.lock_expires_at = datetime.max.replace(tzinfo=timezone.utc)
        try:
            yield
        finally:
            state.version += 1
            state.locked_by = None
            state.lock_expires_at = None
            lock.release()

    @asynccontextmanager
    async def account_transaction(self, account_id: str) -> AsyncIterator[None]:
        """
        Rollback scope over the account's rows.

        The rows are copied on entry and put back if the body raises, so
        readers never observe a partially applied section once the lock is
        released.
        """
        snapshot = self._snapshot(account_id)
        try:
            yield
        except BaseException:
            self._restore(account_id, snapshot)
            raise

    def _snapshot(self, account_id: str) -> _AccountRows:
        return _AccountRows(
            batches=self._owned(self._batches, account_id),
            reservations=self._owned(self._reservations, account_id),
            transactions=self._owned(self._transactions, account_id),
            last_sequence=self._state(account_id).last_sequence,
        )

    def _restore(self, account_id: str, rows: _AccountRows) -> None:
        for table, saved in (
            (self._batches, rows.batches),
            (self._reservations, rows.reservations),
            (self._transactions, rows.transactions),
        ):
            for key in [k for k, v in table.items() if v.account_id == account_id]:
                del table[key]
            table.update(saved)
        self._state(account_id).last_sequence = rows.last_sequence

    @staticmethod
    def _owned(table: Dict[str, TModel], account_id: str) -> Dict[str, TModel]:
        return {k: _copy(v) for k, v in table.items() if getattr(v, "account_id") == account_id}

    # Account state
    async def get_account_state(self, account_id: str) -> AccountState:
        return _copy(self._state(account_id))

    async def next_sequence(self, account_id: str) -> int:
        state = self._state(account_id)
        state.last_sequence += 1
        return state.last_sequence

    async def set_account_frozen(
        self, account_id: str, frozen: bool, reason: Optional[str] = None
    ) -> AccountState:
        state = self._state(account_id)
        state.frozen = frozen
        state.frozen_reason = reason if frozen else None
        return _copy(state)

    # Batches
    async def add_batch(self, batch: CreditBatch) -> CreditBatch:
        if batch.id is None:
            batch.id = self._next_id()
        self._batches[batch.id] = _copy(batch)
        return batch

    async def update_batch(self, batch: CreditBatch) -> CreditBatch:
        if batch.id is None or batch.id not in self._batches:
            raise ValueError("Batch must exist to be updated")
        self._batches[batch.id] = _copy(batch)
        return batch

    async def get_batch(self, batch_id: str) -> Optional[CreditBatch]:
        batch = self._batches.get(batch_id)
        return _copy(batch) if batch else None

    async def get_batches(
        self, account_id: str, include_expired: bool = False
    ) -> List[CreditBatch]:
        batches = [
            _copy(b)
            for b in self._batches.values()
            if b.account_id == account_id and (include_expired or not b.expired)
        ]
        batches.sort(key=lambda b: (b.created_at, b.id or ""))
        return batches

    async def get_accounts_with_due_batches(self, as_of: datetime) -> List[str]:
        accounts = {b.account_id for b in self._batches.values() if b.is_due(as_of)}
        return sorted(accounts)

    async def get_batches_expiring_between(
        self, start: datetime, end: datetime
    ) -> List[CreditBatch]:
        return [
            _copy(b)
            for b in self._batches.values()
            if not b.expired and b.expires_at is not None and start < b.expires_at <= end
        ]

    # Reservations
    async def add_reservation(self, reservation: Reservation) -> Reservation:
        if reservation.id is None:
            reservation.id = self._next_id()
        self._reservations[reservation.id] = _copy(reservation)
        return reservation

    async def update_reservation(self, reservation: Reservation) -> Reservation:
        if reservation.id is None or reservation.id not in self._reservations:
            raise ValueError("Reservation must exist to be updated")
        self._reservations[reservation.id] = _copy(reservation)
        return reservation

    async def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        reservation = self._reservations.get(reservation_id)
        return _copy(reservation) if reservation else None

    async def get_reservations_for_task(
        self, account_id: str, task_id: str
    ) -> List[Reservation]:
        found = [
            _copy(r)
            for r in self._reservations.values()
            if r.account_id == account_id and r.task_id == task_id
        ]
        found.sort(key=lambda r: r.created_at)
        return found

    async def get_held_reservations(self, account_id: str) -> List[Reservation]:
        return [
            _copy(r)
            for r in self._reservations.values()
            if r.account_id == account_id and r.status == ReservationStatus.HELD
        ]

    async def get_stale_reservations(self, created_before: datetime) -> List[Reservation]:
        return [
            _copy(r)
            for r in self._reservations.values()
            if r.status == ReservationStatus.HELD and r.created_at < created_before
        ]

    # Transactions
    async def add_transaction(self, tx: Transaction) -> Transaction:
        if tx.id is None:
            tx.id = self._next_id()
        self._transactions[tx.id] = _copy(tx)
        return tx

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        tx = self._transactions.get(transaction_id)
        return _copy(tx) if tx else None

    async def get_transactions(self, account_id: str) -> Iterable[Transaction]:
        txs = [_copy(t) for t in self._transactions.values() if t.account_id == account_id]
        txs.sort(key=lambda t: t.sequence)
        return txs

    async def find_transaction_by_external_ref(
        self, account_id: str, external_ref: str
    ) -> Optional[Transaction]:
        for tx in self._transactions.values():
            if tx.account_id == account_id and tx.external_ref == external_ref:
                return _copy(tx)
        return None

    async def query_transactions(
        self,
        account_id: str,
        filters: HistoryFilter,
        before_sequence: Optional[int],
        limit: int,
    ) -> List[Transaction]:
        matches: List[Transaction] = []
        for tx in self._transactions.values():
            if tx.account_id != account_id:
                continue
            if before_sequence is not None and tx.sequence >= before_sequence:
                continue
            if filters.created_from is not None and tx.created_at < filters.created_from:
                continue
            if filters.created_to is not None and tx.created_at > filters.created_to:
                continue
            if filters.kinds and tx.kind not in filters.kinds:
                continue
            if (
                filters.related_task_id is not None
                and tx.related_task_id != filters.related_task_id
            ):
                continue
            matches.append(tx)
        matches.sort(key=lambda t: t.sequence, reverse=True)
        return [_copy(t) for t in matches[:limit]]

    # Notifications
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        if notification.id is None:
            notification.id = self._next_id()
        self._notifications.append(notification)
        return notification

    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.id is None:
            entry.id = self._next_id()
        self._ledger.append(entry)
        return entry

    @property
    def notifications(self) -> List[NotificationEvent]:
        return list(self._notifications)

    @property
    def ledger_entries(self) -> List[LedgerEntry]:
        return list(self._ledger)
