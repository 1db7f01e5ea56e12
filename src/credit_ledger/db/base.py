from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Iterable, List, Optional, TypeVar

from ..models.account import AccountState
from ..models.base import utcnow
from ..models.batch import CreditBatch
from ..models.history import HistoryFilter
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.reservation import Reservation
from ..models.transaction import Transaction


T = TypeVar("T")


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface.

    Concrete implementations (in-memory, MongoDB, ...) own the batch,
    reservation and transaction collections. Every write to an account's
    rows happens inside `account_lock(account_id)`, which is the
    per-account critical section, and inside `account_transaction`, which
    makes those writes atomic; reads use `read_consistent` instead of the
    lock.
    """

    # Consistent reads retry this many times before falling back to the lock
    snapshot_attempts: int = 5

    @abstractmethod
    @asynccontextmanager
    async def account_lock(self, account_id: str) -> AsyncIterator[None]:
        """
        Enter the account's critical section.

        Only one holder per account at a time, across processes where the
        backend supports it. Must bump `AccountState.version` on acquire and
        on release so readers can detect an interleaved writer. Raises
        `AccountLockTimeout` when the section cannot be entered in time.
        """
        yield

    @abstractmethod
    @asynccontextmanager
    async def account_transaction(self, account_id: str) -> AsyncIterator[None]:
        """
        Make the batch, reservation, transaction and sequence writes of one
        critical section all-or-nothing.

        Entered inside `account_lock(account_id)`. If the body raises, none
        of its writes remain visible. Backends whose lock can lapse verify
        that the lease is still theirs before committing and raise
        `AccountLeaseLost` otherwise. Account flags, notifications and ledger
        entries are not part of the scope.
        """
        yield

    # Account state
    @abstractmethod
    async def get_account_state(self, account_id: str) -> AccountState: ...

    @abstractmethod
    async def next_sequence(self, account_id: str) -> int:
        """Allocate the next transaction sequence number; call under the lock."""
        ...

    @abstractmethod
    async def set_account_frozen(
        self, account_id: str, frozen: bool, reason: Optional[str] = None
    ) -> AccountState: ...

    # Batches
    @abstractmethod
    async def add_batch(self, batch: CreditBatch) -> CreditBatch: ...

    @abstractmethod
    async def update_batch(self, batch: CreditBatch) -> CreditBatch: ...

    @abstractmethod
    async def get_batch(self, batch_id: str) -> Optional[CreditBatch]: ...

    @abstractmethod
    async def get_batches(
        self, account_id: str, include_expired: bool = False
    ) -> List[CreditBatch]:
        """Batches of one account, ordered by `created_at`."""
        ...

    @abstractmethod
    async def get_accounts_with_due_batches(self, as_of: datetime) -> List[str]:
        """Accounts owning at least one non-retired batch with `expires_at <= as_of`."""
        ...

    @abstractmethod
    async def get_batches_expiring_between(
        self, start: datetime, end: datetime
    ) -> List[CreditBatch]:
        """Non-retired batches across all accounts with `start < expires_at <= end`."""
        ...

    # Reservations
    @abstractmethod
    async def add_reservation(self, reservation: Reservation) -> Reservation: ...

    @abstractmethod
    async def update_reservation(self, reservation: Reservation) -> Reservation: ...

    @abstractmethod
    async def get_reservation(self, reservation_id: str) -> Optional[Reservation]: ...

    @abstractmethod
    async def get_reservations_for_task(
        self, account_id: str, task_id: str
    ) -> List[Reservation]: ...

    @abstractmethod
    async def get_held_reservations(self, account_id: str) -> List[Reservation]: ...

    @abstractmethod
    async def get_stale_reservations(self, created_before: datetime) -> List[Reservation]:
        """Reservations across all accounts still `held` and created before the cutoff."""
        ...

    # Transactions
    @abstractmethod
    async def add_transaction(self, tx: Transaction) -> Transaction: ...

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]: ...

    @abstractmethod
    async def get_transactions(self, account_id: str) -> Iterable[Transaction]:
        """All transactions of an account in `sequence` order."""
        ...

    @abstractmethod
    async def find_transaction_by_external_ref(
        self, account_id: str, external_ref: str
    ) -> Optional[Transaction]: ...

    @abstractmethod
    async def query_transactions(
        self,
        account_id: str,
        filters: HistoryFilter,
        before_sequence: Optional[int],
        limit: int,
    ) -> List[Transaction]:
        """Newest first, only sequences strictly below `before_sequence` when given."""
        ...

    # Notifications
    @abstractmethod
    async def add_notification_event(self, notification: NotificationEvent) -> NotificationEvent: ...

    # Ledger
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...

    async def read_consistent(
        self, account_id: str, reader: Callable[[], Awaitable[T]]
    ) -> T:
        """
        Run `reader` against a consistent view of one account without taking
        the writer lock.

        The account version is read before and after; if a writer held the
        lock or the version moved, the read is retried. After
        `snapshot_attempts` contended tries the read is done under the lock.
        """
        delay = 0.005
        for _ in range(self.snapshot_attempts):
            before = await self.get_account_state(account_id)
            if not before.is_locked(utcnow()):
                result = await reader()
                after = await self.get_account_state(account_id)
                if after.version == before.version and not after.is_locked(utcnow()):
                    return result
            await asyncio.sleep(delay)
            delay *= 2

        async with self.account_lock(account_id):
            return await reader()
