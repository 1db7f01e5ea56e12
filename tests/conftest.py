from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest

from credit_ledger.db.memory import InMemoryDBManager
from credit_ledger.logging.ledger_logger import LedgerLogger
from credit_ledger.notifications.queue import InMemoryNotificationQueue
from credit_ledger.services.grant_service import CreditGrantService
from credit_ledger.services.ledger_store import LedgerStore
from credit_ledger.services.notification_service import NotificationService
from credit_ledger.services.reservation_manager import ConsumptionReservationManager


START = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Test clock; only moves when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@dataclass
class Ledger:
    db: InMemoryDBManager
    ledger: LedgerLogger
    queue: InMemoryNotificationQueue
    notifier: NotificationService
    store: LedgerStore
    reservations: ConsumptionReservationManager
    grants: CreditGrantService
    clock: FrozenClock


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def env(tmp_path, clock) -> Ledger:
    db = InMemoryDBManager(lock_timeout_seconds=1.0)
    ledger = LedgerLogger(db=db, file_path=tmp_path / "ledger.log")
    queue = InMemoryNotificationQueue()
    notifier = NotificationService(db=db, queue=queue, low_credit_threshold=10, clock=clock)
    store = LedgerStore(db=db, ledger=ledger, notifier=notifier, clock=clock)
    reservations = ConsumptionReservationManager(
        db=db, store=store, reservation_timeout_seconds=1800
    )
    return Ledger(
        db=db,
        ledger=ledger,
        queue=queue,
        notifier=notifier,
        store=store,
        reservations=reservations,
        grants=CreditGrantService(store),
        clock=clock,
    )
