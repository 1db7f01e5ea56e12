from __future__ import annotations

import pytest

from credit_ledger.errors import AccountLockTimeout
from credit_ledger.models.batch import CreditSource
from credit_ledger.models.reservation import Reservation, ReservationStatus
from credit_ledger.models.transaction import TransactionKind
from credit_ledger.services.reservation_manager import ConsumptionReservationManager


def _manager(env, max_attempts=3):
    return ConsumptionReservationManager(
        db=env.db,
        store=env.store,
        reservation_timeout_seconds=1800,
        max_attempts=max_attempts,
        backoff_seconds=0.001,
    )


@pytest.mark.asyncio
async def test_find_active_for_task(env):
    await env.store.credit("acct-1", 100, CreditSource.PURCHASE)
    reservation = await env.reservations.reserve("acct-1", 20, "task-1")

    active = await env.reservations.find_active_for_task("acct-1", "task-1")
    assert active is not None and active.id == reservation.id

    await env.reservations.commit(reservation.id)
    assert await env.reservations.find_active_for_task("acct-1", "task-1") is None
    latest = await env.reservations.find_latest_for_task("acct-1", "task-1")
    assert latest.status == ReservationStatus.COMMITTED


@pytest.mark.asyncio
async def test_release_timed_out_reservations(env):
    await env.store.credit("acct-1", 100, CreditSource.PURCHASE)
    stale = await env.reservations.reserve("acct-1", 30, "slow-task")
    env.clock.advance(minutes=20)
    fresh = await env.reservations.reserve("acct-1", 10, "quick-task")
    env.clock.advance(minutes=15)

    released = await env.reservations.release_timed_out()

    assert len(released) == 1
    assert released[0].kind == TransactionKind.RELEASE
    assert released[0].metadata["cause"] == "timeout"
    assert (await env.reservations.get_reservation(stale.id)).status == ReservationStatus.EXPIRED_TIMEOUT
    assert (await env.reservations.get_reservation(fresh.id)).status == ReservationStatus.HELD
    batch = (await env.db.get_batches("acct-1"))[0]
    assert (batch.remaining, batch.held) == (90, 10)


@pytest.mark.asyncio
async def test_timed_out_reservation_is_never_charged(env):
    await env.store.credit("acct-1", 100, CreditSource.PURCHASE)
    reservation = await env.reservations.reserve("acct-1", 30, "slow-task")
    env.clock.advance(hours=1)
    await env.reservations.release_timed_out()

    # Releasing again is an idempotent repeat of the timeout release
    again = await env.reservations.release(reservation.id)
    assert again.metadata["cause"] == "timeout"

    debits = [t for t in await env.db.get_transactions("acct-1") if t.kind == TransactionKind.DEBIT]
    assert debits == []


@pytest.mark.asyncio
async def test_timeout_release_waits_out_a_busy_account(env, monkeypatch):
    await env.store.credit("acct-1", 100, CreditSource.PURCHASE)
    reservation = await env.reservations.reserve("acct-1", 30, "slow-task")
    env.clock.advance(hours=1)
    real_release = env.store.release
    calls = []

    async def busy_twice(reservation_id, timed_out=False, correlation_id=None):
        calls.append(reservation_id)
        if len(calls) <= 2:
            raise AccountLockTimeout("busy", {"account_id": "acct-1"})
        return await real_release(reservation_id, timed_out=timed_out, correlation_id=correlation_id)

    monkeypatch.setattr(env.store, "release", busy_twice)

    released = await _manager(env).release_timed_out()

    assert calls == [reservation.id] * 3
    assert [tx.metadata["cause"] for tx in released] == ["timeout"]
    stored = await env.reservations.get_reservation(reservation.id)
    assert stored.status == ReservationStatus.EXPIRED_TIMEOUT


@pytest.mark.asyncio
async def test_timeout_release_gives_up_after_max_attempts(env, monkeypatch):
    await env.store.credit("acct-1", 100, CreditSource.PURCHASE)
    stuck = await env.reservations.reserve("acct-1", 30, "slow-task")
    await env.store.credit("acct-2", 100, CreditSource.PURCHASE)
    other = await env.reservations.reserve("acct-2", 10, "other-task")
    env.clock.advance(hours=1)
    real_release = env.store.release
    calls = []

    async def acct_1_busy(reservation_id, timed_out=False, correlation_id=None):
        calls.append(reservation_id)
        if reservation_id == stuck.id:
            raise AccountLockTimeout("busy", {"account_id": "acct-1"})
        return await real_release(reservation_id, timed_out=timed_out, correlation_id=correlation_id)

    monkeypatch.setattr(env.store, "release", acct_1_busy)

    released = await _manager(env, max_attempts=4).release_timed_out()

    assert calls.count(stuck.id) == 4
    assert [tx.related_reservation_id for tx in released] == [other.id]
    assert (await env.reservations.get_reservation(stuck.id)).status == ReservationStatus.HELD


@pytest.mark.asyncio
async def test_timeout_release_skips_reservation_committed_meanwhile(env, monkeypatch):
    await env.store.credit("acct-1", 100, CreditSource.PURCHASE)
    reservation = await env.reservations.reserve("acct-1", 30, "slow-task")
    env.clock.advance(hours=1)
    stale = await env.db.get_stale_reservations(env.clock.now)
    await env.reservations.commit(reservation.id)

    async def already_queried(created_before):
        return stale

    monkeypatch.setattr(env.db, "get_stale_reservations", already_queried)

    assert await _manager(env).release_timed_out() == []
    assert (await env.reservations.get_reservation(reservation.id)).status == ReservationStatus.COMMITTED


def test_unsaved_reservation_has_no_id_to_resolve():
    reservation = Reservation(account_id="acct-1", task_id="task-1", amount=5)
    with pytest.raises(ValueError):
        reservation.require_id()
    reservation.id = "r-1"
    assert reservation.require_id() == "r-1"
