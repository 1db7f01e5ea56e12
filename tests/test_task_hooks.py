from __future__ import annotations

import pytest

from credit_ledger.errors import InsufficientBalance, ReservationClosed
from credit_ledger.models.batch import CreditSource
from credit_ledger.models.reservation import ReservationStatus
from credit_ledger.models.transaction import TransactionKind
from credit_ledger.services.allocation import ledger_total
from credit_ledger.services.task_hooks import TaskLifecycleHook


@pytest.fixture
def hooks(env):
    return TaskLifecycleHook(reservations=env.reservations, ledger=env.ledger)


@pytest.mark.asyncio
async def test_successful_task_is_charged_once(env, hooks):
    await env.store.credit("acct-1", 100, CreditSource.PURCHASE)
    await hooks.on_task_submitted("acct-1", "enhance-1", 40)

    tx = await hooks.on_task_succeeded("acct-1", "enhance-1")
    again = await hooks.on_task_succeeded("acct-1", "enhance-1")

    assert tx.amount == -40
    assert again.id == tx.id
    assert ledger_total(await env.db.get_batches("acct-1")) == 60


@pytest.mark.asyncio
async def test_failed_and_cancelled_tasks_are_never_charged(env, hooks):
    await env.store.credit("acct-1", 100, CreditSource.PURCHASE)
    await hooks.on_task_submitted("acct-1", "fails", 40)
    await hooks.on_task_submitted("acct-1", "cancelled", 30)

    await hooks.on_task_failed("acct-1", "fails")
    await hooks.on_task_cancelled("acct-1", "cancelled")

    kinds = [t.kind for t in await env.db.get_transactions("acct-1")]
    assert TransactionKind.DEBIT not in kinds
    assert ledger_total(await env.db.get_batches("acct-1")) == 100
    assert await env.db.get_held_reservations("acct-1") == []

    # A late success callback cannot charge a released task
    with pytest.raises(ReservationClosed):
        await hooks.on_task_succeeded("acct-1", "fails")


@pytest.mark.asyncio
async def test_insufficient_credits_blocks_submission(env, hooks):
    await env.store.credit("acct-1", 10, CreditSource.PURCHASE)

    with pytest.raises(InsufficientBalance):
        await hooks.on_task_submitted("acct-1", "too-big", 11)
    assert await env.db.get_held_reservations("acct-1") == []


@pytest.mark.asyncio
async def test_admin_retry_cancel_delete(env, hooks):
    await env.store.credit("acct-1", 100, CreditSource.PURCHASE)
    first = await hooks.on_task_submitted("acct-1", "task-9", 20)

    retried = await hooks.retry_task("acct-1", "task-9", 25)
    assert retried.id != first.id
    assert (await env.reservations.get_reservation(first.id)).status == ReservationStatus.RELEASED

    released = await hooks.cancel_task("acct-1", "task-9")
    assert released.kind == TransactionKind.RELEASE
    assert await hooks.cancel_task("acct-1", "task-9") is None

    transactions = len(list(await env.db.get_transactions("acct-1")))
    await hooks.delete_task("acct-1", "task-9")
    assert len(list(await env.db.get_transactions("acct-1"))) == transactions
    assert env.db.ledger_entries[-1].message == "Task deleted"
