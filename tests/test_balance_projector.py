from __future__ import annotations

from datetime import timedelta

import pytest

from credit_ledger.cache.memory import InMemoryAsyncCache
from credit_ledger.models.batch import CreditBatch, CreditSource
from credit_ledger.services.balance_projector import BalanceProjector, project
from credit_ledger.services.expiration_sweeper import ExpirationSweeper


def _projector(env, cache=None, sweeper=None):
    return BalanceProjector(
        db=env.db, cache=cache, sweeper=sweeper, threshold_days=7, clock=env.clock
    )


def test_project_breakdown(clock):
    now = clock.now
    batches = [
        CreditBatch(id="p", account_id="a", amount=50, remaining=30, held=20,
                    source=CreditSource.PURCHASE, created_at=now),
        CreditBatch(id="soon", account_id="a", amount=40, remaining=40,
                    source=CreditSource.BONUS, created_at=now, expires_at=now + timedelta(days=3)),
        CreditBatch(id="later", account_id="a", amount=25, remaining=25,
                    source=CreditSource.SUBSCRIPTION_RENEWAL, created_at=now,
                    expires_at=now + timedelta(days=20)),
        CreditBatch(id="gone", account_id="a", amount=99, remaining=99,
                    source=CreditSource.BONUS, created_at=now, expires_at=now - timedelta(minutes=1)),
    ]

    balance = project("a", batches, now, threshold_days=7)

    assert balance.total == 115
    assert balance.available == 95
    assert balance.held == 20
    assert balance.breakdown.permanent == 30
    assert balance.breakdown.expiring_soon == 40
    assert [e.batch_id for e in balance.breakdown.expiring] == ["soon", "later"]
    assert balance.breakdown.next_expiry == now + timedelta(days=3)


@pytest.mark.asyncio
async def test_get_balance_matches_ledger(env):
    await env.store.credit("acct-1", 50, CreditSource.PURCHASE)
    await env.store.credit(
        "acct-1", 100, CreditSource.SUBSCRIPTION_RENEWAL, expires_at=env.clock.now + timedelta(days=2)
    )
    reservation = await env.store.reserve("acct-1", 120, "task-1")

    balance = await _projector(env).get_balance("acct-1")
    assert (balance.total, balance.available, balance.held) == (150, 30, 120)
    assert balance.breakdown.permanent == 30
    assert balance.breakdown.expiring_soon == 0

    await env.store.commit(reservation.id)
    balance = await _projector(env).get_balance("acct-1")
    last = list(await env.db.get_transactions("acct-1"))[-1]
    assert balance.total == last.balance_after == 30


@pytest.mark.asyncio
async def test_cached_balance_follows_writes(env):
    cache = InMemoryAsyncCache()
    projector = _projector(env, cache=cache)
    await env.store.credit("acct-1", 50, CreditSource.PURCHASE)

    first = await projector.get_balance("acct-1")
    assert len(cache) == 1
    assert (await projector.get_balance("acct-1")).total == first.total == 50
    assert len(cache) == 1

    await env.store.credit("acct-1", 25, CreditSource.BONUS)
    assert (await projector.get_balance("acct-1")).total == 75


@pytest.mark.asyncio
async def test_cached_balance_is_not_reused_across_expiry(env):
    cache = InMemoryAsyncCache()
    projector = _projector(env, cache=cache)
    await env.store.credit(
        "acct-1", 40, CreditSource.BONUS, expires_at=env.clock.now + timedelta(hours=1)
    )
    assert (await projector.get_balance("acct-1")).available == 40

    env.clock.advance(hours=2)
    assert (await projector.get_balance("acct-1")).available == 0


@pytest.mark.asyncio
async def test_lazy_sweep_on_read(env):
    sweeper = ExpirationSweeper(db=env.db, ledger=env.ledger, store=env.store)
    projector = _projector(env, sweeper=sweeper)
    await env.store.credit(
        "acct-1", 40, CreditSource.BONUS, expires_at=env.clock.now + timedelta(hours=1)
    )

    env.clock.advance(hours=2)
    balance = await projector.get_balance("acct-1")

    assert balance.total == 0
    kinds = [t.kind.value for t in await env.db.get_transactions("acct-1")]
    assert kinds == ["credit", "expire"]


@pytest.mark.asyncio
async def test_expiring_credits_and_enough_credits(env):
    await env.store.credit(
        "acct-1", 10, CreditSource.BONUS, expires_at=env.clock.now + timedelta(days=5)
    )
    await env.store.credit(
        "acct-1", 20, CreditSource.BONUS, expires_at=env.clock.now + timedelta(days=9)
    )
    await env.store.credit("acct-1", 5, CreditSource.PURCHASE)
    projector = _projector(env)

    expiring = await projector.get_expiring_credits("acct-1")
    assert [e.amount for e in expiring] == [10]
    expiring = await projector.get_expiring_credits("acct-1", days_ahead=10)
    assert [e.amount for e in expiring] == [10, 20]

    assert await projector.has_enough_credits("acct-1", 35)
    assert not await projector.has_enough_credits("acct-1", 36)
