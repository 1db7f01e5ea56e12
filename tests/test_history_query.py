from __future__ import annotations

import pytest

from credit_ledger.errors import InvalidCursor, UnknownTransaction
from credit_ledger.models.batch import CreditSource
from credit_ledger.models.history import HistoryFilter
from credit_ledger.models.transaction import TransactionKind
from credit_ledger.services.history_query import HistoryQuery


async def _fill(env, count):
    for i in range(count):
        await env.store.credit("acct-1", i + 1, CreditSource.BONUS)
        env.clock.advance(minutes=1)


@pytest.mark.asyncio
async def test_pages_are_newest_first_and_cursor_stable(env):
    await _fill(env, 5)
    history = HistoryQuery(env.db)

    page = await history.list_transactions("acct-1", limit=2)
    assert [t.sequence for t in page.items] == [5, 4]
    assert page.next_cursor is not None

    # Appends after the cursor was issued do not shift the next page
    await env.store.credit("acct-1", 100, CreditSource.PURCHASE)

    page = await history.list_transactions("acct-1", cursor=page.next_cursor, limit=2)
    assert [t.sequence for t in page.items] == [3, 2]
    page = await history.list_transactions("acct-1", cursor=page.next_cursor, limit=2)
    assert [t.sequence for t in page.items] == [1]
    assert page.next_cursor is None


@pytest.mark.asyncio
async def test_limit_is_clamped(env):
    await _fill(env, 3)
    history = HistoryQuery(env.db, default_limit=50, max_limit=2)

    assert (await history.list_transactions("acct-1", limit=0)).limit == 1
    assert len((await history.list_transactions("acct-1", limit=500)).items) == 2
    assert (await history.list_transactions("acct-1")).limit == 2


@pytest.mark.asyncio
async def test_filters(env):
    start = env.clock.now
    await _fill(env, 3)
    reservation = await env.store.reserve("acct-1", 2, "task-7")
    await env.store.commit(reservation.id)
    history = HistoryQuery(env.db)

    debits = await history.list_transactions(
        "acct-1", HistoryFilter(kinds=[TransactionKind.DEBIT])
    )
    assert [t.related_task_id for t in debits.items] == ["task-7"]

    by_task = await history.list_transactions("acct-1", HistoryFilter(related_task_id="task-7"))
    assert len(by_task.items) == 1

    window = await history.list_transactions(
        "acct-1", HistoryFilter(created_from=start, created_to=start.replace(second=30))
    )
    assert [t.sequence for t in window.items] == [1]


@pytest.mark.asyncio
@pytest.mark.parametrize("cursor", ["not-base64!!", "e30=", "eyJhIjoib3RoZXIiLCJzIjozfQ=="])
async def test_invalid_cursor(env, cursor):
    with pytest.raises(InvalidCursor):
        await HistoryQuery(env.db).list_transactions("acct-1", cursor=cursor)


@pytest.mark.asyncio
async def test_get_transaction_and_replay(env):
    await _fill(env, 3)
    reservation = await env.store.reserve("acct-1", 4, "task-r")
    tx = await env.store.commit(reservation.id)
    history = HistoryQuery(env.db)

    assert (await history.get_transaction("acct-1", tx.id)).amount == -4
    with pytest.raises(UnknownTransaction):
        await history.get_transaction("acct-2", tx.id)
    assert await history.replay_balance("acct-1") == 1 + 2 + 3 - 4
