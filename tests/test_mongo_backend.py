from __future__ import annotations

import asyncio
import os
from datetime import timedelta
from uuid import uuid4

import pytest
import pytest_asyncio

from credit_ledger.errors import AccountLeaseLost, AccountLockTimeout, InsufficientBalance
from credit_ledger.logging.ledger_logger import LedgerLogger
from credit_ledger.models.account import AccountState
from credit_ledger.models.batch import CreditBatch, CreditSource
from credit_ledger.models.history import HistoryFilter
from credit_ledger.services.allocation import ledger_total
from credit_ledger.services.history_query import HistoryQuery
from credit_ledger.services.ledger_store import LedgerStore


MONGO_URI = os.getenv("CREDIT_TEST_MONGO_URI")

pytestmark = pytest.mark.skipif(
    not MONGO_URI, reason="set CREDIT_TEST_MONGO_URI (a replica set) to run MongoDB integration tests"
)


@pytest_asyncio.fixture
async def mongo_db():
    from credit_ledger.db.mongo import MongoDBManager

    db_name = f"credit_ledger_test_{uuid4().hex[:8]}"
    db = MongoDBManager.from_client_uri(
        MONGO_URI, db_name, lock_timeout_seconds=0.5, lock_lease_seconds=5
    )
    await db.ensure_indexes()
    yield db
    await db._db.client.drop_database(db_name)


@pytest.mark.asyncio
async def test_reserve_commit_and_expire_round(mongo_db, tmp_path, clock):
    store = LedgerStore(
        db=mongo_db, ledger=LedgerLogger(mongo_db, tmp_path / "ledger.log"), clock=clock
    )
    await store.credit("acct-1", 50, CreditSource.PURCHASE)
    tx_a = await store.credit(
        "acct-1", 100, CreditSource.BONUS, expires_at=clock.now + timedelta(days=2)
    )

    reservation = await store.reserve("acct-1", 120, "task-1")
    assert reservation.batch_allocations[0].batch_id == tx_a.related_batch_id
    tx = await store.commit(reservation.id)
    assert tx.balance_after == 30
    assert (await store.commit(reservation.id)).id == tx.id

    with pytest.raises(InsufficientBalance):
        await store.reserve("acct-1", 31, "task-2")

    assert ledger_total(await mongo_db.get_batches("acct-1")) == 30
    page = await HistoryQuery(mongo_db).list_transactions("acct-1", HistoryFilter(), limit=10)
    assert [t.sequence for t in page.items] == [3, 2, 1]


@pytest.mark.asyncio
async def test_lease_lock_serializes_writers(mongo_db):
    async with mongo_db.account_lock("acct-1"):
        with pytest.raises(AccountLockTimeout):
            async with mongo_db.account_lock("acct-1"):
                pass
        state = await mongo_db.get_account_state("acct-1")
        assert state.locked_by is not None

    state = await mongo_db.get_account_state("acct-1")
    assert state.locked_by is None
    assert state.version == 2

    # Different accounts never contend
    async with mongo_db.account_lock("acct-1"):
        await asyncio.wait_for(_enter(mongo_db, "acct-2"), timeout=1)


async def _enter(db, account_id):
    async with db.account_lock(account_id):
        return True


def _batch(account_id="acct-1", amount=10):
    return CreditBatch(
        account_id=account_id, amount=amount, remaining=amount, source=CreditSource.PURCHASE
    )


@pytest.mark.asyncio
async def test_transaction_requires_the_account_lock(mongo_db):
    with pytest.raises(RuntimeError):
        async with mongo_db.account_transaction("acct-1"):
            pass


@pytest.mark.asyncio
async def test_failed_section_writes_nothing(mongo_db):
    with pytest.raises(ValueError):
        async with mongo_db.account_lock("acct-1"):
            async with mongo_db.account_transaction("acct-1"):
                await mongo_db.add_batch(_batch())
                await mongo_db.next_sequence("acct-1")
                raise ValueError("abort")

    assert await mongo_db.get_batches("acct-1") == []
    assert (await mongo_db.get_account_state("acct-1")).last_sequence == 0


@pytest.mark.asyncio
async def test_section_aborts_when_lease_is_taken_over(mongo_db):
    accounts = mongo_db._db[AccountState.collection_name]
    with pytest.raises(AccountLeaseLost):
        async with mongo_db.account_lock("acct-1"):
            # Another worker claimed the lapsed lease
            await accounts.update_one({"_id": "acct-1"}, {"$set": {"locked_by": "other-worker"}})
            async with mongo_db.account_transaction("acct-1"):
                await mongo_db.add_batch(_batch())

    assert await mongo_db.get_batches("acct-1") == []
    assert (await mongo_db.get_account_state("acct-1")).locked_by == "other-worker"


@pytest.mark.asyncio
async def test_section_commit_renews_lease(mongo_db):
    async with mongo_db.account_lock("acct-1"):
        before = (await mongo_db.get_account_state("acct-1")).lock_expires_at
        await asyncio.sleep(0.01)
        async with mongo_db.account_transaction("acct-1"):
            await mongo_db.add_batch(_batch())
        after = (await mongo_db.get_account_state("acct-1")).lock_expires_at

    assert after > before
    assert [b.amount for b in await mongo_db.get_batches("acct-1")] == [10]
