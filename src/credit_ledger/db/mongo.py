from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Tuple, Type, TypeVar
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, IndexModel, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .base import BaseDBManager
from ..errors import AccountLeaseLost, AccountLockTimeout
from ..models.account import AccountState
from ..models.base import DBSerializableModel, utcnow
from ..models.batch import CreditBatch
from ..models.history import HistoryFilter
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.reservation import Reservation, ReservationStatus
from ..models.transaction import Transaction


logger = logging.getLogger(__name__)

TModel = TypeVar("TModel", bound=DBSerializableModel)

# (account_id, owner token) of the lease held by the current task
_current_lease: ContextVar[Optional[Tuple[str, str]]] = ContextVar("credit_ledger_lease", default=None)
_current_session: ContextVar[Optional[AsyncIOMotorClientSession]] = ContextVar(
    "credit_ledger_session", default=None
)


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the `id`
    attribute of each Pydantic model, which keeps the rest of the system
    agnostic of MongoDB specifics.

    The per-account critical section is a lease held on the account's
    document in `credit_accounts`. It is taken with a single conditional
    `find_one_and_update` (upsert), so it serializes writers across every
    process sharing the database, and it lapses on its own if a holder dies.
    Writes made under the lease run in a multi-document transaction that is
    fenced on the lease owner (`account_transaction`).
    """

    def __init__(
        self,
        database: AsyncIOMotorDatabase,
        lock_timeout_seconds: float = 10.0,
        lock_lease_seconds: float = 30.0,
    ) -> None:
        self._db = database
        self._lock_timeout_seconds = lock_timeout_seconds
        self._lock_lease_seconds = lock_lease_seconds

    @classmethod
    def from_client_uri(
        cls,
        uri: str,
        db_name: str,
        lock_timeout_seconds: float = 10.0,
        lock_lease_seconds: float = 30.0,
    ) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri, tz_aware=True)
        return cls(
            client[db_name],
            lock_timeout_seconds=lock_timeout_seconds,
            lock_lease_seconds=lock_lease_seconds,
        )

    async def ensure_indexes(self) -> None:
        for model_cls in (CreditBatch, Transaction, Reservation):
            await self._db[model_cls.collection_name].create_indexes(
                [
                    IndexModel([(field, ASCENDING) for field in index])
                    for index in model_cls.indexes
                ]
            )
        await self._db[Transaction.collection_name].create_index(
            [("account_id", ASCENDING), ("sequence", ASCENDING)],
            unique=True,
            name="uniq_account_sequence",
        )

    # Helper utilities
    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, "id", model_id)
            data["id"] = model_id
        data["_id"] = model_id
        return data

    @staticmethod
    def _prepare_update(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            raise ValueError("Model must have id to be updated")
        data["_id"] = model_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        if "_id" in data and "id" not in data:
            data["id"] = str(data["_id"])
        data.pop("_id", None)
        return model_cls.model_validate(data)

    def _decode_all(self, model_cls: Type[TModel], docs: Iterable[Mapping[str, Any]]) -> List[TModel]:
        return [m for m in (self._decode(model_cls, d) for d in docs) if m is not None]

    @asynccontextmanager
    async def account_lock(self, account_id: str) -> AsyncIterator[None]:
        col = self._db[AccountState.collection_name]
        token = uuid4().hex
        deadline = utcnow() + timedelta(seconds=self._lock_timeout_seconds)
        delay = 0.01

        while True:
            now = utcnow()
            try:
                doc = await col.find_one_and_update(
                    {
                        "_id": account_id,
                        "$or": [
                            {"locked_by": None},
                            {"lock_expires_at": {"$lte": now}},
                        ],
                    },
                    {
                        "$set": {
                            "locked_by": token,
                            "lock_expires_at": now + timedelta(seconds=self._lock_lease_seconds),
                        },
                        "$inc": {"version": 1},
                        "$setOnInsert": {
                            "id": account_id,
                            "last_sequence": 0,
                            "frozen": False,
                            "created_at": now,
                        },
                    },
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                )
            except DuplicateKeyError:
                # Filter missed because another holder owns the lease
                doc = None
            if doc is not None and doc.get("locked_by") == token:
                break
            if utcnow() >= deadline:
                raise AccountLockTimeout(
                    f"could not lock account {account_id}", {"account_id": account_id}
                )
            logger.debug("Account %s is locked, retrying in %.3fs", account_id, delay)
            await asyncio.sleep(delay)
            delay = min(delay * 2, 0.5)

        lease = _current_lease.set((account_id, token))
        try:
            yield
        finally:
            _current_lease.reset(lease)
            result = await col.update_one(
                {"_id": account_id, "locked_by": token},
                {"$set": {"locked_by": None, "lock_expires_at": None}, "$inc": {"version": 1}},
            )
            if result.modified_count == 0:
                logger.warning(
                    "Lease on account %s lapsed before release",
                    account_id,
                )

    @asynccontextmanager
    async def account_transaction(self, account_id: str) -> AsyncIterator[None]:
        """
        Multi-document transaction over one critical section (needs a replica set).

        Every collection call made in the body joins the session. Before the
        commit the account document is updated on the condition that it still
        names this lease's owner, which also renews the lease; a writer that
        took over a lapsed lease makes that update miss or conflict, and the
        whole section is aborted.
        """
        lease = _current_lease.get()
        if lease is None or lease[0] != account_id:
            raise RuntimeError(f"account_transaction({account_id}) requires the account lock")
        token = lease[1]

        try:
            async with await self._db.client.start_session() as session:
                async with session.start_transaction():
                    bound = _current_session.set(session)
                    try:
                        yield
                        await self._renew_lease(account_id, token, session)
                    finally:
                        _current_session.reset(bound)
        except PyMongoError as exc:
            if exc.has_error_label("TransientTransactionError"):
                raise AccountLockTimeout(
                    f"concurrent write on account {account_id}, section aborted",
                    {"account_id": account_id},
                ) from exc
            raise

    async def _renew_lease(
        self, account_id: str, token: str, session: AsyncIOMotorClientSession
    ) -> None:
        doc = await self._db[AccountState.collection_name].find_one_and_update(
            {"_id": account_id, "locked_by": token},
            {"$set": {"lock_expires_at": utcnow() + timedelta(seconds=self._lock_lease_seconds)}},
            session=session,
        )
        if doc is None:
            raise AccountLeaseLost(
                f"lease on account {account_id} was taken over, section aborted",
                {"account_id": account_id},
            )

    @staticmethod
    def _session() -> Optional[AsyncIOMotorClientSession]:
        return _current_session.get()

    # Account state
    async def get_account_state(self, account_id: str) -> AccountState:
        doc = await self._db[AccountState.collection_name].find_one(
            {"_id": account_id}, session=self._session()
        )
        state = self._decode(AccountState, doc)
        return state or AccountState(id=account_id)

    async def next_sequence(self, account_id: str) -> int:
        doc = await self._db[AccountState.collection_name].find_one_and_update(
            {"_id": account_id},
            {"$inc": {"last_sequence": 1}, "$setOnInsert": {"id": account_id}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=self._session(),
        )
        return int(doc["last_sequence"])

    async def set_account_frozen(
        self, account_id: str, frozen: bool, reason: Optional[str] = None
    ) -> AccountState:
        doc = await self._db[AccountState.collection_name].find_one_and_update(
            {"_id": account_id},
            {
                "$set": {"frozen": frozen, "frozen_reason": reason if frozen else None},
                "$setOnInsert": {"id": account_id},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return self._decode(AccountState, doc)  # type: ignore[return-value]

    # Batches
    async def add_batch(self, batch: CreditBatch) -> CreditBatch:
        await self._db[CreditBatch.collection_name].insert_one(
            self._prepare_insert(batch), session=self._session()
        )
        return batch

    async def update_batch(self, batch: CreditBatch) -> CreditBatch:
        data = self._prepare_update(batch)
        await self._db[CreditBatch.collection_name].replace_one(
            {"_id": data["_id"]}, data, upsert=False, session=self._session()
        )
        return batch

    async def get_batch(self, batch_id: str) -> Optional[CreditBatch]:
        doc = await self._db[CreditBatch.collection_name].find_one(
            {"_id": batch_id}, session=self._session()
        )
        return self._decode(CreditBatch, doc)

    async def get_batches(
        self, account_id: str, include_expired: bool = False
    ) -> List[CreditBatch]:
        query: Dict[str, Any] = {"account_id": account_id}
        if not include_expired:
            query["expired"] = False
        cursor = self._db[CreditBatch.collection_name].find(query, session=self._session()).sort(
            [("created_at", ASCENDING), ("_id", ASCENDING)]
        )
        return self._decode_all(CreditBatch, await cursor.to_list(length=None))

    async def get_accounts_with_due_batches(self, as_of: datetime) -> List[str]:
        accounts = await self._db[CreditBatch.collection_name].distinct(
            "account_id",
            {"expired": False, "expires_at": {"$ne": None, "$lte": as_of}},
            session=self._session(),
        )
        return sorted(accounts)

    async def get_batches_expiring_between(
        self, start: datetime, end: datetime
    ) -> List[CreditBatch]:
        cursor = self._db[CreditBatch.collection_name].find(
            {"expired": False, "expires_at": {"$gt": start, "$lte": end}},
            session=self._session(),
        )
        return self._decode_all(CreditBatch, await cursor.to_list(length=None))

    # Reservations
    async def add_reservation(self, reservation: Reservation) -> Reservation:
        await self._db[Reservation.collection_name].insert_one(
            self._prepare_insert(reservation), session=self._session()
        )
        return reservation

    async def update_reservation(self, reservation: Reservation) -> Reservation:
        data = self._prepare_update(reservation)
        await self._db[Reservation.collection_name].replace_one(
            {"_id": data["_id"]}, data, upsert=False, session=self._session()
        )
        return reservation

    async def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        doc = await self._db[Reservation.collection_name].find_one(
            {"_id": reservation_id}, session=self._session()
        )
        return self._decode(Reservation, doc)

    async def get_reservations_for_task(
        self, account_id: str, task_id: str
    ) -> List[Reservation]:
        cursor = self._db[Reservation.collection_name].find(
            {"account_id": account_id, "task_id": task_id}, session=self._session()
        ).sort("created_at", ASCENDING)
        return self._decode_all(Reservation, await cursor.to_list(length=None))

    async def get_held_reservations(self, account_id: str) -> List[Reservation]:
        cursor = self._db[Reservation.collection_name].find(
            {"account_id": account_id, "status": ReservationStatus.HELD.value},
            session=self._session(),
        )
        return self._decode_all(Reservation, await cursor.to_list(length=None))

    async def get_stale_reservations(self, created_before: datetime) -> List[Reservation]:
        cursor = self._db[Reservation.collection_name].find(
            {"status": ReservationStatus.HELD.value, "created_at": {"$lt": created_before}},
            session=self._session(),
        )
        return self._decode_all(Reservation, await cursor.to_list(length=None))

    # Transactions
    async def add_transaction(self, tx: Transaction) -> Transaction:
        await self._db[Transaction.collection_name].insert_one(
            self._prepare_insert(tx), session=self._session()
        )
        return tx

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        doc = await self._db[Transaction.collection_name].find_one(
            {"_id": transaction_id}, session=self._session()
        )
        return self._decode(Transaction, doc)

    async def get_transactions(self, account_id: str) -> Iterable[Transaction]:
        cursor = self._db[Transaction.collection_name].find(
            {"account_id": account_id}, session=self._session()
        ).sort("sequence", ASCENDING)
        return self._decode_all(Transaction, await cursor.to_list(length=None))

    async def find_transaction_by_external_ref(
        self, account_id: str, external_ref: str
    ) -> Optional[Transaction]:
        doc = await self._db[Transaction.collection_name].find_one(
            {"account_id": account_id, "external_ref": external_ref},
            session=self._session(),
        )
        return self._decode(Transaction, doc)

    async def query_transactions(
        self,
        account_id: str,
        filters: HistoryFilter,
        before_sequence: Optional[int],
        limit: int,
    ) -> List[Transaction]:
        query: Dict[str, Any] = {"account_id": account_id}
        if before_sequence is not None:
            query["sequence"] = {"$lt": before_sequence}
        created: Dict[str, Any] = {}
        if filters.created_from is not None:
            created["$gte"] = filters.created_from
        if filters.created_to is not None:
            created["$lte"] = filters.created_to
        if created:
            query["created_at"] = created
        if filters.kinds:
            query["kind"] = {"$in": [k.value for k in filters.kinds]}
        if filters.related_task_id is not None:
            query["related_task_id"] = filters.related_task_id

        cursor = (
            self._db[Transaction.collection_name]
            .find(query, session=self._session())
            .sort("sequence", DESCENDING)
            .limit(limit)
        )
        return self._decode_all(Transaction, await cursor.to_list(length=limit))

    # Notifications
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        await self._db[NotificationEvent.collection_name].insert_one(
            self._prepare_insert(notification)
        )
        return notification

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        await self._db[LedgerEntry.collection_name].insert_one(self._prepare_insert(entry))
        return entry
