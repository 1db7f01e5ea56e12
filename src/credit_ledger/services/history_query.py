from __future__ import annotations

import base64
import binascii
import json
from typing import Optional

from ..db.base import BaseDBManager
from ..errors import InvalidCursor, UnknownTransaction
from ..models.history import HistoryFilter, HistoryPage
from ..models.transaction import Transaction


class HistoryQuery:
    """
    Read-only, newest-first pages over an account's transaction log.

    A cursor wraps the sequence of the last returned transaction, and the
    next page selects strictly older sequences. Transactions appended after
    a cursor was issued therefore never shift or invalidate it.
    """

    def __init__(
        self,
        db: BaseDBManager,
        default_limit: int = 50,
        max_limit: int = 100,
    ) -> None:
        self._db = db
        self._default_limit = default_limit
        self._max_limit = max_limit

    async def list_transactions(
        self,
        account_id: str,
        filters: Optional[HistoryFilter] = None,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> HistoryPage:
        filters = filters or HistoryFilter()
        limit = self._clamp(limit)
        before_sequence = self.decode_cursor(cursor, account_id) if cursor else None

        # One extra row tells whether an older page exists
        rows = await self._db.query_transactions(
            account_id, filters, before_sequence=before_sequence, limit=limit + 1
        )
        items = rows[:limit]
        next_cursor = None
        if len(rows) > limit and items:
            next_cursor = self.encode_cursor(account_id, items[-1].sequence)
        return HistoryPage(items=items, limit=limit, next_cursor=next_cursor)

    async def get_transaction(self, account_id: str, transaction_id: str) -> Transaction:
        tx = await self._db.get_transaction(transaction_id)
        if tx is None or tx.account_id != account_id:
            raise UnknownTransaction(
                f"unknown transaction {transaction_id}", {"transaction_id": transaction_id}
            )
        return tx

    async def replay_balance(self, account_id: str) -> int:
        """Sum of every transaction amount in sequence order; equals the ledger balance."""
        balance = 0
        for tx in await self._db.get_transactions(account_id):
            balance += tx.amount
        return balance

    def _clamp(self, limit: Optional[int]) -> int:
        if limit is None:
            limit = self._default_limit
        return max(1, min(limit, self._max_limit))

    @staticmethod
    def encode_cursor(account_id: str, sequence: int) -> str:
        raw = json.dumps({"a": account_id, "s": sequence}, separators=(",", ":"))
        return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")

    @staticmethod
    def decode_cursor(cursor: str, account_id: str) -> int:
        try:
            raw = base64.urlsafe_b64decode(cursor.encode("ascii"))
            data = json.loads(raw)
            sequence = data["s"]
            owner = data["a"]
        except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError) as exc:
            raise InvalidCursor("malformed history cursor", {"cursor": cursor}) from exc
        if owner != account_id or not isinstance(sequence, int) or sequence < 1:
            raise InvalidCursor("history cursor does not belong to this account", {"cursor": cursor})
        return sequence
