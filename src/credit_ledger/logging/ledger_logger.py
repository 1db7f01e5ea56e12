from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from ..db.base import BaseDBManager
from ..models.ledger import LedgerEntry, LedgerEventType


logger = logging.getLogger(__name__)


class LedgerLogger:
    """
    Structured ledger logger that writes to a file and the database.

    File logging is append-only, line-delimited JSON for easier ingestion
    by log aggregators. DB logging uses the `LedgerEntry` model and the
    configured `BaseDBManager`.
    """

    def __init__(self, db: BaseDBManager, file_path: Path) -> None:
        self._db = db
        self._file_path = file_path
        self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def log_transaction(
        self,
        account_id: str,
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(
            LedgerEventType.TRANSACTION,
            account_id=account_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def log_error(
        self,
        message: str,
        details: dict[str, Any],
        account_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(
            LedgerEventType.ERROR,
            account_id=account_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def log_system(
        self,
        message: str,
        details: dict[str, Any],
        account_id: Optional[str] = None,
    ) -> None:
        await self._log(
            LedgerEventType.SYSTEM,
            account_id=account_id,
            message=message,
            details=details,
            correlation_id=None,
        )

    async def _log(
        self,
        event_type: LedgerEventType,
        account_id: Optional[str],
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str],
    ) -> None:
        entry = LedgerEntry(
            event_type=event_type,
            account_id=account_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

        # Persist to DB via the configured manager.
        await self._db.add_ledger_entry(entry)
        # The DB entry is authoritative; the file is a mirror for log shipping.
        try:
            line = json.dumps(entry.serialize_for_db(), default=str)
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as exc:
            logger.warning("Could not mirror ledger entry to %s: %s", self._file_path, exc)
