from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class AccountState(DBSerializableModel):
    """
    Per-account control record kept next to the batch set.

    Holds the storage-level lock lease, the version counter readers use to
    detect concurrent writers, the last issued transaction sequence, and the
    frozen flag raised when ledger corruption is detected.
    """

    collection_name: ClassVar[str] = "credit_accounts"

    id: str = Field(description="The account id.")
    version: int = 0
    last_sequence: int = 0
    locked_by: Optional[str] = None
    lock_expires_at: Optional[datetime] = None
    frozen: bool = False
    frozen_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    def is_locked(self, as_of: datetime) -> bool:
        return (
            self.locked_by is not None
            and self.lock_expires_at is not None
            and self.lock_expires_at > as_of
        )
