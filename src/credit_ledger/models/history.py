from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .transaction import Transaction, TransactionKind


class HistoryFilter(BaseModel):
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    kinds: List[TransactionKind] = Field(default_factory=list)
    related_task_id: Optional[str] = None


class HistoryPage(BaseModel):
    items: List[Transaction] = Field(default_factory=list)
    limit: int
    next_cursor: Optional[str] = None
