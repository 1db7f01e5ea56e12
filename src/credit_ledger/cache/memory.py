from __future__ import annotations

import time
from collections import OrderedDict
from typing import Any, Optional, Tuple

from .base import AsyncCacheBackend


class InMemoryAsyncCache(AsyncCacheBackend):
    """
    Simple in-memory cache with optional TTL and a bound on the number of keys.

    Balance projections are cached under version-specific keys, so superseded
    entries are never read again; the bound evicts them oldest first.
    """

    def __init__(self, max_entries: int = 10_000) -> None:
        self._store: "OrderedDict[str, Tuple[Any, Optional[float]]]" = OrderedDict()
        self._max_entries = max_entries

    async def get(self, key: str) -> Optional[Any]:
        value_ttl = self._store.get(key)
        if value_ttl is None:
            return None
        value, expires_at = value_ttl
        if expires_at is not None and expires_at < time.monotonic():
            self._store.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        expires_at = time.monotonic() + ttl_seconds if ttl_seconds is not None else None
        self._store[key] = (value, expires_at)
        self._store.move_to_end(key)
        while len(self._store) > self._max_entries:
            self._store.popitem(last=False)

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def __len__(self) -> int:
        return len(self._store)
