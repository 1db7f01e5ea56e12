from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Deque, Dict, List, Optional


class AsyncNotificationQueue(ABC):
    """
    Abstract async message queue for dispatching account notifications.
    Concrete implementations could use Redis, RabbitMQ, Kafka, etc.
    """

    @abstractmethod
    async def enqueue(self, payload: Dict[str, Any]) -> None:
        ...


class InMemoryNotificationQueue(AsyncNotificationQueue):
    """
    In-memory queue used for tests and as a reference implementation.

    The most recent `history_size` messages are kept in `messages` (all of
    them when `history_size` is None, none when it is 0). Live consumers
    (e.g. a websocket pushing balance updates to a dashboard) can
    `subscribe()` to receive messages enqueued after they subscribed.
    """

    def __init__(
        self, subscriber_buffer: int = 100, history_size: Optional[int] = None
    ) -> None:
        self.messages: Deque[Dict[str, Any]] = deque(maxlen=history_size)
        self._subscribers: List[asyncio.Queue] = []
        self._subscriber_buffer = subscriber_buffer

    async def enqueue(self, payload: Dict[str, Any]) -> None:
        self.messages.append(payload)
        for subscriber in self._subscribers:
            if subscriber.full():
                # Slow consumers lose the oldest update, never block the ledger
                subscriber.get_nowait()
            subscriber.put_nowait(payload)

    def subscribe(self) -> asyncio.Queue:
        subscriber: asyncio.Queue = asyncio.Queue(maxsize=self._subscriber_buffer)
        self._subscribers.append(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: asyncio.Queue) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)
