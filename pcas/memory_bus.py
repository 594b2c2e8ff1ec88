"""An in-memory publish/subscribe event bus."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from pcas.model import Event, StatusCode, StatusError

log = logging.getLogger(__name__)

SUBSCRIBER_BUFFER = 100


class Subscription:
    """A client's stream of events from a :class:`MemoryBus`.

    Iterate it with ``async for``; iteration ends once it is closed, and
    events still buffered at that point are dropped.
    """

    def __init__(self, bus: "MemoryBus", client_id: str, buffer_size: int) -> None:
        self.client_id = client_id
        self._bus = bus
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=buffer_size)
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _offer(self, event: Event) -> bool:
        if self._closed.is_set():
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        """Stop the subscription and unregister it from the bus."""
        if self._closed.is_set():
            return
        self._closed.set()
        self._bus._remove(self)
        log.info("Client %s unsubscribed", self.client_id)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Event:
        if self._closed.is_set():
            raise StopAsyncIteration
        if not self._queue.empty():
            return self._queue.get_nowait()
        getter = asyncio.ensure_future(self._queue.get())
        closer = asyncio.ensure_future(self._closed.wait())
        try:
            done, _ = await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            getter.cancel()
            closer.cancel()
        if getter in done and not getter.cancelled():
            return getter.result()
        raise StopAsyncIteration

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class MemoryBus:
    """Broadcasts every published event to all current subscribers.

    Slow subscribers whose buffers are full miss events instead of
    holding up the bus.
    """

    def __init__(self, buffer_size: int = SUBSCRIBER_BUFFER) -> None:
        self._buffer_size = buffer_size
        self._subscribers: dict[str, Subscription] = {}

    def publish(self, event: Event | None) -> int:
        """Deliver ``event`` to every subscriber; return how many accepted it."""
        if event is None:
            raise StatusError(StatusCode.INVALID_ARGUMENT, "event cannot be nil")
        delivered = 0
        for client_id, subscription in list(self._subscribers.items()):
            if subscription._offer(event):
                delivered += 1
            else:
                log.warning("dropping event for slow subscriber %s (channel full)", client_id)
        return delivered

    def subscribe(self, client_id: str) -> Subscription:
        """Register a subscriber under a unique, non-empty client id."""
        if not client_id:
            raise StatusError(StatusCode.INVALID_ARGUMENT, "client_id cannot be empty")
        if client_id in self._subscribers:
            raise StatusError(StatusCode.ALREADY_EXISTS, f"client {client_id} is already subscribed")
        subscription = Subscription(self, client_id, self._buffer_size)
        self._subscribers[client_id] = subscription
        log.info("Client %s subscribed", client_id)
        return subscription

    def search(self, request: Any) -> Any:
        """Always fails: the memory bus keeps no history to search."""
        raise StatusError(StatusCode.UNIMPLEMENTED, "memory bus does not support semantic search")

    def subscriber_count(self) -> int:
        """Return the number of active subscribers."""
        return len(self._subscribers)

    def _remove(self, subscription: Subscription) -> None:
        if self._subscribers.get(subscription.client_id) is subscription:
            del self._subscribers[subscription.client_id]