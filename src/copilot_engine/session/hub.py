"""Per-session event multicast.

The reader task publishes every session event to the hub, and the hub hands
a copy to every subscription registered for that session. Each subscription
has its own bounded buffer; when it is full the new event is dropped for
that subscription only, so a slow consumer never holds up the reader or the
other subscribers.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from copilot_engine.logging import get_logger
from copilot_engine.session.events import SessionEvent

_log = get_logger("hub")

DEFAULT_CAPACITY = 1024

EventTransform = Callable[[SessionEvent], Any]
EventPredicate = Callable[[SessionEvent], bool]
EventCallback = Callable[[SessionEvent], None]

_CLOSED = object()


class Subscription:
    """A buffered view of one session's events from the moment it was created.

    Iterate with ``async for event in subscription``; iteration ends once
    the subscription is closed and its buffer is drained.

    Args:
        session_id: Session whose events are delivered.
        capacity: Buffer size; events arriving while it is full are dropped.
        transform: Applied to each event before buffering. Returning None
            drops the event.
        until: Checked against each raw event; the subscription closes
            itself right after the first event that matches.
    """

    def __init__(
        self,
        session_id: str,
        *,
        capacity: int = DEFAULT_CAPACITY,
        transform: EventTransform | None = None,
        until: EventPredicate | None = None,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.session_id = session_id
        self.capacity = capacity
        self.dropped = 0
        self._transform = transform
        self._until = until
        # Unbounded so the close marker always fits; capacity is enforced in deliver()
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._buffered = 0
        self._closed = False
        self._close_callbacks: list[Callable[[Subscription], None]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def add_close_callback(self, callback: Callable[[Subscription], None]) -> None:
        if self._closed:
            callback(self)
        else:
            self._close_callbacks.append(callback)

    def deliver(self, event: SessionEvent) -> None:
        """Buffer an event without blocking."""
        if self._closed:
            return

        item: Any = event
        if self._transform is not None:
            try:
                item = self._transform(event)
            except Exception:
                _log.exception("Event transform failed for %s", event.type)
                item = None

        if item is not None:
            if self._buffered >= self.capacity:
                self.dropped += 1
                _log.debug(
                    "Subscription buffer full for %s, dropping %s", self.session_id, event.type
                )
            else:
                self._buffered += 1
                self._queue.put_nowait(item)

        if self._until is not None:
            try:
                done = self._until(event)
            except Exception:
                _log.exception("Subscription predicate failed for %s", event.type)
                done = False
            if done:
                self.close()

    def close(self) -> None:
        """Stop receiving events. Buffered events can still be read."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)
        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            callback(self)

    async def get(self) -> Any | None:
        """Next buffered event, or None once closed and drained."""
        item = await self._queue.get()
        return self._take(item)

    def get_nowait(self) -> Any | None:
        """Next buffered event without waiting.

        Raises:
            asyncio.QueueEmpty: If nothing is buffered and the subscription is open.
        """
        return self._take(self._queue.get_nowait())

    def _take(self, item: Any) -> Any | None:
        if item is _CLOSED:
            # Leave the marker for later readers
            self._queue.put_nowait(_CLOSED)
            return None
        self._buffered -= 1
        return item

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> Any:
        item = await self.get()
        if item is None:
            raise StopAsyncIteration
        return item


class EventHub:
    """Registry of subscriptions and callbacks, keyed by session id."""

    def __init__(self, default_capacity: int = DEFAULT_CAPACITY) -> None:
        self.default_capacity = default_capacity
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._callbacks: dict[str, list[EventCallback]] = {}

    def subscribe(
        self,
        session_id: str,
        *,
        capacity: int | None = None,
        transform: EventTransform | None = None,
        until: EventPredicate | None = None,
    ) -> Subscription:
        """Create a subscription that sees every event published from now on."""
        subscription = Subscription(
            session_id,
            capacity=self.default_capacity if capacity is None else capacity,
            transform=transform,
            until=until,
        )
        self._subscriptions.setdefault(session_id, []).append(subscription)
        subscription.add_close_callback(self._discard)
        return subscription

    def unsubscribe(self, session_id: str, subscription: Subscription) -> None:
        """Detach and close a subscription. Unknown subscriptions are ignored."""
        subscription.close()
        self._discard(subscription)

    def add_callback(self, session_id: str, callback: EventCallback) -> Callable[[], None]:
        """Call callback for every event of the session.

        Callbacks run on the reader task and must not block.

        Returns:
            Unsubscribe function - call it to remove the callback
        """
        self._callbacks.setdefault(session_id, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._callbacks.get(session_id)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def publish(self, event: SessionEvent) -> None:
        """Fan an event out to the session's subscriptions and callbacks."""
        # Iterate over snapshots so delivery may subscribe or unsubscribe
        for subscription in list(self._subscriptions.get(event.session_id, ())):
            subscription.deliver(event)
        for callback in list(self._callbacks.get(event.session_id, ())):
            try:
                callback(event)
            except Exception:
                _log.exception("Event callback failed for %s", event.type)

    def close_session(self, session_id: str) -> None:
        """Close every subscription of a session and drop its callbacks."""
        for subscription in list(self._subscriptions.get(session_id, ())):
            subscription.close()
        self._subscriptions.pop(session_id, None)
        self._callbacks.pop(session_id, None)

    def close_all(self) -> None:
        for session_id in list(self._subscriptions) + list(self._callbacks):
            self.close_session(session_id)

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscriptions.get(session_id, ()))

    def _discard(self, subscription: Subscription) -> None:
        subscriptions = self._subscriptions.get(subscription.session_id)
        if subscriptions is None:
            return
        if subscription in subscriptions:
            subscriptions.remove(subscription)
        if not subscriptions:
            del self._subscriptions[subscription.session_id]
