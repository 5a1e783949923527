"""
FleetEventBus - non-blocking fan-out of fleet state changes.

- Bounded asyncio.Queue per subscriber
- publish() never blocks or awaits; producers never depend on subscribers
- A subscriber whose backlog exceeds its limit is dropped from delivery
- Per-subscriber FIFO keeps each producer's events in publish order
"""

import asyncio
import dataclasses
import logging
from typing import Dict, FrozenSet, Iterable, Optional

from fleetwatch.backend.events.types import EventType, FleetEvent
from fleetwatch.core.metrics import BUS_SUBSCRIBERS_DROPPED_TOTAL

logger = logging.getLogger(__name__)

DEFAULT_MAX_BACKLOG = 256

# Marks the end of a subscription stream
_CLOSED = object()


class Subscription:
    """A subscriber's event stream.

    Iterate with ``async for event in subscription`` or call ``get()``.
    ``close()`` unsubscribes; iteration ends once the backlog is drained.
    """

    def __init__(
        self,
        bus: "FleetEventBus",
        subscription_id: int,
        event_types: Optional[FrozenSet[EventType]],
        max_backlog: int,
    ):
        self._bus = bus
        self.subscription_id = subscription_id
        self.event_types = event_types
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_backlog)
        self.closed = False
        self.dropped = False

    def accepts(self, event: FleetEvent) -> bool:
        return self.event_types is None or event.type in self.event_types

    @property
    def backlog(self) -> int:
        return self._queue.qsize()

    def _offer(self, event: FleetEvent) -> bool:
        """Enqueue without blocking. Returns False when the backlog is full."""
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            return False

    def _end(self) -> None:
        self.closed = True
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            # Consumer is behind; it sees `closed` once the backlog drains
            pass

    def close(self) -> None:
        """Unsubscribe from the bus."""
        self._bus.unsubscribe(self)

    def get_nowait(self) -> Optional[FleetEvent]:
        """Return the next queued event, or None if nothing is queued."""
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        return None if item is _CLOSED else item

    async def get(self, timeout: Optional[float] = None) -> Optional[FleetEvent]:
        """Wait for the next event. Returns None when the stream has ended."""
        if self.closed and self._queue.empty():
            return None
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        return None if item is _CLOSED else item

    def __aiter__(self):
        return self

    async def __anext__(self) -> FleetEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class FleetEventBus:
    """Publish/subscribe bus for fleet events.

    Subscriptions are filtered by event type. Delivery is best effort per
    subscriber: the producer's state machines never wait on consumers.
    """

    def __init__(self, max_backlog: int = DEFAULT_MAX_BACKLOG):
        """Initialize event bus.

        Args:
            max_backlog: Queue size per subscriber before it is dropped
        """
        self.max_backlog = max_backlog
        self._subscriptions: Dict[int, Subscription] = {}
        self._next_id = 0
        self._sequence = 0
        self._closed = False

        self.metrics = {
            "published": 0,
            "delivered": 0,
            "dropped_subscribers": 0,
        }

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(
        self,
        event_types: Optional[Iterable[EventType]] = None,
        max_backlog: Optional[int] = None,
    ) -> Subscription:
        """Register a subscriber.

        Args:
            event_types: Only deliver these types (None = all events)
            max_backlog: Override the bus-wide backlog limit

        Returns:
            Subscription stream; call close() to unsubscribe
        """
        self._next_id += 1
        types = frozenset(EventType(t) for t in event_types) if event_types else None
        subscription = Subscription(
            self, self._next_id, types, max_backlog or self.max_backlog
        )
        if self._closed:
            subscription._end()
            return subscription
        self._subscriptions[subscription.subscription_id] = subscription
        logger.debug(f"Subscriber {subscription.subscription_id} registered (types={types})")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a subscriber and end its stream."""
        if self._subscriptions.pop(subscription.subscription_id, None) is not None:
            logger.debug(f"Subscriber {subscription.subscription_id} unsubscribed")
        subscription._end()

    def publish(self, event: FleetEvent) -> FleetEvent:
        """Fan an event out to every matching subscriber without blocking.

        Args:
            event: Event to deliver

        Returns:
            The event as delivered (with its bus sequence number)
        """
        if self._closed:
            logger.debug(f"Bus closed, discarding {event.type.value} event")
            return event

        self._sequence += 1
        event = dataclasses.replace(event, sequence=self._sequence)
        self.metrics["published"] += 1

        for subscription in list(self._subscriptions.values()):
            if not subscription.accepts(event):
                continue
            if subscription._offer(event):
                self.metrics["delivered"] += 1
            else:
                self._drop(subscription)
        return event

    def emit(self, event_type: EventType, source: str, **payload) -> FleetEvent:
        """Convenience wrapper around publish()."""
        return self.publish(FleetEvent(type=event_type, source=source, payload=payload))

    def _drop(self, subscription: Subscription) -> None:
        subscription.dropped = True
        self._subscriptions.pop(subscription.subscription_id, None)
        subscription._end()
        self.metrics["dropped_subscribers"] += 1
        BUS_SUBSCRIBERS_DROPPED_TOTAL.inc()
        logger.warning(
            f"Subscriber {subscription.subscription_id} dropped: backlog exceeded "
            f"{subscription._queue.maxsize} events"
        )

    def close(self) -> None:
        """Stop accepting events and end every subscription."""
        if self._closed:
            return
        self._closed = True
        for subscription in list(self._subscriptions.values()):
            self.unsubscribe(subscription)
        logger.info("Event bus closed")
