"""
Event Bus
=========

Typed event fan-out for status, error and command propagation.

Producers (uplink, sessions, orchestrator) publish WatcherEvent values;
consumers subscribe and read them from their own queue, either with
`await subscription.get()` or `async for event in subscription`.

Design Rules:
    - publish() never blocks and never raises
    - Every subscriber sees every event published after it subscribed
    - Events from one producer arrive in publish order
    - Subscriber queues are unbounded; a consumer that stops reading
      should unsubscribe

Example:
    bus = EventBus()
    subscription = bus.subscribe()

    bus.publish(WatcherEvent(EventType.COMMAND, {"type": "pause"}))

    event = await subscription.get(timeout=1.0)
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional


logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Kinds of events published on the bus."""

    # Uplink
    AUTHENTICATED = "authenticated"
    AUTH_TIMEOUT = "auth_timeout"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    RECONNECTED = "reconnected"
    RECONNECT_FAILED = "reconnect_failed"
    BATCH_ACKED = "batch_acked"
    BATCH_REJECTED = "batch_rejected"
    OBSERVATIONS_DROPPED = "observations_dropped"
    COMMAND = "command"

    # Sessions
    STREAM_STARTED = "stream_started"
    STREAM_FAILED = "stream_failed"
    STREAM_STATE_CHANGED = "stream_state_changed"
    STREAM_RETIRED = "stream_retired"
    FRAME_ANALYZED = "frame_analyzed"

    # Orchestrator
    ROTATED = "rotated"
    STATUS = "status"
    PAUSED = "paused"
    RESUMED = "resumed"


@dataclass(frozen=True, slots=True)
class WatcherEvent:
    """
    A single published event.

    Attributes:
        type: Event kind
        payload: Event-specific data (JSON-compatible values)
        timestamp: UNIX time of publication
    """

    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class Subscription:
    """A consumer's view of the bus."""

    def __init__(self, bus: "EventBus") -> None:
        self._bus = bus
        self._queue: asyncio.Queue[WatcherEvent] = asyncio.Queue()

    @property
    def pending(self) -> int:
        """Events published but not yet read."""
        return self._queue.qsize()

    def deliver(self, event: WatcherEvent) -> None:
        self._queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> Optional[WatcherEvent]:
        """
        Get the next event.

        Args:
            timeout: Maximum seconds to wait. None = wait forever.

        Returns:
            Next event, or None if timeout occurred.
        """
        try:
            if timeout is not None:
                return await asyncio.wait_for(self._queue.get(), timeout=timeout)
            return await self._queue.get()
        except asyncio.TimeoutError:
            return None

    def get_nowait(self) -> Optional[WatcherEvent]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def drain(self) -> List[WatcherEvent]:
        """Return every pending event without waiting."""
        events = []
        while (event := self.get_nowait()) is not None:
            events.append(event)
        return events

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[WatcherEvent]:
        return self

    async def __anext__(self) -> WatcherEvent:
        return await self._queue.get()


class EventBus:
    """
    In-process publish/subscribe hub.

    All calls must happen on the event loop thread.
    """

    def __init__(self) -> None:
        self._subscribers: List[Subscription] = []
        self._published: int = 0

    @property
    def published_count(self) -> int:
        """Total events ever published."""
        return self._published

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def publish(self, event: WatcherEvent) -> None:
        """Deliver an event to every current subscriber."""
        self._published += 1
        logger.debug(f"Event {event.type.value}: {event.payload}")
        for subscription in list(self._subscribers):
            subscription.deliver(event)

    def emit(self, event_type: EventType, **payload: Any) -> None:
        """Shorthand for publish(WatcherEvent(event_type, payload))."""
        self.publish(WatcherEvent(event_type, dict(payload)))
