"""Typed event channels for the dispatcher and the health monitor.

Each component owns one :class:`EventBus`. Consumers call
:meth:`EventBus.subscribe` and receive their own bounded channel; publishing
never blocks the publisher. When a subscriber falls behind, the oldest
undelivered event in *its* channel is dropped and counted, so a slow
consumer cannot stall command traffic or grow memory without bound.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, FrozenSet, Iterable, List, Optional

LOGGER = logging.getLogger(__name__)


class EventSeverity(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class EventType(str, Enum):
    """Event vocabulary shared with UI/application collaborators."""

    # Dispatcher
    COMMAND_QUEUED = "commandQueued"
    COMMAND_SENT = "commandSent"
    COMMAND_RESPONSE = "commandResponse"
    COMMAND_ERROR = "commandError"
    UNSOLICITED_DATA = "unsolicitedData"
    ALARM = "alarm"
    DISCONNECT = "disconnect"
    SERIAL_ERROR = "serialError"

    # Health monitor
    HEALTH_DEGRADED = "healthDegraded"
    HEALTH_RESTORED = "healthRestored"
    RECOVERY_STARTED = "recoveryStarted"
    RECOVERY_SUCCESSFUL = "recoverySuccessful"
    RECOVERY_FAILED = "recoveryFailed"
    LATENCY_WARNING = "latencyWarning"
    LATENCY_CRITICAL = "latencyCritical"
    DATA_STALE = "dataStale"
    PING_FAILED = "pingFailed"
    CONNECTION_LOST = "connectionLost"
    CONNECTION_RESTORED = "connectionRestored"
    CONNECTION_ERROR = "connectionError"
    MONITORING_STARTED = "monitoringStarted"
    MONITORING_STOPPED = "monitoringStopped"
    METRICS_RESET = "metricsReset"


EVENT_SEVERITY: Dict[EventType, EventSeverity] = {
    EventType.COMMAND_QUEUED: EventSeverity.DEBUG,
    EventType.COMMAND_SENT: EventSeverity.DEBUG,
    EventType.COMMAND_RESPONSE: EventSeverity.DEBUG,
    EventType.COMMAND_ERROR: EventSeverity.WARNING,
    EventType.UNSOLICITED_DATA: EventSeverity.DEBUG,
    EventType.ALARM: EventSeverity.ERROR,
    EventType.DISCONNECT: EventSeverity.WARNING,
    EventType.SERIAL_ERROR: EventSeverity.ERROR,
    EventType.HEALTH_DEGRADED: EventSeverity.ERROR,
    EventType.HEALTH_RESTORED: EventSeverity.INFO,
    EventType.RECOVERY_STARTED: EventSeverity.WARNING,
    EventType.RECOVERY_SUCCESSFUL: EventSeverity.INFO,
    EventType.RECOVERY_FAILED: EventSeverity.ERROR,
    EventType.LATENCY_WARNING: EventSeverity.WARNING,
    EventType.LATENCY_CRITICAL: EventSeverity.ERROR,
    EventType.DATA_STALE: EventSeverity.WARNING,
    EventType.PING_FAILED: EventSeverity.WARNING,
    EventType.CONNECTION_LOST: EventSeverity.WARNING,
    EventType.CONNECTION_RESTORED: EventSeverity.INFO,
    EventType.CONNECTION_ERROR: EventSeverity.WARNING,
    EventType.MONITORING_STARTED: EventSeverity.DEBUG,
    EventType.MONITORING_STOPPED: EventSeverity.DEBUG,
    EventType.METRICS_RESET: EventSeverity.DEBUG,
}


@dataclass(frozen=True, slots=True)
class Event:
    type: EventType
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.monotonic)

    @property
    def severity(self) -> EventSeverity:
        return EVENT_SEVERITY.get(self.type, EventSeverity.INFO)


class EventSubscription:
    """A bounded, single-consumer event channel."""

    def __init__(
        self,
        bus: "EventBus",
        maxsize: int,
        types: Optional[FrozenSet[EventType]] = None,
    ) -> None:
        self._bus = bus
        self._buffer: Deque[Event] = deque()
        self._maxsize = max(1, maxsize)
        self._types = types
        self._ready = asyncio.Event()
        self._closed = False
        self.dropped = 0

    def accepts(self, event_type: EventType) -> bool:
        return self._types is None or event_type in self._types

    def _push(self, event: Event) -> None:
        if self._closed:
            return
        if len(self._buffer) >= self._maxsize:
            self._buffer.popleft()
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                LOGGER.warning(
                    "Event subscriber lagging; dropped %d event(s) so far",
                    self.dropped,
                )
        self._buffer.append(event)
        self._ready.set()

    def __len__(self) -> int:
        return len(self._buffer)

    @property
    def closed(self) -> bool:
        return self._closed

    def get_nowait(self) -> Optional[Event]:
        if not self._buffer:
            self._ready.clear()
            return None
        event = self._buffer.popleft()
        if not self._buffer:
            self._ready.clear()
        return event

    def drain(self) -> List[Event]:
        events = list(self._buffer)
        self._buffer.clear()
        self._ready.clear()
        return events

    async def get(self) -> Optional[Event]:
        """Wait for the next event; returns ``None`` once closed and empty."""

        while not self._buffer:
            if self._closed:
                return None
            await self._ready.wait()
        return self.get_nowait()

    def close(self) -> None:
        self._closed = True
        self._ready.set()
        self._bus._unsubscribe(self)

    def __aiter__(self) -> "EventSubscription":
        return self

    async def __anext__(self) -> Event:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventBus:
    """Publishes typed events to every subscriber's own channel."""

    def __init__(self, name: str, *, default_buffer_size: int = 256) -> None:
        self.name = name
        self._default_buffer_size = default_buffer_size
        self._subscriptions: List[EventSubscription] = []

    def subscribe(
        self,
        types: Optional[Iterable[EventType]] = None,
        *,
        maxsize: Optional[int] = None,
    ) -> EventSubscription:
        subscription = EventSubscription(
            self,
            maxsize or self._default_buffer_size,
            frozenset(types) if types is not None else None,
        )
        self._subscriptions.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: EventSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event_type: EventType, **data: Any) -> Event:
        event = Event(event_type, data)
        for subscription in list(self._subscriptions):
            if subscription.accepts(event_type):
                subscription._push(event)
        return event

    def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.close()
