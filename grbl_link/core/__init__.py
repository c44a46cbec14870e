"""Core primitives for grbl-link."""

from .errors import (
    DispatchError,
    ErrorCode,
    LineParseError,
    ProbeError,
    TransportError,
)
from .events import Event, EventBus, EventSeverity, EventSubscription, EventType
from .models import Command, PendingEntry, QueueSlot, Response, ResponseType
from .protocols import ConnectionStatus, Transport

__all__ = [
    "Command",
    "ConnectionStatus",
    "DispatchError",
    "ErrorCode",
    "Event",
    "EventBus",
    "EventSeverity",
    "EventSubscription",
    "EventType",
    "LineParseError",
    "PendingEntry",
    "ProbeError",
    "QueueSlot",
    "Response",
    "ResponseType",
    "Transport",
    "TransportError",
]
