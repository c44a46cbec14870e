"""Domain models for queued, in-flight and answered commands."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ResponseType(str, Enum):
    OK = "ok"
    ERROR = "error"
    ALARM = "alarm"
    STATUS = "status"
    SETTING = "setting"
    INFO = "info"


ACKNOWLEDGEMENTS = frozenset({ResponseType.OK, ResponseType.ERROR})


@dataclass(frozen=True, slots=True)
class Response:
    """A classified inbound line.

    ``command_id`` and ``response_time`` are only populated on the copy
    handed to the caller whose command the line acknowledged.
    """

    type: ResponseType
    raw: str
    code: Optional[int] = None
    command_id: Optional[str] = None
    response_time: Optional[float] = None

    @property
    def is_acknowledgement(self) -> bool:
        return self.type in ACKNOWLEDGEMENTS

    @property
    def ok(self) -> bool:
        return self.type == ResponseType.OK

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type.value, "raw": self.raw}
        if self.code is not None:
            payload["code"] = self.code
        if self.command_id is not None:
            payload["commandId"] = self.command_id
        if self.response_time is not None:
            payload["responseTime"] = round(self.response_time, 6)
        return payload


@dataclass(slots=True)
class Command:
    command_id: str
    payload: str
    submitted_at: float
    timeout: float
    future: "asyncio.Future[Response]"
    priority: str = "normal"

    @property
    def cancelled(self) -> bool:
        return self.future.cancelled()


@dataclass(slots=True)
class QueueSlot:
    command: Command
    enqueued_at: float


@dataclass(slots=True)
class PendingEntry:
    command: Command
    sent_at: float
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    @property
    def command_id(self) -> str:
        return self.command.command_id

    def disarm(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None
