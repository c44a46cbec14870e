"""Bounded FIFO of commands waiting to be written to the controller."""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from .core.models import Command, QueueSlot

LOGGER = logging.getLogger(__name__)


class CommandQueue:
    """Holds commands in submission order until the dispatcher sends them.

    Insertion order is dispatch order; only :meth:`remove_by_id` removes from
    the middle of the sequence.
    """

    def __init__(
        self,
        max_size: int = 100,
        *,
        name: str = "CommandQueue",
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._slots: Deque[QueueSlot] = deque()
        self._max_size = max_size
        self._clock = clock
        self.name = name
        self._logger = logger or LOGGER

    def enqueue(self, command: Command) -> bool:
        """Append a command; returns ``False`` when the queue is full."""

        if len(self._slots) >= self._max_size:
            self._logger.debug(
                "%s: queue full, rejecting %s (%r)",
                self.name,
                command.command_id,
                command.payload,
            )
            return False

        self._slots.append(QueueSlot(command=command, enqueued_at=self._clock()))
        self._logger.debug(
            "%s: enqueued %r (size=%d)", self.name, command.payload, len(self._slots)
        )
        return True

    def dequeue(self) -> Optional[Command]:
        if not self._slots:
            return None
        slot = self._slots.popleft()
        return slot.command

    def peek(self) -> Optional[Command]:
        return self._slots[0].command if self._slots else None

    def __len__(self) -> int:
        return len(self._slots)

    @property
    def size(self) -> int:
        return len(self._slots)

    @property
    def capacity(self) -> int:
        return self._max_size

    @property
    def is_empty(self) -> bool:
        return not self._slots

    @property
    def is_full(self) -> bool:
        return len(self._slots) >= self._max_size

    def clear(self) -> List[Command]:
        """Drop every queued command and return them for failure delivery."""

        cleared = [slot.command for slot in self._slots]
        self._slots.clear()
        if cleared:
            self._logger.debug("%s: cleared %d command(s)", self.name, len(cleared))
        return cleared

    def remove_by_id(self, command_id: str) -> Optional[Command]:
        for slot in self._slots:
            if slot.command.command_id == command_id:
                self._slots.remove(slot)
                self._logger.debug("%s: removed %s", self.name, command_id)
                return slot.command
        return None

    def find_matching(self, predicate: Callable[[Command], bool]) -> List[Command]:
        return [slot.command for slot in self._slots if predicate(slot.command)]

    def remove_older_than(self, max_age: float) -> List[Command]:
        """Pop commands from the head that have waited longer than ``max_age``.

        Slots are ordered by enqueue time, so the scan stops at the first
        slot that is still fresh.
        """

        cutoff = self._clock() - max_age
        removed: List[Command] = []
        while self._slots and self._slots[0].enqueued_at < cutoff:
            removed.append(self._slots.popleft().command)

        if removed:
            self._logger.debug(
                "%s: removed %d command(s) older than %.3fs",
                self.name,
                len(removed),
                max_age,
            )
        return removed

    def snapshot(self) -> List[Dict[str, Any]]:
        now = self._clock()
        return [
            {
                "id": slot.command.command_id,
                "command": slot.command.payload,
                "enqueuedAt": slot.enqueued_at,
                "timeout": slot.command.timeout,
                "waitTime": now - slot.enqueued_at,
            }
            for slot in self._slots
        ]

    def stats(self) -> Dict[str, Any]:
        size = len(self._slots)
        stats: Dict[str, Any] = {
            "size": size,
            "capacity": self._max_size,
            "utilization": (size / self._max_size) * 100,
            "isEmpty": size == 0,
            "isFull": size >= self._max_size,
        }
        if size:
            now = self._clock()
            waits = [now - slot.enqueued_at for slot in self._slots]
            stats["avgWaitTime"] = sum(waits) / size
            stats["maxWaitTime"] = max(waits)
            stats["minWaitTime"] = min(waits)
            stats["oldestCommand"] = self._slots[0].command.payload
        return stats
