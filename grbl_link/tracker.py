"""In-flight command book-keeping with per-command timeouts.

GRBL does not echo command identity in its replies, so acknowledgements are
matched strictly in send order: the next ``ok``/``error`` line belongs to the
oldest command still pending. This holds only while the transport delivers
bytes in order and without loss.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from .core.errors import DispatchError, ErrorCode
from .core.models import Command, PendingEntry, Response

LOGGER = logging.getLogger(__name__)

TimeoutCallback = Callable[[PendingEntry], None]


class ResponseTracker:
    """Owns every command that has been written but not yet answered."""

    def __init__(
        self,
        max_pending: int = 50,
        *,
        default_timeout: float = 5.0,
        on_timeout: Optional[TimeoutCallback] = None,
        name: str = "ResponseTracker",
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if max_pending < 1:
            raise ValueError("max_pending must be at least 1")
        # Insertion order doubles as send order; the first key is the oldest.
        self._pending: Dict[str, PendingEntry] = {}
        self._max_pending = max_pending
        self._default_timeout = default_timeout
        self._on_timeout = on_timeout
        self._clock = clock
        self.name = name
        self._logger = logger or LOGGER

    @property
    def capacity(self) -> int:
        return self._max_pending

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def has_capacity(self) -> bool:
        return len(self._pending) < self._max_pending

    def __len__(self) -> int:
        return len(self._pending)

    def track(
        self, command_id: str, command: Command, timeout: Optional[float] = None
    ) -> bool:
        """Start tracking a command; returns ``False`` at in-flight capacity."""

        if len(self._pending) >= self._max_pending:
            self._logger.warning(
                "%s: too many pending commands (%d), rejecting %s",
                self.name,
                len(self._pending),
                command_id,
            )
            return False
        if command_id in self._pending:
            raise ValueError(f"Command {command_id} is already pending")

        effective_timeout = self._default_timeout if timeout is None else timeout
        entry = PendingEntry(command=command, sent_at=self._clock())
        if effective_timeout and effective_timeout > 0:
            loop = asyncio.get_running_loop()
            entry.timer = loop.call_later(
                effective_timeout, self._handle_timeout, command_id
            )

        self._pending[command_id] = entry
        self._logger.debug(
            "%s: tracking %s (pending=%d)", self.name, command_id, len(self._pending)
        )
        return True

    def resolve(self, command_id: str, response: Response) -> bool:
        entry = self._pending.pop(command_id, None)
        if entry is None:
            self._logger.debug("%s: no pending command %s", self.name, command_id)
            return False

        entry.disarm()
        response_time = self._clock() - entry.sent_at
        future = entry.command.future
        if not future.done():
            future.set_result(
                dataclasses.replace(
                    response, command_id=command_id, response_time=response_time
                )
            )
        self._logger.debug(
            "%s: resolved %s in %.3fs (pending=%d)",
            self.name,
            command_id,
            response_time,
            len(self._pending),
        )
        return True

    def reject(self, command_id: str, error: BaseException) -> bool:
        entry = self._pending.pop(command_id, None)
        if entry is None:
            self._logger.debug(
                "%s: no pending command %s to reject", self.name, command_id
            )
            return False

        entry.disarm()
        future = entry.command.future
        if not future.done():
            future.set_exception(error)
        self._logger.debug(
            "%s: rejected %s (%s, pending=%d)",
            self.name,
            command_id,
            error,
            len(self._pending),
        )
        return True

    def _handle_timeout(self, command_id: str) -> None:
        entry = self._pending.get(command_id)
        if entry is None:
            return
        entry.timer = None
        command = entry.command
        error = DispatchError(
            f"Command timeout: {command.payload} ({command.timeout:.3f}s)",
            code=ErrorCode.COMMAND_TIMEOUT,
            command_id=command_id,
            payload=command.payload,
        )
        self._logger.warning(
            "%s: command %s timed out after %.3fs", self.name, command_id, command.timeout
        )
        if self.reject(command_id, error) and self._on_timeout is not None:
            self._on_timeout(entry)

    def is_pending(self, command_id: str) -> bool:
        return command_id in self._pending

    def oldest_pending(self) -> Optional[PendingEntry]:
        return next(iter(self._pending.values()), None)

    def pending_ids(self) -> List[str]:
        return list(self._pending)

    def clear_all(
        self,
        reason: Optional[str] = None,
        *,
        code: ErrorCode = ErrorCode.COMMAND_CANCELLED,
    ) -> List[PendingEntry]:
        """Reject every pending command with ``code`` and disarm its timer."""

        cleared = list(self._pending.values())
        self._pending.clear()
        for entry in cleared:
            entry.disarm()
            future = entry.command.future
            if not future.done():
                future.set_exception(
                    DispatchError(
                        code.describe(reason),
                        code=code,
                        command_id=entry.command_id,
                        payload=entry.command.payload,
                    )
                )
        if cleared:
            self._logger.debug(
                "%s: cleared %d pending command(s) (%s)",
                self.name,
                len(cleared),
                code.describe(reason),
            )
        return cleared

    def expire_older_than(self, max_age: float) -> List[PendingEntry]:
        cutoff = self._clock() - max_age
        expired = [
            entry for entry in self._pending.values() if entry.sent_at < cutoff
        ]
        for entry in expired:
            self.reject(
                entry.command_id,
                DispatchError(
                    f"Command expired: {entry.command.payload} (pending for >{max_age:.3f}s)",
                    code=ErrorCode.COMMAND_EXPIRED,
                    command_id=entry.command_id,
                    payload=entry.command.payload,
                ),
            )
        return expired

    def snapshot(self) -> List[Dict[str, Any]]:
        now = self._clock()
        return [
            {
                "commandId": command_id,
                "command": entry.command.payload,
                "sentAt": entry.sent_at,
                "waitTime": now - entry.sent_at,
                "timeout": entry.command.timeout,
                "hasTimeout": entry.timer is not None,
            }
            for command_id, entry in self._pending.items()
        ]

    def stats(self) -> Dict[str, Any]:
        count = len(self._pending)
        stats: Dict[str, Any] = {
            "count": count,
            "maxCapacity": self._max_pending,
            "utilization": (count / self._max_pending) * 100,
        }
        if count:
            now = self._clock()
            waits = [now - entry.sent_at for entry in self._pending.values()]
            stats["avgWaitTime"] = sum(waits) / count
            stats["maxWaitTime"] = max(waits)
            stats["minWaitTime"] = min(waits)
        return stats
