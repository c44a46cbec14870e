"""Command dispatch over a strictly ordered GRBL serial link.

The dispatcher multiplexes many logical callers onto one half-duplex
channel. Callers submit lines and receive a future; a single worker task
moves commands from the bounded queue to the wire while the number of
unacknowledged commands stays within the in-flight budget, so the
controller's small receive buffer is never overrun.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from . import constants
from .command_queue import CommandQueue
from .config import DispatchConfig
from .core.errors import DispatchError, ErrorCode, LineParseError
from .core.events import EventBus, EventType
from .core.models import Command, PendingEntry, Response, ResponseType
from .core.protocols import Transport
from .protocol import classify_line, encode_line
from .tracker import ResponseTracker

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class DispatchStats:
    sent: int = 0
    completed: int = 0
    timed_out: int = 0
    errored: int = 0
    total_response_time: float = 0.0
    started_at: float = field(default_factory=time.monotonic)

    @property
    def average_response_time(self) -> float:
        if self.completed == 0:
            return 0.0
        return self.total_response_time / self.completed


class Dispatcher:
    """Queues, writes and matches commands for one serial connection."""

    def __init__(
        self,
        transport: Transport,
        config: Optional[DispatchConfig] = None,
        *,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._transport = transport
        self._config = config or DispatchConfig()
        self._logger = logger or LOGGER
        self._clock = clock

        self._queue = CommandQueue(
            self._config.max_queue_size,
            name="Dispatcher",
            clock=clock,
            logger=self._logger,
        )
        self._tracker = ResponseTracker(
            self._config.max_pending_commands,
            default_timeout=self._config.command_timeout,
            on_timeout=self._on_command_timeout,
            name="Dispatcher",
            clock=clock,
            logger=self._logger,
        )
        self.events = EventBus(
            "dispatcher", default_buffer_size=self._config.event_buffer_size
        )

        self._stats = DispatchStats(started_at=clock())
        self._sequence = itertools.count(1)
        self._wakeup = asyncio.Event()
        self._stop_event = asyncio.Event()
        self._worker_task: Optional[asyncio.Task[None]] = None
        self._writing = False
        self._current: Optional[Command] = None

        transport.register_data_handler(self.handle_line)
        transport.register_error_handler(self._handle_transport_error)
        transport.register_disconnect_handler(self.handle_disconnect)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def is_running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    def start(self) -> None:
        """Start the dispatch worker task."""

        if self.is_running:
            self._logger.debug("Dispatcher worker already running")
            return

        self._stop_event.clear()
        self._worker_task = asyncio.create_task(self._run(), name="grbl-dispatcher")
        self._wakeup.set()

    async def stop(self) -> None:
        """Stop the worker and cancel everything still queued or in flight."""

        self._stop_event.set()
        self._wakeup.set()

        if self._worker_task is not None:
            self._worker_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker_task
            self._worker_task = None

        self._cancel_everything("Dispatcher stopped")

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------
    @property
    def default_timeout(self) -> float:
        return self._config.command_timeout

    def submit(
        self, payload: str, *, timeout: Optional[float] = None
    ) -> "asyncio.Future[Response]":
        """Queue one line for sending and return a future for its reply.

        Failures (full queue, no connection) are delivered through the
        returned future rather than raised.

        Raises:
            ValueError: If ``payload`` spans more than one line.
        """

        line = payload.strip()
        encode_line(line)

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Response] = loop.create_future()
        command = Command(
            command_id=self._generate_command_id(),
            payload=line,
            submitted_at=self._clock(),
            timeout=self._config.command_timeout if timeout is None else timeout,
            future=future,
        )

        if not self._transport.connection_status().connected:
            future.set_exception(
                DispatchError(
                    "Serial transport not connected",
                    code=ErrorCode.DISCONNECTED,
                    command_id=command.command_id,
                    payload=line,
                )
            )
            return future

        if not self._queue.enqueue(command):
            self._logger.warning("Command queue full, rejecting %r", line)
            future.set_exception(
                DispatchError(
                    f"Command queue full: {line}",
                    code=ErrorCode.QUEUE_FULL,
                    command_id=command.command_id,
                    payload=line,
                )
            )
            self.events.publish(
                EventType.COMMAND_ERROR,
                id=command.command_id,
                command=line,
                code=ErrorCode.QUEUE_FULL.value,
            )
            return future

        self.events.publish(
            EventType.COMMAND_QUEUED,
            id=command.command_id,
            command=line,
            queueSize=self._queue.size,
        )
        self._wakeup.set()
        return future

    async def send(self, payload: str, *, timeout: Optional[float] = None) -> Response:
        """Submit a line and wait for its reply."""

        return await self.submit(payload, timeout=timeout)

    def _generate_command_id(self) -> str:
        return f"cmd_{next(self._sequence)}_{uuid.uuid4().hex[:8]}"

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------
    async def _run(self) -> None:
        self._logger.debug("Dispatcher worker started")
        while not self._stop_event.is_set():
            await self._wait_for_work()
            if self._stop_event.is_set():
                break
            try:
                while self._can_dispatch():
                    await self._dispatch_next()
            except asyncio.CancelledError:
                raise
            except Exception:
                self._logger.exception("Dispatcher worker iteration failed")
        self._logger.debug("Dispatcher worker stopped")

    async def _wait_for_work(self) -> None:
        max_age = self._config.max_queue_age
        if max_age > 0:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=max_age / 2)
            except asyncio.TimeoutError:
                pass
            self.expire_stale(max_age)
        else:
            await self._wakeup.wait()
        self._wakeup.clear()

    def _can_dispatch(self) -> bool:
        return (
            not self._stop_event.is_set()
            and not self._queue.is_empty
            and self._tracker.has_capacity
            and not self._writing
        )

    async def _dispatch_next(self) -> None:
        command = self._queue.dequeue()
        if command is None:
            return

        if command.future.done():
            self._logger.debug(
                "Skipping %s (%r); caller no longer waiting",
                command.command_id,
                command.payload,
            )
            return

        if not self._tracker.track(command.command_id, command, command.timeout):
            command.future.set_exception(
                DispatchError(
                    "In-flight budget exhausted",
                    code=ErrorCode.QUEUE_FULL,
                    command_id=command.command_id,
                    payload=command.payload,
                )
            )
            return

        self._writing = True
        self._current = command
        try:
            await self._transport.write(encode_line(command.payload))
        except Exception as exc:
            error = DispatchError(
                ErrorCode.WRITE_FAILED.describe(str(exc)),
                code=ErrorCode.WRITE_FAILED,
                command_id=command.command_id,
                payload=command.payload,
            )
            error.__cause__ = exc
            # A disconnect during the write has already settled the command.
            if not self._tracker.reject(command.command_id, error):
                self._logger.debug(
                    "Write of %s failed after it was settled: %s", command.command_id, exc
                )
                return
            self._logger.error(
                "Failed to send %r (%s): %s", command.payload, command.command_id, exc
            )
            self._stats.errored += 1
            self.events.publish(
                EventType.COMMAND_ERROR,
                id=command.command_id,
                command=command.payload,
                code=ErrorCode.WRITE_FAILED.value,
                error=str(exc),
            )
            return
        finally:
            self._writing = False
            self._current = None

        if not self._tracker.is_pending(command.command_id) and _failed(command):
            self._logger.debug(
                "Dropped %s while writing; not counting it as sent", command.command_id
            )
            return

        self._stats.sent += 1
        self.events.publish(
            EventType.COMMAND_SENT,
            id=command.command_id,
            command=command.payload,
            queueSize=self._queue.size,
            pendingCount=self._tracker.pending_count,
        )
        self._logger.debug("Sent %r (%s)", command.payload, command.command_id)

    # ------------------------------------------------------------------
    # Inbound routing
    # ------------------------------------------------------------------
    def handle_line(self, line: str) -> None:
        """Route one inbound line from the transport."""

        clean = line.strip()
        if not clean:
            return

        try:
            response = classify_line(clean)
        except LineParseError as exc:
            self._logger.warning("Treating unparseable line as info: %s", exc)
            response = Response(ResponseType.INFO, clean)

        if response.type == ResponseType.ALARM:
            self._logger.error("Controller alarm: %s", response.raw)
            self.events.publish(EventType.ALARM, code=response.code, raw=response.raw)
            entry = self._tracker.oldest_pending()
            if entry is not None:
                self._complete(entry, response)
            return

        if response.is_acknowledgement:
            entry = self._tracker.oldest_pending()
            if entry is not None:
                self._complete(entry, response)
                return
            self._logger.debug("Acknowledgement with nothing pending: %s", clean)

        self.events.publish(
            EventType.UNSOLICITED_DATA, data=clean, response=response.as_dict()
        )

    def _complete(self, entry: PendingEntry, response: Response) -> None:
        response_time = self._clock() - entry.sent_at
        if not self._tracker.resolve(entry.command_id, response):
            return

        self._stats.completed += 1
        self._stats.total_response_time += response_time
        if response.type != ResponseType.OK:
            self._stats.errored += 1

        self.events.publish(
            EventType.COMMAND_RESPONSE,
            commandId=entry.command_id,
            command=entry.command.payload,
            response=response.as_dict(),
            responseTime=response_time,
        )
        self._logger.debug(
            "Response for %r: %s (%.3fs)",
            entry.command.payload,
            response.raw,
            response_time,
        )
        self._wakeup.set()

    def _on_command_timeout(self, entry: PendingEntry) -> None:
        self._stats.timed_out += 1
        self.events.publish(
            EventType.COMMAND_ERROR,
            id=entry.command_id,
            command=entry.command.payload,
            code=ErrorCode.COMMAND_TIMEOUT.value,
        )
        self._wakeup.set()

    def _handle_transport_error(self, exc: BaseException) -> None:
        self._logger.error("Serial transport error: %s", exc)
        self.events.publish(EventType.SERIAL_ERROR, error=str(exc))

    def handle_disconnect(self) -> None:
        """Reject every queued and in-flight command with ``DISCONNECTED``."""

        pending = self._tracker.clear_all(code=ErrorCode.DISCONNECTED)
        queued = self._queue.clear()
        self._fail_commands(queued, ErrorCode.DISCONNECTED)

        self._logger.warning(
            "Serial transport disconnected; cleared %d pending and %d queued command(s)",
            len(pending),
            len(queued),
        )
        self.events.publish(
            EventType.DISCONNECT,
            clearedPending=len(pending),
            clearedQueue=len(queued),
        )

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------
    def _fail_commands(
        self,
        commands: Iterable[Command],
        code: ErrorCode,
        reason: Optional[str] = None,
    ) -> None:
        for command in commands:
            if command.future.done():
                continue
            command.future.set_exception(
                DispatchError(
                    code.describe(reason),
                    code=code,
                    command_id=command.command_id,
                    payload=command.payload,
                )
            )

    def _cancel_everything(self, reason: str) -> Dict[str, int]:
        queued = self._queue.clear()
        self._fail_commands(queued, ErrorCode.COMMAND_CANCELLED, reason)
        pending = self._tracker.clear_all(reason, code=ErrorCode.COMMAND_CANCELLED)
        return {"queued": len(queued), "pending": len(pending)}

    def clear_all(self) -> Dict[str, int]:
        """Cancel every queued and in-flight command."""

        summary = self._cancel_everything("Manual clear")
        self._logger.info(
            "Cleared %d queued and %d pending command(s)",
            summary["queued"],
            summary["pending"],
        )
        return summary

    async def soft_reset(self) -> Dict[str, int]:
        """Cancel all commands and send the realtime soft-reset byte.

        The controller discards its own buffer on reset and will never
        acknowledge what was in flight, so the tracker is emptied first to
        keep reply matching aligned.

        Raises:
            TransportError: If the reset byte cannot be written.
        """

        summary = self._cancel_everything("Soft reset")
        self._logger.info(
            "Soft reset: cancelled %d queued and %d pending command(s)",
            summary["queued"],
            summary["pending"],
        )
        await self._transport.write(constants.SOFT_RESET)
        return summary

    def expire_stale(self, max_age: float) -> List[Command]:
        """Reject queued commands that have waited longer than ``max_age``."""

        expired = self._queue.remove_older_than(max_age)
        if not expired:
            return expired
        for command in expired:
            if command.future.done():
                continue
            command.future.set_exception(
                DispatchError(
                    f"Command expired in queue after {max_age:.3f}s: {command.payload}",
                    code=ErrorCode.COMMAND_EXPIRED,
                    command_id=command.command_id,
                    payload=command.payload,
                )
            )
            self.events.publish(
                EventType.COMMAND_ERROR,
                id=command.command_id,
                command=command.payload,
                code=ErrorCode.COMMAND_EXPIRED.value,
            )
        self._logger.warning("Expired %d stale queued command(s)", len(expired))
        return expired

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------
    @property
    def queue_size(self) -> int:
        return self._queue.size

    @property
    def pending_count(self) -> int:
        return self._tracker.pending_count

    def is_pending(self, command_id: str) -> bool:
        return self._tracker.is_pending(command_id)

    def status(self) -> Dict[str, Any]:
        queue_size = self._queue.size
        pending = self._tracker.pending_count
        stats = self._stats
        return {
            "queue": {
                "size": queue_size,
                "capacity": self._queue.capacity,
                "utilization": (queue_size / self._queue.capacity) * 100,
            },
            "pending": {
                "count": pending,
                "capacity": self._tracker.capacity,
                "utilization": (pending / self._tracker.capacity) * 100,
            },
            "processing": {
                "isProcessing": self._writing,
                "currentCommand": self._current.payload if self._current else None,
                "loopActive": self.is_running,
            },
            "stats": {
                "commandsSent": stats.sent,
                "commandsCompleted": stats.completed,
                "commandsTimedOut": stats.timed_out,
                "commandsErrored": stats.errored,
                "averageResponseTime": stats.average_response_time,
                "uptime": self._clock() - stats.started_at,
            },
        }

    def detailed_status(self) -> Dict[str, Any]:
        return {
            **self.status(),
            "queueSnapshot": self._queue.snapshot(),
            "pendingSnapshot": self._tracker.snapshot(),
        }


def _failed(command: Command) -> bool:
    future = command.future
    return future.done() and (future.cancelled() or future.exception() is not None)
