"""Main application entry-point for grbl-link."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Dict, Iterable, List, Optional

from .adapters import SerialTransport
from .config import LinkConfig, load_config
from .core import (
    Event,
    EventSeverity,
    EventSubscription,
    EventType,
    Response,
    Transport,
    TransportError,
)
from .dispatcher import Dispatcher
from .health import HealthReporter, HealthServer
from .logging import configure_logging
from .monitor import HealthMonitor

LOGGER = logging.getLogger(__name__)

_SEVERITY_LEVELS = {
    EventSeverity.DEBUG: logging.DEBUG,
    EventSeverity.INFO: logging.INFO,
    EventSeverity.WARNING: logging.WARNING,
    EventSeverity.ERROR: logging.ERROR,
}


class GrblLinkApp:
    """Coordinates the serial transport, dispatcher and health monitor.

    The transport can be injected for testing; by default a
    :class:`SerialTransport` is built from the ``[serial]`` section.
    """

    def __init__(
        self,
        config: Optional[LinkConfig] = None,
        *,
        transport: Optional[Transport] = None,
    ) -> None:
        self._config = config or load_config()
        self._transport: Transport = transport or SerialTransport(
            self._config.serial, log_traffic=self._config.logging.log_serial
        )
        self.dispatcher = Dispatcher(self._transport, self._config.dispatch)
        self.monitor = HealthMonitor(
            self.dispatcher, self._transport, self._config.health
        )
        self._health = HealthReporter()
        self._health.attach_link_status(self._link_status)
        self._health_server: Optional[HealthServer] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._pump_tasks: List[asyncio.Task[None]] = []
        self._subscriptions: List[EventSubscription] = []

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def health(self) -> HealthReporter:
        return self._health

    async def run(self) -> None:
        """Run until :meth:`request_shutdown` is called or the task is cancelled."""

        self._shutdown_event = asyncio.Event()
        LOGGER.info("grbl-link starting with config: %s", self._config.path)
        await self._start_services()

        try:
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            LOGGER.info("grbl-link received shutdown signal")
            raise
        finally:
            await self._stop_services()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    @classmethod
    def start(cls, config: Optional[LinkConfig] = None) -> None:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_serial=instance._config.logging.log_serial,
            traffic_path=instance._config.logging.traffic_path,
        )
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("grbl-link received shutdown signal")

    async def send_lines(self, lines: Iterable[str]) -> List[Response]:
        """Connect, send ``lines`` one after another and disconnect.

        Raises:
            TransportError: If the serial port cannot be opened.
            DispatchError: If a line is not acknowledged.
        """

        await self._connect()
        self.dispatcher.start()
        responses: List[Response] = []
        try:
            for line in lines:
                responses.append(await self.dispatcher.send(line))
        finally:
            await self.dispatcher.stop()
            await self._disconnect()
        return responses

    # ------------------------------------------------------------------
    # Service lifecycle
    # ------------------------------------------------------------------
    async def _start_services(self) -> None:
        await self._health.update("serial", False, "connecting")
        await self._health.update("dispatcher", False, "initialising")

        self._start_event_pumps()

        try:
            await self._connect()
        except TransportError as exc:
            LOGGER.error("Serial connection failed: %s", exc)
            await self._health.update("serial", False, str(exc))
        else:
            await self._health.update("serial", True, None)

        self.dispatcher.start()
        await self._health.update("dispatcher", True, None)
        self.monitor.start()

        await self._start_health_server()

    async def _stop_services(self) -> None:
        await self.monitor.stop()
        await self.dispatcher.stop()
        await self._health.update("dispatcher", False, "shutdown")
        await self._disconnect()
        await self._health.update("serial", False, "shutdown")
        await self._stop_health_server()
        await self._stop_event_pumps()

        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def _connect(self) -> None:
        if self._transport.connection_status().connected:
            return
        await self._transport.connect()

    async def _disconnect(self) -> None:
        await self._transport.disconnect()

    async def _start_health_server(self) -> None:
        endpoint = self._config.endpoint
        if not endpoint.enabled or endpoint.port <= 0:
            return

        server = HealthServer(
            self._health,
            endpoint.host,
            endpoint.port,
            status_provider=self.status,
        )
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start health endpoint: %s", exc)
            await self._health.update("health-endpoint", False, str(exc))
        else:
            self._health_server = server
            await self._health.update("health-endpoint", True, None)

    async def _stop_health_server(self) -> None:
        if self._health_server is None:
            return
        await self._health_server.stop()
        self._health_server = None

    def status(self) -> Dict[str, Any]:
        """Dispatcher status with snapshots, plus the monitor report while monitoring."""

        payload: Dict[str, Any] = {"dispatcher": self.dispatcher.detailed_status()}
        if self.monitor.is_monitoring:
            payload["health"] = self.monitor.report()
        return payload

    def _link_status(self) -> Optional[Dict[str, Any]]:
        if not self.monitor.is_monitoring:
            return None
        return self.monitor.health_status()

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------
    def _start_event_pumps(self) -> None:
        for name, bus in (
            ("dispatcher", self.dispatcher.events),
            ("health", self.monitor.events),
        ):
            subscription = bus.subscribe()
            self._subscriptions.append(subscription)
            self._pump_tasks.append(
                asyncio.create_task(
                    self._pump_events(name, subscription), name=f"grbl-{name}-events"
                )
            )

    async def _stop_event_pumps(self) -> None:
        for subscription in self._subscriptions:
            subscription.close()
        for task in self._pump_tasks:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._subscriptions.clear()
        self._pump_tasks.clear()

    async def _pump_events(self, source: str, subscription: EventSubscription) -> None:
        async for event in subscription:
            try:
                self._log_event(source, event)
                await self._apply_event(event)
            except Exception:
                LOGGER.exception("Failed to handle %s event %s", source, event.type.value)

    def _log_event(self, source: str, event: Event) -> None:
        level = _SEVERITY_LEVELS.get(event.severity, logging.INFO)
        LOGGER.log(level, "[%s] %s %s", source, event.type.value, event.data)

    async def _apply_event(self, event: Event) -> None:
        if event.type == EventType.HEALTH_DEGRADED:
            await self._health.update(
                "link",
                False,
                f"consecutive_failures={event.data.get('consecutiveFailures')}",
            )
        elif event.type == EventType.HEALTH_RESTORED:
            await self._health.update("link", True, None)
        elif event.type == EventType.RECOVERY_FAILED:
            await self._health.update(
                "link",
                False,
                f"recovery failed after {event.data.get('attempts')} attempt(s)",
            )
        elif event.type in (EventType.DISCONNECT, EventType.CONNECTION_LOST):
            await self._health.update("serial", False, "disconnected")
        elif event.type == EventType.CONNECTION_RESTORED:
            await self._health.update("serial", True, None)


async def send_once(config: LinkConfig, lines: Iterable[str]) -> List[Response]:
    """Send ``lines`` over a fresh connection and return the replies."""

    app = GrblLinkApp(config)
    return await app.send_lines(lines)


__all__ = ["GrblLinkApp", "send_once"]
