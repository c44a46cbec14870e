"""Serial port adapter built on pyserial-asyncio."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import serial
import serial_asyncio
from serial.tools import list_ports

from .. import constants
from ..config import SerialConfig
from ..core.errors import TransportError
from ..core.protocols import (
    ConnectionStatus,
    DataHandler,
    ErrorHandler,
    LifecycleHandler,
)

LOGGER = logging.getLogger(__name__)
TRAFFIC_LOGGER = logging.getLogger(constants.TRAFFIC_LOGGER_NAME)

ConnectionFactory = Callable[..., Awaitable[tuple[asyncio.BaseTransport, asyncio.Protocol]]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class LineProtocol(asyncio.Protocol):
    """Frames the inbound byte stream into newline-terminated lines."""

    def __init__(self, owner: "SerialTransport") -> None:
        self._owner = owner
        self._buffer = bytearray()

    def data_received(self, data: bytes) -> None:
        self._buffer.extend(data)
        while True:
            index = self._buffer.find(b"\n")
            if index < 0:
                break
            raw = bytes(self._buffer[:index])
            del self._buffer[: index + 1]
            line = raw.decode("ascii", errors="replace").rstrip("\r")
            if line.strip():
                self._owner._deliver_line(line)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self._buffer.clear()
        self._owner._connection_lost(self, exc)


class SerialTransport:
    """Owns the serial port and fans inbound lines out to registered handlers."""

    def __init__(
        self,
        config: SerialConfig,
        *,
        connection_factory: Optional[ConnectionFactory] = None,
        log_traffic: bool = False,
    ) -> None:
        self.config = config
        self._connection_factory = (
            connection_factory or serial_asyncio.create_serial_connection
        )
        self._log_traffic = log_traffic

        self._port = config.port
        self._baudrate = config.baudrate
        self._state = ConnectionState.DISCONNECTED
        self._transport: Optional[asyncio.BaseTransport] = None
        self._protocol: Optional[LineProtocol] = None

        self._data_handlers: List[DataHandler] = []
        self._error_handlers: List[ErrorHandler] = []
        self._connect_handlers: List[LifecycleHandler] = []
        self._disconnect_handlers: List[LifecycleHandler] = []

    # ------------------------------------------------------------------
    # Handler registration
    # ------------------------------------------------------------------
    def register_data_handler(self, handler: DataHandler) -> None:
        self._data_handlers.append(handler)

    def register_error_handler(self, handler: ErrorHandler) -> None:
        self._error_handlers.append(handler)

    def register_connect_handler(self, handler: LifecycleHandler) -> None:
        self._connect_handlers.append(handler)

    def register_disconnect_handler(self, handler: LifecycleHandler) -> None:
        self._disconnect_handlers.append(handler)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    def connection_status(self) -> ConnectionStatus:
        return ConnectionStatus(
            connected=self.is_connected, port=self._port, baudrate=self._baudrate
        )

    async def connect(
        self, port: Optional[str] = None, baudrate: Optional[int] = None
    ) -> None:
        """Open the serial port.

        Raises:
            TransportError: If the port cannot be opened.
        """

        if self._state != ConnectionState.DISCONNECTED:
            LOGGER.warning("Serial port %s already %s", self._port, self._state.value)
            return

        self._port = port or self._port
        self._baudrate = baudrate or self._baudrate
        self._state = ConnectionState.CONNECTING

        loop = asyncio.get_running_loop()
        try:
            transport, protocol = await self._connection_factory(
                loop,
                lambda: LineProtocol(self),
                self._port,
                baudrate=self._baudrate,
            )
        except (serial.SerialException, OSError) as exc:
            self._state = ConnectionState.DISCONNECTED
            raise TransportError(
                f"Unable to open {self._port} at {self._baudrate} baud: {exc}"
            ) from exc

        self._transport = transport
        self._protocol = protocol  # type: ignore[assignment]
        self._state = ConnectionState.CONNECTED
        LOGGER.info("Connected to %s at %d baud", self._port, self._baudrate)

        if self.config.startup_delay_seconds > 0:
            await asyncio.sleep(self.config.startup_delay_seconds)

        for handler in list(self._connect_handlers):
            try:
                handler()
            except Exception:
                LOGGER.exception("Serial connect handler failed")

    async def disconnect(self) -> None:
        """Close the port and notify disconnect handlers."""

        transport = self._transport
        if transport is not None:
            with contextlib.suppress(serial.SerialException, OSError):
                transport.close()
        self._mark_disconnected(None)

    async def reconnect(
        self, port: Optional[str] = None, baudrate: Optional[int] = None
    ) -> None:
        LOGGER.info("Reconnecting serial port %s", port or self._port)
        await self.disconnect()
        if self.config.reconnect_settle_seconds > 0:
            await asyncio.sleep(self.config.reconnect_settle_seconds)
        await self.connect(port, baudrate)

    def _connection_lost(
        self, protocol: LineProtocol, exc: Optional[Exception]
    ) -> None:
        if protocol is not self._protocol:
            return
        if exc is not None:
            LOGGER.error("Serial connection lost: %s", exc)
        self._mark_disconnected(exc)

    def _mark_disconnected(self, exc: Optional[BaseException]) -> None:
        if self._state == ConnectionState.DISCONNECTED:
            return

        self._state = ConnectionState.DISCONNECTED
        self._transport = None
        self._protocol = None

        if exc is not None:
            self._notify_error(exc)

        for handler in list(self._disconnect_handlers):
            try:
                handler()
            except Exception:
                LOGGER.exception("Serial disconnect handler failed")
        LOGGER.info("Disconnected from %s", self._port)

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------
    async def write(self, data: bytes) -> None:
        transport = self._transport
        if (
            self._state != ConnectionState.CONNECTED
            or transport is None
            or transport.is_closing()
        ):
            raise TransportError(f"Serial port {self._port} is not open")

        if self._log_traffic:
            TRAFFIC_LOGGER.debug("%s TX %r", self._port, data)
        try:
            transport.write(data)  # type: ignore[attr-defined]
        except (serial.SerialException, OSError) as exc:
            self._notify_error(exc)
            raise TransportError(f"Write to {self._port} failed: {exc}") from exc

    def _deliver_line(self, line: str) -> None:
        if self._log_traffic:
            TRAFFIC_LOGGER.debug("%s RX %r", self._port, line)
        for handler in list(self._data_handlers):
            try:
                handler(line)
            except Exception:
                LOGGER.exception("Serial data handler failed")

    def _notify_error(self, exc: BaseException) -> None:
        for handler in list(self._error_handlers):
            try:
                handler(exc)
            except Exception:
                LOGGER.exception("Serial error handler failed")


def list_serial_ports() -> List[Dict[str, Any]]:
    """Enumerate serial ports visible to the host."""

    return [
        {
            "device": info.device,
            "description": info.description,
            "hwid": info.hwid,
        }
        for info in sorted(list_ports.comports(), key=lambda item: item.device)
    ]
