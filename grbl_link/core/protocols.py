"""Protocol definitions for the serial transport and its callbacks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Protocol


DataHandler = Callable[[str], None]
ErrorHandler = Callable[[BaseException], None]
LifecycleHandler = Callable[[], None]


@dataclass(frozen=True, slots=True)
class ConnectionStatus:
    connected: bool
    port: Optional[str] = None
    baudrate: Optional[int] = None


class Transport(Protocol):
    """Minimal contract for the byte pipe underneath the dispatcher.

    The transport frames inbound bytes into lines and delivers them in
    arrival order. Handlers are invoked on the event loop thread.
    """

    async def write(self, data: bytes) -> None:
        """Write raw bytes to the controller.

        Raises:
            TransportError: If the port is closed or the write fails.
        """
        ...

    def connection_status(self) -> ConnectionStatus:
        """Report whether the port is currently open."""
        ...

    async def connect(
        self, port: Optional[str] = None, baudrate: Optional[int] = None
    ) -> None:
        """Open the port.

        Raises:
            TransportError: If the port cannot be opened.
        """
        ...

    async def disconnect(self) -> None:
        """Close the port and notify disconnect handlers."""
        ...

    async def reconnect(
        self, port: Optional[str] = None, baudrate: Optional[int] = None
    ) -> None:
        """Close and reopen the port, defaulting to the last known settings."""
        ...

    def register_data_handler(self, handler: DataHandler) -> None: ...

    def register_error_handler(self, handler: ErrorHandler) -> None: ...

    def register_connect_handler(self, handler: LifecycleHandler) -> None: ...

    def register_disconnect_handler(self, handler: LifecycleHandler) -> None: ...
