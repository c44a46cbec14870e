import asyncio
from typing import Callable, Iterable, Optional

import pytest

from grbl_link.core import ConnectionStatus, TransportError

ReplyFn = Callable[[str], Optional[Iterable[str]]]


def reply_ok(line: str) -> Optional[Iterable[str]]:
    if line == "\x18":
        return ["Grbl 1.1h ['$' for help]"]
    return ["ok"]


class FakeTransport:
    """In-memory stand-in for the serial port.

    Records every write and, when ``reply`` is set, answers each written line
    after ``reply_delay`` seconds with the lines the callback returns. A
    ``write_gate`` event holds every write until it is set.
    """

    def __init__(
        self,
        *,
        connected: bool = True,
        reply: Optional[ReplyFn] = None,
        reply_delay: float = 0.0,
    ) -> None:
        self.connected = connected
        self.reply = reply
        self.reply_delay = reply_delay
        self.writes: list[bytes] = []
        self.write_error: Optional[BaseException] = None
        self.write_gate: Optional[asyncio.Event] = None
        self.reconnect_error: Optional[BaseException] = None
        self.reconnect_calls = 0
        self._data_handlers: list = []
        self._error_handlers: list = []
        self._connect_handlers: list = []
        self._disconnect_handlers: list = []

    @property
    def lines(self) -> list[str]:
        return [data.decode("ascii").rstrip("\n") for data in self.writes]

    def register_data_handler(self, handler) -> None:
        self._data_handlers.append(handler)

    def register_error_handler(self, handler) -> None:
        self._error_handlers.append(handler)

    def register_connect_handler(self, handler) -> None:
        self._connect_handlers.append(handler)

    def register_disconnect_handler(self, handler) -> None:
        self._disconnect_handlers.append(handler)

    def connection_status(self) -> ConnectionStatus:
        return ConnectionStatus(self.connected, "/dev/fake", 115200)

    async def write(self, data: bytes) -> None:
        if self.write_gate is not None:
            await self.write_gate.wait()
        if not self.connected:
            raise TransportError("Serial port /dev/fake is not open")
        if self.write_error is not None:
            raise self.write_error
        self.writes.append(data)
        if self.reply is None:
            return
        replies = self.reply(data.decode("ascii").rstrip("\n"))
        if not replies:
            return
        loop = asyncio.get_running_loop()
        loop.call_later(self.reply_delay, self.feed_many, list(replies))

    def feed(self, line: str) -> None:
        for handler in list(self._data_handlers):
            handler(line)

    def feed_many(self, lines: Iterable[str]) -> None:
        for line in lines:
            self.feed(line)

    def fail(self, exc: BaseException) -> None:
        for handler in list(self._error_handlers):
            handler(exc)

    def drop(self) -> None:
        """Simulate the port vanishing underneath the application."""

        if not self.connected:
            return
        self.connected = False
        for handler in list(self._disconnect_handlers):
            handler()

    async def connect(self, port=None, baudrate=None) -> None:
        self.connected = True
        for handler in list(self._connect_handlers):
            handler()

    async def disconnect(self) -> None:
        self.drop()

    async def reconnect(self, port=None, baudrate=None) -> None:
        self.reconnect_calls += 1
        if self.reconnect_error is not None:
            raise self.reconnect_error
        await self.disconnect()
        await self.connect(port, baudrate)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport(reply=reply_ok)


@pytest.fixture
def silent_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def make_transport():
    def _create(**kwargs) -> FakeTransport:
        kwargs.setdefault("reply", reply_ok)
        return FakeTransport(**kwargs)

    return _create
