"""Adapter modules for external integrations."""

from .serial_port import (
    ConnectionState,
    LineProtocol,
    SerialTransport,
    list_serial_ports,
)

__all__ = [
    "ConnectionState",
    "LineProtocol",
    "SerialTransport",
    "list_serial_ports",
]
