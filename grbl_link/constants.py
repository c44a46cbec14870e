"""Constants used across the grbl-link package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "grbl-link"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME

DEFAULT_LOG_PATH = Path.home() / ".local" / "state" / APP_NAME / f"{APP_NAME}.log"

DEFAULT_SERIAL_PORT = "/dev/ttyUSB0"
DEFAULT_BAUDRATE = 115200

DEFAULT_ENDPOINT_HOST = "127.0.0.1"
DEFAULT_ENDPOINT_PORT = 8765

# GRBL wire protocol
LINE_TERMINATOR = "\n"
SOFT_RESET = b"\x18"
DEFAULT_PING_COMMAND = "$G"

# Raw TX/RX lines go to their own logger so they can be routed separately
TRAFFIC_LOGGER_NAME = "grbl_link.traffic"
