"""Logging configuration helpers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from . import constants

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
TRAFFIC_FORMAT = "%(asctime)s | %(message)s"


def configure_logging(
    level: str = "INFO",
    *,
    log_path: Optional[Path] = None,
    log_serial: bool = False,
    traffic_path: Optional[Path] = None,
) -> None:
    """Configure root logging handlers and the serial traffic channel.

    Parameters
    ----------
    level:
        Log level name, e.g. "INFO".
    log_path:
        Optional filesystem path for a file handler. When absent, only console logging is configured.
    log_serial:
        When true, every line written to or read from the controller is logged
        on ``grbl_link.traffic`` at DEBUG, and pyserial/aiohttp keep the requested level.
    traffic_path:
        Optional file that receives the traffic channel on its own instead of the main log.
    """

    logging.captureWarnings(True)

    for handler in list(logging.getLogger().handlers):
        logging.getLogger().removeHandler(handler)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )

    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(file_handler)

    _configure_traffic(log_serial, traffic_path)

    if not log_serial:
        logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
        logging.getLogger("serial").setLevel(logging.WARNING)
        logging.getLogger("serial_asyncio").setLevel(logging.WARNING)


def _configure_traffic(enabled: bool, traffic_path: Optional[Path]) -> None:
    traffic = logging.getLogger(constants.TRAFFIC_LOGGER_NAME)
    for handler in list(traffic.handlers):
        traffic.removeHandler(handler)
        handler.close()
    traffic.propagate = True

    if not enabled:
        traffic.setLevel(logging.WARNING)
        return

    traffic.setLevel(logging.DEBUG)
    if traffic_path:
        traffic_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(traffic_path)
        handler.setFormatter(logging.Formatter(TRAFFIC_FORMAT))
        traffic.addHandler(handler)
        traffic.propagate = False
