"""Command-line interface for grbl-link."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from . import __version__, constants
from .adapters import list_serial_ports
from .app import GrblLinkApp, send_once
from .config import load_config
from .core import DispatchError, TransportError
from .logging import configure_logging

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=constants.APP_NAME,
        description="Command dispatch and connection health for GRBL controllers",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser(
        "start", help="Connect and run the dispatcher with health monitoring"
    )

    send_parser = subparsers.add_parser(
        "send", help="Send one or more lines and print the replies"
    )
    send_parser.add_argument("lines", nargs="+", metavar="LINE")
    send_parser.add_argument("--port", help="Serial port override")
    send_parser.add_argument("--baudrate", type=int, help="Baud rate override")

    subparsers.add_parser("ports", help="List serial ports visible to this host")

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)

    if args.command == "start":
        GrblLinkApp.start(config)
        return 0

    if args.command == "send":
        if args.port:
            config.serial.port = args.port
        if args.baudrate:
            config.serial.baudrate = args.baudrate
        configure_logging(
            config.logging.level,
            log_serial=config.logging.log_serial,
            traffic_path=config.logging.traffic_path,
        )
        try:
            responses = asyncio.run(send_once(config, args.lines))
        except (TransportError, DispatchError) as exc:
            LOGGER.error("Send failed: %s", exc)
            return 1
        exit_code = 0
        for line, response in zip(args.lines, responses):
            print(f"{line.strip()} -> {response.raw}")
            if not response.ok:
                exit_code = 1
        return exit_code

    if args.command == "ports":
        ports = list_serial_ports()
        if not ports:
            print("No serial ports found")
            return 0
        for info in ports:
            print(f"{info['device']}\t{info['description']}\t{info['hwid']}")
        return 0

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                print(f"{key} = {value}")
            print()
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
