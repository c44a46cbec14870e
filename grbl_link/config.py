"""Configuration loader for grbl-link."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import constants


@dataclass(slots=True)
class SerialConfig:
    port: str = constants.DEFAULT_SERIAL_PORT
    baudrate: int = constants.DEFAULT_BAUDRATE
    reconnect_settle_seconds: float = 0.5
    startup_delay_seconds: float = 0.0  # GRBL resets on open and prints its banner


@dataclass(slots=True)
class DispatchConfig:
    command_timeout: float = 5.0
    max_queue_size: int = 100
    max_pending_commands: int = 50  # in-flight budget
    max_queue_age: float = 0.0  # 0 disables janitorial expiry
    event_buffer_size: int = 256


@dataclass(slots=True)
class HealthConfig:
    health_check_interval: float = 5.0
    ping_command: str = constants.DEFAULT_PING_COMMAND
    ping_timeout: float = 2.0
    max_consecutive_failures: int = 3
    recovery_attempts: int = 3
    recovery_delay: float = 1.0
    warning_latency_threshold: float = 1.0
    critical_latency_threshold: float = 3.0
    data_stale_threshold: float = 10.0
    enable_auto_recovery: bool = True
    latency_window_size: int = 100
    soft_reset_settle_seconds: float = 0.1
    event_buffer_size: int = 256


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_serial: bool = False
    traffic_path: Optional[Path] = None


@dataclass(slots=True)
class EndpointConfig:
    enabled: bool = False
    host: str = constants.DEFAULT_ENDPOINT_HOST
    port: int = constants.DEFAULT_ENDPOINT_PORT


@dataclass(slots=True)
class LinkConfig:
    serial: SerialConfig
    dispatch: DispatchConfig
    health: HealthConfig
    logging: LoggingConfig
    endpoint: EndpointConfig
    raw: ConfigParser
    path: Path


def load_config(path: Optional[Path] = None) -> LinkConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "serial": {
                "port": constants.DEFAULT_SERIAL_PORT,
                "baudrate": str(constants.DEFAULT_BAUDRATE),
                "reconnect_settle_seconds": "0.5",
                "startup_delay_seconds": "0.0",
            },
            "dispatch": {
                "command_timeout": "5.0",
                "max_queue_size": "100",
                "max_pending_commands": "50",
                "max_queue_age": "0",
                "event_buffer_size": "256",
            },
            "health": {
                "health_check_interval": "5.0",
                "ping_command": constants.DEFAULT_PING_COMMAND,
                "ping_timeout": "2.0",
                "max_consecutive_failures": "3",
                "recovery_attempts": "3",
                "recovery_delay": "1.0",
                "warning_latency_threshold": "1.0",
                "critical_latency_threshold": "3.0",
                "data_stale_threshold": "10.0",
                "enable_auto_recovery": "true",
                "latency_window_size": "100",
                "soft_reset_settle_seconds": "0.1",
            },
            "logging": {
                "level": "INFO",
                "path": str(constants.DEFAULT_LOG_PATH),
                "log_serial": "false",
                "traffic_path": "",
            },
            "endpoint": {
                "enabled": "false",
                "host": constants.DEFAULT_ENDPOINT_HOST,
                "port": str(constants.DEFAULT_ENDPOINT_PORT),
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    serial_defaults = SerialConfig()
    serial = SerialConfig(
        port=parser.get("serial", "port"),
        baudrate=max(
            1,
            parser.getint("serial", "baudrate", fallback=serial_defaults.baudrate),
        ),
        reconnect_settle_seconds=max(
            0.0,
            parser.getfloat(
                "serial",
                "reconnect_settle_seconds",
                fallback=serial_defaults.reconnect_settle_seconds,
            ),
        ),
        startup_delay_seconds=max(
            0.0,
            parser.getfloat(
                "serial",
                "startup_delay_seconds",
                fallback=serial_defaults.startup_delay_seconds,
            ),
        ),
    )

    dispatch_defaults = DispatchConfig()
    dispatch = DispatchConfig(
        command_timeout=max(
            0.0,
            parser.getfloat(
                "dispatch", "command_timeout", fallback=dispatch_defaults.command_timeout
            ),
        ),
        max_queue_size=max(
            1,
            parser.getint(
                "dispatch", "max_queue_size", fallback=dispatch_defaults.max_queue_size
            ),
        ),
        max_pending_commands=max(
            1,
            parser.getint(
                "dispatch",
                "max_pending_commands",
                fallback=dispatch_defaults.max_pending_commands,
            ),
        ),
        max_queue_age=max(
            0.0,
            parser.getfloat(
                "dispatch", "max_queue_age", fallback=dispatch_defaults.max_queue_age
            ),
        ),
        event_buffer_size=max(
            1,
            parser.getint(
                "dispatch",
                "event_buffer_size",
                fallback=dispatch_defaults.event_buffer_size,
            ),
        ),
    )

    health_defaults = HealthConfig()
    warning_latency = max(
        0.0,
        parser.getfloat(
            "health",
            "warning_latency_threshold",
            fallback=health_defaults.warning_latency_threshold,
        ),
    )
    health = HealthConfig(
        health_check_interval=max(
            0.05,
            parser.getfloat(
                "health",
                "health_check_interval",
                fallback=health_defaults.health_check_interval,
            ),
        ),
        ping_command=parser.get(
            "health", "ping_command", fallback=health_defaults.ping_command
        ).strip()
        or health_defaults.ping_command,
        ping_timeout=max(
            0.01,
            parser.getfloat(
                "health", "ping_timeout", fallback=health_defaults.ping_timeout
            ),
        ),
        max_consecutive_failures=max(
            1,
            parser.getint(
                "health",
                "max_consecutive_failures",
                fallback=health_defaults.max_consecutive_failures,
            ),
        ),
        recovery_attempts=max(
            1,
            parser.getint(
                "health",
                "recovery_attempts",
                fallback=health_defaults.recovery_attempts,
            ),
        ),
        recovery_delay=max(
            0.0,
            parser.getfloat(
                "health", "recovery_delay", fallback=health_defaults.recovery_delay
            ),
        ),
        warning_latency_threshold=warning_latency,
        critical_latency_threshold=max(
            warning_latency,
            parser.getfloat(
                "health",
                "critical_latency_threshold",
                fallback=health_defaults.critical_latency_threshold,
            ),
        ),
        data_stale_threshold=max(
            0.0,
            parser.getfloat(
                "health",
                "data_stale_threshold",
                fallback=health_defaults.data_stale_threshold,
            ),
        ),
        enable_auto_recovery=parser.getboolean(
            "health",
            "enable_auto_recovery",
            fallback=health_defaults.enable_auto_recovery,
        ),
        latency_window_size=max(
            1,
            parser.getint(
                "health",
                "latency_window_size",
                fallback=health_defaults.latency_window_size,
            ),
        ),
        soft_reset_settle_seconds=max(
            0.0,
            parser.getfloat(
                "health",
                "soft_reset_settle_seconds",
                fallback=health_defaults.soft_reset_settle_seconds,
            ),
        ),
        event_buffer_size=max(
            1,
            parser.getint(
                "health",
                "event_buffer_size",
                fallback=dispatch.event_buffer_size,
            ),
        ),
    )

    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(
            parser.get("logging", "path", fallback=str(constants.DEFAULT_LOG_PATH))
        ).expanduser(),
        log_serial=parser.getboolean("logging", "log_serial", fallback=False),
        traffic_path=_optional_path(
            parser.get("logging", "traffic_path", fallback="")
        ),
    )

    endpoint = EndpointConfig(
        enabled=parser.getboolean("endpoint", "enabled", fallback=False),
        host=parser.get("endpoint", "host", fallback=constants.DEFAULT_ENDPOINT_HOST),
        port=parser.getint(
            "endpoint", "port", fallback=constants.DEFAULT_ENDPOINT_PORT
        ),
    )

    return LinkConfig(
        serial=serial,
        dispatch=dispatch,
        health=health,
        logging=logging_config,
        endpoint=endpoint,
        raw=parser,
        path=config_path,
    )


def save_config(config: LinkConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)


def _optional_path(value: str) -> Optional[Path]:
    value = value.strip()
    return Path(value).expanduser() if value else None
