"""Configuration loader for satlink."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

from . import constants
from .codec import FilterProtocol
from .scheduler import (
    DEFAULT_AUTO_INTERVAL_SECONDS,
    DEFAULT_AUTO_SEQUENCE,
    SequenceDispatch,
)

TRANSPORTS = ("serial", "simulator")


@dataclass(slots=True)
class LinkConfig:
    transport: str = "serial"
    port: str = constants.DEFAULT_SERIAL_PORT
    baudrate: int = constants.DEFAULT_BAUDRATE


@dataclass(slots=True)
class FilterConfig:
    protocol: FilterProtocol = FilterProtocol.SPECTRAL
    ack_timeout_seconds: float = constants.DEFAULT_ACK_TIMEOUT_SECONDS
    max_sequence_seconds: int = constants.MAX_SEQUENCE_SECONDS
    sequence_dispatch: SequenceDispatch = SequenceDispatch.MIRRORED
    auto_interval_seconds: float = DEFAULT_AUTO_INTERVAL_SECONDS
    auto_sequence: List[str] = field(
        default_factory=lambda: list(DEFAULT_AUTO_SEQUENCE)
    )


@dataclass(slots=True)
class TelemetryConfig:
    default_latitude: float = constants.DEFAULT_LATITUDE
    default_longitude: float = constants.DEFAULT_LONGITUDE
    position_jitter: float = 0.0


@dataclass(slots=True)
class SimulatorConfig:
    rate_hz: float = 1.0
    seed: Optional[int] = None
    ack_delay_seconds: float = 0.2


@dataclass(slots=True)
class MqttConfig:
    enabled: bool = False
    broker_host: str = constants.DEFAULT_BROKER_HOST
    broker_port: int = constants.DEFAULT_BROKER_PORT
    topic_prefix: str = constants.DEFAULT_TOPIC_PREFIX
    username: Optional[str] = None
    password: Optional[str] = None
    client_id: str = constants.APP_NAME


@dataclass(slots=True)
class HealthConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 0


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_serial: bool = False


@dataclass(slots=True)
class SatlinkConfig:
    link: LinkConfig
    filter: FilterConfig
    telemetry: TelemetryConfig
    simulator: SimulatorConfig
    mqtt: MqttConfig
    health: HealthConfig
    logging: LoggingConfig
    raw: ConfigParser
    path: Path


def _parse_list(value: str, *, default: Iterable[str]) -> List[str]:
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_choice(value: str, choices: Iterable[str], option: str) -> str:
    normalized = value.strip().lower()
    allowed = list(choices)
    if normalized not in allowed:
        raise ValueError(
            f"Invalid {option} {value!r}; expected one of {', '.join(allowed)}"
        )
    return normalized


def load_config(path: Optional[Path] = None) -> SatlinkConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "link": {
                "transport": "serial",
                "port": constants.DEFAULT_SERIAL_PORT,
                "baudrate": str(constants.DEFAULT_BAUDRATE),
            },
            "filter": {
                "protocol": FilterProtocol.SPECTRAL.value,
                "ack_timeout_seconds": str(constants.DEFAULT_ACK_TIMEOUT_SECONDS),
                "max_sequence_seconds": str(constants.MAX_SEQUENCE_SECONDS),
                "sequence_dispatch": SequenceDispatch.MIRRORED.value,
                "auto_interval_seconds": str(DEFAULT_AUTO_INTERVAL_SECONDS),
                "auto_sequence": ",".join(DEFAULT_AUTO_SEQUENCE),
            },
            "telemetry": {
                "default_latitude": str(constants.DEFAULT_LATITUDE),
                "default_longitude": str(constants.DEFAULT_LONGITUDE),
                "position_jitter": "0.0",
            },
            "simulator": {
                "rate_hz": "1.0",
                "ack_delay_seconds": "0.2",
            },
            "mqtt": {
                "enabled": "false",
                "broker_host": constants.DEFAULT_BROKER_HOST,
                "broker_port": str(constants.DEFAULT_BROKER_PORT),
                "topic_prefix": constants.DEFAULT_TOPIC_PREFIX,
                "client_id": constants.APP_NAME,
            },
            "health": {
                "enabled": "false",
                "host": "127.0.0.1",
                "port": "0",
            },
            "logging": {
                "level": "INFO",
                "path": str(constants.DEFAULT_LOG_PATH),
                "log_serial": "false",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    link = LinkConfig(
        transport=_parse_choice(
            parser.get("link", "transport"), TRANSPORTS, "link transport"
        ),
        port=parser.get("link", "port"),
        baudrate=parser.getint(
            "link", "baudrate", fallback=constants.DEFAULT_BAUDRATE
        ),
    )

    filter_config = FilterConfig(
        protocol=FilterProtocol(
            _parse_choice(
                parser.get("filter", "protocol"),
                (item.value for item in FilterProtocol),
                "filter protocol",
            )
        ),
        ack_timeout_seconds=max(
            0.1,
            parser.getfloat(
                "filter",
                "ack_timeout_seconds",
                fallback=constants.DEFAULT_ACK_TIMEOUT_SECONDS,
            ),
        ),
        max_sequence_seconds=max(
            1,
            parser.getint(
                "filter",
                "max_sequence_seconds",
                fallback=constants.MAX_SEQUENCE_SECONDS,
            ),
        ),
        sequence_dispatch=SequenceDispatch(
            _parse_choice(
                parser.get("filter", "sequence_dispatch"),
                (item.value for item in SequenceDispatch),
                "sequence dispatch",
            )
        ),
        auto_interval_seconds=max(
            0.1,
            parser.getfloat(
                "filter",
                "auto_interval_seconds",
                fallback=DEFAULT_AUTO_INTERVAL_SECONDS,
            ),
        ),
        auto_sequence=_parse_list(
            parser.get("filter", "auto_sequence", fallback=""),
            default=DEFAULT_AUTO_SEQUENCE,
        ),
    )

    telemetry = TelemetryConfig(
        default_latitude=parser.getfloat(
            "telemetry", "default_latitude", fallback=constants.DEFAULT_LATITUDE
        ),
        default_longitude=parser.getfloat(
            "telemetry", "default_longitude", fallback=constants.DEFAULT_LONGITUDE
        ),
        position_jitter=max(
            0.0, parser.getfloat("telemetry", "position_jitter", fallback=0.0)
        ),
    )

    seed_value = parser.get("simulator", "seed", fallback="").strip()
    simulator = SimulatorConfig(
        rate_hz=max(0.1, parser.getfloat("simulator", "rate_hz", fallback=1.0)),
        seed=int(seed_value) if seed_value else None,
        ack_delay_seconds=max(
            0.0, parser.getfloat("simulator", "ack_delay_seconds", fallback=0.2)
        ),
    )

    broker_host_value = parser.get("mqtt", "broker_host")
    broker_port_value = parser.getint(
        "mqtt", "broker_port", fallback=constants.DEFAULT_BROKER_PORT
    )

    if ":" in broker_host_value:
        host_part, port_part = broker_host_value.rsplit(":", 1)
        try:
            parsed_port = int(port_part)
        except ValueError:
            pass
        else:
            broker_host_value = host_part
            broker_port_value = parsed_port
            parser.set("mqtt", "broker_host", host_part)
            parser.set("mqtt", "broker_port", str(parsed_port))

    mqtt = MqttConfig(
        enabled=parser.getboolean("mqtt", "enabled", fallback=False),
        broker_host=broker_host_value,
        broker_port=broker_port_value,
        topic_prefix=parser.get("mqtt", "topic_prefix").strip("/"),
        username=parser.get("mqtt", "username", fallback=None),
        password=parser.get("mqtt", "password", fallback=None),
        client_id=parser.get("mqtt", "client_id", fallback=constants.APP_NAME),
    )

    health = HealthConfig(
        enabled=parser.getboolean("health", "enabled", fallback=False),
        host=parser.get("health", "host", fallback="127.0.0.1"),
        port=parser.getint("health", "port", fallback=0),
    )

    logging_path = parser.get("logging", "path", fallback="").strip()
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(logging_path).expanduser() if logging_path else None,
        log_serial=parser.getboolean("logging", "log_serial", fallback=False),
    )

    return SatlinkConfig(
        link=link,
        filter=filter_config,
        telemetry=telemetry,
        simulator=simulator,
        mqtt=mqtt,
        health=health,
        logging=logging_config,
        raw=parser,
        path=config_path,
    )


def save_config(config: SatlinkConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)
