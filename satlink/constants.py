"""Constants used across the satlink package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "satlink"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME

DEFAULT_LOG_PATH = Path.home() / ".local" / "state" / APP_NAME / f"{APP_NAME}.log"

DEFAULT_SERIAL_PORT = "/dev/ttyACM0"
DEFAULT_BAUDRATE = 9600
MAX_LINE_BYTES = 64 * 1024

DEFAULT_ACK_TIMEOUT_SECONDS = 2.0
MAX_SEQUENCE_SECONDS = 300

# Reference position reported when the frame carries no GPS fields.
DEFAULT_LATITUDE = 39.9334
DEFAULT_LONGITUDE = 32.8597

DEFAULT_BROKER_HOST = "localhost"
DEFAULT_BROKER_PORT = 1883
DEFAULT_TOPIC_PREFIX = "satlink/groundstation"
