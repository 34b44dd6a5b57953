"""Logging configuration helpers."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterable, Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

WIRE_LOGGER_NAME = "satlink.session.wire"

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 3

_NOISY_LOGGERS = ("aiohttp.access", "paho", "serial")


def configure_logging(
    level: str = "INFO", *, log_path: Optional[Path] = None, log_serial: bool = False
) -> None:
    """Configure root logging handlers.

    Parameters
    ----------
    level:
        Log level name, e.g. "INFO".
    log_path:
        Optional filesystem path for a rotating file handler. When absent,
        only console logging is configured.
    log_serial:
        When true, every line crossing the device link is logged at DEBUG
        regardless of ``level``, and the serial, MQTT and HTTP libraries keep
        their own verbosity.
    """

    logging.captureWarnings(True)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )

    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUPS,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    wire = logging.getLogger(WIRE_LOGGER_NAME)
    if log_serial:
        wire.setLevel(logging.DEBUG)
        _set_level(_NOISY_LOGGERS, logging.NOTSET)
    else:
        wire.setLevel(logging.INFO)
        _set_level(_NOISY_LOGGERS, logging.WARNING)


def _set_level(names: Iterable[str], level: int) -> None:
    for name in names:
        logging.getLogger(name).setLevel(level)
