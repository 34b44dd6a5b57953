import logging
from logging.handlers import RotatingFileHandler

import pytest

from satlink.logging import WIRE_LOGGER_NAME, configure_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            handler.close()
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
    logging.captureWarnings(False)
    logging.getLogger(WIRE_LOGGER_NAME).setLevel(logging.NOTSET)
    for name in ("aiohttp.access", "paho", "serial"):
        logging.getLogger(name).setLevel(logging.NOTSET)


def test_configure_logging_adds_rotating_file_handler(tmp_path):
    log_path = tmp_path / "logs" / "satlink.log"

    configure_logging("debug", log_path=log_path)
    logging.getLogger("satlink.test").info("hello station")

    root = logging.getLogger()
    assert root.level == logging.DEBUG
    file_handlers = [h for h in root.handlers if isinstance(h, RotatingFileHandler)]
    assert len(file_handlers) == 1
    file_handlers[0].flush()
    assert "| INFO | satlink.test | hello station" in log_path.read_text(encoding="utf-8")


def test_wire_logger_is_quiet_by_default():
    configure_logging("INFO")

    assert logging.getLogger(WIRE_LOGGER_NAME).level == logging.INFO
    assert logging.getLogger("paho").level == logging.WARNING
    assert logging.getLogger("serial").level == logging.WARNING


def test_log_serial_enables_wire_logging():
    configure_logging("WARNING", log_serial=True)

    assert logging.getLogger(WIRE_LOGGER_NAME).isEnabledFor(logging.DEBUG)
    assert logging.getLogger("paho").level == logging.NOTSET
