"""pyserial transport bridged into asyncio."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import List, Optional, Union

import serial
from serial.tools import list_ports

from ..core.protocols import TransportError

LOGGER = logging.getLogger(__name__)

_READ_TIMEOUT_SECONDS = 0.1
_CHUNK_SIZE = 4096


@dataclass(frozen=True, slots=True)
class SerialPortInfo:
    device: str
    description: str
    hwid: str

    def as_dict(self) -> dict[str, str]:
        return {
            "device": self.device,
            "description": self.description,
            "hwid": self.hwid,
        }


def list_serial_ports() -> List[SerialPortInfo]:
    """Return the serial ports visible to the host, sorted by device name."""

    ports = [
        SerialPortInfo(
            device=port.device,
            description=port.description or "",
            hwid=port.hwid or "",
        )
        for port in list_ports.comports()
    ]
    return sorted(ports, key=lambda item: item.device)


class SerialTransport:
    """``Transport`` over a real serial port.

    pyserial blocks, so a daemon thread polls the port and hands chunks to the
    event loop through an ``asyncio.Queue``. Writes run in the default
    executor.
    """

    def __init__(self, *, read_timeout: float = _READ_TIMEOUT_SECONDS) -> None:
        self._read_timeout = read_timeout
        self._serial: Optional[serial.Serial] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue[Union[bytes, Exception]]] = None
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    async def open(self, port: str, baudrate: int) -> None:
        if self.is_open:
            raise TransportError(f"Serial port {port} is already open")

        self._loop = asyncio.get_running_loop()
        try:
            handle = await self._loop.run_in_executor(
                None,
                lambda: serial.Serial(
                    port=port, baudrate=baudrate, timeout=self._read_timeout
                ),
            )
        except (serial.SerialException, ValueError, OSError) as exc:
            raise TransportError(f"Cannot open {port}: {exc}") from exc

        handle.reset_input_buffer()
        self._serial = handle
        self._queue = asyncio.Queue()
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._reader, name=f"satlink-serial-{port}", daemon=True
        )
        self._thread.start()
        LOGGER.debug("Serial port %s opened at %d baud", port, baudrate)

    async def close(self) -> None:
        handle = self._serial
        if handle is None:
            return

        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            await asyncio.get_running_loop().run_in_executor(
                None, thread.join, self._read_timeout * 5
            )
        self._thread = None
        self._serial = None
        try:
            handle.close()
        except (serial.SerialException, OSError) as exc:
            LOGGER.debug("Error closing serial port: %s", exc)
        if self._queue is not None:
            self._queue.put_nowait(b"")

    async def write(self, data: bytes) -> None:
        handle = self._serial
        if handle is None or not handle.is_open:
            raise TransportError("Serial port is not open")

        def _write() -> None:
            handle.write(data)
            handle.flush()

        try:
            await asyncio.get_running_loop().run_in_executor(None, _write)
        except (serial.SerialException, OSError) as exc:
            raise TransportError(f"Serial write failed: {exc}") from exc

    async def read(self) -> bytes:
        if self._queue is None:
            return b""
        item = await self._queue.get()
        if isinstance(item, Exception):
            raise TransportError(f"Serial read failed: {item}") from item
        return item

    # ------------------------------------------------------------------
    # reader thread
    # ------------------------------------------------------------------
    def _reader(self) -> None:
        handle = self._serial
        loop = self._loop
        queue = self._queue
        if handle is None or loop is None or queue is None:
            return

        while not self._stop.is_set():
            try:
                data = handle.read(max(1, min(handle.in_waiting, _CHUNK_SIZE)))
            except (serial.SerialException, OSError, TypeError) as exc:
                if self._stop.is_set():
                    break
                LOGGER.warning("Serial reader stopped: %s", exc)
                loop.call_soon_threadsafe(queue.put_nowait, exc)
                return
            if data:
                loop.call_soon_threadsafe(queue.put_nowait, data)
