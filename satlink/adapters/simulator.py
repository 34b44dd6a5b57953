"""In-process payload simulator implementing the ``Transport`` contract.

``SimulatedDevice`` stands in for the serial link during development and
tests. It emits ``$DATA`` frames from a smooth flight model, answers filter
commands the way the payload firmware does, and delivers everything in
irregular byte chunks so the framing path is exercised like a real port.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import random
from typing import List, Optional, Set

from ..codec import CommandNames
from ..core.protocols import TransportError
from ..filters import FilterCode, FilterProtocolError, split_compact
from ..telemetry import format_data_line

LOGGER = logging.getLogger(__name__)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class FlightModel:
    """Slowly varying altitude, speed, battery and gyro readings.

    Targets for altitude and speed move every minute or two and the readings
    follow them through a first-order lag, so plots look like a real flight
    rather than noise.
    """

    ALTITUDE_TAU = 45.0
    SPEED_TAU = 20.0
    BATTERY_DROP_PER_SECOND = 0.02 / 3600.0
    BATTERY_RIPPLE_PERIOD = 300.0
    BATTERY_RIPPLE_VOLTS = 0.005
    MANEUVER_PROBABILITY = 0.002

    def __init__(self, *, rate_hz: float = 1.0, rng: Optional[random.Random] = None) -> None:
        if rate_hz <= 0:
            raise ValueError("rate_hz must be positive")
        self._rng = rng or random.Random()
        self.dt = 1.0 / rate_hz
        self.elapsed = 0.0
        self.packet = 0

        self.altitude = 300.0
        self._altitude_target = self.altitude
        self._next_altitude_change = 30.0

        self.speed = 10.0
        self._speed_target = self.speed
        self._next_speed_change = 20.0

        self.battery_voltage = 4.10
        self._gyro_bias = [0.0, 0.0, 0.0]

    def _noise(self, std: float) -> float:
        return self._rng.gauss(0.0, std)

    def next_line(self) -> str:
        self.elapsed += self.dt
        t = self.elapsed

        if t >= self._next_altitude_change:
            self._altitude_target = _clamp(self.altitude + self._noise(120), 0, 2000)
            self._next_altitude_change = t + self._rng.randint(45, 120)
        if t >= self._next_speed_change:
            self._speed_target = _clamp(self.speed + self._noise(4), 0, 40)
            self._next_speed_change = t + self._rng.randint(30, 90)

        alpha = 1.0 - math.exp(-self.dt / self.ALTITUDE_TAU)
        self.altitude += (self._altitude_target - self.altitude) * alpha
        self.altitude = _clamp(self.altitude + self._noise(0.8), 0, 2000)

        alpha = 1.0 - math.exp(-self.dt / self.SPEED_TAU)
        self.speed += (self._speed_target - self.speed) * alpha
        self.speed = _clamp(self.speed + self._noise(0.15), 0, 50)

        temperature = _clamp(24.0 - 0.0065 * self.altitude + self._noise(0.05), -25, 45)
        pressure = 1013.25 * math.exp(-self.altitude / 8434.0) + self._noise(0.3)

        self.battery_voltage = _clamp(
            self.battery_voltage - self.BATTERY_DROP_PER_SECOND * self.dt, 3.50, 4.20
        )
        battery = self.battery_voltage + self.BATTERY_RIPPLE_VOLTS * math.sin(
            2 * math.pi * t / self.BATTERY_RIPPLE_PERIOD
        )

        gyro = []
        for axis in range(3):
            self._gyro_bias[axis] += self._noise(0.0008)
            gyro.append(self._gyro_bias[axis] + self._noise(0.03))
        if self._rng.random() < self.MANEUVER_PROBABILITY:
            gyro = [value + self._noise(1.2) for value in gyro]

        self.packet += 1
        return format_data_line(
            self.packet,
            temperature,
            pressure,
            self.altitude,
            self.speed,
            battery,
            gyro[0],
            gyro[1],
            gyro[2],
            fixed_point=True,
        )


class SimulatedDevice:
    """Fake payload reachable through the ``Transport`` protocol."""

    def __init__(
        self,
        *,
        rate_hz: float = 1.0,
        seed: Optional[int] = None,
        ack_delay: float = 0.2,
        seconds_per_unit: float = 1.0,
        telemetry_enabled: bool = True,
        max_chunk: int = 16,
        acknowledge_filters: bool = True,
    ) -> None:
        self._rng = random.Random(seed)
        self._model = FlightModel(rate_hz=rate_hz, rng=self._rng)
        self.ack_delay = ack_delay
        self.seconds_per_unit = seconds_per_unit
        self.telemetry_enabled = telemetry_enabled
        self.max_chunk = max(1, max_chunk)
        self.acknowledge_filters = acknowledge_filters

        self.received: List[str] = []
        self.released = False
        self._port: Optional[str] = None
        self._open = False
        self._inbox = bytearray()
        self._outbox: Optional[asyncio.Queue[bytes]] = None
        self._tasks: Set[asyncio.Task[None]] = set()

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def model(self) -> FlightModel:
        return self._model

    async def open(self, port: str, baudrate: int) -> None:
        if self._open:
            raise TransportError(f"Simulated port {port} is already open")
        self._port = port
        self._open = True
        self._outbox = asyncio.Queue()
        self._spawn(self._telemetry_loop())
        LOGGER.info("Simulated payload attached on %s (%d baud)", port, baudrate)

    async def close(self) -> None:
        if not self._open:
            return
        self._open = False
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        if self._outbox is not None:
            self._outbox.put_nowait(b"")
        LOGGER.info("Simulated payload detached from %s", self._port)

    async def write(self, data: bytes) -> None:
        if not self._open:
            raise TransportError("Simulated port is not open")
        self._inbox.extend(data)
        while b"\n" in self._inbox:
            raw, _, rest = bytes(self._inbox).partition(b"\n")
            self._inbox = bytearray(rest)
            line = raw.decode("ascii", errors="replace").strip()
            if line:
                self.received.append(line)
                self._handle_command(line)

    async def read(self) -> bytes:
        if self._outbox is None:
            return b""
        return await self._outbox.get()

    def inject(self, data: bytes) -> None:
        """Queue raw bytes for the ground station exactly as given."""

        if self._outbox is None:
            raise TransportError("Simulated port is not open")
        self._outbox.put_nowait(data)

    def emit_line(self, line: str) -> None:
        """Queue ``line`` plus terminator, split into random-sized chunks."""

        if self._outbox is None or not self._open:
            return
        payload = (line + "\r\n").encode("ascii")
        offset = 0
        while offset < len(payload):
            size = self._rng.randint(1, self.max_chunk)
            self._outbox.put_nowait(payload[offset:offset + size])
            offset += size

    # ------------------------------------------------------------------
    # command handling
    # ------------------------------------------------------------------
    def _handle_command(self, line: str) -> None:
        upper = line.upper()
        if upper.startswith(CommandNames.SPECTRAL):
            digits = line[len(CommandNames.SPECTRAL):].strip()
            self._reply(f"{CommandNames.SPECTRAL_ACK}{digits}")
        elif upper.startswith(CommandNames.TIMED_FILTER + ","):
            self._spawn(self._run_timed(line.split(",", 1)[1].strip()))
        elif upper.startswith(CommandNames.FILTER + ","):
            fields = [item.strip() for item in line.split(",")]
            letter = fields[1] if len(fields) > 1 else ""
            degrees = fields[2] if len(fields) > 2 else ""
            self._reply(f"{CommandNames.FILTER_ACK},{letter},{degrees}")
        elif upper == CommandNames.START_TELEMETRY:
            self.telemetry_enabled = True
        elif upper == CommandNames.RELEASE:
            self.released = True
            self.emit_line("# release mechanism triggered")
        else:
            self.emit_line(f"# unknown command: {line}")

    def _reply(self, line: str) -> None:
        if not self.acknowledge_filters:
            LOGGER.debug("Dropping acknowledgement %s", line)
            return
        self._spawn(self._delayed_line(line))

    async def _delayed_line(self, line: str) -> None:
        await asyncio.sleep(self.ack_delay)
        self.emit_line(line)

    async def _run_timed(self, source: str) -> None:
        for duration, letter in split_compact(source):
            try:
                code = FilterCode.from_letter(letter)
            except FilterProtocolError:
                self.emit_line(f"{CommandNames.FILTER_STATUS},{letter},0,ERROR")
                return
            degrees = code.servo_degrees
            self.emit_line(f"{CommandNames.FILTER_STATUS},{letter},{degrees},CHANGING")
            await asyncio.sleep(self.ack_delay)
            self.emit_line(
                f"{CommandNames.FILTER_STATUS},{letter},{degrees},{CommandNames.STATUS_OK}"
            )
            await asyncio.sleep(duration * self.seconds_per_unit)

    async def _telemetry_loop(self) -> None:
        while True:
            await asyncio.sleep(self._model.dt)
            if self.telemetry_enabled:
                self.emit_line(self._model.next_line())

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
