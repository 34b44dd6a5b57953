"""Telemetry frame decoding.

Payload firmware reports sensor state as one ASCII line per sample::

    $DATA,<seq>,<temp>,<pressure>,<altitude>,<speed>,<voltage>,<gyroX>,<gyroY>,<gyroZ>

Newer builds append ``,<lat>,<lon>`` and then ``,<accelX>,<accelY>,<accelZ>``.
A single unreadable numeric field never discards the frame: the field is
reported as ``0.0`` and named in ``TelemetryFrame.bad_fields``.
"""

from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Optional, Protocol, Tuple, Union

from . import constants

LOGGER = logging.getLogger(__name__)

DATA_HEADER = "$DATA,"

SENSOR_FIELDS: Tuple[str, ...] = (
    "sequence",
    "temperature",
    "pressure",
    "altitude",
    "speed",
    "battery_voltage",
    "gyro_x",
    "gyro_y",
    "gyro_z",
)
GPS_FIELDS: Tuple[str, ...] = ("latitude", "longitude")
ACCEL_FIELDS: Tuple[str, ...] = ("accel_x", "accel_y", "accel_z")

MIN_FIELD_COUNT = len(SENSOR_FIELDS)

BATTERY_EMPTY_VOLTS = 3.0
BATTERY_FULL_VOLTS = 4.2


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def battery_percentage(voltage: float) -> float:
    span = BATTERY_FULL_VOLTS - BATTERY_EMPTY_VOLTS
    return max(0.0, min(100.0, (voltage - BATTERY_EMPTY_VOLTS) / span * 100.0))


@dataclass(frozen=True, slots=True)
class TelemetryFrame:
    packet_number: int
    timestamp: datetime
    temperature: float
    pressure: float
    altitude: float
    speed: float
    battery_voltage: float
    gyro_x: float
    gyro_y: float
    gyro_z: float
    latitude: float
    longitude: float
    accel_x: float = 0.0
    accel_y: float = 0.0
    accel_z: float = 0.0
    wire_sequence: Optional[int] = None
    bad_fields: Tuple[str, ...] = ()

    @property
    def battery_percentage(self) -> float:
        return battery_percentage(self.battery_voltage)

    def as_dict(self) -> Dict[str, object]:
        return {
            "packetNumber": self.packet_number,
            "timestamp": self.timestamp.isoformat(timespec="milliseconds"),
            "temperature": self.temperature,
            "pressure": self.pressure,
            "altitude": self.altitude,
            "speed": self.speed,
            "batteryVoltage": self.battery_voltage,
            "batteryPercentage": round(self.battery_percentage, 1),
            "gyro": {"x": self.gyro_x, "y": self.gyro_y, "z": self.gyro_z},
            "accel": {"x": self.accel_x, "y": self.accel_y, "z": self.accel_z},
            "gps": {"latitude": self.latitude, "longitude": self.longitude},
            "wireSequence": self.wire_sequence,
        }


class RejectReason(str, Enum):
    IGNORABLE = "ignorable"
    UNKNOWN_HEADER = "unknown_header"
    FIELD_COUNT_MISMATCH = "field_count_mismatch"


@dataclass(frozen=True, slots=True)
class Rejected:
    """Why a line did not produce a telemetry frame."""

    reason: RejectReason
    detail: str = ""
    expected: Optional[int] = None
    actual: Optional[int] = None

    @property
    def ignorable(self) -> bool:
        return self.reason is RejectReason.IGNORABLE


DecodeResult = Union[TelemetryFrame, Rejected]


class PositionSource(Protocol):
    """Supplies a position for frames whose firmware does not report GPS."""

    def current_position(self) -> Tuple[float, float]: ...


class FixedPositionSource:
    """Reference position, optionally scattered by ``jitter`` degrees."""

    def __init__(
        self,
        latitude: float = constants.DEFAULT_LATITUDE,
        longitude: float = constants.DEFAULT_LONGITUDE,
        *,
        jitter: float = 0.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.latitude = latitude
        self.longitude = longitude
        self.jitter = max(0.0, jitter)
        self._rng = rng or random.Random()

    def current_position(self) -> Tuple[float, float]:
        if self.jitter <= 0.0:
            return (self.latitude, self.longitude)
        return (
            self.latitude + (self._rng.random() - 0.5) * self.jitter,
            self.longitude + (self._rng.random() - 0.5) * self.jitter,
        )


def parse_number(value: str) -> Optional[float]:
    """Parse an invariant-culture decimal, retrying with ``,`` read as ``.``."""

    text = value.strip()
    if not text:
        return None
    for candidate in (text, text.replace(",", ".")):
        try:
            number = float(candidate)
        except ValueError:
            continue
        if math.isfinite(number):
            return number
        return None
    return None


class TelemetryDecoder:
    """Parses ``$DATA`` lines into ``TelemetryFrame`` records.

    Packet numbers are assigned from this decoder's own counter; the sequence
    value on the wire is advisory and kept as ``wire_sequence``.
    """

    def __init__(
        self,
        *,
        position_source: Optional[PositionSource] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._position_source = position_source or FixedPositionSource()
        self._clock = clock or _utcnow
        self._packet_counter = 0

    @property
    def packets_decoded(self) -> int:
        return self._packet_counter

    def reset_counter(self) -> None:
        self._packet_counter = 0

    def decode(self, line: str) -> DecodeResult:
        text = (line or "").strip()
        if not text or text.startswith("#") or text.startswith("//"):
            return Rejected(RejectReason.IGNORABLE)

        if not text.upper().startswith(DATA_HEADER):
            return Rejected(
                RejectReason.UNKNOWN_HEADER,
                detail=f"expected {DATA_HEADER!r}, got {text[:10]!r}",
            )

        parts = text[len(DATA_HEADER):].split(",")
        if len(parts) < MIN_FIELD_COUNT:
            return Rejected(
                RejectReason.FIELD_COUNT_MISMATCH,
                detail=f"expected at least {MIN_FIELD_COUNT} fields, got {len(parts)}",
                expected=MIN_FIELD_COUNT,
                actual=len(parts),
            )

        bad_fields: list[str] = []

        def number(index: int, name: str) -> float:
            parsed = parse_number(parts[index])
            if parsed is None:
                LOGGER.warning(
                    "Unreadable telemetry field %s=%r; using 0.0", name, parts[index]
                )
                bad_fields.append(name)
                return 0.0
            return parsed

        values = {
            name: number(index, name)
            for index, name in enumerate(SENSOR_FIELDS)
            if name != "sequence"
        }

        wire_sequence = parse_number(parts[0])

        if len(parts) >= MIN_FIELD_COUNT + len(GPS_FIELDS):
            latitude = number(MIN_FIELD_COUNT, "latitude")
            longitude = number(MIN_FIELD_COUNT + 1, "longitude")
        else:
            latitude, longitude = self._position_source.current_position()

        accel_offset = MIN_FIELD_COUNT + len(GPS_FIELDS)
        accel = [0.0, 0.0, 0.0]
        if len(parts) >= accel_offset + len(ACCEL_FIELDS):
            accel = [
                number(accel_offset + index, name)
                for index, name in enumerate(ACCEL_FIELDS)
            ]

        self._packet_counter += 1
        return TelemetryFrame(
            packet_number=self._packet_counter,
            timestamp=self._clock(),
            latitude=latitude,
            longitude=longitude,
            accel_x=accel[0],
            accel_y=accel[1],
            accel_z=accel[2],
            wire_sequence=int(wire_sequence) if wire_sequence is not None else None,
            bad_fields=tuple(bad_fields),
            **values,
        )


def format_data_line(
    sequence: int,
    temperature: float,
    pressure: float,
    altitude: float,
    speed: float,
    battery_voltage: float,
    gyro_x: float,
    gyro_y: float,
    gyro_z: float,
    *,
    position: Optional[Tuple[float, float]] = None,
    accel: Optional[Tuple[float, float, float]] = None,
    fixed_point: bool = False,
) -> str:
    """Render a ``$DATA`` line.

    Values are written with full ``repr`` precision, so decoding the line gives
    the same floats back. ``fixed_point`` uses the firmware's widths instead
    (one decimal, two for voltage and acceleration, six for coordinates).
    """

    def number(value: float, digits: int) -> str:
        if fixed_point:
            return f"{value:.{digits}f}"
        return repr(float(value))

    fields = [
        str(sequence),
        number(temperature, 1),
        number(pressure, 1),
        number(altitude, 1),
        number(speed, 1),
        number(battery_voltage, 2),
        number(gyro_x, 1),
        number(gyro_y, 1),
        number(gyro_z, 1),
    ]
    if position is not None or accel is not None:
        latitude, longitude = position or (0.0, 0.0)
        fields.extend([number(latitude, 6), number(longitude, 6)])
    if accel is not None:
        fields.extend(number(value, 2) for value in accel)
    return DATA_HEADER + ",".join(fields)
