"""Wire encoding and decoding of filter wheel commands and acknowledgements."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from .filters import FilterCode, FilterProtocolError, TimedSequence

LOGGER = logging.getLogger(__name__)


class FilterProtocol(str, Enum):
    """Command family understood by the connected firmware."""

    LEGACY = "legacy"
    SPECTRAL = "spectral"


class CommandNames:
    """Wire keywords shared by the ground station and the payload firmware."""

    FILTER = "$FILTER"
    """Legacy single-wheel move: ``$FILTER,<letter>,<degrees>``."""

    FILTER_ACK = "$FILTER_ACK"
    FILTER_STATUS = "$FILTER_STATUS"

    SPECTRAL = "SPECTRAL:"
    """Two-wheel move: ``SPECTRAL:<a><b>``."""

    SPECTRAL_ACK = "SPECTRAL_ACK:"

    TIMED_FILTER = "$TIMED_FILTER"
    """Timed sequence handed to the firmware verbatim."""

    START_TELEMETRY = "START_TELEMETRY"
    RELEASE = "RELEASE"

    STATUS_OK = "OK"


@dataclass(frozen=True, slots=True)
class FilterAck:
    """Device confirmation that a filter move finished."""

    code: FilterCode
    degrees: Optional[int] = None


@dataclass(frozen=True, slots=True)
class FilterStatus:
    """Periodic or sequence-driven wheel status report."""

    code: FilterCode
    degrees: Optional[int]
    status: str

    @property
    def changing(self) -> bool:
        return self.status.upper() != CommandNames.STATUS_OK


FilterMessage = Union[FilterAck, FilterStatus]


class FilterCommandCodec:
    """Stateless translator between ``FilterCode`` values and wire strings."""

    def encode(self, code: FilterCode, protocol: FilterProtocol) -> str:
        if protocol is FilterProtocol.LEGACY:
            return self.encode_legacy(code)
        return self.encode_spectral(code.color_a, code.color_b)

    def encode_legacy(self, code: FilterCode) -> str:
        legacy = code.to_legacy()
        return f"{CommandNames.FILTER},{legacy.letter},{legacy.servo_degrees}"

    def encode_spectral(self, color_a: int, color_b: int) -> str:
        spectral = FilterCode.from_digits(color_a, color_b)
        return f"{CommandNames.SPECTRAL}{spectral.digits}"

    def encode_timed(self, sequence: TimedSequence) -> str:
        return f"{CommandNames.TIMED_FILTER},{sequence.source}"

    def decode(self, line: str) -> Optional[FilterMessage]:
        """Return the filter message carried by ``line``.

        ``None`` means the line is not filter traffic and should be offered to
        the telemetry decoder instead.

        Raises:
            FilterProtocolError: The line uses a filter keyword but its body is
                malformed.
        """

        text = line.strip()
        upper = text.upper()

        if upper.startswith(CommandNames.SPECTRAL_ACK):
            body = text[len(CommandNames.SPECTRAL_ACK):].strip()
            if len(body) != 2 or not body.isdigit():
                raise _malformed(text, "expected two color digits")
            try:
                code = FilterCode.from_digits(int(body[0]), int(body[1]))
            except FilterProtocolError as exc:
                raise _malformed(text, str(exc)) from exc
            return FilterAck(code=code)

        # Check the longer keyword first; both share the "$FILTER" prefix.
        if upper.startswith(CommandNames.FILTER_STATUS + ","):
            fields = _split_fields(text)
            if len(fields) < 4:
                raise _malformed(text, "expected letter, degrees and status")
            code = _letter_code(text, fields[1])
            return FilterStatus(
                code=code,
                degrees=_parse_degrees(fields[2]),
                status=fields[3].upper(),
            )

        if upper.startswith(CommandNames.FILTER_ACK + ","):
            fields = _split_fields(text)
            if len(fields) < 2:
                raise _malformed(text, "expected filter letter")
            code = _letter_code(text, fields[1])
            degrees = _parse_degrees(fields[2]) if len(fields) > 2 else None
            return FilterAck(code=code, degrees=degrees)

        return None


def _split_fields(text: str) -> list[str]:
    return [item.strip() for item in text.split(",")]


def _letter_code(line: str, letter: str) -> FilterCode:
    try:
        return FilterCode.from_letter(letter)
    except FilterProtocolError as exc:
        raise _malformed(line, str(exc)) from exc


def _parse_degrees(value: str) -> Optional[int]:
    try:
        return int(value)
    except ValueError:
        LOGGER.debug("Ignoring non-numeric servo angle %r", value)
        return None


def _malformed(line: str, reason: str) -> FilterProtocolError:
    return FilterProtocolError(
        f"Malformed filter message {line!r}: {reason}",
        code="malformed_filter_message",
    )
