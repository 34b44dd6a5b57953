"""Filter wheel domain model.

Two firmware generations name the same wheel positions differently: the
legacy firmware takes a single letter plus a servo angle, the newer one takes
two color digits (0 clear, 1 red, 2 green, 3 blue). ``FilterCode`` carries
either spelling but always resolves to one canonical ``(color_a, color_b)``
pair, and two codes are equal when their pairs are equal.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Dict, List, Optional, Tuple

Pair = Tuple[int, int]


class FilterProtocolError(RuntimeError):
    """Raised when a filter code or filter message violates the wire protocol."""

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


class Color(IntEnum):
    CLEAR = 0
    RED = 1
    GREEN = 2
    BLUE = 3


class FilterEncoding(str, Enum):
    """Which wire spelling a ``FilterCode`` was created from."""

    LEGACY = "legacy"
    SPECTRAL = "spectral"


LETTER_TO_PAIR: Dict[str, Pair] = {
    "N": (0, 0),
    "R": (1, 0),
    "G": (2, 0),
    "B": (3, 0),
    "Y": (1, 2),
    "P": (1, 3),
    "C": (2, 3),
    "M": (1, 1),  # approximation: no dedicated maroon glass
    "F": (2, 2),  # approximation: no dedicated forest glass
}

PAIR_TO_LETTER: Dict[Pair, str] = {pair: letter for letter, pair in LETTER_TO_PAIR.items()}

# Servo angles of the single-wheel firmware; kept for the legacy command only.
LEGACY_SERVO_DEGREES: Dict[str, int] = {
    "N": 0,
    "R": 45,
    "G": 90,
    "B": 135,
    "M": 180,
    "F": 225,
    "P": 270,
    "Y": 315,
    "C": 360,
}

LETTER_DESCRIPTIONS: Dict[str, str] = {
    "N": "Normal",
    "R": "Light Red",
    "G": "Light Green",
    "B": "Light Blue",
    "M": "Maroon Red",
    "F": "Forest/Dark Green",
    "P": "Purple, Pink",
    "Y": "Yellow, Brown",
    "C": "Cyan, Turquoise",
}

COLOR_NAMES: Dict[int, str] = {
    Color.CLEAR: "Transparent",
    Color.RED: "Red",
    Color.GREEN: "Green",
    Color.BLUE: "Blue",
}

_MIXED_COLOR_NAMES: Dict[Pair, str] = {
    (1, 2): "Orange",
    (1, 3): "Magenta",
    (2, 3): "Cyan",
}


def _check_digit(value: int, position: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 3:
        raise FilterProtocolError(
            f"Color digit {position} must be 0..3, got {value!r}",
            code="invalid_color_digit",
        )
    return value


@dataclass(frozen=True, eq=False)
class FilterCode:
    """One filter wheel position in either wire spelling."""

    encoding: FilterEncoding
    color_a: int
    color_b: int
    letter: Optional[str] = None

    @classmethod
    def from_letter(cls, letter: str) -> "FilterCode":
        normalized = (letter or "").strip().upper()
        pair = LETTER_TO_PAIR.get(normalized)
        if pair is None:
            raise FilterProtocolError(
                f"Unknown filter letter: {letter!r}", code="invalid_filter_code"
            )
        return cls(FilterEncoding.LEGACY, pair[0], pair[1], normalized)

    @classmethod
    def from_digits(cls, color_a: int, color_b: int) -> "FilterCode":
        _check_digit(color_a, "A")
        _check_digit(color_b, "B")
        return cls(FilterEncoding.SPECTRAL, color_a, color_b)

    @classmethod
    def parse(cls, text: str) -> "FilterCode":
        """Accept either a legacy letter (``"p"``) or two digits (``"13"``)."""

        value = (text or "").strip()
        if len(value) == 1 and value.isalpha():
            return cls.from_letter(value)
        if len(value) == 2 and value.isdigit():
            return cls.from_digits(int(value[0]), int(value[1]))
        raise FilterProtocolError(
            f"Filter code must be one letter or two digits, got {text!r}",
            code="invalid_filter_code",
        )

    @property
    def pair(self) -> Pair:
        return (self.color_a, self.color_b)

    @property
    def digits(self) -> str:
        return f"{self.color_a}{self.color_b}"

    @property
    def legacy_letter(self) -> Optional[str]:
        """The letter naming this pair, or ``None`` if the legacy set has none."""
        return self.letter or PAIR_TO_LETTER.get(self.pair)

    @property
    def servo_degrees(self) -> Optional[int]:
        letter = self.legacy_letter
        return LEGACY_SERVO_DEGREES[letter] if letter else None

    @property
    def description(self) -> str:
        letter = self.legacy_letter
        if letter:
            return LETTER_DESCRIPTIONS[letter]
        return mixed_color_name(self.pair)

    @property
    def color_name(self) -> str:
        return mixed_color_name(self.pair)

    def to_legacy(self) -> "FilterCode":
        letter = self.legacy_letter
        if letter is None:
            raise FilterProtocolError(
                f"Color pair {self.digits} has no legacy filter letter",
                code="no_legacy_form",
            )
        return FilterCode(FilterEncoding.LEGACY, self.color_a, self.color_b, letter)

    def to_spectral(self) -> "FilterCode":
        return FilterCode(FilterEncoding.SPECTRAL, self.color_a, self.color_b)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FilterCode):
            return NotImplemented
        return self.pair == other.pair

    def __hash__(self) -> int:
        return hash(self.pair)

    def __str__(self) -> str:
        if self.encoding is FilterEncoding.LEGACY and self.letter:
            return self.letter
        return self.digits


def mixed_color_name(pair: Pair) -> str:
    """Name of the composite color seen through both filters of ``pair``."""

    first, second = pair
    if first == 0 and second == 0:
        return COLOR_NAMES[Color.CLEAR]
    if first == 0 or first == second:
        return COLOR_NAMES.get(second if first == 0 else first, "Unknown")
    if second == 0:
        return COLOR_NAMES.get(first, "Unknown")
    return _MIXED_COLOR_NAMES.get(tuple(sorted(pair)), "Purple")


@dataclass(frozen=True, slots=True)
class FilterStep:
    code: FilterCode
    duration: int

    def __post_init__(self) -> None:
        if self.duration <= 0:
            raise ValueError(f"Step duration must be positive, got {self.duration}")

    def __str__(self) -> str:
        return f"{self.duration}s {self.code.description} -> ({self.code.digits})"


@dataclass(frozen=True, slots=True)
class TimedSequence:
    """A validated, non-empty list of steps and the compact text it came from."""

    source: str
    steps: Tuple[FilterStep, ...]

    def __post_init__(self) -> None:
        if not self.source or not self.steps:
            raise ValueError("A timed sequence needs a source string and steps")

    @property
    def total_duration(self) -> int:
        return sum(step.duration for step in self.steps)

    def __len__(self) -> int:
        return len(self.steps)


_STEP_PATTERN = re.compile(r"(\d+)([A-Za-z])")
_COMPACT_PATTERN = re.compile(r"^(?:\d+[A-Za-z])+$")


def split_compact(text: str) -> List[Tuple[int, str]]:
    """Split ``"3g5r"`` into ``[(3, "G"), (5, "R")]`` without validating letters."""

    return [
        (int(duration), letter.upper())
        for duration, letter in _STEP_PATTERN.findall(text)
    ]


def is_compact_sequence(text: str) -> bool:
    return bool(_COMPACT_PATTERN.match(text or ""))


@dataclass(frozen=True, slots=True)
class FilterState:
    """What the ground station believes the wheel is currently showing."""

    code: FilterCode = field(default_factory=lambda: FilterCode.from_letter("N"))
    changing: bool = False
    last_change: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: Optional[str] = None
    confirmed: bool = True

    @property
    def status_text(self) -> str:
        if self.changing:
            return "Changing..."
        return f"Active: {self.code.description}"

    def as_dict(self) -> Dict[str, object]:
        return {
            "code": str(self.code),
            "digits": self.code.digits,
            "letter": self.code.legacy_letter,
            "color": self.code.color_name,
            "changing": self.changing,
            "confirmed": self.confirmed,
            "status": self.status,
            "lastChange": self.last_change.isoformat(timespec="seconds"),
        }
