"""Timed filter sequences and the auto cycle mode.

A timed sequence is written compactly as ``<seconds><letter>`` pairs, e.g.
``3g5r2b1n`` holds green for three seconds, red for five, blue for two and
finally clear for one. ``SequenceScheduler`` runs one such sequence at a time
against a ``LinkSession``; ``AutoCycler`` loops a fixed list of codes. Both
reserve the session through its sequencer claim, so they exclude each other.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import Enum
from typing import TYPE_CHECKING, Iterable, Optional, Sequence, Tuple, Union

from . import constants
from .events import (
    ErrorKind,
    ErrorRaised,
    SequenceCancelled,
    SequenceCompleted,
    SequenceFailed,
    SequenceStarted,
    StepStarted,
)
from .filters import (
    LETTER_TO_PAIR,
    FilterCode,
    FilterStep,
    TimedSequence,
    is_compact_sequence,
    split_compact,
)

if TYPE_CHECKING:
    from .session import LinkSession

LOGGER = logging.getLogger(__name__)

DEFAULT_AUTO_SEQUENCE: Tuple[str, ...] = ("00", "10", "20", "30", "13", "00")
DEFAULT_AUTO_INTERVAL_SECONDS = 5.0


class SequenceError(RuntimeError):
    """Raised when a sequence is invalid or cannot start."""

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


class SequenceRunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class SequenceDispatch(str, Enum):
    """How a sequence reaches the device."""

    MIRRORED = "mirrored"
    """The firmware receives ``$TIMED_FILTER`` once, then the scheduler still
    sends one filter command per step and holds locally."""

    LOCAL = "local"
    """The scheduler sends one filter command per step and holds locally."""

    DEVICE = "device"
    """The firmware receives ``$TIMED_FILTER`` once and runs the steps itself."""


def validate(
    text: str, *, max_total_seconds: int = constants.MAX_SEQUENCE_SECONDS
) -> Optional[str]:
    """Return why ``text`` is not a usable sequence, or ``None`` if it is."""

    value = (text or "").strip()
    if not value:
        return "Sequence is empty"
    if not is_compact_sequence(value):
        return "Sequence must be <seconds><letter> pairs, e.g. 3g5r2b1n"

    pairs = split_compact(value)
    if not pairs:
        return "Sequence contains no steps"

    for duration, letter in pairs:
        if letter not in LETTER_TO_PAIR:
            known = "".join(LETTER_TO_PAIR)
            return f"Unknown filter letter {letter!r}; expected one of {known}"
        if duration <= 0:
            return f"Step {duration}{letter} must last at least one second"

    total = sum(duration for duration, _ in pairs)
    if total > max_total_seconds:
        return f"Sequence lasts {total}s; the limit is {max_total_seconds}s"
    return None


def parse_sequence(
    text: str, *, max_total_seconds: int = constants.MAX_SEQUENCE_SECONDS
) -> TimedSequence:
    """Parse a compact sequence string.

    Raises:
        SequenceError: ``text`` fails validation (``invalid_sequence``).
    """

    reason = validate(text, max_total_seconds=max_total_seconds)
    if reason is not None:
        raise SequenceError(reason, code="invalid_sequence")

    source = text.strip()
    steps = tuple(
        FilterStep(code=FilterCode.from_letter(letter), duration=duration)
        for duration, letter in split_compact(source)
    )
    return TimedSequence(source=source, steps=steps)


class SequenceScheduler:
    """Runs timed sequences against a ``LinkSession``, one at a time."""

    def __init__(
        self,
        session: "LinkSession",
        *,
        max_total_seconds: int = constants.MAX_SEQUENCE_SECONDS,
        seconds_per_unit: float = 1.0,
        dispatch: SequenceDispatch = SequenceDispatch.MIRRORED,
    ) -> None:
        self._session = session
        self._max_total_seconds = max_total_seconds
        self._seconds_per_unit = seconds_per_unit
        self._dispatch = dispatch

        self._state = SequenceRunState.IDLE
        self._last_result: Optional[SequenceRunState] = None
        self._current: Optional[TimedSequence] = None
        self._cancel_event = asyncio.Event()
        self._task: Optional[asyncio.Task[SequenceRunState]] = None

    @property
    def state(self) -> SequenceRunState:
        return self._state

    @property
    def last_result(self) -> Optional[SequenceRunState]:
        return self._last_result

    @property
    def current_sequence(self) -> Optional[TimedSequence]:
        return self._current

    @property
    def is_running(self) -> bool:
        return self._state in (SequenceRunState.RUNNING, SequenceRunState.CANCELLING)

    @property
    def dispatch(self) -> SequenceDispatch:
        return self._dispatch

    def parse(self, text: str) -> TimedSequence:
        return parse_sequence(text, max_total_seconds=self._max_total_seconds)

    async def execute(
        self, sequence: Union[TimedSequence, str]
    ) -> SequenceRunState:
        """Run ``sequence`` to completion, cancellation or failure.

        Failures during the run are reported through events and the returned
        state; they are not raised.

        Raises:
            SequenceError: The sequence is invalid (``invalid_sequence``) or
                another sequence owns the session (``already_running``).
        """

        resolved = self._claim(sequence)
        return await self._run(resolved)

    def start(
        self, sequence: Union[TimedSequence, str]
    ) -> "asyncio.Task[SequenceRunState]":
        """Run ``sequence`` in the background and return its task."""

        resolved = self._claim(sequence)
        self._task = asyncio.create_task(
            self._run(resolved), name="satlink-sequence"
        )
        return self._task

    async def wait(self) -> Optional[SequenceRunState]:
        task = self._task
        if task is None:
            return self._last_result
        with contextlib.suppress(asyncio.CancelledError):
            return await task
        return self._last_result

    def cancel(self) -> bool:
        """Ask the running sequence to stop; returns at once."""

        if self._state is not SequenceRunState.RUNNING:
            return False
        LOGGER.info("Cancelling sequence %s", self._current.source if self._current else "")
        self._cancel_event.set()
        self._state = SequenceRunState.CANCELLING
        return True

    async def stop(self) -> None:
        """Cancel any running sequence and wait for it to wind down."""

        self.cancel()
        await self.wait()

    def _claim(self, sequence: Union[TimedSequence, str]) -> TimedSequence:
        resolved = self.parse(sequence) if isinstance(sequence, str) else sequence
        if resolved.total_duration > self._max_total_seconds:
            raise SequenceError(
                f"Sequence lasts {resolved.total_duration}s; "
                f"the limit is {self._max_total_seconds}s",
                code="invalid_sequence",
            )

        if self.is_running or not self._session.claim_sequencer(self):
            raise SequenceError(
                "Another sequence is already running on this link",
                code="already_running",
            )

        self._cancel_event.clear()
        self._current = resolved
        self._state = SequenceRunState.RUNNING
        return resolved

    async def _run(self, sequence: TimedSequence) -> SequenceRunState:
        events = self._session.events
        index: Optional[int] = None
        completed = 0
        LOGGER.info(
            "Starting sequence %s (%d steps, %ds, %s dispatch)",
            sequence.source,
            len(sequence),
            sequence.total_duration,
            self._dispatch.value,
        )

        try:
            events.publish(SequenceStarted(sequence=sequence))
            if self._dispatch is not SequenceDispatch.LOCAL:
                await self._session.send_timed_sequence(sequence)

            for index, step in enumerate(sequence.steps):
                if self._cancel_event.is_set():
                    break
                events.publish(StepStarted(sequence=sequence, step=step, index=index))
                LOGGER.debug("Step %d: %s", index + 1, step)
                if self._dispatch is not SequenceDispatch.DEVICE:
                    await self._session.change_filter(step.code)
                if await self._hold(step.duration):
                    break
                completed += 1

            if self._cancel_event.is_set():
                self._finish(SequenceRunState.CANCELLED)
                events.publish(
                    SequenceCancelled(sequence=sequence, completed_steps=completed)
                )
            else:
                self._finish(SequenceRunState.COMPLETED)
                events.publish(SequenceCompleted(sequence=sequence))
        except asyncio.CancelledError:
            self._finish(SequenceRunState.CANCELLED)
            events.publish(
                SequenceCancelled(
                    sequence=sequence,
                    completed_steps=completed,
                    reason="task cancelled",
                )
            )
            raise
        except Exception as exc:
            LOGGER.warning("Sequence %s failed: %s", sequence.source, exc)
            self._finish(SequenceRunState.FAILED)
            events.publish(
                SequenceFailed(sequence=sequence, step_index=index, error=str(exc))
            )
            events.publish(
                ErrorRaised(
                    kind=ErrorKind.SEQUENCE,
                    message=f"Sequence {sequence.source} failed: {exc}",
                    source=sequence.source,
                )
            )
        finally:
            self._session.release_sequencer(self)
            self._current = None
            self._state = SequenceRunState.IDLE

        LOGGER.info("Sequence %s %s", sequence.source, self._last_result.value)
        return self._last_result

    async def _hold(self, duration: int) -> bool:
        """Wait out one step; ``True`` if a cancel request cut it short."""

        try:
            async with asyncio.timeout(duration * self._seconds_per_unit):
                await self._cancel_event.wait()
        except TimeoutError:
            return False
        return True

    def _finish(self, result: SequenceRunState) -> None:
        self._last_result = result


def parse_auto_sequence(values: Iterable[str]) -> Tuple[FilterCode, ...]:
    """Turn ``["00", "13", "p"]`` into filter codes for ``AutoCycler``."""

    codes = tuple(FilterCode.parse(value) for value in values if value.strip())
    if not codes:
        raise SequenceError("Auto sequence needs at least one code", code="invalid_sequence")
    return codes


class AutoCycler:
    """Cycles the wheel through a fixed list of codes until stopped."""

    def __init__(
        self,
        session: "LinkSession",
        codes: Optional[Sequence[FilterCode]] = None,
        *,
        interval: float = DEFAULT_AUTO_INTERVAL_SECONDS,
    ) -> None:
        self._session = session
        self._codes = tuple(codes) if codes else parse_auto_sequence(DEFAULT_AUTO_SEQUENCE)
        self._interval = interval
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._cycles = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def cycles(self) -> int:
        return self._cycles

    def start(self) -> None:
        if self.running:
            return
        if not self._session.claim_sequencer(self):
            raise SequenceError(
                "A sequence is already running on this link", code="already_running"
            )
        LOGGER.info(
            "Auto mode started: %s every %.1fs",
            ",".join(code.digits for code in self._codes),
            self._interval,
        )
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop(), name="satlink-auto-cycle")

    async def stop(self) -> None:
        """Stop cycling; a filter change already in flight is abandoned."""

        task = self._task
        self._task = None
        self._stop_event.set()
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._session.release_sequencer(self)
        LOGGER.info("Auto mode stopped after %d cycles", self._cycles)

    async def _loop(self) -> None:
        try:
            while not self._stop_event.is_set():
                for code in self._codes:
                    if self._stop_event.is_set():
                        return
                    await self._session.change_filter(code)
                    if await self._pause():
                        return
                self._cycles += 1
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("Auto mode stopped: %s", exc)
            self._session.events.publish(
                ErrorRaised(kind=ErrorKind.SEQUENCE, message=f"Auto mode stopped: {exc}")
            )
        finally:
            self._session.release_sequencer(self)

    async def _pause(self) -> bool:
        try:
            async with asyncio.timeout(self._interval):
                await self._stop_event.wait()
        except TimeoutError:
            return False
        return True
