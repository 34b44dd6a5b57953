"""Link session: one transport, one reader, one command in flight.

The session owns the connection lifecycle, the inbound pipeline
(bytes -> lines -> filter messages or telemetry frames) and the outbound
command path. Observers learn about everything through ``session.events``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple

from . import constants
from .codec import (
    CommandNames,
    FilterAck,
    FilterCommandCodec,
    FilterMessage,
    FilterProtocol,
    FilterStatus,
)
from .core.protocols import Transport
from .events import (
    CommandSent,
    ConnectionChanged,
    ErrorKind,
    ErrorRaised,
    EventHub,
    FilterStateChanged,
    FrameRejected,
    TelemetryReceived,
)
from .filters import FilterCode, FilterProtocolError, FilterState, TimedSequence
from .framing import LineFramer
from .telemetry import Rejected, TelemetryDecoder

LOGGER = logging.getLogger(__name__)
WIRE_LOGGER = logging.getLogger(f"{__name__}.wire")


class LinkError(RuntimeError):
    """Raised for connection and transport failures on the device link."""

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


class LinkState(str, Enum):
    """Connection state of a ``LinkSession``."""

    DISCONNECTED = "disconnected"
    """No transport is open."""

    CONNECTING = "connecting"
    """The transport is being opened."""

    CONNECTED = "connected"
    """The transport is open and the reader is running."""

    FAULTED = "faulted"
    """Opening, reading or writing failed; ``connect()`` starts over."""


@dataclass(slots=True)
class LinkStats:
    lines_received: int = 0
    frames_decoded: int = 0
    frames_rejected: int = 0
    commands_sent: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "linesReceived": self.lines_received,
            "framesDecoded": self.frames_decoded,
            "framesRejected": self.frames_rejected,
            "commandsSent": self.commands_sent,
        }


class LinkSession:
    """Owns the device link and serializes every command written to it."""

    def __init__(
        self,
        transport: Transport,
        *,
        decoder: Optional[TelemetryDecoder] = None,
        codec: Optional[FilterCommandCodec] = None,
        protocol: FilterProtocol = FilterProtocol.SPECTRAL,
        ack_timeout: float = constants.DEFAULT_ACK_TIMEOUT_SECONDS,
        events: Optional[EventHub] = None,
    ) -> None:
        self._transport = transport
        self._framer = LineFramer(max_line_bytes=constants.MAX_LINE_BYTES)
        self._decoder = decoder or TelemetryDecoder()
        self._codec = codec or FilterCommandCodec()
        self._protocol = protocol
        self._ack_timeout = ack_timeout
        self.events = events or EventHub()

        self._state = LinkState.DISCONNECTED
        self._port: Optional[str] = None
        self._filter_state = FilterState()
        self._stats = LinkStats()

        self._command_lock = asyncio.Lock()
        self._pending_ack: Optional[Tuple[FilterCode, asyncio.Future[FilterState]]] = None
        self._reader_task: Optional[asyncio.Task[None]] = None
        self._sequencer_owner: Optional[object] = None

    # ------------------------------------------------------------------
    # properties
    # ------------------------------------------------------------------
    @property
    def state(self) -> LinkState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is LinkState.CONNECTED

    @property
    def port(self) -> Optional[str]:
        return self._port

    @property
    def protocol(self) -> FilterProtocol:
        return self._protocol

    @property
    def filter_state(self) -> FilterState:
        return self._filter_state

    @property
    def stats(self) -> LinkStats:
        return self._stats

    @property
    def sequencer_owner(self) -> Optional[object]:
        return self._sequencer_owner

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    async def connect(
        self, port: str, baudrate: int = constants.DEFAULT_BAUDRATE
    ) -> None:
        """Open ``port`` and start reading.

        Raises:
            LinkError: The transport could not be opened (``connect_failed``).
        """

        if self._state is not LinkState.DISCONNECTED:
            await self.disconnect()

        self._port = port
        self._set_state(LinkState.CONNECTING)
        LOGGER.info("Opening %s at %d baud", port, baudrate)

        try:
            await self._transport.open(port, baudrate)
        except Exception as exc:
            with contextlib.suppress(Exception):
                await self._transport.close()
            message = f"Failed to open {port}: {exc}"
            LOGGER.error(message)
            self._set_state(LinkState.FAULTED, reason=str(exc))
            self._emit_error(ErrorKind.TRANSPORT, message)
            raise LinkError(message, code="connect_failed") from exc

        self._framer.reset()
        self._reader_task = asyncio.create_task(
            self._read_loop(), name="satlink-link-reader"
        )
        self._set_state(LinkState.CONNECTED)
        LOGGER.info("Link connected on %s", port)

    async def disconnect(self) -> None:
        if self._state is LinkState.DISCONNECTED:
            return

        await self._cancel_reader()
        with contextlib.suppress(Exception):
            await self._transport.close()
        self._framer.reset()
        self._fail_pending_ack(LinkError("Link disconnected", code="not_connected"))
        self._set_state(LinkState.DISCONNECTED)
        LOGGER.info("Link disconnected")

    async def aclose(self) -> None:
        """Disconnect and drop every subscriber."""

        await self.disconnect()
        await self.events.drain()
        self.events.clear()

    async def __aenter__(self) -> "LinkSession":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # sequencer claim
    # ------------------------------------------------------------------
    def claim_sequencer(self, owner: object) -> bool:
        """Reserve the session for one multi-step runner at a time."""

        if self._sequencer_owner is not None and self._sequencer_owner is not owner:
            return False
        self._sequencer_owner = owner
        return True

    def release_sequencer(self, owner: object) -> None:
        if self._sequencer_owner is owner:
            self._sequencer_owner = None

    # ------------------------------------------------------------------
    # outbound
    # ------------------------------------------------------------------
    async def send_line(self, text: str) -> None:
        """Write one raw command line, serialized with every other command."""

        _validate_command(text)
        async with self._command_lock:
            self._ensure_connected()
            await self._write_line(text)

    async def change_filter(
        self, code: FilterCode, *, protocol: Optional[FilterProtocol] = None
    ) -> FilterState:
        """Move the wheel to ``code`` and return the resulting state.

        The command is encoded before anything is written, so an invalid code
        never reaches the link. The call waits for the matching acknowledgement
        for up to ``ack_timeout`` seconds; without one the requested code is
        assumed and the state is marked unconfirmed. A failed or cancelled
        call leaves ``filter_state.changing`` false.

        Raises:
            FilterProtocolError: ``code`` cannot be expressed in ``protocol``.
            LinkError: The link is down or the write failed.
        """

        command = self._codec.encode(code, protocol or self._protocol)

        async with self._command_lock:
            self._ensure_connected()
            future: asyncio.Future[FilterState] = (
                asyncio.get_running_loop().create_future()
            )
            self._pending_ack = (code, future)
            self._set_filter_state(
                replace(self._filter_state, changing=True, status=None)
            )
            try:
                await self._write_line(command)
                try:
                    async with asyncio.timeout(self._ack_timeout):
                        return await future
                except TimeoutError:
                    return self._assume_filter(code)
            finally:
                self._pending_ack = None
                acknowledged = (
                    future.done()
                    and not future.cancelled()
                    and future.exception() is None
                )
                if not future.done():
                    future.cancel()
                # An unacknowledged wait must not leave the wheel reported as moving.
                if not acknowledged and self._filter_state.changing:
                    self._set_filter_state(replace(self._filter_state, changing=False))

    async def send_timed_sequence(self, sequence: TimedSequence) -> None:
        """Hand a whole timed sequence to the firmware in one command."""

        await self.send_line(self._codec.encode_timed(sequence))

    async def start_telemetry(self) -> None:
        await self.send_line(CommandNames.START_TELEMETRY)

    async def release(self) -> None:
        await self.send_line(CommandNames.RELEASE)

    # ------------------------------------------------------------------
    # inbound
    # ------------------------------------------------------------------
    def process_line(self, line: str) -> None:
        """Route one complete line to the filter codec or the telemetry decoder."""

        self._stats.lines_received += 1
        WIRE_LOGGER.debug("<< %s", line)

        try:
            message = self._codec.decode(line)
        except FilterProtocolError as exc:
            LOGGER.warning("%s", exc)
            self._emit_error(ErrorKind.PROTOCOL, str(exc), source=line)
            return

        if message is not None:
            self._apply_filter_message(message)
            return

        result = self._decoder.decode(line)
        if isinstance(result, Rejected):
            if result.ignorable:
                LOGGER.debug("Ignoring line %r", line)
                return
            self._stats.frames_rejected += 1
            LOGGER.warning(
                "Rejected telemetry line (%s): %s", result.reason.value, result.detail
            )
            self.events.publish(FrameRejected(line=line, rejection=result))
            return

        self._stats.frames_decoded += 1
        self.events.publish(TelemetryReceived(frame=result))

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------
    def _apply_filter_message(self, message: FilterMessage) -> None:
        now = datetime.now(timezone.utc)
        if isinstance(message, FilterStatus):
            changing = message.changing
            status: Optional[str] = message.status
        else:
            changing = False
            status = CommandNames.STATUS_OK

        state = FilterState(
            code=message.code,
            changing=changing,
            last_change=now,
            status=status,
            confirmed=True,
        )
        self._set_filter_state(state)

        pending = self._pending_ack
        if pending is None or changing:
            return
        requested, future = pending
        if message.code != requested:
            LOGGER.warning(
                "Device reported filter %s while waiting for %s",
                message.code,
                requested,
            )
            return
        if not future.done():
            future.set_result(state)

    def _assume_filter(self, code: FilterCode) -> FilterState:
        message = (
            f"No acknowledgement for filter {code} within {self._ack_timeout:.1f}s; "
            "assuming it was applied"
        )
        LOGGER.warning(message)
        state = FilterState(
            code=code,
            changing=False,
            last_change=datetime.now(timezone.utc),
            confirmed=False,
        )
        self._set_filter_state(state)
        self._emit_error(ErrorKind.ACK_TIMEOUT, message)
        return state

    def _set_filter_state(self, state: FilterState) -> None:
        self._filter_state = state
        self.events.publish(FilterStateChanged(state=state))

    def _set_state(self, state: LinkState, *, reason: Optional[str] = None) -> None:
        if state is self._state and reason is None:
            return
        self._state = state
        self.events.publish(
            ConnectionChanged(
                state=state.value,
                connected=state is LinkState.CONNECTED,
                port=self._port,
                reason=reason,
            )
        )

    def _emit_error(
        self, kind: ErrorKind, message: str, *, source: Optional[str] = None
    ) -> None:
        self.events.publish(ErrorRaised(kind=kind, message=message, source=source))

    def _ensure_connected(self) -> None:
        if self._state is not LinkState.CONNECTED:
            raise LinkError(
                f"Link is {self._state.value}; connect first", code="not_connected"
            )

    async def _write_line(self, text: str) -> None:
        WIRE_LOGGER.debug(">> %s", text)
        try:
            await self._transport.write((text + "\n").encode("ascii"))
        except Exception as exc:
            message = f"Write failed: {exc}"
            await self._fault(message)
            raise LinkError(message, code="write_failed") from exc
        self._stats.commands_sent += 1
        self.events.publish(CommandSent(command=text))

    async def _read_loop(self) -> None:
        try:
            while True:
                chunk = await self._transport.read()
                if not chunk:
                    await self._fault("Transport closed by the device")
                    return
                for line in self._framer.ingest(chunk):
                    self._dispatch_line(line)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("Link reader stopped: %s", exc)
            await self._fault(f"Read failed: {exc}")

    def _dispatch_line(self, line: str) -> None:
        try:
            self.process_line(line)
        except Exception:
            LOGGER.exception("Failed to process line %r", line)

    async def _fault(self, reason: str) -> None:
        if self._state in (LinkState.DISCONNECTED, LinkState.FAULTED):
            return

        LOGGER.error("Link fault: %s", reason)
        if self._reader_task is not asyncio.current_task():
            await self._cancel_reader()
        else:
            self._reader_task = None
        with contextlib.suppress(Exception):
            await self._transport.close()
        self._framer.reset()
        self._fail_pending_ack(LinkError(reason, code="not_connected"))
        self._set_state(LinkState.FAULTED, reason=reason)
        self._emit_error(ErrorKind.TRANSPORT, reason)

    async def _cancel_reader(self) -> None:
        task = self._reader_task
        self._reader_task = None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def _fail_pending_ack(self, error: Exception) -> None:
        if self._pending_ack is None:
            return
        _, future = self._pending_ack
        if not future.done():
            future.set_exception(error)


def _validate_command(text: str) -> None:
    if not text or not text.strip():
        raise LinkError("Command text must not be empty", code="invalid_command")
    if "\r" in text or "\n" in text:
        raise LinkError(
            "Command text must be a single line", code="invalid_command"
        )
    if not text.isascii():
        raise LinkError("Command text must be ASCII", code="invalid_command")
