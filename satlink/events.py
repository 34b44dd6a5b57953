"""Session events and the observer hub that delivers them.

Every notification a ``LinkSession`` produces (connection changes, decoded
telemetry, filter state, sequence progress, errors) is a small dataclass
derived from ``SessionEvent``. Collaborators register callbacks on the
session's ``EventHub`` and receive a ``Subscription`` handle that removes
them again, so listener lifetime is explicit rather than tied to object
construction.

Callbacks run inline on the publishing task. A callback that returns a
coroutine is scheduled as its own task so that slow consumers never stall
the link reader.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    List,
    Optional,
    Set,
    Tuple,
    Type,
)

if TYPE_CHECKING:
    from .filters import FilterState, FilterStep, TimedSequence
    from .telemetry import Rejected, TelemetryFrame

LOGGER = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ErrorKind(str, Enum):
    """Error taxonomy surfaced through ``ErrorRaised``."""

    TRANSPORT = "transport"
    PROTOCOL = "protocol"
    SEQUENCE = "sequence"
    ACK_TIMEOUT = "ack_timeout"


@dataclass
class SessionEvent:
    occurred_at: datetime = field(default_factory=_utcnow, kw_only=True)


@dataclass
class ConnectionChanged(SessionEvent):
    state: str
    connected: bool
    port: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class TelemetryReceived(SessionEvent):
    frame: "TelemetryFrame"


@dataclass
class FrameRejected(SessionEvent):
    line: str
    rejection: "Rejected"


@dataclass
class FilterStateChanged(SessionEvent):
    state: "FilterState"


@dataclass
class CommandSent(SessionEvent):
    command: str


@dataclass
class SequenceStarted(SessionEvent):
    sequence: "TimedSequence"


@dataclass
class StepStarted(SessionEvent):
    sequence: "TimedSequence"
    step: "FilterStep"
    index: int


@dataclass
class SequenceCompleted(SessionEvent):
    sequence: "TimedSequence"


@dataclass
class SequenceCancelled(SessionEvent):
    sequence: "TimedSequence"
    completed_steps: int
    reason: str = "cancelled"


@dataclass
class SequenceFailed(SessionEvent):
    sequence: "TimedSequence"
    step_index: Optional[int]
    error: str


@dataclass
class ErrorRaised(SessionEvent):
    kind: ErrorKind
    message: str
    source: Optional[str] = None


EventCallback = Callable[[Any], Awaitable[None] | None]


class Subscription:
    """Handle returned by ``EventHub.subscribe``; ``close()`` unregisters."""

    def __init__(
        self,
        hub: "EventHub",
        callback: EventCallback,
        event_types: Tuple[Type[SessionEvent], ...],
    ) -> None:
        self._hub = hub
        self.callback = callback
        self.event_types = event_types

    @property
    def active(self) -> bool:
        return self in self._hub._subscriptions

    def matches(self, event: SessionEvent) -> bool:
        return not self.event_types or isinstance(event, self.event_types)

    def close(self) -> None:
        self._hub.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class EventHub:
    """Fan-out of session events to registered observers."""

    def __init__(self) -> None:
        self._subscriptions: List[Subscription] = []
        self._tasks: Set[asyncio.Task[None]] = set()

    def subscribe(
        self, callback: EventCallback, *event_types: Type[SessionEvent]
    ) -> Subscription:
        """Register ``callback`` for the given event types (all events if none)."""

        subscription = Subscription(self, callback, tuple(event_types))
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass

    def clear(self) -> None:
        self._subscriptions.clear()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: SessionEvent) -> None:
        for subscription in list(self._subscriptions):
            if not subscription.matches(event):
                continue
            try:
                result = subscription.callback(event)
            except Exception:
                LOGGER.warning(
                    "Event callback failed for %s", type(event).__name__, exc_info=True
                )
                continue
            if asyncio.iscoroutine(result):
                self._spawn(result, event)

    async def drain(self) -> None:
        """Wait for callback tasks scheduled so far."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro: Awaitable[None], event: SessionEvent) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def _done(finished: asyncio.Task[None]) -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                LOGGER.warning(
                    "Async event callback failed for %s: %s",
                    type(event).__name__,
                    exc,
                )

        task.add_done_callback(_done)
