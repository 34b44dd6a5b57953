"""Forward session events to MQTT as JSON documents."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Protocol

from .events import (
    ConnectionChanged,
    ErrorRaised,
    FilterStateChanged,
    SequenceCancelled,
    SequenceCompleted,
    SequenceFailed,
    SequenceStarted,
    SessionEvent,
    StepStarted,
    Subscription,
    TelemetryReceived,
)
from .session import LinkSession

LOGGER = logging.getLogger(__name__)


class MQTTClientLike(Protocol):
    def publish(
        self,
        topic: str,
        payload: bytes,
        qos: int = 1,
        retain: bool = False,
    ) -> None: ...


class TelemetryRelay:
    """Publishes telemetry, filter, sequence, link and error events.

    Topics live under ``topic_prefix``; the filter and link topics are
    retained so a late subscriber sees the current state immediately. The
    ``status`` topic is left to the MQTT client, which holds the station
    presence and last will there.
    """

    def __init__(
        self,
        mqtt_client: MQTTClientLike,
        *,
        topic_prefix: str,
        telemetry_qos: int = 0,
    ) -> None:
        self._mqtt = mqtt_client
        self._prefix = topic_prefix.strip("/")
        self._telemetry_qos = telemetry_qos
        self._subscriptions: List[Subscription] = []
        self._published = 0
        self._failures = 0
        self._last_error: Optional[str] = None

    def topic(self, channel: str) -> str:
        return f"{self._prefix}/{channel}"

    @property
    def status_topic(self) -> str:
        return self.topic("status")

    @property
    def published(self) -> int:
        return self._published

    @property
    def failures(self) -> int:
        return self._failures

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def attached(self) -> bool:
        return bool(self._subscriptions)

    def attach(self, session: LinkSession) -> None:
        if self._subscriptions:
            return
        events = session.events
        self._subscriptions = [
            events.subscribe(self._on_telemetry, TelemetryReceived),
            events.subscribe(self._on_filter, FilterStateChanged),
            events.subscribe(
                self._on_sequence,
                SequenceStarted,
                StepStarted,
                SequenceCompleted,
                SequenceCancelled,
                SequenceFailed,
            ),
            events.subscribe(self._on_connection, ConnectionChanged),
            events.subscribe(self._on_error, ErrorRaised),
        ]
        self._publish("filter", session.filter_state.as_dict(), retain=True)

    def detach(self) -> None:
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions = []

    # ------------------------------------------------------------------
    # handlers
    # ------------------------------------------------------------------
    def _on_telemetry(self, event: TelemetryReceived) -> None:
        self._publish("telemetry", event.frame.as_dict(), qos=self._telemetry_qos)

    def _on_filter(self, event: FilterStateChanged) -> None:
        self._publish("filter", event.state.as_dict(), retain=True)

    def _on_sequence(self, event: SessionEvent) -> None:
        document: Dict[str, Any] = {
            "event": _SEQUENCE_EVENT_NAMES[type(event)],
            "sequence": event.sequence.source,  # type: ignore[attr-defined]
            "occurredAt": _timestamp(event),
        }
        if isinstance(event, SequenceStarted):
            document["steps"] = len(event.sequence)
            document["totalSeconds"] = event.sequence.total_duration
        elif isinstance(event, StepStarted):
            document["index"] = event.index
            document["code"] = event.step.code.digits
            document["letter"] = event.step.code.legacy_letter
            document["duration"] = event.step.duration
        elif isinstance(event, SequenceCancelled):
            document["completedSteps"] = event.completed_steps
            document["reason"] = event.reason
        elif isinstance(event, SequenceFailed):
            document["stepIndex"] = event.step_index
            document["error"] = event.error
        self._publish("sequence", document)

    def _on_connection(self, event: ConnectionChanged) -> None:
        self._publish(
            "link",
            {
                "state": event.state,
                "connected": event.connected,
                "port": event.port,
                "reason": event.reason,
                "occurredAt": _timestamp(event),
            },
            retain=True,
        )

    def _on_error(self, event: ErrorRaised) -> None:
        self._publish(
            "errors",
            {
                "kind": event.kind.value,
                "message": event.message,
                "source": event.source,
                "occurredAt": _timestamp(event),
            },
        )

    def _publish(
        self,
        channel: str,
        document: Dict[str, Any],
        *,
        qos: int = 1,
        retain: bool = False,
    ) -> None:
        payload_bytes = json.dumps(document, default=_json_default).encode("utf-8")
        try:
            self._mqtt.publish(self.topic(channel), payload_bytes, qos=qos, retain=retain)
        except RuntimeError as exc:
            self._failures += 1
            self._last_error = str(exc)
            LOGGER.warning("Relay publish to %s failed: %s", channel, exc)
            return
        self._published += 1


_SEQUENCE_EVENT_NAMES = {
    SequenceStarted: "started",
    StepStarted: "step",
    SequenceCompleted: "completed",
    SequenceCancelled: "cancelled",
    SequenceFailed: "failed",
}


def _timestamp(event: SessionEvent) -> str:
    return event.occurred_at.isoformat(timespec="milliseconds")


def _json_default(value: Any) -> Any:
    return str(value)
