"""Tests for the MQTT telemetry relay."""

import json

import pytest

from satlink.filters import FilterCode
from satlink.relay import TelemetryRelay
from satlink.scheduler import SequenceScheduler


class RecordingMQTT:
    def __init__(self) -> None:
        self.messages: list = []
        self.fail_with = None

    def publish(self, topic, payload, qos=1, retain=False):
        if self.fail_with is not None:
            raise self.fail_with
        self.messages.append((topic, json.loads(payload), qos, retain))

    def on(self, topic):
        return [message for message in self.messages if message[0] == topic]


PREFIX = "satlink/groundstation"


@pytest.mark.asyncio
async def test_attach_publishes_current_filter_retained(session):
    mqtt = RecordingMQTT()
    relay = TelemetryRelay(mqtt, topic_prefix="/" + PREFIX + "/")

    relay.attach(session)

    assert relay.attached
    assert relay.status_topic == f"{PREFIX}/status"
    [(topic, document, qos, retain)] = mqtt.messages
    assert topic == f"{PREFIX}/filter"
    assert document["digits"] == "00"
    assert document["color"] == "Transparent"
    assert retain is True
    assert relay.published == 1


@pytest.mark.asyncio
async def test_telemetry_and_filter_changes_are_forwarded(session, transport, until):
    mqtt = RecordingMQTT()
    relay = TelemetryRelay(mqtt, topic_prefix=PREFIX)
    relay.attach(session)

    transport.feed("$DATA,1,21.5,1013.2,120.0,3.2,3.9,0.1,0.2,0.3\n")
    await until(lambda: mqtt.on(f"{PREFIX}/telemetry"))
    await session.change_filter(FilterCode.parse("23"))

    [(_, telemetry, qos, retain)] = mqtt.on(f"{PREFIX}/telemetry")
    assert telemetry["packetNumber"] == 1
    assert telemetry["altitude"] == 120.0
    assert qos == 0
    assert retain is False

    filters = mqtt.on(f"{PREFIX}/filter")
    assert filters[-1][1]["digits"] == "23"
    assert filters[-1][1]["confirmed"] is True
    assert all(message[3] for message in filters)


@pytest.mark.asyncio
async def test_sequence_progress_documents(session):
    mqtt = RecordingMQTT()
    relay = TelemetryRelay(mqtt, topic_prefix=PREFIX)
    relay.attach(session)
    scheduler = SequenceScheduler(session, seconds_per_unit=0.01)

    await scheduler.execute("1g1r")

    documents = [message[1] for message in mqtt.on(f"{PREFIX}/sequence")]
    assert [document["event"] for document in documents] == [
        "started",
        "step",
        "step",
        "completed",
    ]
    assert documents[0]["sequence"] == "1g1r"
    assert documents[0]["steps"] == 2
    assert documents[0]["totalSeconds"] == 2
    assert documents[1]["letter"] == "G"
    assert documents[2]["index"] == 1
    assert documents[2]["duration"] == 1


@pytest.mark.asyncio
async def test_link_and_error_documents(session, transport, until):
    mqtt = RecordingMQTT()
    relay = TelemetryRelay(mqtt, topic_prefix=PREFIX)
    relay.attach(session)

    transport.feed("$FILTER_STATUS,broken\n")
    await until(lambda: mqtt.on(f"{PREFIX}/errors"))
    await session.disconnect()

    error = mqtt.on(f"{PREFIX}/errors")[0][1]
    assert error["kind"] == "protocol"
    [(_, link, _, retain)] = mqtt.on(f"{PREFIX}/link")
    assert link["state"] == "disconnected"
    assert link["connected"] is False
    assert retain is True


@pytest.mark.asyncio
async def test_publish_failures_are_counted_not_raised(session, caplog):
    mqtt = RecordingMQTT()
    mqtt.fail_with = RuntimeError("MQTT client not connected")
    relay = TelemetryRelay(mqtt, topic_prefix=PREFIX)

    relay.attach(session)
    await session.change_filter(FilterCode.parse("10"))

    assert relay.published == 0
    assert relay.failures >= 2
    assert relay.last_error == "MQTT client not connected"
    assert "Relay publish to filter failed" in caplog.text


@pytest.mark.asyncio
async def test_detach_stops_forwarding(session):
    mqtt = RecordingMQTT()
    relay = TelemetryRelay(mqtt, topic_prefix=PREFIX)
    relay.attach(session)
    relay.detach()

    await session.change_filter(FilterCode.parse("30"))

    assert not relay.attached
    assert len(mqtt.messages) == 1
