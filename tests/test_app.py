"""Tests for GroundStationApp lifecycle and the one-shot helpers."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from satlink.adapters import MQTTConnectionError, SimulatedDevice
from satlink.app import (
    GroundStationApp,
    StationState,
    build_transport,
    change_filter_once,
    run_sequence_once,
)
from satlink.config import SatlinkConfig, load_config
from satlink.filters import FilterCode
from satlink.scheduler import SequenceRunState


def _build_config(tmp_path: Path) -> SatlinkConfig:
    config = load_config(tmp_path / "satlink.cfg")
    config.link.port = "/dev/ttyTEST"
    config.logging.path = None
    return config


class _StubMQTTClient:
    def __init__(self, *, fail_connect: bool = False) -> None:
        self.fail_connect = fail_connect
        self.presence = None
        self.connected = False
        self.disconnect_calls = 0
        self.published: list[tuple[str, dict, int, bool]] = []
        self.connect_handlers: list = []
        self.disconnect_handlers: list = []

    def register_connect_handler(self, handler) -> None:
        self.connect_handlers.append(handler)

    def register_disconnect_handler(self, handler) -> None:
        self.disconnect_handlers.append(handler)

    def set_presence(self, presence) -> None:
        self.presence = presence

    async def connect(self, timeout: float = 30.0) -> None:
        if self.fail_connect:
            raise MQTTConnectionError("broker unreachable")
        self.connected = True

    async def disconnect(self, timeout: float = 5.0) -> None:
        self.disconnect_calls += 1
        self.connected = False

    def publish(self, topic, payload, qos=1, retain=False) -> None:
        self.published.append((topic, json.loads(payload), qos, retain))


async def _run_until_active(app: GroundStationApp, until) -> asyncio.Task:
    task = asyncio.create_task(app.run())
    await until(lambda: app.state in (StationState.ACTIVE, StationState.DEGRADED))
    return task


@pytest.mark.asyncio
async def test_app_connects_requests_telemetry_and_stops(tmp_path, transport, until):
    app = GroundStationApp(_build_config(tmp_path), transport=transport)

    task = await _run_until_active(app, until)

    assert app.state is StationState.ACTIVE
    assert transport.opened_with == ("/dev/ttyTEST", 9600)
    assert transport.writes == ["START_TELEMETRY"]
    snapshot = await app.health.snapshot()
    assert snapshot["stationState"]["state"] == "link ready"

    app.request_shutdown()
    await asyncio.wait_for(task, timeout=1.0)

    assert app.state is StationState.STOPPING
    assert not transport.is_open
    assert app.session.events.subscriber_count == 0


@pytest.mark.asyncio
async def test_app_degrades_when_link_cannot_open(tmp_path, transport, until):
    transport.fail_open = OSError("no such device")
    app = GroundStationApp(_build_config(tmp_path), transport=transport)

    task = await _run_until_active(app, until)

    assert app.state is StationState.DEGRADED
    snapshot = await app.health.snapshot()
    assert snapshot["status"] == "degraded"
    assert "no such device" in snapshot["stationState"]["state"]
    assert transport.writes == []

    app.request_shutdown()
    await asyncio.wait_for(task, timeout=1.0)


@pytest.mark.asyncio
async def test_app_relays_over_mqtt(tmp_path, transport, until):
    mqtt = _StubMQTTClient()
    app = GroundStationApp(
        _build_config(tmp_path),
        transport=transport,
        mqtt_client=mqtt,
        start_telemetry=False,
    )

    task = await _run_until_active(app, until)

    assert app.relay is not None
    assert mqtt.presence is not None
    assert mqtt.presence.topic == "satlink/groundstation/status"
    await app.session.change_filter(FilterCode.parse("12"))
    topics = [message[0] for message in mqtt.published]
    assert "satlink/groundstation/filter" in topics

    app.request_shutdown()
    await asyncio.wait_for(task, timeout=1.0)

    assert mqtt.disconnect_calls == 1
    links = [message[1] for message in mqtt.published if message[0].endswith("/link")]
    assert links[-1]["state"] == "disconnected"


async def _relay_component(app: GroundStationApp) -> dict:
    components = {
        item["name"]: item for item in (await app.health.snapshot())["components"]
    }
    return components["relay"]


@pytest.mark.asyncio
async def test_broker_connection_changes_update_relay_health(tmp_path, transport, until):
    mqtt = _StubMQTTClient()
    app = GroundStationApp(
        _build_config(tmp_path),
        transport=transport,
        mqtt_client=mqtt,
        start_telemetry=False,
    )

    task = await _run_until_active(app, until)
    assert len(mqtt.disconnect_handlers) == 1
    assert (await _relay_component(app))["healthy"] is True

    for handler in mqtt.disconnect_handlers:
        handler(7)
    await asyncio.sleep(0.01)
    relay = await _relay_component(app)
    assert relay["healthy"] is False
    assert relay["detail"] == "broker disconnected (rc=7)"

    for handler in mqtt.connect_handlers:
        handler(0)
    await asyncio.sleep(0.01)
    relay = await _relay_component(app)
    assert relay["healthy"] is True
    assert relay["detail"] == "satlink/groundstation/#"

    app.request_shutdown()
    await asyncio.wait_for(task, timeout=1.0)

    assert (await _relay_component(app))["detail"] == "shutdown"


@pytest.mark.asyncio
async def test_app_keeps_running_when_broker_is_down(tmp_path, transport, until):
    mqtt = _StubMQTTClient(fail_connect=True)
    app = GroundStationApp(
        _build_config(tmp_path), transport=transport, mqtt_client=mqtt
    )

    task = await _run_until_active(app, until)

    assert app.state is StationState.ACTIVE
    assert app.relay is None
    components = {
        item["name"]: item for item in (await app.health.snapshot())["components"]
    }
    assert components["relay"]["healthy"] is False

    app.request_shutdown()
    await asyncio.wait_for(task, timeout=1.0)


@pytest.mark.asyncio
async def test_app_auto_mode_cycles_filters(tmp_path, transport, until):
    config = _build_config(tmp_path)
    config.filter.auto_sequence = ["10", "20"]
    config.filter.auto_interval_seconds = 0.01
    app = GroundStationApp(
        config, transport=transport, start_telemetry=False, auto_mode=True
    )

    task = await _run_until_active(app, until)
    await until(lambda: len(transport.writes) >= 3)

    assert transport.writes[:3] == ["SPECTRAL:10", "SPECTRAL:20", "SPECTRAL:10"]

    app.request_shutdown()
    await asyncio.wait_for(task, timeout=1.0)

    assert not app.auto_cycler.running
    assert app.session.sequencer_owner is None


def test_build_transport_honours_simulator_choice(tmp_path):
    config = _build_config(tmp_path)
    config.link.transport = "simulator"

    assert isinstance(build_transport(config), SimulatedDevice)


@pytest.mark.asyncio
async def test_change_filter_once_against_simulator(tmp_path):
    config = _build_config(tmp_path)
    device = SimulatedDevice(seed=5, ack_delay=0.0, telemetry_enabled=False)

    state = await change_filter_once(config, FilterCode.parse("b"), transport=device)

    assert state.confirmed is True
    assert state.code.pair == (3, 0)
    assert device.received == ["SPECTRAL:30"]
    assert not device.is_open


@pytest.mark.asyncio
async def test_run_sequence_once_against_simulator(tmp_path):
    config = _build_config(tmp_path)
    device = SimulatedDevice(seed=6, ack_delay=0.0, telemetry_enabled=False)

    result = await run_sequence_once(config, "1r", transport=device)

    assert result is SequenceRunState.COMPLETED
    assert device.received == ["$TIMED_FILTER,1r", "SPECTRAL:10"]
