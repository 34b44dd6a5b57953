"""Main application entry-point for satlink."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from enum import Enum
from typing import Optional

from .adapters import (
    MQTTClient,
    MQTTConnectionError,
    Presence,
    SerialTransport,
    SimulatedDevice,
)
from .config import SatlinkConfig, load_config
from .core import Transport
from .filters import FilterCode, FilterState
from .health import HealthReporter, HealthServer
from .logging import configure_logging
from .relay import TelemetryRelay
from .scheduler import (
    AutoCycler,
    SequenceRunState,
    SequenceScheduler,
    parse_auto_sequence,
)
from .session import LinkError, LinkSession
from .telemetry import FixedPositionSource, TelemetryDecoder

LOGGER = logging.getLogger(__name__)


class StationState(str, Enum):
    COLD_START = "cold_start"
    CONNECTING = "connecting"
    ACTIVE = "active"
    DEGRADED = "degraded"
    STOPPING = "stopping"


def build_transport(config: SatlinkConfig) -> Transport:
    if config.link.transport == "simulator":
        simulator = config.simulator
        return SimulatedDevice(
            rate_hz=simulator.rate_hz,
            seed=simulator.seed,
            ack_delay=simulator.ack_delay_seconds,
        )
    return SerialTransport()


def build_session(config: SatlinkConfig, transport: Transport) -> LinkSession:
    telemetry = config.telemetry
    rng = random.Random(config.simulator.seed)
    decoder = TelemetryDecoder(
        position_source=FixedPositionSource(
            telemetry.default_latitude,
            telemetry.default_longitude,
            jitter=telemetry.position_jitter,
            rng=rng,
        )
    )
    return LinkSession(
        transport,
        decoder=decoder,
        protocol=config.filter.protocol,
        ack_timeout=config.filter.ack_timeout_seconds,
    )


def build_scheduler(config: SatlinkConfig, session: LinkSession) -> SequenceScheduler:
    return SequenceScheduler(
        session,
        max_total_seconds=config.filter.max_sequence_seconds,
        dispatch=config.filter.sequence_dispatch,
    )


class GroundStationApp:
    """Coordinates ground station startup and shutdown.

    Startup opens the device link, attaches the MQTT relay and health
    endpoint when they are enabled, and then idles until shutdown is
    requested. The link is required; relay and health failures only degrade
    the station.
    """

    def __init__(
        self,
        config: Optional[SatlinkConfig] = None,
        *,
        transport: Optional[Transport] = None,
        mqtt_client: Optional[MQTTClient] = None,
        start_telemetry: bool = True,
        auto_mode: bool = False,
    ) -> None:
        self._config = config or load_config()
        self._transport = transport or build_transport(self._config)
        self.session = build_session(self._config, self._transport)
        self.scheduler = build_scheduler(self._config, self.session)
        self.auto_cycler = AutoCycler(
            self.session,
            parse_auto_sequence(self._config.filter.auto_sequence),
            interval=self._config.filter.auto_interval_seconds,
        )
        self._mqtt_client = mqtt_client
        self._relay: Optional[TelemetryRelay] = None
        self._health = HealthReporter()
        self._health_server: Optional[HealthServer] = None
        self._start_telemetry = start_telemetry
        self._auto_mode = auto_mode
        self._shutdown_event: Optional[asyncio.Event] = None
        self._stopping = False
        self._health_tasks: set[asyncio.Task[None]] = set()
        self._state = StationState.COLD_START
        self._state_detail: Optional[str] = None

    @property
    def state(self) -> StationState:
        return self._state

    @property
    def health(self) -> HealthReporter:
        return self._health

    @property
    def relay(self) -> Optional[TelemetryRelay]:
        return self._relay

    async def run(self) -> None:
        """Start services, idle until ``request_shutdown`` and stop again."""

        self._shutdown_event = asyncio.Event()

        LOGGER.info("satlink starting with config: %s", self._config.path)
        started = await self._start_services()
        if not started:
            LOGGER.warning("Service startup incomplete; running in degraded mode")

        try:
            await self._idle_loop()
        except asyncio.CancelledError:
            LOGGER.info("satlink received shutdown signal")
            raise
        finally:
            await self._stop_services()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    @classmethod
    def start(
        cls,
        config: Optional[SatlinkConfig] = None,
        *,
        auto_mode: bool = False,
    ) -> None:
        instance = cls(config=config, auto_mode=auto_mode)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_serial=instance._config.logging.log_serial,
        )
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("satlink received shutdown signal")

    async def _idle_loop(self) -> None:
        LOGGER.info("satlink active; awaiting shutdown signal")
        if self._shutdown_event is None:
            self._shutdown_event = asyncio.Event()
        await self._shutdown_event.wait()

    async def _transition_state(
        self, state: StationState, *, detail: Optional[str] = None
    ) -> None:
        if state == self._state and detail == self._state_detail:
            return

        previous = self._state
        self._state = state
        self._state_detail = detail

        message_detail = detail or state.value
        LOGGER.info(
            "Station state transition %s -> %s (%s)",
            previous.value,
            state.value,
            message_detail,
        )
        await self._health.set_station_state(
            state.value,
            healthy=state == StationState.ACTIVE,
            detail=message_detail,
        )

    async def _start_services(self) -> bool:
        await self._transition_state(StationState.COLD_START, detail="initialising")
        await self._health.update("link", False, "initialising")
        await self._health.update("sequencer", True, "idle")
        self._health.watch(self.session)

        await self._start_relay()
        await self._start_health_server()

        await self._transition_state(
            StationState.CONNECTING,
            detail=f"opening {self._config.link.port}",
        )
        link = self._config.link
        try:
            await self.session.connect(link.port, link.baudrate)
        except LinkError as exc:
            await self._transition_state(StationState.DEGRADED, detail=str(exc))
            return False

        if self._start_telemetry:
            try:
                await self.session.start_telemetry()
            except LinkError as exc:
                LOGGER.warning("Could not request telemetry: %s", exc)

        if self._auto_mode:
            self.auto_cycler.start()

        await self._transition_state(StationState.ACTIVE, detail="link ready")
        return True

    async def _start_relay(self) -> None:
        mqtt_config = self._config.mqtt
        if not mqtt_config.enabled and self._mqtt_client is None:
            return

        client = self._mqtt_client or MQTTClient(mqtt_config)
        relay = TelemetryRelay(client, topic_prefix=mqtt_config.topic_prefix)
        client.set_presence(Presence(relay.status_topic))
        client.register_disconnect_handler(self._on_mqtt_disconnect)
        client.register_connect_handler(self._on_mqtt_connect)
        try:
            await client.connect()
        except MQTTConnectionError as exc:
            LOGGER.error("MQTT connection failed: %s", exc)
            await self._health.update("relay", False, str(exc))
            return

        self._mqtt_client = client
        relay.attach(self.session)
        self._relay = relay
        await self._health.update("relay", True, relay.topic("#"))

    def _on_mqtt_disconnect(self, rc: int) -> None:
        if self._stopping:
            return
        LOGGER.warning("MQTT broker connection lost (rc=%s)", rc)
        self._schedule_health_update("relay", False, f"broker disconnected (rc={rc})")

    def _on_mqtt_connect(self, rc: int) -> None:
        # The first CONNACK arrives before the relay is attached.
        if self._stopping or self._relay is None:
            return
        self._schedule_health_update("relay", True, self._relay.topic("#"))

    def _schedule_health_update(
        self, name: str, healthy: bool, detail: Optional[str]
    ) -> None:
        task = asyncio.create_task(self._health.update(name, healthy, detail))
        self._health_tasks.add(task)
        task.add_done_callback(self._health_tasks.discard)

    async def _start_health_server(self) -> None:
        health = self._config.health
        if not health.enabled or health.port <= 0:
            return

        server = HealthServer(self._health, health.host, health.port)
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start health endpoint: %s", exc)
            await self._health.update("health-endpoint", False, str(exc))
        else:
            self._health_server = server
            await self._health.update("health-endpoint", True, None)

    async def _stop_services(self) -> None:
        self._stopping = True
        if self._health_tasks:
            await asyncio.gather(*self._health_tasks)
        await self._transition_state(StationState.STOPPING, detail="shutdown requested")

        if self.auto_cycler.running:
            await self.auto_cycler.stop()
        await self.scheduler.stop()

        await self.session.disconnect()
        await self.session.events.drain()

        if self._relay is not None:
            self._relay.detach()
            self._relay = None
        if self._mqtt_client is not None:
            with contextlib.suppress(MQTTConnectionError):
                await self._mqtt_client.disconnect()
            self._mqtt_client = None
            await self._health.update("relay", False, "shutdown")

        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None
            await self._health.update("health-endpoint", False, "shutdown")

        self._health.unwatch()
        await self.session.aclose()

        if self._shutdown_event is not None:
            self._shutdown_event.set()


async def change_filter_once(
    config: SatlinkConfig,
    code: FilterCode,
    *,
    transport: Optional[Transport] = None,
) -> FilterState:
    """Connect, move the wheel to ``code`` and disconnect again."""

    session = build_session(config, transport or build_transport(config))
    async with session:
        await session.connect(config.link.port, config.link.baudrate)
        return await session.change_filter(code)


async def run_sequence_once(
    config: SatlinkConfig,
    text: str,
    *,
    transport: Optional[Transport] = None,
) -> SequenceRunState:
    """Connect, run one timed sequence to the end and disconnect again."""

    session = build_session(config, transport or build_transport(config))
    scheduler = build_scheduler(config, session)
    sequence = scheduler.parse(text)
    async with session:
        await session.connect(config.link.port, config.link.baudrate)
        return await scheduler.execute(sequence)
