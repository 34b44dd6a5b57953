"""MQTT adapter encapsulating paho-mqtt client usage."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

import paho.mqtt.client as mqtt

from ..config import MqttConfig

LOGGER = logging.getLogger(__name__)


class MQTTConnectionError(RuntimeError):
    """Raised when the MQTT client fails to establish a connection."""


@dataclass(frozen=True, slots=True)
class Presence:
    """Retained station status: ``online`` after connect, ``offline`` as will."""

    topic: str
    online: bytes = b"online"
    offline: bytes = b"offline"


def _reason_value(reason_code: object) -> int:
    value = getattr(reason_code, "value", reason_code)
    return int(value)  # type: ignore[arg-type]


class MQTTClient:
    """Async-friendly wrapper over the threaded paho-mqtt client.

    Only publishing is supported; the ground station never consumes broker
    messages. paho runs its network loop on its own thread, so connection
    callbacks are handed to the asyncio loop with ``call_soon_threadsafe``.
    """

    def __init__(
        self,
        config: MqttConfig,
        *,
        client_id: Optional[str] = None,
        keepalive: int = 60,
    ) -> None:
        self.config = config
        self.client_id = client_id or config.client_id
        self.keepalive = keepalive

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected_event: Optional[asyncio.Event] = None
        self._disconnect_event: Optional[asyncio.Event] = None
        self._last_connect_rc: Optional[int] = None
        self._connected: bool = False
        self._presence: Optional[Presence] = None
        self._disconnect_handlers: List[Callable[[int], None]] = []
        self._connect_handlers: List[Callable[[int], None]] = []

    @property
    def presence(self) -> Optional[Presence]:
        return self._presence

    def set_presence(self, presence: Optional[Presence]) -> None:
        """Announce station presence on ``presence.topic``; applies on next connect."""

        self._presence = presence

    async def connect(self, timeout: float = 30.0) -> None:
        """Connect to the MQTT broker and wait for the CONNACK."""

        self._loop = asyncio.get_running_loop()
        self._connected_event = asyncio.Event()
        self._disconnect_event = asyncio.Event()
        self._last_connect_rc = None

        client = self._build_client()
        self._client = client

        LOGGER.info(
            "Connecting to MQTT broker %s:%s as %s",
            self.config.broker_host,
            self.config.broker_port,
            self.client_id,
        )
        client.connect_async(
            self.config.broker_host, self.config.broker_port, self.keepalive
        )
        client.loop_start()

        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            self._abort_connect()
            raise MQTTConnectionError("Timed out connecting to MQTT broker") from exc

        if self._last_connect_rc != 0:
            self._abort_connect()
            raise MQTTConnectionError(
                f"MQTT broker rejected connection (rc={self._last_connect_rc})"
            )

    async def disconnect(self, timeout: float = 5.0) -> None:
        """Mark the station offline and disconnect gracefully."""

        client = self._client
        if client is None:
            return

        assert self._disconnect_event is not None

        if self._presence is not None and self._connected:
            client.publish(
                self._presence.topic, self._presence.offline, qos=1, retain=True
            )
        client.disconnect()

        try:
            await asyncio.wait_for(self._disconnect_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("MQTT broker did not confirm disconnect")
        finally:
            client.loop_stop()
            self._client = None
            self._connected = False

    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None:
        if not self._client:
            raise RuntimeError("MQTT client not connected")

        info = self._client.publish(topic, payload, qos=qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Publish to {topic} failed with rc={info.rc}")

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None:
        self._disconnect_handlers.append(handler)

    def register_connect_handler(self, handler: Callable[[int], None]) -> None:
        self._connect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------
    # Internal helpers; the callbacks run on the paho network thread
    # ------------------------------------------------------------------
    def _build_client(self) -> mqtt.Client:
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2, client_id=self.client_id
        )
        client.enable_logger(LOGGER)

        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)
        if self._presence is not None:
            client.will_set(
                self._presence.topic, self._presence.offline, qos=1, retain=True
            )

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        return client

    def _abort_connect(self) -> None:
        if self._client is not None:
            self._client.loop_stop()
        self._client = None
        self._connected = False

    def _on_connect(
        self, client: mqtt.Client, userdata, flags, reason_code, properties
    ) -> None:
        rc = _reason_value(reason_code)
        self._last_connect_rc = rc
        if rc != 0:
            LOGGER.error("MQTT connection failed: %s", reason_code)
            self._connected = False
            self._signal(self._connected_event)
            return

        LOGGER.info("Connected to MQTT broker")
        self._connected = True
        if self._presence is not None:
            client.publish(
                self._presence.topic, self._presence.online, qos=1, retain=True
            )
        self._signal(self._connected_event)
        self._dispatch(self._connect_handlers, rc)

    def _on_disconnect(
        self, client: mqtt.Client, userdata, flags, reason_code, properties
    ) -> None:
        rc = _reason_value(reason_code)
        LOGGER.info("Disconnected from MQTT broker (rc=%s)", rc)
        self._connected = False
        self._signal(self._disconnect_event)
        self._dispatch(self._disconnect_handlers, rc)

    def _dispatch(self, handlers: List[Callable[[int], None]], rc: int) -> None:
        if self._loop is None:
            return
        for handler in handlers:
            self._loop.call_soon_threadsafe(handler, rc)

    def _signal(self, event: Optional[asyncio.Event]) -> None:
        if event is None:
            return
        if self._loop is not None and self._loop.is_running():
            self._loop.call_soon_threadsafe(event.set)
        else:
            event.set()
