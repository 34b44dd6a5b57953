"""Health reporting utilities for satlink."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from aiohttp import web

from .events import (
    ConnectionChanged,
    SequenceCancelled,
    SequenceCompleted,
    SequenceFailed,
    SequenceStarted,
    SessionEvent,
    Subscription,
)
from .session import LinkSession

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ComponentStatus:
    name: str
    healthy: bool
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
        }


class HealthReporter:
    """Tracks component statuses for the running ground station.

    Components are free-form names (``link``, ``sequencer``, ``relay``,
    ``health-endpoint``). The station state is kept apart from them and
    reported under ``stationState``. While a session is watched, link and
    sequencer components follow its events and the snapshot also carries the
    current filter state and link counters.
    """

    def __init__(self) -> None:
        self._components: Dict[str, ComponentStatus] = {}
        self._station: Optional[ComponentStatus] = None
        self._lock = asyncio.Lock()
        self._session: Optional[LinkSession] = None
        self._subscriptions: List[Subscription] = []

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._components[name] = ComponentStatus(
                name=name, healthy=healthy, detail=detail
            )

    async def set_station_state(
        self, state: str, *, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._station = ComponentStatus(
                name="station",
                healthy=healthy,
                detail=detail if detail is not None else state,
            )

    def watch(self, session: LinkSession) -> None:
        self.unwatch()
        self._session = session
        self._subscriptions = [
            session.events.subscribe(self._on_connection, ConnectionChanged),
            session.events.subscribe(
                self._on_sequence,
                SequenceStarted,
                SequenceCompleted,
                SequenceCancelled,
                SequenceFailed,
            ),
        ]

    def unwatch(self) -> None:
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions = []
        self._session = None

    async def _on_connection(self, event: ConnectionChanged) -> None:
        detail = event.state if event.port is None else f"{event.state} ({event.port})"
        if event.reason:
            detail = f"{detail}: {event.reason}"
        await self.update("link", event.connected, detail)

    async def _on_sequence(self, event: SessionEvent) -> None:
        source = event.sequence.source  # type: ignore[attr-defined]
        if isinstance(event, SequenceStarted):
            await self.update("sequencer", True, f"running {source}")
        elif isinstance(event, SequenceFailed):
            await self.update("sequencer", False, f"{source} failed: {event.error}")
        elif isinstance(event, SequenceCancelled):
            await self.update("sequencer", True, f"{source} cancelled")
        else:
            await self.update("sequencer", True, f"{source} completed")

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            components = [status.as_dict() for status in self._components.values()]
            station = self._station

        healthy = all(item["healthy"] for item in components)
        if station is not None:
            healthy = healthy and station.healthy

        payload: Dict[str, object] = {
            "status": "ok" if healthy else "degraded",
            "components": components,
        }
        if station is not None:
            payload["stationState"] = {
                "state": station.detail,
                "healthy": station.healthy,
                "updatedAt": station.updated_at.isoformat(timespec="seconds"),
            }

        session = self._session
        if session is not None:
            payload["filter"] = session.filter_state.as_dict()
            payload["linkStats"] = session.stats.as_dict()

        return payload


class HealthServer:
    """Minimal HTTP server exposing `/healthz` for status checks."""

    def __init__(self, reporter: HealthReporter, host: str, port: int) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info(
            "Health endpoint listening on http://%s:%s/healthz", self._host, self._port
        )

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)
