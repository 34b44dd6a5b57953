import asyncio
from typing import Callable, List, Optional, Type, Union

import pytest
import pytest_asyncio

from satlink.codec import FilterProtocol
from satlink.events import EventHub, SessionEvent
from satlink.session import LinkSession


class FakeTransport:
    """In-memory transport that records writes and answers filter commands."""

    def __init__(self, *, auto_ack: bool = True) -> None:
        self.auto_ack = auto_ack
        self.is_open = False
        self.writes: List[str] = []
        self.opened_with: Optional[tuple] = None
        self.close_calls = 0
        self.fail_open: Optional[Exception] = None
        self.fail_write: Optional[Exception] = None
        self._queue: Optional[asyncio.Queue] = None

    async def open(self, port: str, baudrate: int) -> None:
        if self.fail_open is not None:
            raise self.fail_open
        self.is_open = True
        self.opened_with = (port, baudrate)
        self._queue = asyncio.Queue()

    async def close(self) -> None:
        self.close_calls += 1
        if self.is_open:
            self.is_open = False
            self._queue.put_nowait(b"")

    async def write(self, data: bytes) -> None:
        if self.fail_write is not None:
            raise self.fail_write
        line = data.decode("ascii").strip()
        self.writes.append(line)
        if self.auto_ack:
            reply = self.reply_for(line)
            if reply:
                self.feed(reply + "\n")

    async def read(self) -> bytes:
        return await self._queue.get()

    def feed(self, data: Union[str, bytes]) -> None:
        if isinstance(data, str):
            data = data.encode("ascii")
        self._queue.put_nowait(data)

    def hang_up(self) -> None:
        self._queue.put_nowait(b"")

    @staticmethod
    def reply_for(line: str) -> Optional[str]:
        if line.startswith("SPECTRAL:"):
            return "SPECTRAL_ACK:" + line[len("SPECTRAL:"):]
        if line.startswith("$FILTER,"):
            _, letter, degrees = line.split(",")
            return f"$FILTER_ACK,{letter},{degrees}"
        return None


class Recorder:
    """Collects every event published on a hub."""

    def __init__(self, hub: EventHub) -> None:
        self.events: List[SessionEvent] = []
        self.subscription = hub.subscribe(self.events.append)

    def of(self, *event_types: Type[SessionEvent]) -> list:
        return [event for event in self.events if isinstance(event, event_types)]

    def names(self) -> List[str]:
        return [type(event).__name__ for event in self.events]


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def recorder_for() -> Callable[[EventHub], Recorder]:
    return Recorder


@pytest.fixture
def until():
    async def _until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
        async def _poll() -> None:
            while not predicate():
                await asyncio.sleep(0.005)

        await asyncio.wait_for(_poll(), timeout=timeout)

    return _until


@pytest_asyncio.fixture
async def session(transport):
    link = LinkSession(
        transport, protocol=FilterProtocol.SPECTRAL, ack_timeout=0.5
    )
    await link.connect("/dev/ttyTEST", 9600)
    yield link
    await link.aclose()
