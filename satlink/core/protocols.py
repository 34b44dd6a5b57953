"""Protocol definitions for byte-stream transports."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


class TransportError(RuntimeError):
    """Raised by transports when opening, reading or writing fails."""


@runtime_checkable
class Transport(Protocol):
    """Minimal contract for a byte-oriented link to the payload.

    A transport is owned by exactly one ``LinkSession``; nothing else may read
    from or write to it.
    """

    @property
    def is_open(self) -> bool:
        """Whether the underlying port is currently open."""
        ...

    async def open(self, port: str, baudrate: int) -> None:
        """Open the port.

        Raises:
            TransportError: If the port cannot be opened.
        """
        ...

    async def close(self) -> None:
        """Close the port; closing an already closed transport is a no-op."""
        ...

    async def write(self, data: bytes) -> None:
        """Write ``data`` in full.

        Raises:
            TransportError: If the write fails or the port is closed.
        """
        ...

    async def read(self) -> bytes:
        """Wait for the next chunk of received bytes.

        Chunks are not aligned to lines. An empty result means the port was
        closed and no more data will arrive.

        Raises:
            TransportError: If reading fails.
        """
        ...
