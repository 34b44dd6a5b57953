"""Line framing for the byte-oriented device link.

The device writes newline-terminated ASCII lines, but the transport hands
bytes over at arbitrary boundaries. ``LineFramer`` accumulates those chunks
and releases complete lines in arrival order. Either ``\\r`` or ``\\n`` ends a
line; runs of delimiters (``\\r\\n`` included) would produce empty lines, which
are dropped.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional

LOGGER = logging.getLogger(__name__)

_DELIMITERS = re.compile(rb"[\r\n]")


class LineFramer:
    """Turns an arbitrarily chunked byte stream into discrete text lines.

    ``max_line_bytes`` bounds the incomplete trailing line. A line that grows
    past it is dropped up to its delimiter; without a bound nothing but
    delimiters and empty lines is ever dropped.
    """

    def __init__(
        self, *, encoding: str = "ascii", max_line_bytes: Optional[int] = None
    ) -> None:
        self._encoding = encoding
        self._max_line_bytes = max_line_bytes
        self._buffer = bytearray()
        self._overflowed = False

    @property
    def pending(self) -> int:
        """Number of buffered bytes belonging to the incomplete trailing line."""
        return len(self._buffer)

    def ingest(self, data: bytes) -> List[str]:
        """Append ``data`` and return every line it completed, oldest first."""

        if not data:
            return []

        lines: List[str] = []
        start = 0
        # Only the new bytes are scanned; the buffer never holds a delimiter.
        for match in _DELIMITERS.finditer(data):
            self._buffer.extend(data[start:match.start()])
            start = match.end()
            if self._overflowed:
                self._overflowed = False
                self._buffer.clear()
                continue
            text = self._buffer.decode(self._encoding, errors="replace").strip()
            self._buffer.clear()
            if text:
                lines.append(text)

        if not self._overflowed:
            self._buffer.extend(data[start:])
            self._check_overflow()
        return lines

    def reset(self) -> None:
        """Drop any partial line; input simply stopped, so this is not an error."""

        if self._buffer:
            LOGGER.debug("Discarding %d buffered bytes on reset", len(self._buffer))
        self._buffer.clear()
        self._overflowed = False

    def _check_overflow(self) -> None:
        limit = self._max_line_bytes
        if limit is None or len(self._buffer) <= limit:
            return
        LOGGER.warning(
            "Dropping line longer than %d bytes without a delimiter", limit
        )
        self._buffer.clear()
        self._overflowed = True
