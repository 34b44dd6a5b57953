"""Core primitives for satlink."""

from .protocols import Transport, TransportError

__all__ = [
    "Transport",
    "TransportError",
]
