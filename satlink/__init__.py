"""Ground station client for a payload reached over a serial link."""

__version__ = "0.1.0"
