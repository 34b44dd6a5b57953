"""Adapter modules for external integrations."""

from .mqtt import MQTTClient, MQTTConnectionError, Presence
from .serial import SerialPortInfo, SerialTransport, list_serial_ports
from .simulator import FlightModel, SimulatedDevice

__all__ = [
    "FlightModel",
    "MQTTClient",
    "MQTTConnectionError",
    "Presence",
    "SerialPortInfo",
    "SerialTransport",
    "SimulatedDevice",
    "list_serial_ports",
]
