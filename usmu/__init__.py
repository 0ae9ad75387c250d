"""
usmu - Python driver for the uSMU source-measure unit.

Speaks the instrument's SCPI-like text protocol over its USB serial port.
"""

from usmu.config import SessionConfig
from usmu.errors import (
    DecodeError,
    DeviceError,
    MalformedReply,
    ReplyTimeout,
    SerialIOError,
    SessionBusy,
    UnexpectedLength,
    UsmuError,
    ValidationError,
)
from usmu.models import Channel, ChannelState, IvMeasurement, SessionState
from usmu.session import Session
from usmu.transport import Transport, find_serial_ports

__version__ = "0.1.0"

__all__ = [
    "Session",
    "SessionConfig",
    "Transport",
    "find_serial_ports",
    "Channel",
    "ChannelState",
    "IvMeasurement",
    "SessionState",
    "UsmuError",
    "ValidationError",
    "ReplyTimeout",
    "DecodeError",
    "MalformedReply",
    "UnexpectedLength",
    "DeviceError",
    "SerialIOError",
    "SessionBusy",
]
