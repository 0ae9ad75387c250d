"""Custom exceptions for the uSMU driver."""

from typing import Optional


class UsmuError(Exception):
    """Base exception for all uSMU library errors."""

    pass


class ValidationError(UsmuError):
    """Raised when a command parameter is outside the instrument's documented range.

    Always raised before anything is written to the transport.
    """

    pass


class ReplyTimeout(UsmuError):
    """Raised when the instrument does not reply within the call's timeout."""

    pass


class DecodeError(UsmuError):
    """Raised when reply bytes don't match the shape expected for the command."""

    pass


class MalformedReply(DecodeError):
    """Raised when a text reply cannot be parsed (bad number, wrong token)."""

    pass


class UnexpectedLength(DecodeError):
    """Raised when a binary reply has the wrong number of bytes."""

    def __init__(self, expected: int, actual: int, message: Optional[str] = None) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(message or f"Expected {expected}-byte reply, got {actual} bytes")


class DeviceError(UsmuError):
    """Raised when the instrument replies with an error token."""

    def __init__(self, device_message: str) -> None:
        self.device_message = device_message
        super().__init__(f"Device reported error: {device_message}")


class SerialIOError(UsmuError):
    """Raised when serial communication fails (port closed, write failure, etc)."""

    pass


class SessionBusy(UsmuError):
    """Raised when a command is issued while another is still awaiting its reply."""

    pass
