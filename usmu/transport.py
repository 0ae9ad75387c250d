"""Serial transport layer for uSMU communication."""

import logging
import time
from typing import List, Optional, Protocol

from usmu import protocol
from usmu.errors import ReplyTimeout, SerialIOError

logger = logging.getLogger(__name__)


class SerialLike(Protocol):
    """Protocol for serial port interface (allows test doubles)."""

    timeout: Optional[float]

    def write(self, data: bytes) -> int:
        """Write bytes to serial port."""
        ...

    def read(self, size: int = 1) -> bytes:
        """Read up to size bytes, returning early on timeout."""
        ...

    def readline(self) -> bytes:
        """Read a line from serial port."""
        ...

    def flush(self) -> None:
        """Flush output buffer (force transmission)."""
        ...

    def close(self) -> None:
        """Close serial port."""
        ...

    @property
    def in_waiting(self) -> int:
        """Number of bytes already received and not yet read."""
        ...

    @property
    def is_open(self) -> bool:
        """Check if port is open."""
        ...


class Transport:
    """Duplex byte channel over pyserial.

    Provides the three blocking primitives the Session builds on (write,
    read_line, read_exact), each bounded by a per-call timeout, plus a drain
    used to discard late replies. A Transport is owned by exactly one Session.
    """

    def __init__(self, serial_port: SerialLike) -> None:
        """Initialize transport with a serial port instance.

        Args:
            serial_port: Object implementing SerialLike protocol
                        (e.g., serial.Serial or FakeUsmu for testing)
        """
        self._port = serial_port
        self._claimed = False

    @classmethod
    def open(
        cls, port: str, baud: int = protocol.BAUD_RATE, timeout_s: float = protocol.REPLY_TIMEOUT
    ) -> "Transport":
        """Open a real serial port (requires pyserial).

        Args:
            port: Serial port device name (e.g., "/dev/ttyACM0")
            baud: Baud rate. Default 9600; the USB CDC link ignores it.
            timeout_s: Default read timeout in seconds.

        Returns:
            Transport instance wrapping opened serial port

        Raises:
            SerialIOError: If port cannot be opened
        """
        try:
            import serial  # type: ignore
        except ImportError as e:
            raise SerialIOError("pyserial not installed. Run: pip install pyserial") from e

        try:
            ser = serial.Serial(
                port=port,
                baudrate=baud,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=timeout_s,
                rtscts=False,
                dsrdtr=False,
                xonxoff=False,
            )
            logger.info(f"Opened serial port {port} at {baud} baud, timeout={timeout_s}s")
            return cls(ser)
        except Exception as e:
            raise SerialIOError(f"Failed to open {port} at {baud} baud: {e}") from e

    def claim(self) -> None:
        """Mark the transport as owned by a session.

        Raises:
            SerialIOError: If another session already owns it
        """
        if self._claimed:
            raise SerialIOError("Transport is already owned by another session")
        self._claimed = True

    def close(self) -> None:
        """Close the serial port."""
        if self._port.is_open:
            self._port.close()
            logger.info("Closed serial port")

    @property
    def is_open(self) -> bool:
        """Check if port is currently open."""
        return self._port.is_open

    def _ensure_open(self) -> None:
        if not self._port.is_open:
            raise SerialIOError("Serial port is not open")

    def _set_timeout(self, timeout: Optional[float]) -> Optional[float]:
        previous = self._port.timeout
        if timeout is not None:
            self._port.timeout = timeout
        return previous

    def write(self, data: bytes) -> None:
        """Write raw bytes to port (no automatic termination).

        Args:
            data: Raw bytes to send

        Raises:
            SerialIOError: If write fails
        """
        self._ensure_open()

        try:
            sent = self._port.write(data)
            self._port.flush()  # Force immediate transmission
            logger.debug(f"Sent {sent} bytes: {data!r}")
        except Exception as e:
            raise SerialIOError(f"Failed to write to port: {e}") from e

    def read_line(self, timeout: Optional[float] = None) -> bytes:
        """Read bytes up to and including the LF terminator.

        Args:
            timeout: Read timeout in seconds; None keeps the port's current timeout

        Returns:
            Line bytes. An unterminated partial line is returned as-is when
            the timeout expires mid-line.

        Raises:
            ReplyTimeout: If no byte arrives within the timeout
            SerialIOError: If port is closed or read fails
        """
        self._ensure_open()

        previous = self._set_timeout(timeout)
        try:
            line = self._port.readline()
        except Exception as e:
            raise SerialIOError(f"Failed to read line: {e}") from e
        finally:
            self._port.timeout = previous

        if not line:
            raise ReplyTimeout(f"No reply line within {timeout if timeout is not None else previous}s")

        logger.debug(f"Received line: {line!r}")
        return bytes(line)

    def read_exact(self, n: int, timeout: Optional[float] = None) -> bytes:
        """Read a fixed-length binary block.

        Args:
            n: Number of bytes expected
            timeout: Read timeout in seconds; None keeps the port's current timeout

        Returns:
            Up to n bytes; fewer when the timeout expires mid-block

        Raises:
            ReplyTimeout: If no byte arrives within the timeout
            SerialIOError: If port is closed or read fails
        """
        self._ensure_open()

        previous = self._set_timeout(timeout)
        try:
            data = self._port.read(n)
        except Exception as e:
            raise SerialIOError(f"Failed to read {n} bytes: {e}") from e
        finally:
            self._port.timeout = previous

        if not data:
            raise ReplyTimeout(f"No reply block within {timeout if timeout is not None else previous}s")

        logger.debug(f"Received {len(data)}/{n} bytes: {data!r}")
        return bytes(data)

    def read_available(self) -> bytes:
        """Read whatever is already buffered, without waiting.

        Raises:
            SerialIOError: If port is closed or read fails
        """
        self._ensure_open()

        try:
            pending = self._port.in_waiting
            if not pending:
                return b""
            data = bytes(self._port.read(pending))
        except Exception as e:
            raise SerialIOError(f"Failed to read pending input: {e}") from e

        logger.debug(f"Collected {len(data)} pending bytes: {data!r}")
        return data

    def drain(
        self,
        quiet_s: float = protocol.DRAIN_QUIET_TIME,
        max_s: float = protocol.DRAIN_MAX_TIME,
    ) -> int:
        """Discard input until the line has been silent for quiet_s.

        Used after an abandoned command so its late reply can't be taken for
        the next command's reply.

        Args:
            quiet_s: Silence window that ends the drain
            max_s: Upper bound on the whole drain

        Returns:
            Number of bytes discarded

        Raises:
            SerialIOError: If port is closed or read fails
        """
        self._ensure_open()

        discarded: List[bytes] = []
        previous = self._set_timeout(quiet_s)
        start = time.monotonic()
        try:
            while time.monotonic() - start < max_s:
                chunk = self._port.read(max(1, self._port.in_waiting))
                if not chunk:
                    break
                discarded.append(bytes(chunk))
            else:
                logger.warning(f"Input still active after {max_s}s drain")
        except Exception as e:
            raise SerialIOError(f"Failed to drain input: {e}") from e
        finally:
            self._port.timeout = previous

        count = sum(len(chunk) for chunk in discarded)
        if count:
            logger.warning(f"Drained {count} stale bytes: {b''.join(discarded)!r}")
        return count


def find_serial_ports() -> List[str]:
    """List serial ports whose USB VID/PID match the uSMU.

    Returns:
        Device names, e.g. ["/dev/ttyACM0"]

    Raises:
        SerialIOError: If pyserial is not installed
    """
    try:
        from serial.tools import list_ports  # type: ignore
    except ImportError as e:
        raise SerialIOError("pyserial not installed. Run: pip install pyserial") from e

    ports = [
        info.device
        for info in list_ports.comports()
        if info.vid == protocol.USB_VID and info.pid == protocol.USB_PID
    ]
    logger.debug(f"Found {len(ports)} uSMU serial port(s): {ports}")
    return ports
