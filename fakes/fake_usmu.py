"""Fake serial port that simulates uSMU firmware behavior.

Implements the device side of the command grammar (LF-terminated commands,
"OK" acknowledgments, text measurement replies, fixed-size binary blocks for
DAC/ADC/EEPROM) and adds fault injection for the failure modes a real link
shows: late replies, dropped replies, garbage and error tokens.
"""

import logging
import re
import struct
from collections import deque
from typing import Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

RE_CHANNEL_CMD = re.compile(r"^(CH\d+):(.+)$")


class FakeUsmu:
    """Deterministic simulator of the uSMU firmware.

    The output side behaves like pyserial with a timeout: readline() and
    read() return what is buffered, or b"" when nothing is (a timeout).

    Fault injection applies to the reply of the next command written:
    - stall_next(): reply is withheld until a read times out, then appears
      (the device answered late)
    - drop_next(): reply is never sent
    - override_next(raw): reply is replaced by raw bytes

    reject(prefix) makes matching commands fail with an error line until
    the fake is discarded.
    """

    def __init__(
        self,
        uid: int = 4027056414,
        firmware_version: str = "1.0",
        load_ohms: float = 1000.0,
    ) -> None:
        """Initialize fake instrument.

        Args:
            uid: Unique device ID reported by *IDN?
            firmware_version: Version reported by *IDN?
            load_ohms: Resistive load on the output, used to simulate current
        """
        # Device identity
        self.uid = uid
        self.firmware_version = firmware_version
        self.load_ohms = load_ohms

        # Output channel state
        self.enabled = False
        self.voltage_v = 0.0
        self.limit_ma = 40.0
        self.oversampling = 1
        self.current_range: Optional[int] = None
        self.voltage_cal_mode = False

        # Converters and EEPROM
        self.voltage_dac = 0
        self.current_limit_dac = 0
        self.adc_codes: Dict[int, int] = {0: 0x1234, 2: 0xBEEF}
        self.eeprom: Dict[int, bytes] = {}
        self.calibration: Dict[str, tuple] = {}

        # Wire log: every command line received, without terminator
        self.commands: List[str] = []

        # Host-facing buffers
        self._input_buffer = bytearray()
        self._output = bytearray()
        self._late = bytearray()

        # Fault injection for upcoming replies
        self._faults: Deque[tuple] = deque()
        self._rejected: Dict[str, str] = {}

        # Port state
        self.is_open = True
        self.timeout: Optional[float] = 1.0

    # ========================================================================
    # SerialLike Interface
    # ========================================================================

    def close(self) -> None:
        """Close the fake serial port."""
        self.is_open = False
        logger.debug("FakeUsmu closed")

    def write(self, data: bytes) -> int:
        """Receive bytes from the host and answer complete commands."""
        if not self.is_open:
            raise RuntimeError("Port is closed")

        self._input_buffer.extend(data)
        logger.debug(f"FakeUsmu received: {data!r}")

        while b"\n" in self._input_buffer:
            idx = self._input_buffer.index(b"\n")
            line = bytes(self._input_buffer[:idx]).decode("ascii", errors="replace").strip()
            del self._input_buffer[: idx + 1]
            self.commands.append(line)
            self._respond(self._handle_command(line))

        return len(data)

    def readline(self) -> bytes:
        """Read one LF-terminated line, a partial line, or b"" on timeout."""
        if not self.is_open:
            raise RuntimeError("Port is closed")

        if not self._output:
            self._release_late()
            return b""

        if b"\n" in self._output:
            idx = self._output.index(b"\n") + 1
        else:
            idx = len(self._output)
        line = bytes(self._output[:idx])
        del self._output[:idx]
        logger.debug(f"FakeUsmu sending line: {line!r}")
        return line

    def read(self, size: int = 1) -> bytes:
        """Read up to size bytes, or b"" on timeout."""
        if not self.is_open:
            raise RuntimeError("Port is closed")

        if not self._output:
            self._release_late()
            return b""

        data = bytes(self._output[:size])
        del self._output[:size]
        logger.debug(f"FakeUsmu sending bytes: {data!r}")
        return data

    @property
    def in_waiting(self) -> int:
        return len(self._output)

    def flush(self) -> None:
        """Flush output buffer (no-op, writes are immediate)."""
        pass

    # ========================================================================
    # Fault Injection
    # ========================================================================

    def stall_next(self) -> None:
        """Withhold the next reply until the host's read times out."""
        self._faults.append(("stall", None))

    def drop_next(self) -> None:
        """Never send the next reply."""
        self._faults.append(("drop", None))

    def override_next(self, raw: bytes) -> None:
        """Send raw bytes instead of the next reply."""
        self._faults.append(("override", raw))

    def reject(self, prefix: str, message: str = "Command failed") -> None:
        """Answer every command starting with prefix with an error line."""
        self._rejected[prefix.upper()] = message

    def inject(self, raw: bytes) -> None:
        """Put unsolicited bytes on the line right now."""
        self._output.extend(raw)

    def _respond(self, reply: bytes) -> None:
        if self._faults:
            kind, raw = self._faults.popleft()
            if kind == "stall":
                self._late.extend(reply)
                return
            if kind == "drop":
                return
            reply = raw
        self._output.extend(reply)

    def _release_late(self) -> None:
        if self._late:
            self._output.extend(self._late)
            self._late.clear()

    # ========================================================================
    # Internal: Command Handling
    # ========================================================================

    def _handle_command(self, line: str) -> bytes:
        cmd = line.upper()

        for prefix, message in self._rejected.items():
            if cmd.startswith(prefix):
                return self._error(message)

        if cmd == "*IDN?":
            return self._text(f"uSMU version {self.firmware_version} ID:{self.uid}")

        if cmd == "*RST":
            self._reset_device()
            return self._ok()

        match = RE_CHANNEL_CMD.match(cmd)
        if match:
            if match.group(1) != "CH1":
                return self._error(f"Unknown channel {match.group(1)}")
            return self._handle_channel_command(match.group(2))

        verb, _, args = cmd.partition(" ")
        params = args.split()

        try:
            if verb == "DAC":
                self.voltage_dac = int(params[0])
                return struct.pack("<H", self.voltage_dac)

            if verb == "ADC":
                channel = int(params[0])
                if channel not in self.adc_codes:
                    return self._error(f"Invalid ADC channel {channel}")
                return struct.pack("<H", self.adc_codes[channel])

            if verb == "ILIM":
                self.current_limit_dac = int(params[0])
                return self._ok()

            if verb == "*READ":
                address = int(params[0])
                return self.eeprom.get(address, b"\xff\xff\xff\xff")

            if verb == "WRITE":
                address = int(params[0])
                self.eeprom[address] = struct.pack("<f", float(params[1]))
                return self.eeprom[address]

            if verb in ("CAL:DAC", "CAL:VOL", "CAL:ILIM"):
                self.calibration[verb] = (float(params[0]), float(params[1]))
                return self._ok()

            if verb == "CAL:CUR:RANGE":
                self.calibration[f"{verb} {params[0]}"] = (float(params[1]), float(params[2]))
                return self._ok()

        except (IndexError, ValueError):
            return self._error(f"Bad arguments: {line}")

        return self._error(f"Unknown command: {line}")

    def _handle_channel_command(self, cmd: str) -> bytes:
        verb, _, arg = cmd.partition(" ")

        try:
            if verb == "ENA":
                self.enabled = True
                return self._ok()

            if verb == "DIS":
                self.enabled = False
                return self._ok()

            if verb == "VOL":
                self.voltage_v = float(arg)
                return self._ok()

            if verb == "CUR":
                self.limit_ma = float(arg)
                return self._ok()

            if verb == "OSR":
                self.oversampling = int(arg)
                return self._ok()

            if verb == "MEA:VOL?":
                return self._text(f"{self._measured_voltage():.4f}")

            if verb == "MEA:VOL":
                self.voltage_v = float(arg)
                voltage = self._measured_voltage()
                return self._text(f"{voltage:.6f},{self._measured_current(voltage):.9f}")

            if verb == "VCAL":
                self.voltage_cal_mode = True
                return self._ok()

            if verb.startswith("RANGE"):
                self.current_range = int(verb[len("RANGE") :])
                return self._ok()

        except ValueError:
            return self._error(f"Bad argument: {cmd}")

        return self._error(f"Unknown command: {cmd}")

    def _measured_voltage(self) -> float:
        return self.voltage_v if self.enabled else 0.0

    def _measured_current(self, voltage: float) -> float:
        if not self.enabled:
            return 0.0
        limit_a = self.limit_ma / 1000.0
        current = voltage / self.load_ohms
        return max(-limit_a, min(limit_a, current))

    def _reset_device(self) -> None:
        self.enabled = False
        self.voltage_v = 0.0
        self.limit_ma = 40.0
        self.oversampling = 1
        self.current_range = None
        self.voltage_cal_mode = False
        logger.debug("FakeUsmu reset")

    def _ok(self) -> bytes:
        return b"OK\n"

    def _text(self, text: str) -> bytes:
        return text.encode("ascii") + b"\n"

    def _error(self, message: str) -> bytes:
        return f"ERR {message}".encode("ascii") + b"\n"
