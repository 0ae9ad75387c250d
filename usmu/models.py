"""Data models for the uSMU driver: channels, commands, responses and state."""

import math
import struct
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Optional, Union

from usmu import protocol
from usmu.errors import ValidationError


class SessionState(Enum):
    """Session request/reply states."""

    IDLE = "idle"
    AWAITING_REPLY = "awaiting_reply"


class ReplyShape(Enum):
    """How the instrument answers a command."""

    ACK = "ack"  # short acknowledgment line
    TEXT = "text"  # textual reply line
    BINARY = "binary"  # fixed-length raw block


class Channel(Enum):
    """Physically present output channels. The uSMU has a single channel."""

    CH1 = "CH1"

    @classmethod
    def parse(cls, value: object) -> "Channel":
        """Resolve a Channel from an enum member, a name like "CH1", or a number.

        Raises:
            ValidationError: If the value does not name a present channel
        """
        if isinstance(value, Channel):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().upper())
            except ValueError:
                pass
        elif isinstance(value, int) and not isinstance(value, bool):
            for channel in cls:
                if channel.number == value:
                    return channel
        present = ", ".join(c.value for c in cls)
        raise ValidationError(f"Unknown channel {value!r}, present channels: {present}")

    @property
    def number(self) -> int:
        return int(self.value[2:])


def _check_number(name: str, value: object, low: float, high: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number, got {value!r}")
    result = float(value)
    if not math.isfinite(result) or not (low <= result <= high):
        raise ValidationError(f"{name} must be {low}-{high}, got {value}")
    return result


def _check_finite(name: str, value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number, got {value!r}")
    result = float(value)
    if not math.isfinite(result):
        raise ValidationError(f"{name} must be finite, got {value}")
    return result


def _check_int(name: str, value: object, low: int, high: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    if not (low <= value <= high):
        raise ValidationError(f"{name} must be {low}-{high}, got {value}")
    return value


def _check_choice(name: str, value: object, allowed: frozenset) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value not in allowed:
        raise ValidationError(f"{name} must be one of {sorted(allowed)}, got {value!r}")
    return value


# ============================================================================
# Commands
# ============================================================================


@dataclass(frozen=True)
class Command:
    """Base for all instrument commands.

    Class attributes describe the reply the instrument sends back:
        reply_shape: ACK, TEXT or BINARY
        reply_length: Byte count of a BINARY reply (0 otherwise)
        hardware_validated: False for commands implemented from the firmware
            documentation only, never exercised against a real device
    """

    reply_shape: ClassVar[ReplyShape] = ReplyShape.ACK
    reply_length: ClassVar[int] = 0
    hardware_validated: ClassVar[bool] = True


@dataclass(frozen=True)
class ChannelCommand(Command):
    """Command addressed to one output channel."""

    channel: Channel

    def __post_init__(self) -> None:
        object.__setattr__(self, "channel", Channel.parse(self.channel))


@dataclass(frozen=True)
class Enable(ChannelCommand):
    """Enable the channel output."""


@dataclass(frozen=True)
class Disable(ChannelCommand):
    """Disable the channel output (high impedance)."""


@dataclass(frozen=True)
class SetVoltage(ChannelCommand):
    """Source the given voltage in volts."""

    voltage_v: float

    def __post_init__(self) -> None:
        super().__post_init__()
        object.__setattr__(
            self,
            "voltage_v",
            _check_number("voltage_v", self.voltage_v, protocol.VOLTAGE_MIN, protocol.VOLTAGE_MAX),
        )


@dataclass(frozen=True)
class SetCurrentLimit(ChannelCommand):
    """Set the sink/source current limit in amps.

    The limit is an absolute value applied to both directions; sinking shows
    up as a negative current in measurements.
    """

    limit_a: float

    def __post_init__(self) -> None:
        super().__post_init__()
        object.__setattr__(
            self,
            "limit_a",
            _check_number(
                "limit_a", self.limit_a, protocol.CURRENT_LIMIT_MIN, protocol.CURRENT_LIMIT_MAX
            ),
        )


@dataclass(frozen=True)
class MeasureVoltage(ChannelCommand):
    """Query the voltage measured at the channel output."""

    reply_shape: ClassVar[ReplyShape] = ReplyShape.TEXT


@dataclass(frozen=True)
class Measure(ChannelCommand):
    """Source a voltage and return the measured voltage and current."""

    reply_shape: ClassVar[ReplyShape] = ReplyShape.TEXT

    voltage_v: float

    def __post_init__(self) -> None:
        super().__post_init__()
        object.__setattr__(
            self,
            "voltage_v",
            _check_number("voltage_v", self.voltage_v, protocol.VOLTAGE_MIN, protocol.VOLTAGE_MAX),
        )


@dataclass(frozen=True)
class SetOversampling(ChannelCommand):
    """Set the number of ADC samples averaged per measurement."""

    ratio: int

    def __post_init__(self) -> None:
        super().__post_init__()
        _check_choice("ratio", self.ratio, protocol.VALID_OVERSAMPLING)


@dataclass(frozen=True)
class EnableVoltageCalibration(ChannelCommand):
    """Put the channel into voltage calibration mode."""

    hardware_validated: ClassVar[bool] = False


@dataclass(frozen=True)
class LockCurrentRange(ChannelCommand):
    """Lock the current range and temporarily clear current calibration data."""

    hardware_validated: ClassVar[bool] = False

    current_range: int

    def __post_init__(self) -> None:
        super().__post_init__()
        _check_choice("current_range", self.current_range, protocol.VALID_CURRENT_RANGES)


@dataclass(frozen=True)
class SetVoltageDac(Command):
    """Drive the voltage DAC with a raw code. The device echoes the applied code."""

    reply_shape: ClassVar[ReplyShape] = ReplyShape.BINARY
    reply_length: ClassVar[int] = protocol.DAC_REPLY_LENGTH
    hardware_validated: ClassVar[bool] = False

    code: int

    def __post_init__(self) -> None:
        _check_int("code", self.code, 0, protocol.VOLTAGE_DAC_MAX)


@dataclass(frozen=True)
class ReadAdc(Command):
    """Differential conversion between adjacent ADC channels (0 with 1, 2 with 3)."""

    reply_shape: ClassVar[ReplyShape] = ReplyShape.BINARY
    reply_length: ClassVar[int] = protocol.ADC_REPLY_LENGTH
    hardware_validated: ClassVar[bool] = False

    adc_channel: int

    def __post_init__(self) -> None:
        _check_choice("adc_channel", self.adc_channel, protocol.VALID_ADC_CHANNELS)


@dataclass(frozen=True)
class SetCurrentLimitDac(Command):
    """Drive the current limit DAC with a raw 12-bit code."""

    hardware_validated: ClassVar[bool] = False

    code: int

    def __post_init__(self) -> None:
        _check_int("code", self.code, 0, protocol.CURRENT_LIMIT_DAC_MAX)


@dataclass(frozen=True)
class ReadCalibration(ChannelCommand):
    """Read one calibration cell from EEPROM."""

    reply_shape: ClassVar[ReplyShape] = ReplyShape.BINARY
    reply_length: ClassVar[int] = protocol.CALIBRATION_BLOCK_SIZE
    hardware_validated: ClassVar[bool] = False

    address: int

    def __post_init__(self) -> None:
        super().__post_init__()
        _check_int(
            "address", self.address, protocol.EEPROM_ADDRESS_MIN, protocol.EEPROM_ADDRESS_MAX
        )


@dataclass(frozen=True)
class WriteCalibration(ChannelCommand):
    """Write one calibration cell to EEPROM. The device echoes the stored block.

    The firmware's handling of this command disagrees with its own command
    documentation; the encoding here follows the documentation.
    """

    reply_shape: ClassVar[ReplyShape] = ReplyShape.BINARY
    reply_length: ClassVar[int] = protocol.CALIBRATION_BLOCK_SIZE
    hardware_validated: ClassVar[bool] = False

    address: int
    block: bytes

    def __post_init__(self) -> None:
        super().__post_init__()
        _check_int(
            "address", self.address, protocol.EEPROM_ADDRESS_MIN, protocol.EEPROM_ADDRESS_MAX
        )
        if not isinstance(self.block, (bytes, bytearray)):
            raise ValidationError(f"block must be bytes, got {type(self.block).__name__}")
        if len(self.block) != protocol.CALIBRATION_BLOCK_SIZE:
            raise ValidationError(
                f"block must be exactly {protocol.CALIBRATION_BLOCK_SIZE} bytes, "
                f"got {len(self.block)}"
            )
        object.__setattr__(self, "block", bytes(self.block))
        # Rendered as text on the wire, so it must hold a finite number
        (value,) = struct.unpack(protocol.CALIBRATION_STRUCT, self.block)
        if not math.isfinite(value):
            raise ValidationError(f"block must hold a finite float32, got {self.block!r}")


@dataclass(frozen=True)
class _LinearCalibration(Command):
    hardware_validated: ClassVar[bool] = False

    slope: float
    intercept: float

    def __post_init__(self) -> None:
        object.__setattr__(self, "slope", _check_finite("slope", self.slope))
        object.__setattr__(self, "intercept", _check_finite("intercept", self.intercept))


@dataclass(frozen=True)
class WriteVoltageDacCalibration(_LinearCalibration):
    """Store the voltage DAC calibration line in EEPROM."""


@dataclass(frozen=True)
class WriteVoltageAdcCalibration(_LinearCalibration):
    """Store the voltage ADC calibration line in EEPROM."""


@dataclass(frozen=True)
class WriteCurrentLimitDacCalibration(_LinearCalibration):
    """Store the current limit DAC calibration line in EEPROM."""


@dataclass(frozen=True)
class WriteCurrentCalibration(Command):
    """Store the current ADC calibration line for one current range in EEPROM."""

    hardware_validated: ClassVar[bool] = False

    current_range: int
    slope: float
    intercept: float

    def __post_init__(self) -> None:
        _check_choice("current_range", self.current_range, protocol.VALID_CURRENT_RANGES)
        object.__setattr__(self, "slope", _check_finite("slope", self.slope))
        object.__setattr__(self, "intercept", _check_finite("intercept", self.intercept))


@dataclass(frozen=True)
class Identify(Command):
    """Query the instrument identity string."""

    reply_shape: ClassVar[ReplyShape] = ReplyShape.TEXT


@dataclass(frozen=True)
class Reset(Command):
    """Reset the instrument to its power-on state."""


# ============================================================================
# Responses
# ============================================================================


@dataclass(frozen=True)
class Acknowledged:
    """The instrument accepted an action command."""


@dataclass(frozen=True)
class Measurement:
    """A single measured value, in the unit implied by the issuing command."""

    value: float


@dataclass(frozen=True)
class IvMeasurement:
    """Voltage and current measured at one operating point."""

    voltage_v: float
    current_a: float


@dataclass(frozen=True)
class Identity:
    """Identity string as reported by *IDN?."""

    text: str


@dataclass(frozen=True)
class RawBinary:
    """Fixed-length binary reply, bytes verbatim."""

    data: bytes


Response = Union[Acknowledged, Measurement, IvMeasurement, Identity, RawBinary]


# ============================================================================
# Channel State
# ============================================================================


@dataclass(frozen=True)
class ChannelState:
    """Last known channel state, as commanded. None means unknown.

    Attributes:
        enabled: Output enable state
        voltage_v: Last voltage setpoint in volts
        limit_a: Last current limit in amps
        oversampling: Last oversampling ratio
    """

    enabled: Optional[bool] = None
    voltage_v: Optional[float] = None
    limit_a: Optional[float] = None
    oversampling: Optional[int] = None
