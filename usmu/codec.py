"""Pure functions mapping commands to wire bytes and reply bytes to responses.

Nothing here touches a transport. `encode` is total over validated commands;
`decode` dispatches on the issuing command's reply shape and raises a
DecodeError subclass or DeviceError when the reply doesn't fit.
"""

import struct
from decimal import Decimal
from typing import Tuple

from usmu import protocol
from usmu.errors import DeviceError, MalformedReply, UnexpectedLength, ValidationError
from usmu.models import (
    Acknowledged,
    Command,
    Disable,
    Enable,
    EnableVoltageCalibration,
    Identify,
    Identity,
    IvMeasurement,
    LockCurrentRange,
    Measure,
    Measurement,
    MeasureVoltage,
    RawBinary,
    ReadAdc,
    ReadCalibration,
    ReplyShape,
    Reset,
    Response,
    SetCurrentLimit,
    SetCurrentLimitDac,
    SetOversampling,
    SetVoltage,
    SetVoltageDac,
    WriteCalibration,
    WriteCurrentCalibration,
    WriteCurrentLimitDacCalibration,
    WriteVoltageAdcCalibration,
    WriteVoltageDacCalibration,
)


# ============================================================================
# Numbers
# ============================================================================


def format_number(value: float) -> str:
    """Render a float as the shortest round-trip fixed-point text.

    The firmware's parser is not guaranteed to accept exponents, so 1e-09 is
    rendered as "0.000000001".

    Args:
        value: Finite float

    Returns:
        ASCII text such as "1.25", "-0.5" or "0.000000001"
    """
    return format(Decimal(repr(float(value))), "f")


def parse_number(text: str) -> float:
    """Parse a number in the instrument's notation.

    Accepts optional sign, fixed point and optional exponent ("1.2345",
    "-0.5", "+3", "1.5E-3"). Rejects everything else, including "nan" and "inf".

    Raises:
        MalformedReply: If text is not a number
    """
    candidate = text.strip()
    if not protocol.RE_NUMBER.match(candidate):
        raise MalformedReply(f"Expected a number, got {text!r}")
    return float(candidate)


def _milliamps(limit_a: float) -> float:
    # Round off binary noise from the unit conversion (0.0123 A -> 12.3 mA)
    return round(limit_a * 1e3, 9)


# ============================================================================
# Binary Payloads
# ============================================================================


def encode_u16(value: int) -> bytes:
    """Pack an unsigned 16-bit code in the instrument's byte order."""
    return struct.pack(protocol.U16_STRUCT, value)


def decode_u16(data: bytes) -> int:
    """Unpack an unsigned 16-bit code from a DAC echo or ADC reply.

    Raises:
        UnexpectedLength: If data is not exactly two bytes
    """
    if len(data) != struct.calcsize(protocol.U16_STRUCT):
        raise UnexpectedLength(struct.calcsize(protocol.U16_STRUCT), len(data))
    (value,) = struct.unpack(protocol.U16_STRUCT, data)
    return value


def calibration_block(value: float) -> bytes:
    """Pack a calibration constant into an EEPROM block.

    Raises:
        ValidationError: If value doesn't fit a float32
    """
    try:
        return struct.pack(protocol.CALIBRATION_STRUCT, value)
    except (OverflowError, struct.error) as e:
        raise ValidationError(f"Calibration value {value!r} does not fit a float32") from e


def calibration_value(block: bytes) -> float:
    """Unpack the calibration constant stored in an EEPROM block.

    Raises:
        ValidationError: If block has the wrong size
    """
    if len(block) != protocol.CALIBRATION_BLOCK_SIZE:
        raise ValidationError(
            f"Calibration block must be {protocol.CALIBRATION_BLOCK_SIZE} bytes, got {len(block)}"
        )
    (value,) = struct.unpack(protocol.CALIBRATION_STRUCT, block)
    return value


# ============================================================================
# Encoding
# ============================================================================


def render(command: Command) -> str:
    """Render a command as its mnemonic line, without terminator.

    Args:
        command: Validated command instance

    Returns:
        Command text, e.g. "CH1:VOL 1.25"

    Raises:
        ValueError: If the command type is unknown
    """
    if isinstance(command, Enable):
        return f"{command.channel.value}:{protocol.CMD_ENABLE}"
    elif isinstance(command, Disable):
        return f"{command.channel.value}:{protocol.CMD_DISABLE}"
    elif isinstance(command, SetVoltage):
        return f"{command.channel.value}:{protocol.CMD_VOLTAGE} {format_number(command.voltage_v)}"
    elif isinstance(command, SetCurrentLimit):
        # Wire unit is milliamps
        milliamps = format_number(_milliamps(command.limit_a))
        return f"{command.channel.value}:{protocol.CMD_CURRENT_LIMIT} {milliamps}"
    elif isinstance(command, MeasureVoltage):
        return f"{command.channel.value}:{protocol.CMD_MEASURE_VOLTAGE}{protocol.QUERY_SUFFIX}"
    elif isinstance(command, Measure):
        return (
            f"{command.channel.value}:{protocol.CMD_MEASURE_VOLTAGE} "
            f"{format_number(command.voltage_v)}"
        )
    elif isinstance(command, SetOversampling):
        return f"{command.channel.value}:{protocol.CMD_OVERSAMPLING} {command.ratio}"
    elif isinstance(command, EnableVoltageCalibration):
        return f"{command.channel.value}:{protocol.CMD_VOLTAGE_CAL_MODE}"
    elif isinstance(command, LockCurrentRange):
        # No separator between mnemonic and range
        return f"{command.channel.value}:{protocol.CMD_CURRENT_RANGE}{command.current_range}"
    elif isinstance(command, SetVoltageDac):
        return f"{protocol.CMD_VOLTAGE_DAC} {command.code}"
    elif isinstance(command, ReadAdc):
        return f"{protocol.CMD_ADC} {command.adc_channel}"
    elif isinstance(command, SetCurrentLimitDac):
        return f"{protocol.CMD_CURRENT_LIMIT_DAC} {command.code}"
    elif isinstance(command, ReadCalibration):
        return f"{protocol.CMD_EEPROM_READ} {command.address}"
    elif isinstance(command, WriteCalibration):
        value = format_number(calibration_value(command.block))
        return f"{protocol.CMD_EEPROM_WRITE} {command.address} {value}"
    elif isinstance(command, WriteVoltageDacCalibration):
        return _render_linear(protocol.CMD_CAL_VOLTAGE_DAC, command.slope, command.intercept)
    elif isinstance(command, WriteVoltageAdcCalibration):
        return _render_linear(protocol.CMD_CAL_VOLTAGE_ADC, command.slope, command.intercept)
    elif isinstance(command, WriteCurrentLimitDacCalibration):
        return _render_linear(protocol.CMD_CAL_CURRENT_LIMIT_DAC, command.slope, command.intercept)
    elif isinstance(command, WriteCurrentCalibration):
        return _render_linear(
            f"{protocol.CMD_CAL_CURRENT_RANGE} {command.current_range}",
            command.slope,
            command.intercept,
        )
    elif isinstance(command, Identify):
        return protocol.CMD_IDENTIFY
    elif isinstance(command, Reset):
        return protocol.CMD_RESET
    else:
        raise ValueError(f"Unknown command type: {type(command).__name__}")


def _render_linear(mnemonic: str, slope: float, intercept: float) -> str:
    return f"{mnemonic} {format_number(slope)} {format_number(intercept)}"


def encode(command: Command) -> bytes:
    """Encode a command into the bytes written to the instrument.

    Args:
        command: Validated command instance

    Returns:
        ASCII command line including the LF terminator
    """
    return render(command).encode("ascii") + protocol.INPUT_TERMINATOR


# ============================================================================
# Decoding
# ============================================================================


def _text_line(raw: bytes) -> str:
    try:
        text = raw.decode("ascii")
    except UnicodeDecodeError as e:
        raise MalformedReply(f"Reply is not ASCII: {raw!r}") from e
    return text.rstrip("\r\n")


def _raise_if_device_error(line: str) -> None:
    stripped = line.strip()
    if stripped.upper().startswith(protocol.ERROR_TOKEN):
        message = stripped[len(protocol.ERROR_TOKEN) :].lstrip(":, ").strip()
        raise DeviceError(message or stripped)


def decode(command: Command, raw: bytes) -> Response:
    """Decode the reply to a command.

    Args:
        command: The command that produced the reply
        raw: Reply bytes; a text line (terminator optional) or a binary block

    Returns:
        Acknowledged, Measurement, IvMeasurement, Identity or RawBinary

    Raises:
        MalformedReply: If a text reply cannot be parsed
        UnexpectedLength: If a binary reply has the wrong byte count
        DeviceError: If the instrument replied with an error token
    """
    if command.reply_shape is ReplyShape.BINARY:
        return _decode_binary(command, raw)

    line = _text_line(raw)
    _raise_if_device_error(line)

    if command.reply_shape is ReplyShape.ACK:
        if line.strip() != protocol.ACK_TOKEN:
            raise MalformedReply(
                f"Expected {protocol.ACK_TOKEN!r} for {render(command)!r}, got {line!r}"
            )
        return Acknowledged()

    if isinstance(command, MeasureVoltage):
        return Measurement(parse_number(line))

    if isinstance(command, Measure):
        match = protocol.RE_MEASURE_PAIR.match(line)
        if not match:
            raise MalformedReply(f"Expected '<volts>,<amps>', got {line!r}")
        return IvMeasurement(
            voltage_v=parse_number(match.group(1)),
            current_a=parse_number(match.group(2)),
        )

    if isinstance(command, Identify):
        text = line.strip()
        if not text:
            raise MalformedReply("Empty identity reply")
        return Identity(text)

    raise ValueError(f"No text decoder for command type: {type(command).__name__}")


def _decode_binary(command: Command, raw: bytes) -> RawBinary:
    expected = command.reply_length
    if len(raw) == expected:
        # Blocks aren't self-describing; an exact-size reply is always data
        return RawBinary(bytes(raw))

    # A terminated ERR line in place of the block
    if raw.endswith(protocol.OUTPUT_TERMINATOR):
        try:
            _raise_if_device_error(raw.decode("ascii"))
        except UnicodeDecodeError:
            pass

    raise UnexpectedLength(
        expected,
        len(raw),
        f"Expected {expected}-byte reply to {render(command)!r}, got {len(raw)} bytes: {raw!r}",
    )


# ============================================================================
# Identity and Reference Replies
# ============================================================================


def parse_identity(text: str) -> Tuple[str, int]:
    """Split the identity banner into firmware version and unique device ID.

    Expected format: "uSMU version 1.0 ID:<uid>"

    Returns:
        Tuple of (version, uid)

    Raises:
        MalformedReply: If text doesn't match the banner format
    """
    match = protocol.RE_IDENTITY.match(text.strip())
    if not match:
        raise MalformedReply(f"Identity doesn't match expected pattern: {text!r}")
    return match.group(1), int(match.group(2))


def expected_reply(command: Command, response: Response) -> bytes:
    """Render the reply a conforming instrument sends for a command and result.

    Inverse of `decode` for well-formed replies.
    """
    if isinstance(response, RawBinary):
        return response.data
    if isinstance(response, Acknowledged):
        text = protocol.ACK_TOKEN
    elif isinstance(response, Measurement):
        text = format_number(response.value)
    elif isinstance(response, IvMeasurement):
        text = f"{format_number(response.voltage_v)},{format_number(response.current_a)}"
    elif isinstance(response, Identity):
        text = response.text
    else:
        raise ValueError(f"Unknown response type: {type(response).__name__}")
    return text.encode("ascii") + protocol.OUTPUT_TERMINATOR
