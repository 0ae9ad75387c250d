"""Stateful request/reply driver for one uSMU connection."""

import logging
import time
from typing import Optional

from usmu import codec, protocol
from usmu.channel_state import ChannelStateView
from usmu.config import SessionConfig
from usmu.errors import (
    DecodeError,
    DeviceError,
    MalformedReply,
    ReplyTimeout,
    SessionBusy,
    ValidationError,
)
from usmu.models import (
    Acknowledged,
    Channel,
    ChannelState,
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
    SessionState,
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
from usmu.transport import Transport

logger = logging.getLogger(__name__)


class Session:
    """Driver for a single uSMU over an exclusively owned Transport.

    Issues one command at a time and reads its reply completely before the
    next command goes out, so every reply pairs with the command that caused
    it. The session is not reentrant: a call made while another is awaiting
    its reply raises SessionBusy.

    Failures are never retried. After a timeout or a reply that doesn't fit
    the command (MalformedReply, UnexpectedLength), the link may still carry
    the instrument's late output; the next call drains it before writing.
    """

    def __init__(self, transport: Transport, config: Optional[SessionConfig] = None) -> None:
        """Initialize session and take ownership of the transport.

        Args:
            transport: Open Transport; must not be used by any other session
            config: Timeouts and policies. Defaults to SessionConfig().

        Raises:
            SerialIOError: If the transport is already owned by another session
        """
        transport.claim()
        self._transport = transport
        self._config = config or SessionConfig()
        self._state = SessionState.IDLE
        self._sequence = 0
        self._channels = ChannelStateView()
        self._needs_drain = False

    @classmethod
    def open(
        cls,
        port: str,
        baud: int = protocol.BAUD_RATE,
        config: Optional[SessionConfig] = None,
    ) -> "Session":
        """Open a serial port and start a session on it.

        Args:
            port: Serial port device name (e.g., "/dev/ttyACM0")
            baud: Baud rate. Default 9600.
            config: Session configuration

        Raises:
            SerialIOError: If port cannot be opened
        """
        config = config or SessionConfig()
        transport = Transport.open(port, baud, timeout_s=config.reply_timeout_s)
        logger.info(f"Session opened on {port}")
        return cls(transport, config)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def close(self) -> None:
        """Close the underlying transport. The session can't be used afterwards."""
        self._transport.close()
        self._state = SessionState.IDLE
        logger.info(f"Session closed after {self._sequence} commands")

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def state(self) -> SessionState:
        """Current request/reply state."""
        return self._state

    @property
    def sequence(self) -> int:
        """Number of commands written so far (diagnostic only)."""
        return self._sequence

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def channels(self) -> ChannelStateView:
        """Last known per-channel state, as commanded."""
        return self._channels

    @property
    def is_open(self) -> bool:
        return self._transport.is_open

    def channel_state(self, channel: Channel = Channel.CH1) -> ChannelState:
        """Get the last known state of a channel."""
        return self._channels.get(channel)

    # ========================================================================
    # Core Exchange
    # ========================================================================

    def execute(self, command: Command, timeout: Optional[float] = None) -> Response:
        """Write one command and read, decode and return its reply.

        Args:
            command: Validated command
            timeout: Reply timeout in seconds; None uses the config default
                     for the command (measure or reply timeout)

        Returns:
            Decoded Response

        Raises:
            SessionBusy: If another command is awaiting its reply
            ValidationError: If the command is hardware-unvalidated and the
                             config forbids those
            ReplyTimeout: If no complete reply arrives in time
            MalformedReply: If a text reply doesn't parse
            UnexpectedLength: If a binary reply has the wrong size
            DeviceError: If the instrument replies with an error token
            SerialIOError: If the transport fails
        """
        if self._state is not SessionState.IDLE:
            raise SessionBusy(f"Cannot issue {command!r} while state is {self._state.value}")

        if not command.hardware_validated:
            if not self._config.allow_unvalidated:
                raise ValidationError(
                    f"{type(command).__name__} is implemented from documentation only "
                    "and is disabled (allow_unvalidated=False)"
                )
            logger.debug(f"{type(command).__name__} has not been validated against hardware")

        data = codec.encode(command)
        if timeout is None:
            timeout = self._default_timeout(command)

        if self._needs_drain:
            self._transport.drain(self._config.drain_quiet_s, self._config.drain_max_s)
            self._needs_drain = False

        self._sequence += 1
        seq = self._sequence
        self._state = SessionState.AWAITING_REPLY
        try:
            self._transport.write(data)
            if self._config.post_write_delay_s > 0:
                time.sleep(self._config.post_write_delay_s)
            raw = self._read_reply(command, timeout)
            response = codec.decode(command, raw)
        except (ReplyTimeout, DecodeError) as e:
            self._needs_drain = True
            logger.warning(f"#{seq} {data!r} failed: {e}")
            raise
        except DeviceError as e:
            # A binary read may have stopped partway through the error line
            if command.reply_shape is ReplyShape.BINARY:
                self._needs_drain = True
            logger.warning(f"#{seq} {data!r} rejected by device: {e.device_message}")
            raise
        finally:
            self._state = SessionState.IDLE

        logger.debug(f"#{seq} {data!r} -> {response}")
        self._update_channels(command)
        return response

    def _default_timeout(self, command: Command) -> float:
        if isinstance(command, (MeasureVoltage, Measure)):
            return self._config.measure_timeout_s
        return self._config.reply_timeout_s

    def _read_reply(self, command: Command, timeout: float) -> bytes:
        if command.reply_shape is ReplyShape.BINARY:
            raw = self._transport.read_exact(command.reply_length, timeout)
            # Bytes already queued behind the block belong to this reply
            return raw + self._transport.read_available()

        raw = self._transport.read_line(timeout)
        if not raw.endswith(protocol.OUTPUT_TERMINATOR):
            raise ReplyTimeout(f"Reply line not terminated within {timeout}s: {raw!r}")
        return raw

    def _update_channels(self, command: Command) -> None:
        if isinstance(command, Enable):
            self._channels.record(command.channel, enabled=True)
        elif isinstance(command, Disable):
            self._channels.record(command.channel, enabled=False)
        elif isinstance(command, (SetVoltage, Measure)):
            self._channels.record(command.channel, voltage_v=command.voltage_v)
        elif isinstance(command, SetCurrentLimit):
            self._channels.record(command.channel, limit_a=command.limit_a)
        elif isinstance(command, SetOversampling):
            self._channels.record(command.channel, oversampling=command.ratio)
        elif isinstance(command, Reset):
            self._channels.reset()

    # ========================================================================
    # Output Control
    # ========================================================================

    def enable(self, channel: Channel = Channel.CH1, timeout: Optional[float] = None) -> None:
        """Enable the channel output.

        With skip_redundant_enable, nothing is sent when the channel is
        already recorded as enabled.
        """
        command = Enable(channel)
        if self._config.skip_redundant_enable and self._channels.get(command.channel).enabled:
            logger.debug(f"{command.channel.value} already enabled, not resending")
            return
        self.execute(command, timeout)

    def disable(self, channel: Channel = Channel.CH1, timeout: Optional[float] = None) -> None:
        """Disable the channel output (high impedance).

        With skip_redundant_enable, nothing is sent when the channel is
        already recorded as disabled.
        """
        command = Disable(channel)
        if (
            self._config.skip_redundant_enable
            and self._channels.get(command.channel).enabled is False
        ):
            logger.debug(f"{command.channel.value} already disabled, not resending")
            return
        self.execute(command, timeout)

    def set_voltage(
        self, channel: Channel, voltage_v: float, timeout: Optional[float] = None
    ) -> None:
        """Source the given voltage.

        Args:
            channel: Output channel
            voltage_v: Setpoint in volts (-5.0 to 5.0)
            timeout: Reply timeout in seconds

        Raises:
            ValidationError: If voltage_v is out of range (nothing is sent)
        """
        self.execute(SetVoltage(channel, voltage_v), timeout)

    def set_current_limit(
        self, channel: Channel, limit_a: float, timeout: Optional[float] = None
    ) -> None:
        """Set the sink/source current limit.

        Args:
            channel: Output channel
            limit_a: Absolute limit in amps (0 to 0.040), applied to both
                     source and sink current
            timeout: Reply timeout in seconds

        Raises:
            ValidationError: If limit_a is out of range (nothing is sent)
        """
        self.execute(SetCurrentLimit(channel, limit_a), timeout)

    def set_oversampling(
        self, channel: Channel, ratio: int, timeout: Optional[float] = None
    ) -> None:
        """Set the number of samples averaged per measurement.

        Args:
            channel: Output channel
            ratio: Power of two from 1 to 1024
            timeout: Reply timeout in seconds
        """
        self.execute(SetOversampling(channel, ratio), timeout)

    # ========================================================================
    # Measurement
    # ========================================================================

    def measure_voltage(self, channel: Channel = Channel.CH1, timeout: Optional[float] = None) -> float:
        """Measure the output voltage in volts."""
        response = self.execute(MeasureVoltage(channel), timeout)
        assert isinstance(response, Measurement)
        return response.value

    def measure(
        self, channel: Channel, voltage_v: float, timeout: Optional[float] = None
    ) -> IvMeasurement:
        """Source voltage_v and measure voltage and current at that point.

        Args:
            channel: Output channel
            voltage_v: Setpoint in volts
            timeout: Reply timeout; defaults to measure_timeout_s since the
                     link is held for the whole oversampled conversion

        Returns:
            IvMeasurement with measured volts and amps (negative when sinking)
        """
        response = self.execute(Measure(channel, voltage_v), timeout)
        assert isinstance(response, IvMeasurement)
        return response

    # ========================================================================
    # Raw Converter Access (not validated against hardware)
    # ========================================================================

    def set_voltage_dac(self, code: int, timeout: Optional[float] = None) -> int:
        """Drive the voltage DAC with a raw 16-bit code.

        Returns:
            The code echoed by the device

        Raises:
            MalformedReply: If the echoed code differs from the one sent
        """
        response = self.execute(SetVoltageDac(code), timeout)
        assert isinstance(response, RawBinary)
        echoed = codec.decode_u16(response.data)
        if echoed != code:
            raise MalformedReply(f"DAC echoed {echoed}, expected {code}")
        return echoed

    def read_adc(self, adc_channel: int, timeout: Optional[float] = None) -> int:
        """Differential conversion between ADC channel 0/1 or 2/3.

        Args:
            adc_channel: 0 or 2

        Returns:
            Raw 16-bit conversion result
        """
        response = self.execute(ReadAdc(adc_channel), timeout)
        assert isinstance(response, RawBinary)
        return codec.decode_u16(response.data)

    def set_current_limit_dac(self, code: int, timeout: Optional[float] = None) -> None:
        """Drive the current limit DAC with a raw 12-bit code."""
        self.execute(SetCurrentLimitDac(code), timeout)

    # ========================================================================
    # Calibration (not validated against hardware)
    # ========================================================================

    def enable_voltage_calibration(
        self, channel: Channel = Channel.CH1, timeout: Optional[float] = None
    ) -> None:
        """Put the channel into voltage calibration mode."""
        self.execute(EnableVoltageCalibration(channel), timeout)

    def lock_current_range(
        self, channel: Channel, current_range: int, timeout: Optional[float] = None
    ) -> None:
        """Lock the current range (1-4) and temporarily clear current calibration."""
        self.execute(LockCurrentRange(channel, current_range), timeout)

    def read_calibration(
        self, channel: Channel, address: int, timeout: Optional[float] = None
    ) -> bytes:
        """Read one EEPROM calibration cell.

        Args:
            channel: Channel the calibration belongs to
            address: EEPROM cell address (0-255)

        Returns:
            4-byte block; see codec.calibration_value to unpack it
        """
        response = self.execute(ReadCalibration(channel, address), timeout)
        assert isinstance(response, RawBinary)
        return response.data

    def write_calibration(
        self, channel: Channel, address: int, block: bytes, timeout: Optional[float] = None
    ) -> Acknowledged:
        """Write one EEPROM calibration cell.

        Never retried: a timeout leaves the cell contents unknown, so callers
        should read the cell back before writing again.

        Args:
            channel: Channel the calibration belongs to
            address: EEPROM cell address (0-255)
            block: 4-byte block; see codec.calibration_block to build one

        Returns:
            Acknowledged once the device echoes the same block

        Raises:
            UnexpectedLength: If the echo has the wrong size
            MalformedReply: If the echo differs from the written block
        """
        command = WriteCalibration(channel, address, block)
        response = self.execute(command, timeout)
        assert isinstance(response, RawBinary)
        if response.data != command.block:
            raise MalformedReply(
                f"EEPROM cell {address} echoed {response.data!r}, wrote {command.block!r}"
            )
        return Acknowledged()

    def write_voltage_dac_calibration(
        self, slope: float, intercept: float, timeout: Optional[float] = None
    ) -> None:
        """Store the voltage DAC calibration line in EEPROM."""
        self.execute(WriteVoltageDacCalibration(slope, intercept), timeout)

    def write_voltage_adc_calibration(
        self, slope: float, intercept: float, timeout: Optional[float] = None
    ) -> None:
        """Store the voltage ADC calibration line in EEPROM."""
        self.execute(WriteVoltageAdcCalibration(slope, intercept), timeout)

    def write_current_calibration(
        self, current_range: int, slope: float, intercept: float, timeout: Optional[float] = None
    ) -> None:
        """Store the current ADC calibration line for one range in EEPROM."""
        self.execute(WriteCurrentCalibration(current_range, slope, intercept), timeout)

    def write_current_limit_dac_calibration(
        self, slope: float, intercept: float, timeout: Optional[float] = None
    ) -> None:
        """Store the current limit DAC calibration line in EEPROM."""
        self.execute(WriteCurrentLimitDacCalibration(slope, intercept), timeout)

    # ========================================================================
    # System
    # ========================================================================

    def identify(self, timeout: Optional[float] = None) -> str:
        """Query the identity string (*IDN?)."""
        response = self.execute(Identify(), timeout)
        assert isinstance(response, Identity)
        return response.text

    def device_id(self, timeout: Optional[float] = None) -> int:
        """Query the unique device ID from the identity banner.

        Raises:
            MalformedReply: If the banner is not "uSMU version <v> ID:<uid>"
        """
        _, uid = codec.parse_identity(self.identify(timeout))
        return uid

    def reset(self, timeout: Optional[float] = None) -> None:
        """Reset the instrument (*RST) and forget all channel state.

        The device restarts its USB stack after a reset, so the port usually
        has to be reopened before the next command.
        """
        logger.info("Resetting instrument...")
        self.execute(Reset(), timeout)
        logger.info("Instrument reset, channel state cleared")

    def resync(self, attempts: int = 3, timeout: Optional[float] = None) -> str:
        """Realign the link after a framing error.

        Drains pending input, then issues *IDN? until a clean identity reply
        comes back.

        Args:
            attempts: Maximum number of *IDN? queries
            timeout: Reply timeout per query

        Returns:
            Identity string

        Raises:
            ReplyTimeout, DecodeError: From the last attempt if none succeeds
        """
        if attempts < 1:
            raise ValueError(f"attempts must be >= 1, got {attempts}")

        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            self._needs_drain = True
            try:
                identity = self.identify(timeout)
                logger.info(f"Link resynchronized after {attempt} attempt(s)")
                return identity
            except (ReplyTimeout, DecodeError) as e:
                last_error = e
                logger.warning(f"Resync attempt {attempt}/{attempts} failed: {e}")

        assert last_error is not None
        raise last_error
