"""Wire protocol constants and patterns for the uSMU command interface.

Mnemonics follow the firmware command table for hardware version 10. Reply
lengths for the binary commands (DAC, ADC, EEPROM) are not announced on the
wire, so they are fixed here per command.
"""

import re
from typing import Final

# ============================================================================
# Line Termination
# ============================================================================

# Device expects LF (0x0A) after every command
INPUT_TERMINATOR: Final[bytes] = b"\n"

# Device terminates text replies with LF; a CR before it is tolerated
OUTPUT_TERMINATOR: Final[bytes] = b"\n"

# ============================================================================
# Reply Tokens
# ============================================================================

ACK_TOKEN: Final[str] = "OK"
ERROR_TOKEN: Final[str] = "ERR"

# ============================================================================
# Command Mnemonics
# ============================================================================

CMD_ENABLE: Final[str] = "ENA"
CMD_DISABLE: Final[str] = "DIS"
CMD_VOLTAGE: Final[str] = "VOL"
CMD_CURRENT_LIMIT: Final[str] = "CUR"
CMD_MEASURE_VOLTAGE: Final[str] = "MEA:VOL"
CMD_OVERSAMPLING: Final[str] = "OSR"
CMD_VOLTAGE_CAL_MODE: Final[str] = "VCAL"
CMD_CURRENT_RANGE: Final[str] = "RANGE"

CMD_VOLTAGE_DAC: Final[str] = "DAC"
CMD_ADC: Final[str] = "ADC"
CMD_CURRENT_LIMIT_DAC: Final[str] = "ILIM"

CMD_EEPROM_READ: Final[str] = "*READ"
CMD_EEPROM_WRITE: Final[str] = "WRITE"

CMD_CAL_VOLTAGE_DAC: Final[str] = "CAL:DAC"
CMD_CAL_VOLTAGE_ADC: Final[str] = "CAL:VOL"
CMD_CAL_CURRENT_RANGE: Final[str] = "CAL:CUR:RANGE"
CMD_CAL_CURRENT_LIMIT_DAC: Final[str] = "CAL:ILIM"

CMD_RESET: Final[str] = "*RST"
CMD_IDENTIFY: Final[str] = "*IDN?"

QUERY_SUFFIX: Final[str] = "?"

# ============================================================================
# Binary Reply Lengths (bytes)
# ============================================================================

# DAC echo and ADC conversion: unsigned 16-bit little-endian
DAC_REPLY_LENGTH: Final[int] = 2
ADC_REPLY_LENGTH: Final[int] = 2

# One EEPROM cell holds a little-endian IEEE-754 float32
CALIBRATION_BLOCK_SIZE: Final[int] = 4

# struct layouts for the binary replies
U16_STRUCT: Final[str] = "<H"
CALIBRATION_STRUCT: Final[str] = "<f"

# ============================================================================
# Timing Constants (seconds)
# ============================================================================

# The device stalls briefly after each command
POST_WRITE_DELAY: Final[float] = 0.05

# Default bound for ack and identity replies
REPLY_TIMEOUT: Final[float] = 1.0

# Measurements block the link while oversampling; high ratios need more than 1s
MEASURE_TIMEOUT: Final[float] = 5.0

# Drain stops once the line has been silent this long
DRAIN_QUIET_TIME: Final[float] = 0.05

# Upper bound on a single drain
DRAIN_MAX_TIME: Final[float] = 2.0

# ============================================================================
# USB Identification
# ============================================================================

BAUD_RATE: Final[int] = 9600
USB_VID: Final[int] = 1155
USB_PID: Final[int] = 22336

# ============================================================================
# Regular Expressions for Reply Matching
# ============================================================================

# Instrument numeric notation: optional sign, fixed point, optional exponent
RE_NUMBER: Final[re.Pattern[str]] = re.compile(
    r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?$"
)

# Measurement pair: "<volts>,<amps>"
RE_MEASURE_PAIR: Final[re.Pattern[str]] = re.compile(r"^\s*([^,\s]+)\s*,\s*([^,\s]+)\s*$")

# Identity banner: "uSMU version 1.0 ID:<uid>"
RE_IDENTITY: Final[re.Pattern[str]] = re.compile(
    r"^uSMU version\s+([\d.]+)\s+ID:\s*(\d+)$", re.IGNORECASE
)

# ============================================================================
# Valid Parameter Values
# ============================================================================

VOLTAGE_MIN: Final[float] = -5.0
VOLTAGE_MAX: Final[float] = 5.0

# Absolute value; applied to both source and sink
CURRENT_LIMIT_MIN: Final[float] = 0.0
CURRENT_LIMIT_MAX: Final[float] = 0.040

VALID_OVERSAMPLING: Final[frozenset[int]] = frozenset(2**n for n in range(11))

VOLTAGE_DAC_MAX: Final[int] = 0xFFFF
CURRENT_LIMIT_DAC_MAX: Final[int] = 0x0FFF

# Differential conversion pairs channel 0 with 1 and channel 2 with 3
VALID_ADC_CHANNELS: Final[frozenset[int]] = frozenset({0, 2})

VALID_CURRENT_RANGES: Final[frozenset[int]] = frozenset({1, 2, 3, 4})

EEPROM_ADDRESS_MIN: Final[int] = 0
EEPROM_ADDRESS_MAX: Final[int] = 255
