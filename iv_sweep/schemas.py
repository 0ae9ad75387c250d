"""Schema for I-V sweep points in DataFrame format."""

from typing import Dict

from usmu.models import IvMeasurement

# DataFrame schema: column names and their dtypes
SCHEMA = {
    "set_voltage_v": float,  # Commanded setpoint
    "voltage_v": float,  # Measured output voltage
    "current_a": float,  # Measured current, negative when sinking
}


def point_to_row(set_voltage_v: float, measurement: IvMeasurement) -> Dict[str, float]:
    """Convert one sweep point to a DataFrame row dictionary.

    Args:
        set_voltage_v: Voltage the channel was commanded to
        measurement: Reading taken at that setpoint

    Returns:
        Dictionary with all SCHEMA keys
    """
    return {
        "set_voltage_v": float(set_voltage_v),
        "voltage_v": measurement.voltage_v,
        "current_a": measurement.current_a,
    }
