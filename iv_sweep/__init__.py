"""DataFrame recording layer for uSMU I-V sweeps."""

from iv_sweep.recorder import IvCurveRecorder, sweep_voltages
from iv_sweep.schemas import SCHEMA, point_to_row

__all__ = ["SCHEMA", "point_to_row", "IvCurveRecorder", "sweep_voltages"]
