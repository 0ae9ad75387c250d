"""I-V curve recorder that drives a Session through a voltage sweep.

The sweep sequence:
1. Set the start voltage and current limit while the output is still off
2. Enable the output and set the oversampling ratio
3. For each setpoint: set voltage, settle, measure
4. Disable the output, also when any step fails (the step's error wins)
"""

import logging
import time
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import pandas as pd

from iv_sweep.schemas import SCHEMA, point_to_row
from usmu.errors import UsmuError
from usmu.models import Channel, SetCurrentLimit, SetOversampling, SetVoltage
from usmu.session import Session

logger = logging.getLogger(__name__)


def sweep_voltages(start_v: float, end_v: float, steps: int) -> List[float]:
    """Linearly spaced setpoints from start_v to end_v, both ends included.

    Args:
        start_v: First setpoint in volts
        end_v: Last setpoint in volts
        steps: Number of setpoints (>= 1)

    Returns:
        List of setpoints; [start_v] when steps is 1

    Raises:
        ValueError: If steps < 1
    """
    if steps < 1:
        raise ValueError(f"steps must be >= 1, got {steps}")
    if steps == 1:
        return [float(start_v)]

    span = end_v - start_v
    voltages = [start_v + span * i / (steps - 1) for i in range(steps)]
    voltages[-1] = float(end_v)
    return voltages


class IvCurveRecorder:
    """Records I-V curves from one channel into a pandas DataFrame.

    Each record() call replaces the previously recorded curve.
    """

    def __init__(self, session: Session, channel: Channel = Channel.CH1) -> None:
        """Initialize recorder.

        Args:
            session: Open Session to drive
            channel: Channel to sweep
        """
        self._session = session
        self._channel = Channel.parse(channel)
        self._df = pd.DataFrame(columns=list(SCHEMA.keys()))

    def record(
        self,
        start_v: float,
        end_v: float,
        steps: int,
        limit_a: float,
        oversampling: int = 16,
        delay_s: float = 0.0,
    ) -> pd.DataFrame:
        """Run a sweep and return the recorded curve.

        Args:
            start_v: First setpoint in volts
            end_v: Last setpoint in volts
            steps: Number of setpoints
            limit_a: Current limit in amps for the whole sweep
            oversampling: Samples averaged per measurement
            delay_s: Settling time between setting a voltage and measuring

        Returns:
            Copy of the recorded DataFrame, one row per setpoint

        Raises:
            ValidationError: If a setpoint or the limit is out of range;
                             raised before the output is enabled
            ValueError: If steps < 1 or delay_s < 0
            UsmuError: From any failed exchange; the output is disabled first
        """
        if delay_s < 0:
            raise ValueError(f"delay_s must be >= 0, got {delay_s}")

        voltages = sweep_voltages(start_v, end_v, steps)
        # Parameters validate before anything is sent
        SetVoltage(self._channel, start_v)
        SetVoltage(self._channel, end_v)
        SetCurrentLimit(self._channel, limit_a)
        SetOversampling(self._channel, oversampling)

        logger.info(
            f"Sweeping {self._channel.value} from {start_v} V to {end_v} V "
            f"in {steps} steps (limit {limit_a} A, OSR {oversampling})"
        )

        rows = []
        try:
            self._session.set_voltage(self._channel, voltages[0])
            self._session.set_current_limit(self._channel, limit_a)
            self._session.enable(self._channel)
            self._session.set_oversampling(self._channel, oversampling)

            for voltage in voltages:
                self._session.set_voltage(self._channel, voltage)
                if delay_s > 0:
                    time.sleep(delay_s)
                point = self._session.measure(self._channel, voltage)
                rows.append(point_to_row(voltage, point))
                logger.debug(f"{voltage} V -> {point.voltage_v} V, {point.current_a} A")
        except BaseException:
            # The sweep's own failure propagates, not the disable's
            try:
                self._session.disable(self._channel)
            except UsmuError as e:
                logger.warning(f"Failed to disable {self._channel.value} after sweep error: {e}")
            else:
                logger.info(f"Sweep aborted after {len(rows)}/{steps} points, output disabled")
            raise

        self._session.disable(self._channel)
        logger.info(f"Sweep ended after {len(rows)}/{steps} points, output disabled")

        self._df = pd.DataFrame(rows, columns=list(SCHEMA.keys()))
        return self._df.copy()

    def get_dataframe(self) -> pd.DataFrame:
        """Get copy of the last recorded curve."""
        return self._df.copy()

    def export_csv(self, path: Optional[str] = None) -> str:
        """Export the last curve to a CSV file.

        Args:
            path: Output file path. If None, generates timestamped filename.

        Returns:
            Absolute path to exported file
        """
        if path is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            path = f"iv_curve_{timestamp}.csv"

        self._df.to_csv(path, index=False)
        abs_path = str(Path(path).resolve())
        logger.info(f"Exported {len(self._df)} rows to CSV: {abs_path}")
        return abs_path

    def export_parquet(self, path: Optional[str] = None) -> str:
        """Export the last curve to a Parquet file.

        Requires pyarrow or fastparquet to be installed.

        Args:
            path: Output file path. If None, generates timestamped filename.

        Returns:
            Absolute path to exported file
        """
        if path is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            path = f"iv_curve_{timestamp}.parquet"

        self._df.to_parquet(path, index=False)
        abs_path = str(Path(path).resolve())
        logger.info(f"Exported {len(self._df)} rows to Parquet: {abs_path}")
        return abs_path

    def export(self, format: str = "csv", path: Optional[str] = None) -> str:
        """Export the last curve as "csv" or "parquet".

        Raises:
            ValueError: If format is not "csv" or "parquet"
        """
        if format == "csv":
            return self.export_csv(path)
        elif format == "parquet":
            return self.export_parquet(path)
        else:
            raise ValueError(f"Unknown format '{format}', expected 'csv' or 'parquet'")
