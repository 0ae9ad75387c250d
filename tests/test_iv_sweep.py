"""Tests for the I-V sweep recorder.

Sweeps run against FakeUsmu with a resistive load, so measured current is
voltage / load_ohms clipped to the current limit.
"""

import pandas as pd
import pytest

from fakes.fake_usmu import FakeUsmu
from iv_sweep import SCHEMA, IvCurveRecorder, point_to_row, sweep_voltages
from usmu.config import SessionConfig
from usmu.errors import DeviceError, ReplyTimeout, ValidationError
from usmu.models import IvMeasurement
from usmu.session import Session
from usmu.transport import Transport


def make_recorder(fake: FakeUsmu) -> IvCurveRecorder:
    session = Session(Transport(fake), SessionConfig(post_write_delay_s=0.0))
    return IvCurveRecorder(session)


def test_sweep_voltages() -> None:
    assert sweep_voltages(-1.0, 1.0, 5) == [-1.0, -0.5, 0.0, 0.5, 1.0]
    assert sweep_voltages(2.0, -2.0, 3) == [2.0, 0.0, -2.0]
    assert sweep_voltages(0.3, 1.0, 1) == [0.3]


def test_sweep_voltages_ends_are_exact() -> None:
    voltages = sweep_voltages(-0.1, 0.7, 9)
    assert len(voltages) == 9
    assert voltages[0] == -0.1
    assert voltages[-1] == 0.7


def test_sweep_voltages_requires_a_step() -> None:
    with pytest.raises(ValueError):
        sweep_voltages(0.0, 1.0, 0)


def test_point_to_row() -> None:
    row = point_to_row(1, IvMeasurement(voltage_v=0.999, current_a=0.001))

    assert list(row.keys()) == list(SCHEMA.keys())
    assert row == {"set_voltage_v": 1.0, "voltage_v": 0.999, "current_a": 0.001}


def test_record_curve() -> None:
    fake = FakeUsmu(load_ohms=1000.0)
    recorder = make_recorder(fake)

    df = recorder.record(start_v=-1.0, end_v=1.0, steps=5, limit_a=0.02, oversampling=16)

    assert list(df.columns) == ["set_voltage_v", "voltage_v", "current_a"]
    assert len(df) == 5
    assert df["set_voltage_v"].tolist() == [-1.0, -0.5, 0.0, 0.5, 1.0]
    assert df["voltage_v"].tolist() == pytest.approx([-1.0, -0.5, 0.0, 0.5, 1.0])
    assert df["current_a"].tolist() == pytest.approx([-0.001, -0.0005, 0.0, 0.0005, 0.001])


def test_record_command_sequence() -> None:
    """Test setup order, one set/measure pair per point and final disable."""
    fake = FakeUsmu()
    recorder = make_recorder(fake)

    recorder.record(start_v=0.0, end_v=1.0, steps=2, limit_a=0.01, oversampling=4)

    assert fake.commands == [
        "CH1:VOL 0.0",
        "CH1:CUR 10.0",
        "CH1:ENA",
        "CH1:OSR 4",
        "CH1:VOL 0.0",
        "CH1:MEA:VOL 0.0",
        "CH1:VOL 1.0",
        "CH1:MEA:VOL 1.0",
        "CH1:DIS",
    ]
    assert fake.enabled is False


def test_record_respects_current_limit() -> None:
    fake = FakeUsmu(load_ohms=100.0)
    recorder = make_recorder(fake)

    df = recorder.record(start_v=0.0, end_v=4.0, steps=3, limit_a=0.005)

    assert df["current_a"].tolist() == pytest.approx([0.0, 0.005, 0.005])


def test_record_disables_output_on_failure() -> None:
    fake = FakeUsmu()
    fake.reject("CH1:MEA:VOL", "Measurement failed")
    recorder = make_recorder(fake)

    with pytest.raises(DeviceError):
        recorder.record(start_v=0.0, end_v=1.0, steps=3, limit_a=0.01)

    assert fake.commands[-1] == "CH1:DIS"
    assert fake.enabled is False
    assert recorder.get_dataframe().empty


def test_record_keeps_measurement_error_when_disable_fails(caplog) -> None:
    fake = FakeUsmu()
    fake.reject("CH1:MEA:VOL", "Measurement failed")
    fake.reject("CH1:DIS", "Disable failed")
    recorder = make_recorder(fake)

    with caplog.at_level("WARNING", logger="iv_sweep.recorder"):
        with pytest.raises(DeviceError, match="Measurement failed"):
            recorder.record(start_v=0.0, end_v=1.0, steps=3, limit_a=0.01)

    assert fake.commands[-1] == "CH1:DIS"
    assert "Disable failed" in caplog.text


def test_record_raises_disable_error_after_clean_sweep() -> None:
    fake = FakeUsmu()
    fake.reject("CH1:DIS", "Disable failed")
    recorder = make_recorder(fake)

    with pytest.raises(DeviceError, match="Disable failed"):
        recorder.record(start_v=0.0, end_v=1.0, steps=2, limit_a=0.01)


def test_record_disables_output_after_timeout() -> None:
    fake = FakeUsmu()
    recorder = make_recorder(fake)
    fake.override_next(b"OK\n")  # CH1:VOL
    fake.override_next(b"OK\n")  # CH1:CUR
    fake.override_next(b"OK\n")  # CH1:ENA
    fake.stall_next()  # CH1:OSR

    with pytest.raises(ReplyTimeout):
        recorder.record(start_v=0.0, end_v=1.0, steps=3, limit_a=0.01)

    assert fake.commands[-1] == "CH1:DIS"
    assert fake.enabled is False


@pytest.mark.parametrize(
    "kwargs",
    [
        {"start_v": -6.0},
        {"end_v": 5.5},
        {"limit_a": 0.05},
        {"oversampling": 3},
    ],
)
def test_record_validates_before_sending(kwargs) -> None:
    fake = FakeUsmu()
    recorder = make_recorder(fake)
    params = {"start_v": -1.0, "end_v": 1.0, "steps": 3, "limit_a": 0.01, "oversampling": 16}
    params.update(kwargs)

    with pytest.raises(ValidationError):
        recorder.record(**params)

    assert fake.commands == []


def test_record_rejects_negative_delay() -> None:
    fake = FakeUsmu()
    recorder = make_recorder(fake)

    with pytest.raises(ValueError):
        recorder.record(start_v=0.0, end_v=1.0, steps=2, limit_a=0.01, delay_s=-1.0)

    assert fake.commands == []


def test_record_replaces_previous_curve() -> None:
    fake = FakeUsmu()
    recorder = make_recorder(fake)

    recorder.record(start_v=0.0, end_v=1.0, steps=4, limit_a=0.01)
    recorder.record(start_v=0.0, end_v=1.0, steps=2, limit_a=0.01)

    assert len(recorder.get_dataframe()) == 2


def test_export_csv(tmp_path) -> None:
    fake = FakeUsmu()
    recorder = make_recorder(fake)
    df = recorder.record(start_v=-1.0, end_v=1.0, steps=11, limit_a=0.02)

    path = recorder.export_csv(str(tmp_path / "curve.csv"))

    loaded = pd.read_csv(path)
    assert list(loaded.columns) == list(SCHEMA.keys())
    assert len(loaded) == 11
    assert loaded["current_a"].tolist() == pytest.approx(df["current_a"].tolist())


def test_export_parquet(tmp_path) -> None:
    pytest.importorskip("pyarrow")
    fake = FakeUsmu()
    recorder = make_recorder(fake)
    recorder.record(start_v=0.0, end_v=2.0, steps=3, limit_a=0.02)

    path = recorder.export(format="parquet", path=str(tmp_path / "curve.parquet"))

    loaded = pd.read_parquet(path)
    assert loaded["set_voltage_v"].tolist() == [0.0, 1.0, 2.0]


def test_export_unknown_format(tmp_path) -> None:
    recorder = make_recorder(FakeUsmu())

    with pytest.raises(ValueError, match="Unknown format"):
        recorder.export(format="xlsx", path=str(tmp_path / "curve.xlsx"))
