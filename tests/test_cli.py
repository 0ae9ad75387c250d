"""Tests for the record_iv_curve command-line front-end."""

import pandas as pd
import pytest

import record_iv_curve
from fakes.fake_usmu import FakeUsmu
from usmu.session import Session
from usmu.transport import Transport


@pytest.fixture
def devices(monkeypatch):
    """Route Session.open to fake instruments keyed by port name."""
    fakes = {
        "/dev/ttyACM0": FakeUsmu(uid=1111),
        "/dev/ttyACM1": FakeUsmu(uid=2222),
    }

    def fake_open(cls, port, baud=9600, config=None):
        if port not in fakes:
            raise record_iv_curve.UsmuError(f"Failed to open {port}")
        fake = fakes[port]
        fake.is_open = True
        return cls(Transport(fake), config)

    monkeypatch.setattr(Session, "open", classmethod(fake_open))
    monkeypatch.setattr(record_iv_curve, "find_serial_ports", lambda: sorted(fakes))
    monkeypatch.setenv("USMU_POST_WRITE_DELAY", "0")
    monkeypatch.delenv("USMU_PORT", raising=False)
    return fakes


def test_writes_csv_file(devices, tmp_path) -> None:
    output = tmp_path / "curve.csv"

    code = record_iv_curve.main(
        ["--port", "/dev/ttyACM0", "--steps", "3", "--output", str(output)]
    )

    assert code == 0
    df = pd.read_csv(output)
    assert df["set_voltage_v"].tolist() == [-1.0, 0.0, 1.0]
    assert devices["/dev/ttyACM0"].commands[-1] == "CH1:DIS"
    assert devices["/dev/ttyACM1"].commands == []


def test_writes_csv_to_stdout(devices, capsys) -> None:
    code = record_iv_curve.main(["--port", "/dev/ttyACM1", "--steps", "2"])

    assert code == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert lines[0] == "set_voltage_v,voltage_v,current_a"
    assert len(lines) == 3


def test_sweep_parameters_are_passed_through(devices, tmp_path) -> None:
    code = record_iv_curve.main(
        [
            "--port", "/dev/ttyACM0",
            "--start-voltage", "0.5",
            "--end-voltage", "2.5",
            "--steps", "5",
            "--current-limit", "0.001",
            "--oversampling", "64",
            "--output", str(tmp_path / "curve.csv"),
        ]
    )

    assert code == 0
    commands = devices["/dev/ttyACM0"].commands
    assert commands[:4] == ["CH1:VOL 0.5", "CH1:CUR 1.0", "CH1:ENA", "CH1:OSR 64"]
    assert "CH1:MEA:VOL 2.5" in commands


def test_selects_device_by_serial_number(devices, tmp_path) -> None:
    code = record_iv_curve.main(
        ["--serial-number", "2222", "--steps", "2", "--output", str(tmp_path / "c.csv")]
    )

    assert code == 0
    assert "CH1:MEA:VOL 1.0" in devices["/dev/ttyACM1"].commands
    assert devices["/dev/ttyACM0"].commands == ["*IDN?"]


def test_ambiguous_device_selection_fails(devices, capsys) -> None:
    code = record_iv_curve.main(["--steps", "2"])

    assert code == 1
    err = capsys.readouterr().err
    assert "Multiple uSMUs found" in err
    assert "/dev/ttyACM0" in err and "/dev/ttyACM1" in err


def test_unknown_serial_number_fails(devices, capsys) -> None:
    code = record_iv_curve.main(["--serial-number", "9999"])

    assert code == 1
    assert "No uSMU with ID 9999 found" in capsys.readouterr().err


def test_out_of_range_voltage_fails(devices, capsys) -> None:
    code = record_iv_curve.main(["--port", "/dev/ttyACM0", "--start-voltage", "-6"])

    assert code == 1
    assert "voltage_v" in capsys.readouterr().err
    assert devices["/dev/ttyACM0"].commands == []


def test_parquet_requires_output(devices, capsys) -> None:
    code = record_iv_curve.main(["--port", "/dev/ttyACM0", "--format", "parquet"])

    assert code == 2
    assert "--output" in capsys.readouterr().err


def test_port_defaults_from_environment(devices, monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("USMU_PORT", "/dev/ttyACM1")

    code = record_iv_curve.main(["--steps", "2", "--output", str(tmp_path / "c.csv")])

    assert code == 0
    assert devices["/dev/ttyACM0"].commands == []


def test_skips_device_that_fails_identification(devices, tmp_path) -> None:
    devices["/dev/ttyACM1"].reject("*IDN?", "Unknown command")

    code = record_iv_curve.main(
        ["--serial-number", "1111", "--steps", "2", "--output", str(tmp_path / "c.csv")]
    )

    assert code == 0
    assert "CH1:MEA:VOL 1.0" in devices["/dev/ttyACM0"].commands
    assert devices["/dev/ttyACM1"].commands == ["*IDN?"]


def test_unreadable_ports_are_named_when_nothing_matches(devices, capsys) -> None:
    devices["/dev/ttyACM1"].reject("*IDN?", "Unknown command")

    code = record_iv_curve.main(["--serial-number", "2222"])

    assert code == 1
    err = capsys.readouterr().err
    assert "No uSMU with ID 2222 found" in err
    assert "failed to read /dev/ttyACM1" in err


def test_parquet_without_engine_points_to_extra(devices, monkeypatch, capsys, tmp_path) -> None:
    def no_engine(self, path=None):
        raise ImportError("Unable to find a usable engine")

    monkeypatch.setattr(record_iv_curve.IvCurveRecorder, "export_parquet", no_engine)

    code = record_iv_curve.main(
        [
            "--port", "/dev/ttyACM0",
            "--steps", "2",
            "--format", "parquet",
            "--output", str(tmp_path / "curve.parquet"),
        ]
    )

    assert code == 1
    assert "usmu[parquet]" in capsys.readouterr().err
    assert devices["/dev/ttyACM0"].commands[-1] == "CH1:DIS"
