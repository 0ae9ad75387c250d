"""Tests for the serial Transport and port discovery."""

from types import SimpleNamespace

import pytest

from fakes.fake_usmu import FakeUsmu
from usmu import protocol
from usmu.errors import ReplyTimeout, SerialIOError
from usmu.transport import Transport, find_serial_ports


def test_write_and_read_line() -> None:
    fake = FakeUsmu()
    transport = Transport(fake)

    transport.write(b"*IDN?\n")

    assert transport.read_line(timeout=0.1).startswith(b"uSMU version")
    assert fake.commands == ["*IDN?"]


def test_read_line_restores_port_timeout() -> None:
    fake = FakeUsmu()
    fake.timeout = 3.0
    transport = Transport(fake)
    fake.inject(b"OK\n")

    transport.read_line(timeout=0.25)

    assert fake.timeout == 3.0


def test_read_line_without_data_times_out() -> None:
    fake = FakeUsmu()
    transport = Transport(fake)

    with pytest.raises(ReplyTimeout):
        transport.read_line(timeout=0.1)
    assert fake.timeout == 1.0


def test_read_line_returns_partial_line() -> None:
    fake = FakeUsmu()
    transport = Transport(fake)
    fake.inject(b"1.23")

    assert transport.read_line(timeout=0.1) == b"1.23"


def test_read_exact() -> None:
    fake = FakeUsmu()
    transport = Transport(fake)
    fake.inject(b"\x01\x02\x03")

    assert transport.read_exact(2, timeout=0.1) == b"\x01\x02"
    assert transport.read_available() == b"\x03"
    assert transport.read_available() == b""


def test_read_exact_short_block() -> None:
    fake = FakeUsmu()
    transport = Transport(fake)
    fake.inject(b"\x01")

    assert transport.read_exact(4, timeout=0.1) == b"\x01"
    with pytest.raises(ReplyTimeout):
        transport.read_exact(4, timeout=0.1)


def test_drain_discards_pending_input() -> None:
    fake = FakeUsmu()
    transport = Transport(fake)
    stale = b"OK\nstale 1.0,0.1\n"
    fake.inject(stale)

    assert transport.drain(quiet_s=0.01, max_s=1.0) == len(stale)
    assert fake.in_waiting == 0
    assert transport.drain(quiet_s=0.01, max_s=1.0) == 0


def test_drain_collects_late_reply() -> None:
    """Test that a reply arriving after the first silent read is not drained."""
    fake = FakeUsmu()
    transport = Transport(fake)
    fake.stall_next()
    transport.write(b"CH1:ENA\n")

    # First read finds silence and the late reply lands afterwards
    assert transport.drain(quiet_s=0.01, max_s=1.0) == 0
    assert transport.read_line(timeout=0.1) == b"OK\n"


def test_closed_port_raises() -> None:
    fake = FakeUsmu()
    transport = Transport(fake)
    transport.close()

    assert not transport.is_open
    with pytest.raises(SerialIOError):
        transport.write(b"CH1:ENA\n")
    with pytest.raises(SerialIOError):
        transport.read_line()
    with pytest.raises(SerialIOError):
        transport.read_exact(2)
    with pytest.raises(SerialIOError):
        transport.drain()


def test_write_failure_is_wrapped() -> None:
    class BrokenFake(FakeUsmu):
        def write(self, data: bytes) -> int:
            raise OSError("device disconnected")

    transport = Transport(BrokenFake())

    with pytest.raises(SerialIOError, match="device disconnected"):
        transport.write(b"CH1:ENA\n")


def test_claim_is_exclusive() -> None:
    transport = Transport(FakeUsmu())
    transport.claim()

    with pytest.raises(SerialIOError):
        transport.claim()


def test_open_missing_port() -> None:
    with pytest.raises(SerialIOError, match="Failed to open"):
        Transport.open("/dev/usmu-does-not-exist")


def test_find_serial_ports_filters_by_usb_id(monkeypatch) -> None:
    ports = [
        SimpleNamespace(device="/dev/ttyACM0", vid=protocol.USB_VID, pid=protocol.USB_PID),
        SimpleNamespace(device="/dev/ttyUSB0", vid=0x0403, pid=0x6001),
        SimpleNamespace(device="/dev/ttyS0", vid=None, pid=None),
        SimpleNamespace(device="/dev/ttyACM1", vid=protocol.USB_VID, pid=protocol.USB_PID),
    ]
    monkeypatch.setattr("serial.tools.list_ports.comports", lambda: ports)

    assert find_serial_ports() == ["/dev/ttyACM0", "/dev/ttyACM1"]
