"""Shared fixtures for GPD-3303S tests."""

import re
import threading
from decimal import Decimal
from unittest.mock import patch

import pytest
import serial

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from gpd3303s import GPD3303S


GPD_IDN = "GW INSTEK,GPD-3303S,SN:EH123456,V1.00"

SET_RE = re.compile(r"^(ISET|VSET)([12]):(.+)$")
QUERY_RE = re.compile(r"^(ISET|VSET|IOUT|VOUT)([12])\?$")


class FakeGPD:
    """In-memory GPD-3303S behind the ``serial.Serial`` interface.

    Every line written is recorded in ``written`` and answered the way the
    supply would, by queuing reply bytes for the driver's reader thread.

    Args:
        identity: ``*IDN?`` reply, or None to stay silent.
        silent: Commands that get no reply at all.
        echo: Command -> raw reply overriding the computed one.
        max_read: Deliver at most this many bytes per ``read()``.
        fail_on: Commands whose ``write()`` raises ``SerialException``.
    """

    def __init__(self, port, read_timeout=0.05, identity=GPD_IDN,
                 silent=(), echo=None, max_read=None, fail_on=()):
        self.port = port
        self.timeout = read_timeout
        self.is_open = True
        self.rts = True
        self.identity = identity
        self.silent = set(silent)
        self.echo = dict(echo or {})
        self.max_read = max_read
        self.fail_on = set(fail_on)
        self.written = []

        self.setpoints = {("VSET", 1): Decimal(0), ("VSET", 2): Decimal(0),
                          ("ISET", 1): Decimal(0), ("ISET", 2): Decimal(0)}
        self.measured = {("VOUT", 1): Decimal("0.000"), ("VOUT", 2): Decimal("0.000"),
                         ("IOUT", 1): Decimal("0.000"), ("IOUT", 2): Decimal("0.000")}
        self.output = None
        self.beep = True
        self.track = 0
        self.saved = []
        self.recalled = []
        self.error = "No Error."

        self._rx = bytearray()
        self._cond = threading.Condition()

    # -- serial.Serial surface -----------------------------------------------

    @property
    def in_waiting(self):
        with self._cond:
            return len(self._rx)

    def read(self, size=1):
        with self._cond:
            if not self._rx and self.is_open:
                self._cond.wait(self.timeout)
            if not self.is_open:
                raise serial.SerialException("port closed")
            n = min(size, len(self._rx))
            if self.max_read is not None:
                n = min(n, self.max_read)
            data = bytes(self._rx[:n])
            del self._rx[:n]
            return data

    def write(self, data):
        if not self.is_open:
            raise serial.SerialException("port closed")
        line = data.decode("ascii")
        assert line.endswith("\n")
        line = line[:-1]
        if line in self.fail_on:
            raise serial.SerialException(f"write of {line} failed")
        self.written.append(line)
        self._handle(line)
        return len(data)

    def flush(self):
        pass

    def close(self):
        with self._cond:
            self.is_open = False
            self._cond.notify_all()

    # -- device behaviour ----------------------------------------------------

    def push(self, text):
        """Queue raw bytes as if the supply had sent them."""
        with self._cond:
            self._rx += text.encode("ascii")
            self._cond.notify_all()

    def _reply(self, command, text):
        if command in self.silent:
            return
        self.push(self.echo.get(command, text))

    def _handle(self, line):
        m = SET_RE.match(line)
        if m:
            self.setpoints[(m.group(1), int(m.group(2)))] = Decimal(m.group(3))
            return

        m = QUERY_RE.match(line)
        if m:
            key = (m.group(1), int(m.group(2)))
            value = self.setpoints.get(key, self.measured.get(key))
            unit = "A" if key[0].startswith("I") else "V"
            self._reply(line, f"{value:.3f}{unit}\r\n")
            return

        if line == "*IDN?":
            if self.identity is not None:
                self._reply(line, f"{self.identity}\r\n")
        elif line == "ERR?":
            self._reply(line, f"{self.error}\r\n")
        elif line in ("OUT0", "OUT1"):
            self.output = line == "OUT1"
        elif line in ("BEEP0", "BEEP1"):
            self.beep = line == "BEEP1"
        elif line.startswith("TRACK"):
            self.track = int(line[5:])
        elif line.startswith("SAV"):
            self.saved.append(int(line[3:]))
        elif line.startswith("RCL"):
            self.recalled.append(int(line[3:]))


class FakePorts:
    """Stand-in for ``serial.Serial`` that opens a FakeGPD per configured port.

    Ports never added, or added with ``broken()``, fail to open.
    """

    def __init__(self):
        self.layout = {}
        self.opened = {}

    def add(self, port, **behaviour):
        self.layout[port] = behaviour
        return self

    def broken(self, port):
        self.layout[port] = serial.SerialException(f"could not open port {port}")
        return self

    def __call__(self, port, *args, **kwargs):
        behaviour = self.layout.get(port)
        if behaviour is None:
            raise serial.SerialException(f"could not open port {port}")
        if isinstance(behaviour, Exception):
            raise behaviour
        device = FakeGPD(port, read_timeout=kwargs.get("timeout") or 0.05, **behaviour)
        self.opened[port] = device
        return device


@pytest.fixture
def fake_ports():
    """Patch serial.Serial with a FakePorts instance for the whole test."""
    ports = FakePorts()
    with patch("gpd3303s.serial.Serial", side_effect=ports):
        yield ports


@pytest.fixture
def psu(fake_ports):
    """A GPD3303S discovered on /dev/ttyUSB0 with a short watchdog."""
    fake_ports.add("/dev/ttyUSB0")
    psu = GPD3303S(["/dev/ttyUSB0"], timeout=0.2)
    yield psu
    psu.close()


@pytest.fixture
def device(psu, fake_ports):
    """The FakeGPD behind ``psu``, with the discovery traffic cleared."""
    dev = fake_ports.opened["/dev/ttyUSB0"]
    dev.written.clear()
    return dev
