#!/usr/bin/env python3
"""
GW Instek GPD-3303S Power Supply: Python API

Talks the line-oriented ASCII protocol of the GPD-3303S over a USB/RS-232
serial port. The driver finds the supply by probing every candidate port
with ``*IDN?`` and keeps that port open until ``close()``.

Requires: pyserial (`pip install pyserial`)
"""

import enum
import functools
import logging
import threading
from decimal import Decimal, InvalidOperation
from typing import Callable, Iterable, Optional, Union

import serial
import serial.tools.list_ports

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants: instrument limits and line settings
# ---------------------------------------------------------------------------
MODEL = "GW INSTEK,GPD-3303S"

MAX_VOLTS = Decimal(30)
MAX_AMPS = Decimal(3)
CHANNELS = (1, 2)

# Memory slots for SAV/RCL
MEMORY_RANGE_LOW = 1
MEMORY_RANGE_HIGH = 4

# TRACK<mode>
TRACK_MODE_MIN = 0
TRACK_MODE_MAX = 2

BAUD_RATE = 9600
TERMINATOR = "\n"
TIME_WAIT_RECEIVE = 0.7  # seconds allowed for a reply
DATA_OFFSET_END = 2      # unit letter + CR trailing every numeric reply
READ_POLL = 0.05         # reader thread serial timeout

Number = Union[Decimal, float, int, str]


class TrackMode(enum.IntEnum):
    """Coupling of channels 1 and 2."""

    INDEPENDENT = 0
    SERIES = 1
    PARALLEL = 2


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class PowerSupplyError(Exception):
    """Base exception for the GPD-3303S driver."""


class NoSupplyError(PowerSupplyError):
    """Raised when no candidate port answers as a GPD-3303S."""


class ParseValueError(PowerSupplyError):
    """Raised when the supply answers a query with something that is not a number.

    This means the reply stream is out of step with the commands sent, so it
    is kept separate from a plain timeout.
    """


# ---------------------------------------------------------------------------
# Response framing
# ---------------------------------------------------------------------------
class Outcome(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"


class ResponseAssembler:
    """Collects received text until a full reply line is available.

    ``feed()`` runs on the reader thread and ``expire()`` on the watchdog
    thread; the caller blocks in ``wait()``. Whichever of completion and
    expiry lands first decides the round trip, the other is ignored.

    Each round trip is numbered by ``begin()``; an ``expire()`` carrying a
    stale number comes from a watchdog of an earlier round trip and is
    dropped.
    """

    def __init__(self, terminator: str = TERMINATOR):
        self._terminator = terminator
        self._cond = threading.Condition()
        self._buffer = ""
        self._reply: Optional[str] = None
        self._outcome = Outcome.PENDING
        self._round = 0

    @property
    def buffer(self) -> str:
        with self._cond:
            return self._buffer

    @property
    def outcome(self) -> Outcome:
        with self._cond:
            return self._outcome

    def begin(self) -> int:
        """Start a new round trip with an empty buffer. Returns its number."""
        with self._cond:
            self._round += 1
            self._buffer = ""
            self._reply = None
            self._outcome = Outcome.PENDING
            return self._round

    def feed(self, data: str) -> bool:
        """Append received text; return True once the buffer holds a full line.

        A terminator that is not the last character closes a line nobody is
        waiting for any more, so everything through it is dropped. A bare
        terminator completes with an empty reply.
        """
        with self._cond:
            self._buffer += data
            index = self._buffer.find(self._terminator)
            while index != -1 and index != len(self._buffer) - 1:
                self._buffer = self._buffer[index + 1:]
                index = self._buffer.find(self._terminator)

            complete = index != -1
            if complete and self._outcome is Outcome.PENDING:
                self._reply = self._buffer[:index]
                self._outcome = Outcome.COMPLETED
                self._cond.notify_all()
            return complete

    def expire(self, round_number: int) -> bool:
        """Mark the given round trip as timed out if it is still pending."""
        with self._cond:
            if round_number != self._round or self._outcome is not Outcome.PENDING:
                return False
            self._outcome = Outcome.TIMED_OUT
            self._cond.notify_all()
            return True

    def wait(self) -> tuple[Outcome, Optional[str]]:
        """Block until the current round trip completes or expires."""
        with self._cond:
            while self._outcome is Outcome.PENDING:
                self._cond.wait()
            return self._outcome, self._reply


class Watchdog:
    """One-shot countdown bounding how long a round trip may wait."""

    def __init__(self, period: float = TIME_WAIT_RECEIVE):
        self.period = period
        self._timer: Optional[threading.Timer] = None

    @property
    def armed(self) -> bool:
        return self._timer is not None and self._timer.is_alive()

    def arm(self, on_expire: Callable[[], object]):
        """Restart the countdown; ``on_expire`` runs once if it runs out."""
        self.disarm()
        self._timer = threading.Timer(self.period, on_expire)
        self._timer.daemon = True
        self._timer.start()

    def disarm(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


# ---------------------------------------------------------------------------
# Serial transport
# ---------------------------------------------------------------------------
def available_ports() -> list[str]:
    """Names of all serial ports the OS reports, in enumeration order."""
    return [p.device for p in serial.tools.list_ports.comports()]


class SerialTransport:
    """A single serial port with a background reader thread.

    Bytes are handed to ``on_data`` from the reader thread as soon as they
    arrive, in whatever chunks the port delivers them.
    """

    def __init__(self, on_data: Callable[[bytes], None], baud: int = BAUD_RATE):
        self._on_data = on_data
        self._baud = baud
        self._ser: Optional[serial.Serial] = None
        self._reader: Optional[threading.Thread] = None
        self._reader_stop: Optional[threading.Event] = None

    @property
    def is_open(self) -> bool:
        return self._ser is not None and self._ser.is_open

    @property
    def port(self) -> Optional[str]:
        return self._ser.port if self._ser is not None else None

    def open(self, port: str):
        """Open ``port`` at 8N1 without flow control and start reading.

        Any port already open is closed first. Raises
        ``serial.SerialException`` if the port cannot be opened.
        """
        self.close()
        ser = serial.Serial(
            port, self._baud,
            bytesize=8, parity="N", stopbits=1,
            timeout=READ_POLL, rtscts=False, xonxoff=False, dsrdtr=False,
        )
        ser.rts = False
        self._ser = ser

        stop = threading.Event()
        self._reader_stop = stop
        self._reader = threading.Thread(
            target=self._reader_loop, args=(ser, stop),
            name=f"gpd3303s-reader-{port}", daemon=True,
        )
        self._reader.start()

    def write_line(self, line: str):
        if not self.is_open:
            raise serial.SerialException("Serial port is not open")
        self._ser.write((line + TERMINATOR).encode("ascii"))
        self._ser.flush()

    def close(self):
        """Stop the reader thread and release the port."""
        if self._reader_stop is not None:
            self._reader_stop.set()
        if self._reader is not None and self._reader is not threading.current_thread():
            self._reader.join(timeout=2.0)
        self._reader = None
        self._reader_stop = None
        if self._ser is not None:
            try:
                self._ser.close()
            finally:
                self._ser = None

    def _reader_loop(self, ser: serial.Serial, stop: threading.Event):
        while not stop.is_set():
            try:
                data = ser.read(ser.in_waiting or 1)
            except (serial.SerialException, OSError) as exc:
                logger.debug("Reader for %s stopped: %s", ser.port, exc)
                break
            if data:
                self._on_data(data)


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------
def to_decimal(value: Number) -> Decimal:
    """Convert a setpoint to Decimal without picking up binary float noise."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _is_int(value) -> bool:
    """True for ints and IntEnums; bools and floats are rejected."""
    return isinstance(value, int) and not isinstance(value, bool)


def parse_reading(reply: str, what: str) -> Decimal:
    """Strip the unit suffix from a query reply and parse the number."""
    text = reply[:-DATA_OFFSET_END] if len(reply) > DATA_OFFSET_END else ""
    try:
        value = Decimal(text.strip())
    except InvalidOperation:
        raise ParseValueError(f"Failed to parse value for {what}: {reply!r}") from None
    if not value.is_finite():
        raise ParseValueError(f"Failed to parse value for {what}: {reply!r}")
    return value


# ---------------------------------------------------------------------------
# GPD3303S class
# ---------------------------------------------------------------------------
class GPD3303S:
    """Python API for the GW Instek GPD-3303S dual-channel power supply.

    Construction scans the candidate ports and raises ``NoSupplyError`` if
    none of them is a GPD-3303S. On success the output is switched off.

    Usage::

        with GPD3303S() as psu:
            psu.set_voltage(1, 5.0)
            psu.set_current(1, 0.5)
            psu.turn_output_on()
            print(psu.get_actual_current(1))

    Only one command is ever outstanding; calls from several threads are
    serialized internally.
    """

    def __init__(self, ports: Optional[Iterable[str]] = None,
                 timeout: float = TIME_WAIT_RECEIVE, baud: int = BAUD_RATE):
        self._assembler = ResponseAssembler()
        self._watchdog = Watchdog(timeout)
        self._transport = SerialTransport(self._data_received, baud=baud)
        self._lock = threading.RLock()
        self._beep_enabled = True  # factory default

        candidates = list(ports) if ports is not None else available_ports()
        self._discover(candidates)
        try:
            self.turn_output_off()
        except (serial.SerialException, OSError):
            self._transport.close()
            raise

    # -- Properties ----------------------------------------------------------

    @property
    def port(self) -> Optional[str]:
        return self._transport.port

    @property
    def timeout(self) -> float:
        return self._watchdog.period

    @property
    def beep_enabled(self) -> bool:
        return self._beep_enabled

    # -- Context manager -----------------------------------------------------

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # -- Discovery -----------------------------------------------------------

    def _discover(self, candidates: list[str]):
        for port in candidates:
            logger.debug("Probing %s", port)
            try:
                self._transport.open(port)
            except (serial.SerialException, OSError) as exc:
                logger.debug("Could not open %s: %s", port, exc)
                continue

            found = False
            try:
                found = self.check_connected()
            except (serial.SerialException, OSError) as exc:
                logger.debug("Identity query on %s failed: %s", port, exc)
            finally:
                if not found:
                    self._transport.close()

            if found:
                logger.info("GPD-3303S found on %s", port)
                return
            logger.debug("%s is not a GPD-3303S", port)

        raise NoSupplyError("Failed to connect to power supply")

    def check_connected(self) -> bool:
        """Check that the open port answers ``*IDN?`` as a GPD-3303S."""
        model = self._send_and_await("*IDN?")
        return model is not None and model.startswith(MODEL)

    # -- Low-level I/O -------------------------------------------------------

    def _data_received(self, data: bytes):
        self._assembler.feed(data.decode("ascii", errors="replace"))

    def _send(self, command: str):
        """Write a command the supply does not answer."""
        with self._lock:
            self._transport.write_line(command)

    def _send_and_await(self, command: str) -> Optional[str]:
        """Write a query and wait for its reply line.

        Returns the reply without its terminator, or None if the watchdog
        fired first.
        """
        with self._lock:
            round_number = self._assembler.begin()
            self._transport.write_line(command)
            self._watchdog.arm(functools.partial(self._assembler.expire, round_number))
            try:
                outcome, reply = self._assembler.wait()
            finally:
                self._watchdog.disarm()

        if outcome is Outcome.TIMED_OUT:
            logger.warning("Power supply -> Watchdog fired (%s)", command)
            return None
        return reply

    def _query_value(self, command: str, what: str, sentinel: Decimal) -> Decimal:
        reply = self._send_and_await(command)
        if reply is None:
            return sentinel
        return parse_reading(reply, what)

    @staticmethod
    def _valid_channel(channel: int) -> bool:
        if not _is_int(channel) or channel not in CHANNELS:
            logger.warning("Invalid channel, must be 1 or 2 (got %r)", channel)
            return False
        return True

    # -- Current -------------------------------------------------------------

    def set_current(self, channel: int, amps: Number) -> bool:
        """Set the current limit of a channel and verify it by read-back.

        Args:
            channel: 1 or 2.
            amps: Limit in amperes, above 0 and at most 3.

        Returns:
            True if the supply reports the requested value afterwards.
        """
        if not self._valid_channel(channel):
            return False
        value = to_decimal(amps)
        if not value.is_finite() or value <= 0 or value > MAX_AMPS:
            logger.warning(
                "Maximum current cannot be less than/equal to 0 or greater than %sA (got %s)",
                MAX_AMPS, value,
            )
            return False

        with self._lock:
            self._send(f"ISET{channel}:{value}")
            actual = self.get_current(channel)
        if actual != value:
            logger.warning("Current on channel %d reads back %s, expected %s",
                           channel, actual, value)
            return False
        return True

    def get_current(self, channel: int) -> Decimal:
        """Current limit of a channel in amperes, ``MAX_AMPS + 1`` if unknown."""
        if not self._valid_channel(channel):
            return MAX_AMPS + 1
        return self._query_value(f"ISET{channel}?", "set current", MAX_AMPS + 1)

    def get_actual_current(self, channel: int) -> Decimal:
        """Measured output current in amperes, ``MAX_AMPS + 1`` if unknown."""
        if not self._valid_channel(channel):
            return MAX_AMPS + 1
        return self._query_value(f"IOUT{channel}?", "actual current", MAX_AMPS + 1)

    # -- Voltage -------------------------------------------------------------

    def set_voltage(self, channel: int, volts: Number) -> bool:
        """Set the voltage of a channel and verify it by read-back.

        Args:
            channel: 1 or 2.
            volts: Voltage in volts, above 0 and at most 30.

        Returns:
            True if the supply reports the requested value afterwards.
        """
        if not self._valid_channel(channel):
            return False
        value = to_decimal(volts)
        if not value.is_finite() or value <= 0 or value > MAX_VOLTS:
            logger.warning(
                "Voltage cannot be less than/equal to 0 or greater than %sV (got %s)",
                MAX_VOLTS, value,
            )
            return False

        with self._lock:
            self._send(f"VSET{channel}:{value}")
            actual = self.get_voltage(channel)
        if actual != value:
            logger.warning("Voltage on channel %d reads back %s, expected %s",
                           channel, actual, value)
            return False
        return True

    def get_voltage(self, channel: int) -> Decimal:
        """Voltage setpoint of a channel in volts, ``MAX_VOLTS + 1`` if unknown."""
        if not self._valid_channel(channel):
            return MAX_VOLTS + 1
        return self._query_value(f"VSET{channel}?", "set voltage", MAX_VOLTS + 1)

    def get_actual_voltage(self, channel: int) -> Decimal:
        """Measured output voltage in volts, ``MAX_VOLTS + 1`` if unknown."""
        if not self._valid_channel(channel):
            return MAX_VOLTS + 1
        return self._query_value(f"VOUT{channel}?", "actual voltage", MAX_VOLTS + 1)

    # -- Memory --------------------------------------------------------------

    def save_settings(self, location: int) -> bool:
        """Store the present settings in memory slot 1-4."""
        if not _is_int(location) or not MEMORY_RANGE_LOW <= location <= MEMORY_RANGE_HIGH:
            logger.warning("Invalid memory location, value must be %d to %d, got %r",
                           MEMORY_RANGE_LOW, MEMORY_RANGE_HIGH, location)
            return False
        self._send(f"SAV{location}")
        return True

    def load_settings(self, location: int) -> bool:
        """Recall settings previously stored in memory slot 1-4."""
        if not _is_int(location) or not MEMORY_RANGE_LOW <= location <= MEMORY_RANGE_HIGH:
            logger.warning("Invalid memory location, value must be %d to %d, got %r",
                           MEMORY_RANGE_LOW, MEMORY_RANGE_HIGH, location)
            return False
        self._send(f"RCL{location}")
        return True

    # -- Tracking ------------------------------------------------------------

    def set_tracking_mode(self, mode: int) -> bool:
        """Couple channels 1 and 2: 0 independent, 1 series, 2 parallel."""
        if not _is_int(mode) or not TRACK_MODE_MIN <= mode <= TRACK_MODE_MAX:
            logger.warning("Invalid tracking mode, must be between %d and %d, got %r",
                           TRACK_MODE_MIN, TRACK_MODE_MAX, mode)
            return False
        self._send(f"TRACK{int(mode)}")
        return True

    # -- Output --------------------------------------------------------------

    def turn_output_off(self):
        self._send("OUT0")

    def turn_output_on(self):
        """Enable the output, with an audible beep to warn whoever is near."""
        self._send("OUT1")
        self.beep()

    # -- Beeper --------------------------------------------------------------

    def turn_beep_off(self):
        with self._lock:
            self._beep_enabled = False
            self._send("BEEP0")

    def turn_beep_on(self):
        with self._lock:
            self._beep_enabled = True
            self._send("BEEP1")

    def beep(self):
        """Sound the beeper once, leaving the beep setting as it was."""
        with self._lock:
            was_enabled = self._beep_enabled
            self.turn_beep_off()
            self.turn_beep_on()
            if not was_enabled:
                self.turn_beep_off()

    # -- Errors --------------------------------------------------------------

    def report_errors(self) -> Optional[str]:
        """Read the supply's error message (``ERR?``) and log it."""
        reply = self._send_and_await("ERR?")
        if reply is None:
            return None
        message = reply.strip()
        logger.warning("Power supply error: %s", message)
        return message

    # -- Teardown ------------------------------------------------------------

    def close(self):
        """Switch the output off and release the port.

        The port may already be gone, so a failing ``OUT0`` is ignored.
        """
        if self._transport.is_open:
            try:
                self.turn_output_off()
            except Exception:
                pass
        self._watchdog.disarm()
        self._transport.close()

    def detach(self):
        """Release the port but leave the output as it is."""
        self._watchdog.disarm()
        self._transport.close()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def _decimal_arg(text: str) -> Decimal:
    try:
        return Decimal(text)
    except InvalidOperation:
        raise ValueError(f"not a number: {text!r}") from None


def _cli():
    import argparse
    import sys

    parser = argparse.ArgumentParser(
        prog="gpd3303s",
        description="GW Instek GPD-3303S command-line interface",
    )
    parser.add_argument(
        "-p", "--port", action="append", dest="ports",
        help="candidate serial port, may be repeated (default: scan all ports)",
    )
    parser.add_argument(
        "-t", "--timeout", type=float, default=TIME_WAIT_RECEIVE,
        help="seconds to wait for a reply (default: %(default)s)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    # -- info / errors -------------------------------------------------------
    sub.add_parser("info", help="show the port the supply was found on")
    sub.add_parser("errors", help="read the supply's error message")

    # -- readings ------------------------------------------------------------
    for name, help_text in (("voltage", "read voltage setpoint"),
                            ("current", "read current limit"),
                            ("measure", "read measured output V/A")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("channel", type=int, choices=CHANNELS)

    # -- setpoints -----------------------------------------------------------
    p = sub.add_parser("set-voltage", help="set voltage setpoint")
    p.add_argument("channel", type=int, choices=CHANNELS)
    p.add_argument("volts", type=_decimal_arg)

    p = sub.add_parser("set-current", help="set current limit")
    p.add_argument("channel", type=int, choices=CHANNELS)
    p.add_argument("amps", type=_decimal_arg)

    # -- output / tracking / memory ------------------------------------------
    sub.add_parser("on", help="enable output")
    sub.add_parser("off", help="disable output")

    p = sub.add_parser("track", help="set tracking mode (0 indep, 1 series, 2 parallel)")
    p.add_argument("mode", type=int)

    p = sub.add_parser("save", help="save settings to memory 1-4")
    p.add_argument("location", type=int)

    p = sub.add_parser("recall", help="recall settings from memory 1-4")
    p.add_argument("location", type=int)

    # -- beeper --------------------------------------------------------------
    sub.add_parser("beep", help="sound the beeper once")
    sub.add_parser("beep-on", help="enable the beeper")
    sub.add_parser("beep-off", help="disable the beeper")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    # Commands that should leave output running when done
    KEEP_OUTPUT = {"set-voltage", "set-current", "on", "track", "recall"}

    try:
        psu = GPD3303S(args.ports, timeout=args.timeout)
    except (PowerSupplyError, serial.SerialException) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    ok = True
    try:
        cmd = args.command

        if cmd == "info":
            print(f"Model: {MODEL}")
            print(f"Port:  {psu.port}")
        elif cmd == "errors":
            print(psu.report_errors() or "No reply")

        elif cmd == "voltage":
            print(f"{psu.get_voltage(args.channel):.3f}")
        elif cmd == "current":
            print(f"{psu.get_current(args.channel):.3f}")
        elif cmd == "measure":
            v = psu.get_actual_voltage(args.channel)
            a = psu.get_actual_current(args.channel)
            print(f"{v:.3f} V  {a:.3f} A")

        elif cmd == "set-voltage":
            ok = psu.set_voltage(args.channel, args.volts)
            print(f"Voltage setpoint: {args.volts} V" if ok else "Voltage not set")
        elif cmd == "set-current":
            ok = psu.set_current(args.channel, args.amps)
            print(f"Current limit: {args.amps} A" if ok else "Current not set")

        elif cmd == "on":
            psu.turn_output_on()
            print("Output ON")
        elif cmd == "off":
            psu.turn_output_off()
            print("Output OFF")
        elif cmd == "track":
            ok = psu.set_tracking_mode(args.mode)
            print(f"Tracking: {TrackMode(args.mode).name}" if ok else "Invalid tracking mode")
        elif cmd == "save":
            ok = psu.save_settings(args.location)
            print(f"Saved to M{args.location}" if ok else "Invalid memory location")
        elif cmd == "recall":
            ok = psu.load_settings(args.location)
            print(f"Recalled M{args.location}" if ok else "Invalid memory location")

        elif cmd == "beep":
            psu.beep()
        elif cmd == "beep-on":
            psu.turn_beep_on()
            print("Beeper ON")
        elif cmd == "beep-off":
            psu.turn_beep_off()
            print("Beeper OFF")

    except (PowerSupplyError, serial.SerialException) as e:
        print(f"Error: {e}", file=sys.stderr)
        ok = False
    finally:
        if args.command in KEEP_OUTPUT:
            psu.detach()
        else:
            psu.close()

    if not ok:
        sys.exit(1)


if __name__ == "__main__":
    _cli()
