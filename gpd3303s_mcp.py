#!/usr/bin/env python3
"""
GW Instek GPD-3303S MCP Server

Exposes the GPD-3303S dual-channel power supply as MCP tools for LLM-driven
control.

Requires: Python 3.10+, fastmcp (`pip install fastmcp`), pyserial

Run:
    python gpd3303s_mcp.py                    # stdio transport (default)

Or configure in an MCP client:
    {
        "mcpServers": {
            "gpd3303s": {
                "command": "python3",
                "args": ["gpd3303s_mcp.py"]
            }
        }
    }
"""

import json
from decimal import Decimal
from typing import Optional

from fastmcp import FastMCP

from gpd3303s import GPD3303S, MAX_AMPS, MAX_VOLTS, NoSupplyError, TrackMode

mcp = FastMCP(
    "GW Instek GPD-3303S Power Supply",
    instructions=(
        "Controls a GW Instek GPD-3303S dual-channel DC power supply over a "
        "serial port. Channels are 1 and 2, each 0-30V at 0-3A. Always "
        "connect() first; it scans the serial ports for the supply and turns "
        "the output off. Setpoints are verified by reading them back. "
        "disconnect() turns the output off before releasing the port."
    ),
)

# Global device handle, one connection at a time
_psu: Optional[GPD3303S] = None


def _require_connection() -> GPD3303S:
    if _psu is None:
        raise RuntimeError("Not connected. Call connect() first.")
    return _psu


def _reading(value: Decimal, limit: Decimal) -> Optional[float]:
    """A reading as a float, or None when it is the no-reply sentinel."""
    if value > limit:
        return None
    return round(float(value), 3)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
def connect(ports: Optional[list[str]] = None) -> str:
    """Find and connect to the GPD-3303S.

    Each port is queried with *IDN? until one answers as a GPD-3303S. The
    output is switched off once connected.

    Args:
        ports: Candidate serial ports, e.g. ["/dev/ttyUSB0", "COM3"].
               Omit to scan every serial port on the machine.
    """
    global _psu
    if _psu is not None:
        return json.dumps({"error": "Already connected. disconnect() first."})

    try:
        psu = GPD3303S(ports)
    except NoSupplyError as e:
        return json.dumps({"error": str(e)})
    _psu = psu

    return json.dumps({
        "status": "connected",
        "port": psu.port,
        "output": "off",
    })


@mcp.tool()
def disconnect() -> str:
    """Disconnect from the GPD-3303S.

    Turns the output OFF before releasing the port.
    """
    global _psu
    if _psu is None:
        return json.dumps({"status": "already disconnected"})

    _psu.close()
    _psu = None
    return json.dumps({"status": "disconnected", "output": "off"})


@mcp.tool()
def identify() -> str:
    """Check that the connected port still answers as a GPD-3303S."""
    psu = _require_connection()
    return json.dumps({"port": psu.port, "connected": psu.check_connected()})


@mcp.tool()
def set_voltage(channel: int, volts: float) -> str:
    """Set the voltage setpoint of one channel.

    The value is read back from the supply; a mismatch or an out-of-range
    value is reported as an error. This does not enable the output.

    Args:
        channel: 1 or 2.
        volts: Voltage in volts (above 0, at most 30).
    """
    psu = _require_connection()
    if not psu.set_voltage(channel, volts):
        return json.dumps({"status": "error", "channel": channel,
                           "error": "voltage rejected or not confirmed"})
    return json.dumps({"status": "ok", "channel": channel, "voltage_setpoint": volts})


@mcp.tool()
def set_current(channel: int, amps: float) -> str:
    """Set the current limit of one channel.

    The value is read back from the supply; a mismatch or an out-of-range
    value is reported as an error. This does not enable the output.

    Args:
        channel: 1 or 2.
        amps: Current limit in amps (above 0, at most 3).
    """
    psu = _require_connection()
    if not psu.set_current(channel, amps):
        return json.dumps({"status": "error", "channel": channel,
                           "error": "current rejected or not confirmed"})
    return json.dumps({"status": "ok", "channel": channel, "current_setpoint": amps})


@mcp.tool()
def get_setpoints(channel: int) -> str:
    """Read the voltage setpoint and current limit of one channel.

    Values the supply did not answer are returned as null.
    """
    psu = _require_connection()
    volts = _reading(psu.get_voltage(channel), MAX_VOLTS)
    amps = _reading(psu.get_current(channel), MAX_AMPS)
    return json.dumps({
        "status": "ok" if volts is not None and amps is not None else "timeout",
        "channel": channel,
        "voltage_setpoint": volts,
        "current_setpoint": amps,
    })


@mcp.tool()
def measure(channel: int) -> str:
    """Measure the actual output voltage and current of one channel.

    Values the supply did not answer are returned as null.
    """
    psu = _require_connection()
    volts = _reading(psu.get_actual_voltage(channel), MAX_VOLTS)
    amps = _reading(psu.get_actual_current(channel), MAX_AMPS)
    return json.dumps({
        "status": "ok" if volts is not None and amps is not None else "timeout",
        "channel": channel,
        "voltage": volts,
        "current": amps,
    })


@mcp.tool()
def output_on() -> str:
    """Enable the output of both channels (the supply beeps once)."""
    psu = _require_connection()
    psu.turn_output_on()
    return json.dumps({"status": "ok", "output": "on"})


@mcp.tool()
def output_off() -> str:
    """Disable the output of both channels. Setpoints are kept."""
    psu = _require_connection()
    psu.turn_output_off()
    return json.dumps({"status": "ok", "output": "off"})


@mcp.tool()
def set_tracking_mode(mode: int) -> str:
    """Couple channels 1 and 2.

    Args:
        mode: 0 independent, 1 series, 2 parallel.
    """
    psu = _require_connection()
    if not psu.set_tracking_mode(mode):
        return json.dumps({"status": "error", "error": f"invalid tracking mode {mode}"})
    return json.dumps({"status": "ok", "tracking": TrackMode(mode).name.lower()})


@mcp.tool()
def save_settings(location: int) -> str:
    """Save the present settings to memory slot 1-4."""
    psu = _require_connection()
    if not psu.save_settings(location):
        return json.dumps({"status": "error", "error": f"invalid memory location {location}"})
    return json.dumps({"status": "ok", "saved": location})


@mcp.tool()
def load_settings(location: int) -> str:
    """Recall settings from memory slot 1-4."""
    psu = _require_connection()
    if not psu.load_settings(location):
        return json.dumps({"status": "error", "error": f"invalid memory location {location}"})
    return json.dumps({"status": "ok", "recalled": location})


@mcp.tool()
def beep() -> str:
    """Sound the beeper once without changing the beep setting."""
    psu = _require_connection()
    psu.beep()
    return json.dumps({"status": "ok", "beep_enabled": psu.beep_enabled})


@mcp.tool()
def set_beep(enabled: bool) -> str:
    """Enable or disable the key/alarm beeper."""
    psu = _require_connection()
    if enabled:
        psu.turn_beep_on()
    else:
        psu.turn_beep_off()
    return json.dumps({"status": "ok", "beep_enabled": psu.beep_enabled})


@mcp.tool()
def read_errors() -> str:
    """Read the supply's error message (ERR?)."""
    psu = _require_connection()
    message = psu.report_errors()
    if message is None:
        return json.dumps({"status": "timeout", "error_message": None})
    return json.dumps({"status": "ok", "error_message": message})


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    mcp.run()
