#!/usr/bin/env python3
"""
Corsair RMi / HXi PSU MCP Server

Exposes the power supply telemetry as MCP tools for LLM-driven monitoring.
Read-only apart from the output rail selector, which is always put back on
rail 0 after use.

Requires: Python 3.10+, fastmcp (`pip install fastmcp`), hidapi

Run:
    python corsairpsu_mcp.py                      # stdio transport (default)
"""

import json
from typing import Optional

from fastmcp import FastMCP

from corsairpsu import CorsairPSU, PRODUCTS, RAIL_COUNT, find_devices, hexdump

mcp = FastMCP(
    "Corsair PSU Telemetry",
    instructions=(
        "Reads telemetry from a Corsair RMi/HXi power supply over USB HID. "
        "Always connect() first, then use other tools. The PSU has three "
        "output rails (0=12V, 1=5V, 2=3.3V). Only one client may talk to the "
        "PSU at a time."
    ),
)

# Global device handle — one connection at a time
_psu: Optional[CorsairPSU] = None


def _require_connection() -> CorsairPSU:
    if _psu is None:
        raise RuntimeError("Not connected. Call connect() first.")
    return _psu


def _fmt(value: float, decimals: int = 2) -> float:
    """Round a float for clean JSON output."""
    return round(value, decimals)


def _rail_dict(rail) -> dict:
    return {
        "index": rail.index,
        "name": rail.name,
        "volts": _fmt(rail.volts),
        "amps": _fmt(rail.amps),
        "watts": _fmt(rail.watts, 1),
    }


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
def list_devices() -> str:
    """List the supported Corsair PSUs attached to this machine."""
    devices = [
        {
            "path": info["path"].decode(errors="replace"),
            "vendor_id": f"{info['vendor_id']:04x}",
            "product_id": f"{info['product_id']:04x}",
            "model": PRODUCTS[info["product_id"]],
        }
        for info in find_devices()
    ]
    return json.dumps({"devices": devices})


@mcp.tool()
def connect(path: Optional[str] = None) -> str:
    """Connect to the power supply.

    Args:
        path: Optional hidraw path, e.g. "/dev/hidraw3". When omitted the
              first supported PSU found is used.
    """
    global _psu
    if _psu is not None:
        return json.dumps({"error": "Already connected. disconnect() first."})

    psu = CorsairPSU(path)
    psu.connect()
    _psu = psu

    return json.dumps({"status": "connected", "model": psu.model})


@mcp.tool()
def disconnect() -> str:
    """Disconnect from the power supply."""
    global _psu
    if _psu is None:
        return json.dumps({"status": "already disconnected"})

    _psu.disconnect()
    _psu = None
    return json.dumps({"status": "disconnected"})


@mcp.tool()
def read_telemetry() -> str:
    """Read every telemetry value of the PSU.

    Returns identity strings, powered/uptime seconds, both temperatures (°C),
    fan rpm, supply voltage, total watts and volts/amps/watts per rail.
    """
    psu = _require_connection()
    snap = psu.read_telemetry()
    return json.dumps({
        "name": snap.name,
        "vendor": snap.vendor,
        "product": snap.product,
        "powered_seconds": snap.powered_seconds,
        "uptime_seconds": snap.uptime_seconds,
        "temp1": _fmt(snap.temp1, 1),
        "temp2": _fmt(snap.temp2, 1),
        "fan_rpm": _fmt(snap.fan_rpm, 0),
        "supply_volts": _fmt(snap.supply_volts, 1),
        "total_watts": _fmt(snap.total_watts, 1),
        "rails": [_rail_dict(r) for r in snap.rails],
    })


@mcp.tool()
def read_rail(index: int) -> str:
    """Read volts/amps/watts of one output rail.

    Args:
        index: Rail index 0-2 (0=12V, 1=5V, 2=3.3V).
    """
    psu = _require_connection()
    if index not in range(RAIL_COUNT):
        return json.dumps({"error": f"Rail index must be 0-{RAIL_COUNT - 1}"})
    rail = psu.read_rail(index)
    psu.select_output_rail(0)
    return json.dumps(_rail_dict(rail))


@mcp.tool()
def read_register(reg: int, size: int = 62) -> str:
    """Read raw payload bytes from any register, without decoding.

    Useful for exploring registers whose meaning is unknown.

    Args:
        reg: Register address 0-255.
        size: Number of payload bytes to return (max 62).
    """
    psu = _require_connection()
    data = psu.read_raw(reg, size)
    return json.dumps({"reg": f"{reg:02x}", "hex": data.hex(" "),
                       "dump": hexdump(data)})


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    mcp.run()
