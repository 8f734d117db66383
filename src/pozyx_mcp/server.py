"""MCP server entry point for Pozyx tags attached over USB.

Exposes raw register access (read, write, function call) as tools via the
Model Context Protocol using the official Python MCP SDK with stdio
transport.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from mcp.server.fastmcp import FastMCP

from .connection import POZYX_VENDOR_ID, USBSerialConnection, find_first_device
from .errors import PozyxError
from .protocol.framing import MAX_ADDRESS, MAX_CALL_PARAMS
from .transport.hotplug import UsbDetachMonitor

logger = logging.getLogger(__name__)

WHO_AM_I_REGISTER = 0x00
EXPECTED_WHO_AM_I = 0x43

mcp = FastMCP(
    "pozyx",
    instructions="MCP server for Pozyx positioning tags over USB serial",
)

# Global connection state
_connection: USBSerialConnection | None = None
_detach_monitor = UsbDetachMonitor()


def _get_connection() -> USBSerialConnection:
    """Get the active connection, raising if not connected."""
    if _connection is None or not _connection.is_initialized():
        raise RuntimeError(
            "Not connected to device. Use the 'connect' tool first."
        )
    return _connection


def _parse_hex(value: str) -> bytes:
    """Parse a user-supplied hex string, tolerating spaces and a 0x prefix."""
    text = value.strip().lower()
    if text.startswith("0x"):
        text = text[2:]
    return bytes.fromhex(text)


def _check_address(address: int, length: int = 1) -> str | None:
    if not 0 <= address <= MAX_ADDRESS:
        return "Register address must be 0-255"
    if address + max(length, 1) - 1 > MAX_ADDRESS:
        return f"{length} bytes from 0x{address:02x} run past register 0xff"
    return None


# ─── CONNECTION TOOLS ─────────────────────────────────────────────────

@mcp.tool()
def connect(vendor_id: int = POZYX_VENDOR_ID) -> dict[str, Any]:
    """Open the first Pozyx device on the USB bus and verify the link.

    Initializes the serial line (115200 8N1) and reads the WHO_AM_I
    register, which must report 0x43.

    Args:
        vendor_id: USB vendor ID to look for (default 0x0483).
    """
    global _connection
    if _connection is not None and _connection.is_initialized():
        return {"connected": True, "message": "Already connected"}

    device = find_first_device(vendor_id)
    connection = USBSerialConnection(device, detach_events=_detach_monitor)
    try:
        connection.init()
        who_am_i = connection.read(WHO_AM_I_REGISTER, 1)[0]
    except PozyxError:
        connection.close()
        raise

    _connection = connection
    return {
        "connected": True,
        "who_am_i": f"0x{who_am_i:02x}",
        "verified": who_am_i == EXPECTED_WHO_AM_I,
    }


@mcp.tool()
def disconnect() -> dict[str, bool]:
    """Close the USB connection to the tag."""
    global _connection
    if _connection is None:
        return {"disconnected": True}
    connection, _connection = _connection, None
    connection.close()
    return {"disconnected": True}


# ─── REGISTER TOOLS ───────────────────────────────────────────────────

@mcp.tool()
def read_register(address: int, length: int = 1) -> dict[str, Any]:
    """Read raw bytes starting at a register.

    Reads longer than 28 bytes are split across consecutive registers.

    Args:
        address: Register address (0-255).
        length: Number of bytes to read.
    """
    if length < 0:
        return {"error": "Length must not be negative"}
    error = _check_address(address, length)
    if error:
        return {"error": error}

    data = _get_connection().read(address, length)
    return {"address": f"0x{address:02x}", "length": len(data), "data": data.hex()}


@mcp.tool()
def write_register(address: int, data_hex: str) -> dict[str, Any]:
    """Write raw bytes starting at a register.

    Args:
        address: Register address (0-255).
        data_hex: Bytes to write as a hex string, e.g. "2f" or "01 02".
    """
    try:
        data = _parse_hex(data_hex)
    except ValueError:
        return {"error": f"Invalid hex data: {data_hex!r}"}
    error = _check_address(address, len(data))
    if error:
        return {"error": error}

    _get_connection().write(address, data)
    return {"address": f"0x{address:02x}", "written": len(data)}


@mcp.tool()
def call_function(address: int, params_hex: str = "", result_length: int = 1) -> dict[str, Any]:
    """Call a device function register.

    Args:
        address: Function register address (0-255).
        params_hex: Parameters as a hex string, at most 14 bytes.
        result_length: Number of bytes the function returns.
    """
    error = _check_address(address)
    if error:
        return {"error": error}
    try:
        params = _parse_hex(params_hex)
    except ValueError:
        return {"error": f"Invalid hex params: {params_hex!r}"}
    if len(params) > MAX_CALL_PARAMS:
        return {"error": f"Function params cannot exceed {MAX_CALL_PARAMS} bytes"}

    result = _get_connection().call(address, params, result_length)
    return {"address": f"0x{address:02x}", "result": result.hex()}


# ─── RESOURCES ───────────────────────────────────────────────────────

@mcp.resource("pozyx://connection/status")
def resource_connection_status() -> str:
    """Current connection state."""
    connected = _connection is not None and _connection.is_initialized()
    return json.dumps({"connected": connected, "remote": False})


# ─── ENTRY POINT ─────────────────────────────────────────────────────

def main():
    """Run the MCP server with stdio transport."""
    logging.basicConfig(level=logging.INFO)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
