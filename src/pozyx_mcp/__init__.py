"""Host-side USB serial driver and MCP server for Pozyx positioning tags."""

from .connection import USBSerialConnection, find_first_device
from .errors import PozyxError

__version__ = "0.1.0"
