"""Transport layer: CDC interface discovery, USB byte stream, and detach events."""

from .cdc import CDCTransport, LineCoding
from .descriptors import InterfacePair, resolve_interfaces
from .hotplug import DetachEventSource, UsbDetachMonitor
