"""USB serial connection to a Pozyx tag.

Turns the register-level ``read``/``write``/``call`` contract into ASCII
frames on top of a :class:`~pozyx_mcp.transport.cdc.CDCTransport`.
Oversized reads and writes are split into consecutive frames that are
issued and awaited one at a time, in address order.
"""

from __future__ import annotations

import logging
import threading

import usb.core

from .errors import (
    DeviceNotFoundError,
    NotInitializedError,
    ParameterTooLongError,
    TransportClosedError,
    TransportError,
    TransportTimeoutError,
)
from .protocol.commands import build_call, build_read, build_write
from .protocol.correlator import RequestCorrelator
from .protocol.framing import (
    MAX_CALL_PARAMS,
    parse_response,
    plan_read_chunks,
    plan_write_chunks,
)
from .transport.cdc import CDCTransport, LineCoding
from .transport.hotplug import DetachEventSource

logger = logging.getLogger(__name__)

POZYX_VENDOR_ID = 0x0483
POZYX_LINE_CODING = LineCoding(baudrate=115200, stopbits=0, parity=0, databits=8)


def find_first_device(vendor_id: int = POZYX_VENDOR_ID):
    """Return the first attached USB device with the given vendor ID.

    Raises:
        DeviceNotFoundError: If no such device is attached.
    """
    device = usb.core.find(idVendor=vendor_id)
    if device is None:
        raise DeviceNotFoundError(
            f"No Pozyx device found (vendor {vendor_id:#06x}). "
            f"Ensure the device is connected and you have permissions."
        )
    logger.info("Found device: bus %s address %s", device.bus, device.address)
    return device


class USBSerialConnection:
    """A local connection to a Pozyx tag over USB CDC.

    Usage::

        conn = USBSerialConnection(find_first_device())
        conn.init()
        who_am_i = conn.read(0x00, 1)
        conn.close()
    """

    is_remote = False

    def __init__(
        self,
        device=None,
        *,
        detach_events: DetachEventSource | None = None,
        transport: CDCTransport | None = None,
    ) -> None:
        if transport is None:
            if device is None:
                raise ValueError("Either a device or a transport is required")
            transport = CDCTransport(device, detach_events=detach_events)

        self._transport = transport
        self._initialized = False
        self._pending = RequestCorrelator()
        # Guards submit/resolve together with the polling state.
        self._lock = threading.Lock()

        self._transport.add_data_listener(self._on_data)
        self._transport.add_error_listener(self._on_error)
        self._transport.add_close_listener(self._on_close)

    @property
    def transport(self) -> CDCTransport:
        return self._transport

    def init(self) -> None:
        """Configure the serial line.

        Raises:
            LineCodingMismatchError: If the device does not accept the coding.
            ControlTransferError: If a control transfer fails.
        """
        self._transport.init(POZYX_LINE_CODING)
        self._initialized = True
        logger.info("Connection initialized")

    def is_initialized(self) -> bool:
        return self._initialized

    def read(self, address: int, length: int) -> bytes:
        """Read ``length`` bytes starting at register ``address``.

        Returns:
            The register contents, little-endian as stored on the device.
        """
        self._assert_initialized("read")

        data = bytearray()
        for chunk_address, chunk_length in plan_read_chunks(address, length):
            frame = build_read(chunk_address, chunk_length)
            data += parse_response(self._request(frame))
        return bytes(data)

    def write(self, address: int, data: bytes) -> None:
        """Write ``data`` starting at register ``address``."""
        self._assert_initialized("write")

        for chunk_address, chunk in plan_write_chunks(address, data):
            self._transport.write(build_write(chunk_address, chunk))

    def call(self, address: int, params: bytes, result_length: int) -> bytes:
        """Call the function at register ``address``.

        Args:
            address: Function register address.
            params: Parameters, at most 14 bytes.
            result_length: Number of bytes the function returns.

        Raises:
            ParameterTooLongError: If ``params`` exceeds 14 bytes.
        """
        self._assert_initialized("call a function")
        if len(params) > MAX_CALL_PARAMS:
            raise ParameterTooLongError(
                f"Function params cannot exceed {MAX_CALL_PARAMS} bytes in length"
            )

        return parse_response(self._request(build_call(address, params, result_length)))

    def close(self) -> None:
        """Close the underlying transport; pending requests are rejected."""
        self._initialized = False
        self._transport.close()

    def _assert_initialized(self, action: str) -> None:
        if not self._initialized:
            raise NotInitializedError(
                f"Cannot {action} until the connection has been initialized"
            )

    def _request(self, frame: bytes) -> bytes:
        """Send ``frame`` and wait for the single response chunk it expects."""
        with self._lock:
            future = self._pending.submit(repr(frame))
            self._transport.set_polling(True)

        try:
            self._transport.write(frame)
        except TransportError:
            with self._lock:
                self._pending.discard(future)
                if not len(self._pending):
                    self._transport.set_polling(False)
            raise

        return future.result()

    def _on_data(self, chunk: bytes) -> None:
        with self._lock:
            self._pending.resolve(chunk)
            if not len(self._pending):
                self._transport.set_polling(False)

    def _on_error(self, error: Exception) -> None:
        with self._lock:
            if isinstance(error, TransportTimeoutError):
                rejected = self._pending.reject_oldest(error)
            else:
                rejected = self._pending.reject_all(error)
            if not len(self._pending):
                self._transport.set_polling(False)
        if rejected:
            logger.warning("Transport error rejected pending request: %s", error)

    def _on_close(self, reason: Exception | None) -> None:
        self._initialized = False
        error = reason or TransportClosedError("Connection closed")
        count = self._pending.reject_all(error)
        if count:
            logger.warning("Rejected %d pending request(s) on close", count)
