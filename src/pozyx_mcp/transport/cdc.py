"""USB CDC-ACM transport to the Pozyx tag.

The tag enumerates as a CDC serial device. We claim its COMM and DATA
interfaces directly through ``pyusb`` instead of going through the
kernel tty driver, configure the line with class-specific control
requests, and move protocol bytes over the DATA interface's bulk
endpoints.

Inbound data is pulled by a background poller that only runs while the
consumer asks for it (see :meth:`CDCTransport.set_polling`).
"""

from __future__ import annotations

import logging
import struct
import sys
import threading
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable

import usb.core
import usb.util

from ..errors import (
    ControlTransferError,
    DeviceDetachedError,
    LineCodingMismatchError,
    TransportClosedError,
    TransportError,
    TransportTimeoutError,
)
from .descriptors import (
    find_notification_endpoint,
    resolve_interfaces,
    split_data_endpoints,
)
from .hotplug import DetachEventSource, same_device

logger = logging.getLogger(__name__)

TRANSFER_TIMEOUT_MS = 1000
LINE_CODING_SIZE = 7
LINE_CODING_FORMAT = "<ibbb"  # baud, stop bits, parity, data bits
LINE_STATE_ACTIVE = 0x03  # DTR | RTS
LINE_STATE_INACTIVE = 0x00


class RequestType(IntEnum):
    """bmRequestType bits, meant to be or-ed."""

    DIRECTION_OUT = 0 << 7
    DIRECTION_IN = 1 << 7
    TYPE_STANDARD = 0 << 5
    TYPE_CLASS = 1 << 5
    TYPE_VENDOR = 2 << 5
    RECIPIENT_DEVICE = 0
    RECIPIENT_INTERFACE = 1
    RECIPIENT_ENDPOINT = 2
    RECIPIENT_OTHER = 3


class Request(IntEnum):
    """CDC-ACM class-specific requests."""

    SET_LINE_CODING = 0x20
    GET_LINE_CODING = 0x21
    SET_CONTROL_LINE_STATE = 0x22


CLASS_OUT = RequestType.DIRECTION_OUT | RequestType.TYPE_CLASS | RequestType.RECIPIENT_INTERFACE
CLASS_IN = RequestType.DIRECTION_IN | RequestType.TYPE_CLASS | RequestType.RECIPIENT_INTERFACE


@dataclass(frozen=True)
class LineCoding:
    """Line-character format of the virtual serial port.

    ``stopbits``: 0 = 1 stop bit, 1 = 1.5 stop bits, 2 = 2 stop bits.
    ``parity``: 0 = none, 1 = odd, 2 = even, 3 = mark, 4 = space.
    """

    baudrate: int
    stopbits: int = 0
    parity: int = 0
    databits: int = 8

    def to_bytes(self) -> bytes:
        return struct.pack(
            LINE_CODING_FORMAT, self.baudrate, self.stopbits, self.parity, self.databits
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> LineCoding:
        if len(data) < LINE_CODING_SIZE:
            raise ControlTransferError(
                f"GET_LINE_CODING returned {len(data)} bytes, expected {LINE_CODING_SIZE}"
            )
        return cls(*struct.unpack(LINE_CODING_FORMAT, bytes(data[:LINE_CODING_SIZE])))


class EndpointPoller:
    """Reads an IN endpoint on a background thread while started.

    ``on_data`` receives each non-empty transfer. ``on_timeout`` is called
    when a read times out, ``on_error`` when any other USB error ends the
    polling loop.
    """

    def __init__(
        self,
        endpoint,
        timeout_ms: int,
        on_data: Callable[[bytes], None],
        on_error: Callable[[Exception], None],
        on_timeout: Callable[[], None] | None = None,
        name: str = "usb-poller",
    ) -> None:
        self._endpoint = endpoint
        self._timeout_ms = timeout_ms
        self._on_data = on_data
        self._on_error = on_error
        self._on_timeout = on_timeout
        self._name = name
        self._lock = threading.Lock()
        self._stop = threading.Event()
        # Bumped by every start(); a read that began before a restart
        # belongs to the previous run and must not report its timeout.
        self._generation = 0
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        with self._lock:
            return self._thread is not None and not self._stop.is_set()

    def start(self) -> None:
        with self._lock:
            self._stop.clear()
            self._generation += 1
            if self._thread is not None:
                return
            self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
            self._thread.start()

    def stop(self, wait: bool = True) -> None:
        """Stop polling; waits for an in-flight read unless called from the poller."""
        with self._lock:
            self._stop.set()
            thread = self._thread
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join()

    def _run(self) -> None:
        size = self._endpoint.wMaxPacketSize
        while True:
            with self._lock:
                if self._stop.is_set():
                    self._thread = None
                    return
                generation = self._generation
            try:
                data = self._endpoint.read(size, timeout=self._timeout_ms)
            except usb.core.USBTimeoutError:
                with self._lock:
                    current = not self._stop.is_set() and generation == self._generation
                if self._on_timeout is not None and current:
                    self._on_timeout()
                continue
            except usb.core.USBError as e:
                with self._lock:
                    self._stop.set()
                    self._thread = None
                self._on_error(e)
                return
            if len(data):
                self._on_data(bytes(data))


class CDCTransport:
    """Owns the USB resources of one CDC device and exposes a byte stream.

    Usage::

        transport = CDCTransport(device)
        transport.add_data_listener(handle_chunk)
        transport.init(LineCoding(115200))
        transport.set_polling(True)
        transport.write(b"R,00,1\\r")
        transport.close()
    """

    def __init__(
        self,
        device,
        *,
        detach_events: DetachEventSource | None = None,
        timeout_ms: int = TRANSFER_TIMEOUT_MS,
    ) -> None:
        self._device = device
        self._detach_events = detach_events
        self._timeout_ms = timeout_ms
        self._closed = False
        self._close_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._polling_lock = threading.Lock()
        self._polling = False

        self._data_listeners: list[Callable[[bytes], None]] = []
        self._error_listeners: list[Callable[[Exception], None]] = []
        self._close_listeners: list[Callable[[Exception | None], None]] = []

        configuration = self._active_configuration()
        self._comm_iface, self._data_iface = resolve_interfaces(configuration)
        self._control_ep = find_notification_endpoint(self._comm_iface)
        self._in_ep, self._out_ep = split_data_endpoints(self._data_iface)

        self._reattach: list[int] = []
        claimed: list[int] = []
        try:
            if sys.platform != "win32":
                for intf in (self._comm_iface, self._data_iface):
                    self._detach_kernel_driver(intf.bInterfaceNumber)
            for intf in (self._comm_iface, self._data_iface):
                usb.util.claim_interface(self._device, intf.bInterfaceNumber)
                claimed.append(intf.bInterfaceNumber)
        except usb.core.USBError as e:
            for error in self._release_interfaces(claimed):
                logger.warning("Rollback after failed claim: %s", error)
            usb.util.dispose_resources(self._device)
            raise TransportError(f"Failed to claim CDC interfaces: {e}") from e

        self._data_poller = EndpointPoller(
            self._in_ep,
            timeout_ms,
            on_data=self._emit_data,
            on_error=self._on_endpoint_error,
            on_timeout=self._on_read_timeout,
            name="cdc-data-in",
        )
        self._control_poller = EndpointPoller(
            self._control_ep,
            timeout_ms,
            on_data=lambda data: logger.debug("Got data from control: %s", data.hex(" ")),
            on_error=self._on_endpoint_error,
            name="cdc-control-in",
        )
        self._control_poller.start()

        if self._detach_events is not None:
            self._detach_events.subscribe(self._on_device_detached)

        logger.info(
            "Claimed CDC interfaces COMM=%d DATA=%d (IN=0x%02X, OUT=0x%02X)",
            self._comm_iface.bInterfaceNumber,
            self._data_iface.bInterfaceNumber,
            self._in_ep.bEndpointAddress,
            self._out_ep.bEndpointAddress,
        )

    @property
    def device(self):
        return self._device

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def polling(self) -> bool:
        return self._polling

    # ─── Listeners ───────────────────────────────────────────────────

    def add_data_listener(self, callback: Callable[[bytes], None]) -> None:
        self._data_listeners.append(callback)

    def add_error_listener(self, callback: Callable[[Exception], None]) -> None:
        self._error_listeners.append(callback)

    def add_close_listener(self, callback: Callable[[Exception | None], None]) -> None:
        self._close_listeners.append(callback)

    def remove_all_listeners(self) -> None:
        self._data_listeners.clear()
        self._error_listeners.clear()
        self._close_listeners.clear()

    # ─── Line setup ──────────────────────────────────────────────────

    def init(self, line_coding: LineCoding) -> None:
        """Set the line coding, raise DTR/RTS and verify the coding took.

        Raises:
            ControlTransferError: If a control transfer fails.
            LineCodingMismatchError: If the device reports a different coding.
        """
        self.set_line_coding(line_coding)
        self.set_line_state(True)
        actual = self.get_line_coding()

        for name in ("baudrate", "stopbits", "parity", "databits"):
            expected_value = getattr(line_coding, name)
            actual_value = getattr(actual, name)
            if expected_value != actual_value:
                raise LineCodingMismatchError(name, expected_value, actual_value)

    def set_line_coding(self, line_coding: LineCoding) -> None:
        logger.debug("Setting line coding %s", line_coding)
        self.control_transfer(
            CLASS_OUT,
            Request.SET_LINE_CODING,
            0,
            self._comm_iface.bInterfaceNumber,
            line_coding.to_bytes(),
        )

    def get_line_coding(self) -> LineCoding:
        logger.debug("Getting line coding")
        data = self.control_transfer(
            CLASS_IN,
            Request.GET_LINE_CODING,
            0,
            self._comm_iface.bInterfaceNumber,
            LINE_CODING_SIZE,
        )
        return LineCoding.from_bytes(data)

    def set_line_state(self, active: bool) -> None:
        """Assert (DTR and RTS) or deassert the control lines."""
        self.control_transfer(
            CLASS_OUT,
            Request.SET_CONTROL_LINE_STATE,
            LINE_STATE_ACTIVE if active else LINE_STATE_INACTIVE,
            self._comm_iface.bInterfaceNumber,
            None,
        )

    def control_transfer(
        self,
        request_type: int,
        request: int,
        value: int,
        index: int,
        data_or_length: bytes | int | None,
    ) -> bytes | int:
        """Perform a control transfer on the default pipe.

        Returns:
            The bytes read for IN requests, the number of bytes written for
            OUT requests.

        Raises:
            TransportClosedError: If the transport has been torn down.
            ControlTransferError: If the transfer fails.
        """
        if self._closed:
            raise TransportClosedError("Attempted to perform a control transfer on a closed transport")

        logger.debug(
            "Control transfer {bmRequestType: 0x%02x, bRequest: 0x%02x, wValue: %d, wIndex: %d}",
            request_type, request, value, index,
        )
        try:
            result = self._device.ctrl_transfer(
                int(request_type), int(request), value, index, data_or_length,
                timeout=self._timeout_ms,
            )
        except usb.core.USBError as e:
            raise ControlTransferError(
                f"Control request 0x{int(request):02x} failed: {e}"
            ) from e

        if request_type & RequestType.DIRECTION_IN:
            return bytes(result)
        return result

    # ─── Byte stream ─────────────────────────────────────────────────

    def set_polling(self, polling: bool) -> None:
        """Start or stop reading the bulk IN endpoint.

        Safe to call from a data listener; stopping from the poller thread
        does not wait for the thread to exit.
        """
        with self._polling_lock:
            if polling == self._polling or self._closed:
                return
            self._polling = polling
            if polling:
                self._data_poller.start()
            else:
                self._data_poller.stop(wait=False)

    def write(self, data: bytes) -> int:
        """Submit one buffer to the bulk OUT endpoint.

        Returns:
            Number of bytes written.

        Raises:
            TransportClosedError: If the transport has been torn down.
            TransportTimeoutError: If the transfer does not complete in time.
            TransportError: If the transfer fails.
        """
        if self._closed:
            raise TransportClosedError("Cannot write to a closed transport")

        with self._write_lock:
            try:
                written = self._out_ep.write(data, timeout=self._timeout_ms)
            except usb.core.USBTimeoutError as e:
                raise TransportTimeoutError("USB write timeout") from e
            except usb.core.USBError as e:
                raise TransportError(f"USB write error: {e}") from e

        logger.debug("TX %d bytes: %r", len(data), bytes(data))
        return written

    # ─── Teardown ────────────────────────────────────────────────────

    def close(self) -> None:
        """Tear down the transport.

        Every step runs even if an earlier one fails; the first failure is
        re-raised once all interfaces are released.
        """
        self._destroy(None)

    def _destroy(self, reason: Exception | None) -> None:
        with self._close_lock:
            if self._closed:
                return
            errors: list[Exception] = []

            try:
                self.set_line_state(False)
            except TransportError as e:
                errors.append(e)

            self._closed = True
            with self._polling_lock:
                self._polling = False
            self._data_poller.stop()
            self._control_poller.stop()

            errors.extend(self._release_interfaces(
                [self._comm_iface.bInterfaceNumber, self._data_iface.bInterfaceNumber]
            ))
            usb.util.dispose_resources(self._device)

            close_listeners = list(self._close_listeners)
            self.remove_all_listeners()

        # Unsubscribing joins the monitor thread, which may itself be
        # waiting on _close_lock in _on_device_detached.
        if self._detach_events is not None:
            self._detach_events.unsubscribe(self._on_device_detached)

        logger.info("CDC transport closed")
        for callback in close_listeners:
            callback(reason)

        if errors:
            raise errors[0]

    # ─── Internals ───────────────────────────────────────────────────

    def _active_configuration(self):
        try:
            return self._device.get_active_configuration()
        except usb.core.USBError:
            self._device.set_configuration()
            return self._device.get_active_configuration()

    def _release_interfaces(self, numbers: list[int]) -> list[TransportError]:
        """Release claimed interfaces and hand detached ones back to the kernel."""
        errors: list[TransportError] = []
        for number in numbers:
            try:
                usb.util.release_interface(self._device, number)
            except usb.core.USBError as e:
                errors.append(TransportError(f"Failed to release interface {number}: {e}"))

        for number in self._reattach:
            try:
                self._device.attach_kernel_driver(number)
            except usb.core.USBError as e:
                errors.append(TransportError(f"Failed to reattach kernel driver to interface {number}: {e}"))
        self._reattach = []
        return errors

    def _detach_kernel_driver(self, number: int) -> None:
        try:
            active = self._device.is_kernel_driver_active(number)
        except NotImplementedError:
            return
        if active:
            self._device.detach_kernel_driver(number)
            self._reattach.append(number)
            logger.debug("Detached kernel driver from interface %d", number)

    def _emit_data(self, data: bytes) -> None:
        logger.debug("RX %d bytes: %r", len(data), data)
        for callback in list(self._data_listeners):
            callback(data)

    def _emit_error(self, error: Exception) -> None:
        for callback in list(self._error_listeners):
            callback(error)

    def _on_read_timeout(self) -> None:
        self._emit_error(TransportTimeoutError("USB read timeout"))

    def _on_endpoint_error(self, error: usb.core.USBError) -> None:
        if self._closed:
            return
        with self._polling_lock:
            self._polling = self._data_poller.running
        self._emit_error(TransportError(f"USB endpoint error: {error}"))

    def _on_device_detached(self, device) -> None:
        if not same_device(device, self._device):
            return
        logger.warning("Device detached, closing transport")
        try:
            self._destroy(DeviceDetachedError("Device was detached"))
        except TransportError as e:
            logger.warning("Error tearing down detached device: %s", e)
