"""Tests for the CDC transport lifecycle and control requests."""

from __future__ import annotations

import queue
import sys
import threading
import time

import pytest
import usb.core

from pozyx_mcp.errors import (
    ControlTransferError,
    DeviceDetachedError,
    InterfaceResolutionError,
    LineCodingMismatchError,
    TransportClosedError,
    TransportError,
    TransportTimeoutError,
)
from pozyx_mcp.transport.cdc import CDCTransport, EndpointPoller, LineCoding, Request
from pozyx_mcp.transport.hotplug import UsbDetachMonitor

from usb_fakes import (
    HEADER_FUNCTIONAL,
    FakeBus,
    FakeDetachSource,
    FakeDevice,
    line_coding_bytes,
    make_cdc_device,
)

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="kernel driver handling differs")

TEST_TIMEOUT_MS = 50
POZYX_CODING = LineCoding(baudrate=115200, stopbits=0, parity=0, databits=8)


@pytest.fixture
def transport(cdc_device, usb_util):
    t = CDCTransport(cdc_device, timeout_ms=TEST_TIMEOUT_MS)
    yield t
    if not t.closed:
        t.close()


def _endpoints(device: FakeDevice):
    data_iface = device.interfaces[1]
    out_ep, in_ep = data_iface.endpoints()
    return in_ep, out_ep


def test_claims_both_interfaces(transport, cdc_device, usb_util):
    usb_util.claim_interface.assert_any_call(cdc_device, 0)
    usb_util.claim_interface.assert_any_call(cdc_device, 1)
    assert cdc_device.detached == [0, 1]


def test_configures_unconfigured_device(usb_util):
    device = make_cdc_device()
    device.configured = False
    t = CDCTransport(device, timeout_ms=TEST_TIMEOUT_MS)
    assert device.configured
    t.close()


def test_missing_union_fails_before_claiming(usb_util):
    """A device without a Union descriptor is rejected before any claim."""
    device = make_cdc_device(extra=HEADER_FUNCTIONAL)
    with pytest.raises(InterfaceResolutionError):
        CDCTransport(device, timeout_ms=TEST_TIMEOUT_MS)
    usb_util.claim_interface.assert_not_called()
    assert device.detached == []


def test_init_control_sequence(transport, cdc_device):
    transport.init(POZYX_CODING)

    assert cdc_device.control_transfers == [
        (0x21, Request.SET_LINE_CODING, 0, 0, line_coding_bytes(115200)),
        (0x21, Request.SET_CONTROL_LINE_STATE, 3, 0, None),
        (0xA1, Request.GET_LINE_CODING, 0, 0, 7),
    ]
    assert line_coding_bytes(115200) == b"\x00\xc2\x01\x00\x00\x00\x08"


def test_init_baud_mismatch(transport, cdc_device):
    """The device echoing 9600 baud means the line did not accept 115200."""
    cdc_device.echo_line_coding = line_coding_bytes(9600)
    with pytest.raises(LineCodingMismatchError) as excinfo:
        transport.init(POZYX_CODING)
    assert excinfo.value.field == "baudrate"
    assert excinfo.value.expected == 115200
    assert excinfo.value.actual == 9600


def test_init_databits_mismatch(transport, cdc_device):
    cdc_device.echo_line_coding = line_coding_bytes(115200, databits=7)
    with pytest.raises(LineCodingMismatchError, match="databits"):
        transport.init(POZYX_CODING)


def test_init_control_failure(transport, cdc_device):
    cdc_device.control_errors[(Request.SET_LINE_CODING, 0)] = usb.core.USBError("Pipe error")
    with pytest.raises(ControlTransferError):
        transport.init(POZYX_CODING)


def test_short_line_coding_reply(transport, cdc_device):
    cdc_device.echo_line_coding = b"\x00\xc2"
    with pytest.raises(ControlTransferError):
        transport.get_line_coding()


def test_line_coding_roundtrip():
    coding = LineCoding(baudrate=9600, stopbits=2, parity=1, databits=7)
    assert LineCoding.from_bytes(coding.to_bytes()) == coding


def test_write_goes_to_out_endpoint(transport, cdc_device):
    _, out_ep = _endpoints(cdc_device)
    assert transport.write(b"R,00,1\r") == 7
    assert out_ep.written == [b"R,00,1\r"]


def test_write_timeout(transport, cdc_device):
    _, out_ep = _endpoints(cdc_device)
    out_ep.write_error = usb.core.USBTimeoutError("Operation timed out")
    with pytest.raises(TransportTimeoutError):
        transport.write(b"W,15,2f\r")


def test_write_error(transport, cdc_device):
    _, out_ep = _endpoints(cdc_device)
    out_ep.write_error = usb.core.USBError("No such device")
    with pytest.raises(TransportError):
        transport.write(b"W,15,2f\r")


def test_polling_delivers_chunks(transport, cdc_device):
    in_ep, _ = _endpoints(cdc_device)
    received: queue.Queue = queue.Queue()
    transport.add_data_listener(received.put)

    transport.set_polling(True)
    assert transport.polling
    in_ep.feed(b"D,43\r")

    assert received.get(timeout=2) == b"D,43\r"
    transport.set_polling(False)
    assert not transport.polling


def test_no_delivery_while_not_polling(transport, cdc_device):
    in_ep, _ = _endpoints(cdc_device)
    received: queue.Queue = queue.Queue()
    transport.add_data_listener(received.put)

    in_ep.feed(b"D,43\r")
    with pytest.raises(queue.Empty):
        received.get(timeout=TEST_TIMEOUT_MS * 3 / 1000)

    transport.set_polling(True)
    assert received.get(timeout=2) == b"D,43\r"


def test_read_timeout_reported(transport):
    errors: queue.Queue = queue.Queue()
    transport.add_error_listener(errors.put)

    transport.set_polling(True)
    assert isinstance(errors.get(timeout=2), TransportTimeoutError)


def test_endpoint_error_stops_polling(transport, cdc_device):
    in_ep, _ = _endpoints(cdc_device)
    errors: queue.Queue = queue.Queue()
    transport.add_error_listener(errors.put)

    transport.set_polling(True)
    in_ep.feed(usb.core.USBError("Pipe error"))

    error = errors.get(timeout=2)
    while isinstance(error, TransportTimeoutError):
        error = errors.get(timeout=2)
    assert isinstance(error, TransportError)
    assert not transport.polling


def test_close_teardown(cdc_device, usb_util):
    t = CDCTransport(cdc_device, timeout_ms=TEST_TIMEOUT_MS)
    closed = []
    t.add_close_listener(closed.append)

    t.close()

    assert cdc_device.control_transfers[-1] == (0x21, Request.SET_CONTROL_LINE_STATE, 0, 0, None)
    usb_util.release_interface.assert_any_call(cdc_device, 0)
    usb_util.release_interface.assert_any_call(cdc_device, 1)
    usb_util.dispose_resources.assert_called_once_with(cdc_device)
    assert cdc_device.attached == [0, 1]
    assert closed == [None]
    assert t.closed

    t.close()
    assert closed == [None]


def test_no_reattach_when_no_driver_was_active(usb_util):
    device = make_cdc_device()
    device.active_drivers = set()
    t = CDCTransport(device, timeout_ms=TEST_TIMEOUT_MS)
    t.close()
    assert device.detached == []
    assert device.attached == []


def test_use_after_close(transport):
    transport.close()
    with pytest.raises(TransportClosedError):
        transport.write(b"R,00,1\r")
    with pytest.raises(TransportClosedError):
        transport.set_line_state(True)


def test_close_releases_even_if_line_state_fails(cdc_device, usb_util):
    """A failing teardown step does not skip the remaining releases."""
    t = CDCTransport(cdc_device, timeout_ms=TEST_TIMEOUT_MS)
    cdc_device.control_errors[(Request.SET_CONTROL_LINE_STATE, 0)] = usb.core.USBError("No such device")

    with pytest.raises(ControlTransferError):
        t.close()

    assert usb_util.release_interface.call_count == 2
    assert cdc_device.attached == [0, 1]
    assert t.closed


def test_close_continues_after_release_failure(cdc_device, usb_util):
    usb_util.release_interface.side_effect = [usb.core.USBError("Busy"), None]
    t = CDCTransport(cdc_device, timeout_ms=TEST_TIMEOUT_MS)

    with pytest.raises(TransportError, match="release interface 0"):
        t.close()

    assert usb_util.release_interface.call_count == 2
    assert cdc_device.attached == [0, 1]


def test_detach_of_own_device_destroys_transport(cdc_device, usb_util):
    source = FakeDetachSource()
    t = CDCTransport(cdc_device, detach_events=source, timeout_ms=TEST_TIMEOUT_MS)
    reasons = []
    t.add_close_listener(reasons.append)
    assert source.callbacks

    other = make_cdc_device()
    other.address = cdc_device.address + 1
    source.fire(other)
    assert not t.closed

    cdc_device.control_errors[(Request.SET_CONTROL_LINE_STATE, 0)] = usb.core.USBError("No such device")
    source.fire(cdc_device)

    assert t.closed
    assert len(reasons) == 1
    assert isinstance(reasons[0], DeviceDetachedError)
    assert source.callbacks == []
    assert usb_util.release_interface.call_count == 2


def test_claim_failure_rolls_back(cdc_device, usb_util):
    """A busy DATA interface leaves nothing claimed or detached behind."""
    usb_util.claim_interface.side_effect = [None, usb.core.USBError("Busy")]

    with pytest.raises(TransportError, match="claim"):
        CDCTransport(cdc_device, timeout_ms=TEST_TIMEOUT_MS)

    usb_util.release_interface.assert_called_once_with(cdc_device, 0)
    assert cdc_device.detached == [0, 1]
    assert cdc_device.attached == [0, 1]
    usb_util.dispose_resources.assert_called_once_with(cdc_device)


def test_close_while_monitor_reports_detach(cdc_device, usb_util):
    """Closing still completes when the bus scan sees the device vanish mid-close."""
    bus = FakeBus(cdc_device)
    monitor = UsbDetachMonitor(interval=0.01, find=bus.find)
    t = CDCTransport(cdc_device, detach_events=monitor, timeout_ms=TEST_TIMEOUT_MS)
    reasons = []
    t.add_close_listener(reasons.append)

    def unplug(request, value):
        if request == Request.SET_CONTROL_LINE_STATE and value == 0:
            bus.devices = []
            time.sleep(0.2)

    cdc_device.on_control = unplug
    closer = threading.Thread(target=t.close, daemon=True)
    closer.start()
    closer.join(timeout=5)

    assert not closer.is_alive()
    assert t.closed
    assert reasons == [None]
    assert monitor._thread is None


class GatedEndpoint:
    """First read blocks until released, then times out. Second read returns a reply."""

    wMaxPacketSize = 64

    def __init__(self) -> None:
        self.reads = 0
        self.in_first_read = threading.Event()
        self.release_first = threading.Event()
        self.done = threading.Event()

    def read(self, size, timeout=None):
        self.reads += 1
        if self.reads == 1:
            self.in_first_read.set()
            self.release_first.wait(2)
            raise usb.core.USBTimeoutError("Operation timed out")
        if self.reads == 2:
            return b"D,43\r"
        self.done.wait(2)
        raise usb.core.USBTimeoutError("Operation timed out")


def test_restart_ignores_timeout_of_previous_run():
    """A read left over from before a restart does not time out the new run."""
    endpoint = GatedEndpoint()
    received: queue.Queue = queue.Queue()
    timeouts = []
    poller = EndpointPoller(
        endpoint,
        TEST_TIMEOUT_MS,
        on_data=received.put,
        on_error=lambda e: None,
        on_timeout=lambda: timeouts.append(True),
    )

    poller.start()
    assert endpoint.in_first_read.wait(2)
    poller.stop(wait=False)
    poller.start()
    endpoint.release_first.set()

    assert received.get(timeout=2) == b"D,43\r"
    poller.stop(wait=False)
    endpoint.done.set()
    poller.stop()

    assert timeouts == []
