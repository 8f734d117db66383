"""Device detach notifications.

pyusb has no hotplug callbacks, so :class:`UsbDetachMonitor` scans the bus
on a background thread and reports devices that disappeared since the
previous scan. Transports subscribe for their own lifetime only.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol

import usb.core

logger = logging.getLogger(__name__)

DEFAULT_SCAN_INTERVAL = 1.0

DetachCallback = Callable[[object], None]


class DetachEventSource(Protocol):
    def subscribe(self, callback: DetachCallback) -> None:
        """Call ``callback(device)`` whenever a device is removed."""

    def unsubscribe(self, callback: DetachCallback) -> None:
        """Stop delivering removal events to ``callback``."""


def device_key(device) -> tuple[int, int]:
    """Identify a device on the bus by ``(bus, address)``."""
    return (device.bus, device.address)


def same_device(a, b) -> bool:
    """True if ``a`` and ``b`` refer to the same attached device."""
    return a is b or device_key(a) == device_key(b)


class UsbDetachMonitor:
    """Polls the USB bus and reports removed devices to subscribers."""

    def __init__(
        self,
        interval: float = DEFAULT_SCAN_INTERVAL,
        find: Callable[..., object] = usb.core.find,
    ) -> None:
        self._interval = interval
        self._find = find
        self._lock = threading.Lock()
        self._subscribers: list[DetachCallback] = []
        self._known: dict[tuple[int, int], object] = {}
        self._thread: threading.Thread | None = None
        self._stop: threading.Event | None = None

    def subscribe(self, callback: DetachCallback) -> None:
        with self._lock:
            self._subscribers.append(callback)
            if self._thread is not None:
                return
            self._stop = threading.Event()
            thread = self._thread = threading.Thread(
                target=self._run,
                args=(self._stop,),
                name="usb-detach-monitor",
                daemon=True,
            )
        self._snapshot()
        thread.start()

    def unsubscribe(self, callback: DetachCallback) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)
            if self._subscribers or self._thread is None:
                return
            thread, stop = self._thread, self._stop
            self._thread = self._stop = None
        stop.set()
        if thread is not threading.current_thread():
            thread.join()

    def check(self) -> list[object]:
        """Scan the bus once and notify subscribers of removed devices.

        Returns:
            The devices that were present on the previous scan but are gone.
        """
        previous = self._known
        self._snapshot()
        removed = [dev for key, dev in previous.items() if key not in self._known]

        with self._lock:
            subscribers = list(self._subscribers)
        for device in removed:
            logger.info("USB device detached: bus %s address %s", *device_key(device))
            for callback in subscribers:
                callback(device)
        return removed

    def _snapshot(self) -> None:
        devices = self._find(find_all=True) or []
        self._known = {device_key(dev): dev for dev in devices}

    def _run(self, stop: threading.Event) -> None:
        while not stop.wait(self._interval):
            try:
                self.check()
            except usb.core.USBError as e:
                logger.warning("USB bus scan failed: %s", e)
