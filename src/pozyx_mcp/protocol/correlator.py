"""FIFO correlation of inbound response chunks to pending requests.

The wire protocol carries no request identifier, so a response always
belongs to the oldest request still waiting for one. Callers must keep
at most one logical request outstanding at a time.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import Future

logger = logging.getLogger(__name__)


class RequestCorrelator:
    """Thread-safe queue of futures awaiting exactly one inbound chunk each."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: deque[Future] = deque()

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def submit(self, label: str = "") -> Future:
        """Register a new pending request and return its future.

        Must be called before the request frame is written so that a fast
        reply cannot arrive ahead of the bookkeeping.
        """
        future: Future = Future()
        future.set_running_or_notify_cancel()
        with self._lock:
            self._pending.append(future)
            depth = len(self._pending)
        logger.debug("Pending request %s (queue depth %d)", label, depth)
        return future

    def resolve(self, chunk: bytes) -> bool:
        """Hand ``chunk`` to the oldest pending request.

        Returns:
            False if no request was waiting, in which case the chunk is dropped.
        """
        with self._lock:
            future = self._pending.popleft() if self._pending else None
        if future is None:
            logger.warning("Dropping unsolicited data: %r", chunk)
            return False
        future.set_result(chunk)
        return True

    def discard(self, future: Future) -> bool:
        """Remove ``future`` from the queue without resolving it."""
        with self._lock:
            try:
                self._pending.remove(future)
            except ValueError:
                return False
        return True

    def reject_oldest(self, exc: BaseException) -> bool:
        """Fail the oldest pending request with ``exc``."""
        with self._lock:
            future = self._pending.popleft() if self._pending else None
        if future is None:
            return False
        future.set_exception(exc)
        return True

    def reject_all(self, exc: BaseException) -> int:
        """Fail every pending request with ``exc`` and empty the queue."""
        with self._lock:
            pending = list(self._pending)
            self._pending.clear()
        for future in pending:
            future.set_exception(exc)
        return len(pending)
