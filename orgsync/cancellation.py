"""Cancellation token threaded through every fetch and pacing sleep."""

from __future__ import annotations

import threading
import time
from typing import Optional

from orgsync.errors import PullCancelled

CANCELED = "canceled"
DEADLINE_EXCEEDED = "deadline exceeded"


class CancelToken:
    """Explicit cancellation plus an optional deadline.

    ``wait`` is backed by ``threading.Event.wait`` so a ``cancel()`` issued from
    a signal handler or another thread wakes a sleeping pull immediately.
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        self._event = threading.Event()
        self._reason = CANCELED
        self._deadline: Optional[float] = None
        if timeout is not None:
            self._deadline = time.monotonic() + max(0.0, timeout)

    def cancel(self, reason: str = CANCELED) -> None:
        if not self._event.is_set():
            self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel(DEADLINE_EXCEEDED)
            return True
        return False

    @property
    def reason(self) -> Optional[str]:
        return self._reason if self.cancelled else None

    def raise_if_cancelled(self, items: Optional[list] = None) -> None:
        if self.cancelled:
            raise PullCancelled(self._reason, items)

    def wait(self, seconds: float, items: Optional[list] = None) -> None:
        """Sleep for ``seconds`` unless cancelled first; raise PullCancelled if so."""
        if seconds <= 0:
            self.raise_if_cancelled(items)
            return

        timeout = seconds
        hits_deadline = False
        if self._deadline is not None:
            remaining = self._deadline - time.monotonic()
            if remaining < timeout:
                timeout = max(0.0, remaining)
                hits_deadline = True

        if self._event.wait(timeout):
            self.raise_if_cancelled(items)
        elif hits_deadline:
            self.cancel(DEADLINE_EXCEEDED)
            self.raise_if_cancelled(items)
