"""Deadline and cancellation signal shared by a whole dispatch.

One :class:`Deadline` bounds every step of a multi-step command, not
each step individually. Executors poll it while waiting on a child
process; :meth:`Deadline.cancel` lets another thread (a signal handler,
for example) abort the dispatch early.
"""

from __future__ import annotations

import threading
import time
from typing import Optional


class Deadline:
    """A point in monotonic time after which work must stop.

    Args:
        timeout: Seconds from now until expiry. ``None`` means no time
            limit; the deadline can still be canceled explicitly.

    Example::

        deadline = Deadline(30)
        while not deadline.expired:
            ...
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        self._expires_at = None if timeout is None else time.monotonic() + max(timeout, 0.0)
        self._canceled = threading.Event()

    @classmethod
    def never(cls) -> "Deadline":
        """A deadline that only ends through :meth:`cancel`."""
        return cls(None)

    @property
    def timeout_seconds(self) -> Optional[float]:
        """Seconds left, or ``None`` when unbounded. Never negative."""
        if self._expires_at is None:
            return None
        return max(self._expires_at - time.monotonic(), 0.0)

    @property
    def canceled(self) -> bool:
        """Whether :meth:`cancel` was called."""
        return self._canceled.is_set()

    @property
    def expired(self) -> bool:
        """Whether the deadline passed or the signal was canceled."""
        if self.canceled:
            return True
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    def cancel(self) -> None:
        """Trip the signal. Thread-safe and idempotent."""
        self._canceled.set()

    def reason(self) -> str:
        """Short description of why the deadline ended."""
        return "canceled" if self.canceled else "deadline exceeded"
