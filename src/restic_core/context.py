"""Cancellation contexts for restic invocations.

A Context is shared between the caller and the threads running an
operation. Cancelling it, explicitly or by reaching its deadline, makes
the process runner terminate the subprocess it is waiting on.
"""

import threading
import time
from typing import Optional

CANCELED = "context canceled"
DEADLINE_EXCEEDED = "context deadline exceeded"


class Context:
    """A cancellation signal with an optional deadline.

    Args:
        timeout: Seconds from now after which the context counts as cancelled
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None
        self.deadline = time.monotonic() + timeout if timeout is not None else None

    def __repr__(self) -> str:
        return f"<Context reason={self._reason!r} deadline={self.deadline!r}>"

    def cancel(self, reason: str = CANCELED) -> None:
        """Cancel the context. Only the first reason is kept."""
        with self._lock:
            if self._reason is None:
                self._reason = reason
        self._event.set()

    def _check_deadline(self) -> None:
        if self.deadline is not None and time.monotonic() >= self.deadline:
            self.cancel(DEADLINE_EXCEEDED)

    @property
    def cancelled(self) -> bool:
        self._check_deadline()
        return self._event.is_set()

    def err(self) -> Optional[str]:
        """Return why the context was cancelled, or None while it is live."""
        self._check_deadline()
        with self._lock:
            return self._reason

    def remaining(self) -> Optional[float]:
        """Seconds left until the deadline, or None without one."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or timeout seconds pass; return cancelled state."""
        remaining = self.remaining()
        if remaining is not None:
            timeout = remaining if timeout is None else min(timeout, remaining)
        self._event.wait(timeout)
        return self.cancelled


def background() -> Context:
    """Return a context that is never cancelled unless cancel() is called."""
    return Context()


class Cancelled(Exception):
    """Raised inside the runner when a context is cancelled mid-operation."""

    def __init__(self, reason: Optional[str]) -> None:
        self.reason = reason or CANCELED
        super().__init__(self.reason)
