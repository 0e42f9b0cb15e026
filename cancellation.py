import threading
import time
from typing import Callable, Optional

from errors import RetrievalCancelled, RetrievalTimeout


class CancelToken:
    """
    Cooperative cancellation flag shared between a job, its retriever and the executor.

    An optional ``poll`` callable lets the token observe a cancellation requested
    from another process (the job row's cancel flag). It is consulted at most
    once per ``poll_interval`` seconds.
    """

    def __init__(self, poll: Optional[Callable[[], Optional[str]]] = None, poll_interval: float = 0.2):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._poll = poll
        self._poll_interval = poll_interval
        self._last_poll = 0.0
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "user") -> None:
        with self._lock:
            if self.reason is None:
                self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._poll is not None:
            now = time.monotonic()
            if now - self._last_poll >= self._poll_interval:
                self._last_poll = now
                reason = self._poll()
                if reason:
                    self.cancel(reason)
                    return True
        return False

    def wait(self, timeout: float) -> bool:
        """Sleeps up to ``timeout`` seconds; returns True early if cancelled."""
        deadline = time.monotonic() + timeout
        while True:
            if self.cancelled:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            if self._event.wait(min(remaining, self._poll_interval)):
                return True

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            if self.reason == "timeout":
                raise RetrievalTimeout("Operation timed out")
            raise RetrievalCancelled("Operation cancelled")


class Watchdog:
    """Calls ``on_expire`` once if not stopped within ``timeout`` seconds."""

    def __init__(self, timeout: float, on_expire: Callable[[], None]):
        self.timeout = timeout
        self._timer = threading.Timer(timeout, on_expire)
        self._timer.daemon = True

    def start(self) -> "Watchdog":
        self._timer.start()
        return self

    def stop(self) -> None:
        self._timer.cancel()


def check_deadline(deadline: Optional[float]) -> None:
    """Raises RetrievalTimeout if the monotonic ``deadline`` has passed."""
    if deadline is not None and time.monotonic() >= deadline:
        raise RetrievalTimeout("Deadline exceeded")
