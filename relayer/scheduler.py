"""
Background loop helpers.
"""

import logging
import threading
from typing import Callable, Optional

log = logging.getLogger(__name__)


class Ticker:
    """
    Runs `fn` every `interval` seconds in a daemon thread.

    Sleeps on an Event so stop() and wake() take effect immediately.
    A tick already running when stop() is called is allowed to finish.
    """

    def __init__(self, fn: Callable[[], None], interval: float, name: str = "ticker"):
        self.fn = fn
        self.interval = interval
        self.name = name
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 10):
        self._stop.set()
        self._wake.set()
        if self._thread:
            self._thread.join(timeout=timeout)
        self._thread = None

    def wake(self):
        """Run the next tick now instead of waiting out the interval."""
        self._wake.set()

    def _loop(self):
        while not self._stop.is_set():
            try:
                self.fn()
            except Exception as e:
                log.error(f"{self.name} tick error: {e}")
            self._wake.wait(self.interval)
            self._wake.clear()


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential backoff: base, 2*base, 4*base ... capped."""
    return min(cap, base * (2 ** max(0, attempt - 1)))
