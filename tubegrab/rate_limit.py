"""Fixed-window request counter keyed by client address."""
import time
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict

from .exceptions import RateLimitExceeded


@dataclass
class _Window:
    count: int
    reset_time: float


class RateLimiter:
    """
    Caps how many requests a single client may make per window.

    This is a plain fixed-window counter: a client can burst up to twice the
    limit across a window boundary.
    """

    def __init__(self, limit: int, window: float, clock: Callable[[], float] = time.monotonic):
        """
        Initializes the RateLimiter.

        Args:
            limit: The number of requests allowed per window.
            window: The window length in seconds.
            clock: A monotonic time source, replaceable in tests.
        """
        self.limit = max(limit, 1)
        self.window = window
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def hit(self, key: str):
        """
        Records a request for `key`.

        Raises:
            RateLimitExceeded: If `key` has used up its allowance for the current window.
                The rejected request is not counted.
        """
        now = self.clock()
        with self._lock:
            entry = self._windows.get(key)
            if entry is None or now > entry.reset_time:
                self._windows[key] = _Window(count=1, reset_time=now + self.window)
                return
            if entry.count >= self.limit:
                retry_after = max(entry.reset_time - now, 0.0)
                self.logger.info(f"Rate limit hit for {key} ({entry.count}/{self.limit}), retry in {retry_after:.0f}s")
                raise RateLimitExceeded(retry_after)
            entry.count += 1

    def purge(self, slack: float = 0.0) -> int:
        """Drops windows that expired more than `slack` seconds ago. Returns how many were removed."""
        cutoff = self.clock() - slack
        with self._lock:
            stale = [key for key, entry in self._windows.items() if entry.reset_time < cutoff]
            for key in stale:
                del self._windows[key]
        return len(stale)
