"""Per-client request throttling used by the HTTP middleware in `main`.

Each client key gets its own window of request timestamps. A request is
admitted while fewer than `max_requests` timestamps fall inside the last
`window_seconds`; otherwise the caller is told how long until the oldest
one expires.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable


class _Window:
    __slots__ = ("stamps",)

    def __init__(self):
        self.stamps: deque[float] = deque()

    def expire(self, cutoff: float) -> None:
        while self.stamps and self.stamps[0] <= cutoff:
            self.stamps.popleft()

    def seconds_until_free(self, now: float, window_seconds: int) -> int:
        oldest = self.stamps[0]
        return max(1, int(oldest + window_seconds - now))


class InMemoryRateLimiter:
    """Sliding-window limiter keyed by client address.

    Windows live in process memory, so every worker process counts on
    its own. `clock` is injectable for tests.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def allow(self, key: str, max_requests: int, window_seconds: int) -> tuple[bool, int]:
        """Count a request for `key`; returns `(allowed, retry_after_seconds)`."""
        now = self._clock()
        with self._lock:
            window = self._windows.setdefault(key, _Window())
            window.expire(now - window_seconds)
            if len(window.stamps) < max_requests:
                window.stamps.append(now)
                return True, 0
            return False, window.seconds_until_free(now, window_seconds)

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)
