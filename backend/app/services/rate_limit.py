from __future__ import annotations

import math
import threading
import time
from collections import defaultdict, deque


class SlidingWindowLimiter:
    """Per-key request limiter over a rolling window.

    ``hit`` returns ``None`` when the request is allowed, otherwise the number
    of seconds until the oldest counted request leaves the window.
    """

    def __init__(self, *, max_events: int, window_seconds: int) -> None:
        self.max_events = max_events
        self.window_seconds = window_seconds
        self._events: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def hit(self, key: str) -> int | None:
        now = time.monotonic()
        with self._lock:
            events = self._events[key]
            while events and events[0] <= now - self.window_seconds:
                events.popleft()
            if len(events) >= self.max_events:
                return max(1, math.ceil(events[0] + self.window_seconds - now))
            events.append(now)
            return None

    def reset(self) -> None:
        with self._lock:
            self._events.clear()
