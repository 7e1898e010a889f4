from collections import deque
from dataclasses import dataclass
import math
import threading
import time
from typing import Callable


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int = 0


class RateLimiter:
    """
    In-memory sliding window limiter, one window per key.

    Keys whose newest hit has left the window are dropped at most once per
    window, so the map only holds keys active in the last window.
    """

    def __init__(
        self,
        points: int = 10,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.points = points
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._last_eviction = clock()

    @property
    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def hit(self, key: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            if now - self._last_eviction >= self.window_seconds:
                self._evict_idle(now)
            window = self._hits.setdefault(key, deque())
            while window and now - window[0] >= self.window_seconds:
                window.popleft()
            if len(window) >= self.points:
                retry_after = self.window_seconds - (now - window[0])
                return RateLimitDecision(False, max(1, math.ceil(retry_after)))
            window.append(now)
            return RateLimitDecision(True)

    def _evict_idle(self, now: float) -> None:
        idle = [
            key
            for key, window in self._hits.items()
            if not window or now - window[-1] >= self.window_seconds
        ]
        for key in idle:
            del self._hits[key]
        self._last_eviction = now

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
