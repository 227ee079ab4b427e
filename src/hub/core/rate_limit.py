"""In-memory fixed-window rate limiter for the inbound endpoints.

One instance per process, built in the app lifespan. The key map is bounded:
when full, expired windows are swept first and then the least recently seen
keys are evicted, so a flood of distinct client keys cannot grow memory
without limit. The clock is injected so tests control time.
"""

from __future__ import annotations

import math
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass


@dataclass
class _Window:
    started_at: float
    count: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int


class RateLimiter:
    """Fixed-window request counter keyed by an arbitrary string.

    Args:
        limit: Requests allowed per key per window.
        window_seconds: Window length.
        max_keys: Maximum number of tracked keys.
        clock: Returns the current time in seconds (monotonic).
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        max_keys: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit < 1 or window_seconds <= 0 or max_keys < 1:
            raise ValueError("limit, window_seconds and max_keys must be positive")
        self._limit = limit
        self._window = window_seconds
        self._max_keys = max_keys
        self._clock = clock
        self._windows: OrderedDict[str, _Window] = OrderedDict()

    def __len__(self) -> int:
        return len(self._windows)

    def hit(self, key: str) -> RateLimitDecision:
        """Count one request for ``key`` and decide whether it may proceed."""
        now = self._clock()
        window = self._windows.get(key)

        if window is None or now - window.started_at >= self._window:
            if window is None and len(self._windows) >= self._max_keys:
                self._evict(now)
            window = _Window(started_at=now, count=0)
            self._windows[key] = window
        self._windows.move_to_end(key)

        if window.count >= self._limit:
            retry_after = max(1, math.ceil(window.started_at + self._window - now))
            return RateLimitDecision(allowed=False, remaining=0, retry_after=retry_after)

        window.count += 1
        return RateLimitDecision(allowed=True, remaining=self._limit - window.count, retry_after=0)

    def _evict(self, now: float) -> None:
        expired = [k for k, w in self._windows.items() if now - w.started_at >= self._window]
        for key in expired:
            del self._windows[key]
        while len(self._windows) >= self._max_keys:
            self._windows.popitem(last=False)
