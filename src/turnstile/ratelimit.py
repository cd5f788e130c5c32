"""Sliding-window rate limiting keyed by caller."""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable

from .errors import RateLimitedError


class SlidingWindowLimiter:
    """Allow at most `limit` events per `window_seconds` for each key."""

    def __init__(
        self,
        limit: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if limit <= 0:
            raise ValueError("limit must be positive")
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._events: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._last_purge = clock()

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._events)

    def check(self, key: str = "") -> tuple[bool, float]:
        """
        Record an attempt for `key`.

        Returns (allowed, retry_after_seconds). Rejected attempts are not
        counted against the window.
        """
        now = self._clock()
        with self._lock:
            cutoff = now - self.window_seconds
            if now - self._last_purge >= self.window_seconds:
                self._purge(cutoff)
                self._last_purge = now
            events = self._events.setdefault(key, deque())
            while events and events[0] <= cutoff:
                events.popleft()
            if len(events) >= self.limit:
                return False, max(0.0, events[0] + self.window_seconds - now)
            events.append(now)
            return True, 0.0

    def _purge(self, cutoff: float) -> None:
        # a key whose newest event is outside the window has nothing left
        stale = [k for k, events in self._events.items() if not events or events[-1] <= cutoff]
        for k in stale:
            del self._events[k]

    def acquire(self, key: str = "") -> None:
        """Like check(), but raises RateLimitedError when over the limit."""
        allowed, retry_after = self.check(key)
        if not allowed:
            raise RateLimitedError(
                f"Rate limit of {self.limit} per {self.window_seconds:g}s exceeded",
                retry_after=retry_after,
            )

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._events.clear()
            else:
                self._events.pop(key, None)
