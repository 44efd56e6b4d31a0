from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """Fixed-window request counter keyed by an arbitrary string.

    Each key gets *max_requests* per *window_seconds*; the window starts on
    the key's first request. Instances are owned by whoever needs throttling
    (the HTTP app keeps one on ``app.state``), never module-global.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_requests < 1 or window_seconds <= 0:
            raise ValueError("max_requests must be >= 1 and window_seconds > 0")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()

    def check(self, key: str) -> RateLimitResult:
        """Count one request for *key* and report whether it is allowed."""
        with self._lock:
            now = self._clock()
            if len(self._windows) > self._max_entries:
                self._cleanup(now)

            window = self._windows.get(key)
            if window is None or window.reset_at <= now:
                window = _Window(count=1, reset_at=now + self.window_seconds)
                self._windows[key] = window
                return RateLimitResult(True, self.max_requests, self.max_requests - 1, window.reset_at)

            if window.count >= self.max_requests:
                return RateLimitResult(False, self.max_requests, 0, window.reset_at)

            window.count += 1
            return RateLimitResult(
                True, self.max_requests, self.max_requests - window.count, window.reset_at,
            )

    def reset(self, key: str) -> None:
        """Forget *key*'s window so its next request starts fresh."""
        with self._lock:
            self._windows.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()

    def __len__(self) -> int:
        return len(self._windows)

    def _cleanup(self, now: float) -> None:
        expired = [k for k, w in self._windows.items() if w.reset_at <= now]
        for k in expired:
            del self._windows[k]
        overflow = len(self._windows) - self._max_entries
        if overflow > 0:
            # still over the cap: drop the windows closest to resetting
            oldest = sorted(self._windows, key=lambda k: self._windows[k].reset_at)[:overflow]
            for k in oldest:
                del self._windows[k]
