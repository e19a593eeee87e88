"""
Per-caller fixed-window rate limiter.

Windows run on the monotonic clock.  A caller's window opens on its first
request and admits up to ``max_requests`` requests until ``window_ms`` has
elapsed; the next request after that opens a fresh window.  At most
``max_entries`` callers are tracked, evicting the least recently seen.

State is in-memory only and starts empty on every process start.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass

from signgate.core.clock import Clock
from signgate.core.constants import (
    RATE_LIMIT_MAX_ENTRIES,
    RATE_LIMIT_MAX_REQUESTS,
    RATE_LIMIT_WINDOW_MS,
)

logger = logging.getLogger(__name__)


@dataclass
class _Window:
    start: int
    count: int


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    count: int
    limit: int
    reset_at: int  # monotonic ms when the current window closes

    @property
    def first_rejection(self) -> bool:
        """True only for the first rejected request of a window."""
        return not self.allowed and self.count == self.limit + 1


class RateLimiter:
    def __init__(
        self,
        clock: Clock,
        window_ms: int = RATE_LIMIT_WINDOW_MS,
        max_requests: int = RATE_LIMIT_MAX_REQUESTS,
        max_entries: int = RATE_LIMIT_MAX_ENTRIES,
    ) -> None:
        self._clock = clock
        self._window_ms = max(1, window_ms)
        self._max_requests = max(1, max_requests)
        self._max_entries = max(1, max_entries)
        self._windows: OrderedDict[str, _Window] = OrderedDict()
        self._lock = threading.Lock()

    def admit(self, caller_id: str) -> bool:
        return self.check(caller_id).allowed

    def check(self, caller_id: str) -> RateLimitResult:
        """Count this request against the caller's window and report the outcome."""
        now = self._clock.monotonic_now()
        with self._lock:
            window = self._windows.get(caller_id)
            if window is None or now < window.start or now - window.start >= self._window_ms:
                window = _Window(start=now, count=1)
                self._windows[caller_id] = window
            else:
                window.count += 1
            self._windows.move_to_end(caller_id)
            while len(self._windows) > self._max_entries:
                self._windows.popitem(last=False)

            result = RateLimitResult(
                allowed=window.count <= self._max_requests,
                count=window.count,
                limit=self._max_requests,
                reset_at=window.start + self._window_ms,
            )

        if result.first_rejection:
            logger.warning(
                "Rate limit hit for %s (%d per %d ms)",
                caller_id,
                self._max_requests,
                self._window_ms,
            )
        return result

    def stats(self, caller_id: str) -> dict[str, int]:
        now = self._clock.monotonic_now()
        with self._lock:
            window = self._windows.get(caller_id)
            count = 0
            if window is not None and window.start <= now < window.start + self._window_ms:
                count = window.count
        return {
            "current": count,
            "limit": self._max_requests,
            "remaining": max(0, self._max_requests - count),
            "window_ms": self._window_ms,
        }

    def reset(self, caller_id: str | None = None) -> None:
        """Clear one caller's window, or all of them."""
        with self._lock:
            if caller_id is None:
                self._windows.clear()
            else:
                self._windows.pop(caller_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)
