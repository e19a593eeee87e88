"""
Time sources for permission expiry, rate limiting, and risk scoring.

Two readings are always taken together:

  now()            - wall-clock milliseconds since the epoch.  The user can
                     set this freely, so it is never trusted on its own.
  monotonic_now()  - milliseconds on a clock that only moves forward and
                     keeps counting through sleep; it restarts at boot.

Every component takes a Clock in its constructor so tests can substitute
FakeClock and move time explicitly.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from datetime import datetime


class Clock(ABC):
    """Injectable source of wall-clock and monotonic time."""

    @abstractmethod
    def now(self) -> int:
        """Wall-clock milliseconds since the Unix epoch."""

    @abstractmethod
    def monotonic_now(self) -> int:
        """Milliseconds since boot; never decreases while the host is up."""

    @abstractmethod
    def current_hour(self) -> int:
        """Local hour of day, 0–23."""


class SystemClock(Clock):
    """Clock backed by the host's real clocks."""

    def now(self) -> int:
        return time.time_ns() // 1_000_000

    def monotonic_now(self) -> int:
        # CLOCK_BOOTTIME keeps counting through suspend; plain monotonic does not.
        if hasattr(time, "CLOCK_BOOTTIME"):
            return time.clock_gettime_ns(time.CLOCK_BOOTTIME) // 1_000_000
        return time.monotonic_ns() // 1_000_000

    def current_hour(self) -> int:
        return datetime.now().hour


class FakeClock(Clock):
    """
    Manually driven clock for tests and simulations.

    advance() moves both clocks together.  set_wall() and reboot() move them
    independently to reproduce clock tampering and device restarts.
    """

    def __init__(
        self,
        wall_ms: int = 1_700_000_000_000,
        monotonic_ms: int = 1_000_000,
        hour: int = 12,
    ) -> None:
        self._wall = wall_ms
        self._monotonic = monotonic_ms
        self._hour = hour

    def now(self) -> int:
        return self._wall

    def monotonic_now(self) -> int:
        return self._monotonic

    def current_hour(self) -> int:
        return self._hour

    def advance(self, ms: int) -> None:
        self._wall += ms
        self._monotonic += ms

    def set_wall(self, wall_ms: int) -> None:
        self._wall = wall_ms

    def set_monotonic(self, monotonic_ms: int) -> None:
        self._monotonic = monotonic_ms

    def set_hour(self, hour: int) -> None:
        if not 0 <= hour <= 23:
            raise ValueError(f"hour must be 0-23, got {hour}")
        self._hour = hour

    def reboot(self, uptime_ms: int = 1000) -> None:
        """Simulate a restart: the monotonic clock starts over, wall time is untouched."""
        self._monotonic = uptime_ms
