"""
Velocity limits for automatic approvals.

Unlike the in-memory rate limiter, velocity counts are persisted so a
caller cannot reset them by restarting the host.  Each automatic ALLOW is
recorded; a new one is refused once the caller has reached the hourly,
daily, or weekly ceiling.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from signgate.core.clock import Clock
from signgate.core.constants import DAY_MS, HOUR_MS, WEEK_MS
from signgate.core.store.database import Database

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VelocityLimits:
    hourly: int
    daily: int
    weekly: int


@dataclass(frozen=True)
class VelocityResult:
    allowed: bool
    reason: str | None = None
    reset_at: int | None = None  # wall-clock ms when the blocking window frees a slot


@dataclass(frozen=True)
class VelocityUsage:
    hourly: int
    daily: int
    weekly: int


class VelocityTracker:
    def __init__(self, db: Database, clock: Clock, limits: VelocityLimits) -> None:
        self._db = db
        self._clock = clock
        self._limits = limits

    def _windows(self) -> list[tuple[str, int, int]]:
        return [
            ("Hourly", HOUR_MS, self._limits.hourly),
            ("Daily", DAY_MS, self._limits.daily),
            ("Weekly", WEEK_MS, self._limits.weekly),
        ]

    def check_and_record(self, caller_id: str, event_kind: int | None = None) -> VelocityResult:
        """Atomically check every window and, if all pass, record the request."""
        now = self._clock.now()
        with self._db.transaction():
            for label, window_ms, limit in self._windows():
                since = now - window_ms
                row = self._db.query_one(
                    "SELECT count(*), min(timestamp) FROM velocity "
                    "WHERE caller_id = ? AND timestamp > ? AND timestamp <= ?",
                    (caller_id, since, now),
                )
                count = row[0] if row else 0
                if count >= limit:
                    oldest = row[1] if row and row[1] is not None else now
                    reason = f"{label} limit ({count}/{limit})"
                    logger.warning("Velocity block for %s: %s", caller_id, reason)
                    return VelocityResult(False, reason, oldest + window_ms)

            self._db.execute(
                "INSERT INTO velocity (caller_id, event_kind, timestamp) VALUES (?, ?, ?)",
                (caller_id, event_kind, now),
            )
            self._db.execute("DELETE FROM velocity WHERE timestamp <= ?", (now - WEEK_MS,))
        return VelocityResult(True)

    def usage(self, caller_id: str) -> VelocityUsage:
        now = self._clock.now()
        counts = []
        for _, window_ms, _ in self._windows():
            row = self._db.query_one(
                "SELECT count(*) FROM velocity "
                "WHERE caller_id = ? AND timestamp > ? AND timestamp <= ?",
                (caller_id, now - window_ms, now),
            )
            counts.append(row[0] if row else 0)
        return VelocityUsage(*counts)

    def reset(self, caller_id: str) -> int:
        return self._db.execute("DELETE FROM velocity WHERE caller_id = ?", (caller_id,)).rowcount
