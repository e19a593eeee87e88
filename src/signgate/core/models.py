"""
Domain types shared by the store, risk assessor, and engine.

Decisions, durations, and sign policies are persisted as plain strings or
integers, so each enum carries a tolerant parser for values read back from
storage or the CLI.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum, StrEnum

from signgate.core.constants import (
    CLOCK_SKEW_TOLERANCE_MS,
    DAY_MS,
    EVENT_KIND_GENERIC,
    HOUR_MS,
    MINUTE_MS,
    RISK_WEIGHT_FIRST_KIND,
    RISK_WEIGHT_HIGH_FREQUENCY,
    RISK_WEIGHT_NEW_APP,
    RISK_WEIGHT_SENSITIVE_EVENT_KIND,
    RISK_WEIGHT_UNUSUAL_TIME,
    WEEK_MS,
)
from signgate.core.exceptions import InvalidInputError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Request types
# ---------------------------------------------------------------------------


class RequestType(StrEnum):
    GET_PUBLIC_KEY = "GET_PUBLIC_KEY"
    SIGN_EVENT = "SIGN_EVENT"
    NIP04_ENCRYPT = "NIP04_ENCRYPT"
    NIP04_DECRYPT = "NIP04_DECRYPT"
    NIP44_ENCRYPT = "NIP44_ENCRYPT"
    NIP44_DECRYPT = "NIP44_DECRYPT"
    DECRYPT_ZAP_EVENT = "DECRYPT_ZAP_EVENT"

    @classmethod
    def parse(cls, value: str) -> RequestType:
        normalized = value.strip().upper().replace("-", "_")
        try:
            return cls(normalized)
        except ValueError:
            raise InvalidInputError(f"Unknown request type: {value!r}") from None


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


class Decision(StrEnum):
    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"

    @classmethod
    def from_string(cls, value: str | None) -> Decision:
        """Case-insensitive parse; anything unrecognised reads back as DENY."""
        if value is None:
            return cls.DENY
        try:
            return cls(value.strip().lower())
        except ValueError:
            logger.warning("Unknown decision %r read as deny", value)
            return cls.DENY


class AuditDecision(StrEnum):
    """Decision strings recorded in the audit log."""

    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"
    DENY_RATE_LIMITED = "deny_rate_limited"
    DENY_EXPIRED = "deny_expired"
    DENY_VELOCITY = "deny_velocity"
    DENY_ERROR = "deny_error"


# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------


class PermissionDuration(StrEnum):
    JUST_THIS_TIME = "just_this_time"
    ONE_MINUTE = "1m"
    FIVE_MINUTES = "5m"
    TEN_MINUTES = "10m"
    ONE_HOUR = "1h"
    ONE_DAY = "1d"
    FOREVER = "forever"

    @property
    def millis(self) -> int | None:
        return _PERMISSION_DURATION_MS[self]

    @property
    def should_persist(self) -> bool:
        return self is not PermissionDuration.JUST_THIS_TIME

    @classmethod
    def parse(cls, value: str) -> PermissionDuration:
        normalized = value.strip().lower()
        for member in cls:
            if normalized in (member.value, member.name.lower()):
                return member
        raise InvalidInputError(f"Unknown permission duration: {value!r}")


_PERMISSION_DURATION_MS: dict[PermissionDuration, int | None] = {
    PermissionDuration.JUST_THIS_TIME: None,
    PermissionDuration.ONE_MINUTE: MINUTE_MS,
    PermissionDuration.FIVE_MINUTES: 5 * MINUTE_MS,
    PermissionDuration.TEN_MINUTES: 10 * MINUTE_MS,
    PermissionDuration.ONE_HOUR: HOUR_MS,
    PermissionDuration.ONE_DAY: DAY_MS,
    PermissionDuration.FOREVER: None,
}


class AppExpiryDuration(StrEnum):
    FIVE_MINUTES = "5m"
    ONE_HOUR = "1h"
    ONE_DAY = "1d"
    ONE_WEEK = "1w"
    NEVER = "never"

    @property
    def millis(self) -> int | None:
        return _APP_EXPIRY_MS[self]

    @classmethod
    def parse(cls, value: str) -> AppExpiryDuration:
        normalized = value.strip().lower()
        for member in cls:
            if normalized in (member.value, member.name.lower()):
                return member
        raise InvalidInputError(f"Unknown app expiry duration: {value!r}")


_APP_EXPIRY_MS: dict[AppExpiryDuration, int | None] = {
    AppExpiryDuration.FIVE_MINUTES: 5 * MINUTE_MS,
    AppExpiryDuration.ONE_HOUR: HOUR_MS,
    AppExpiryDuration.ONE_DAY: DAY_MS,
    AppExpiryDuration.ONE_WEEK: WEEK_MS,
    AppExpiryDuration.NEVER: None,
}


# ---------------------------------------------------------------------------
# Sign policy and authentication
# ---------------------------------------------------------------------------


class SignPolicy(IntEnum):
    MANUAL = 0  # every request is prompted
    BASIC = 1  # stored decisions apply, otherwise prompt
    AUTO = 2  # everything allowed, subject to velocity limits

    @classmethod
    def from_ordinal(cls, value: int | None) -> SignPolicy:
        try:
            return cls(value)
        except ValueError:
            return cls.MANUAL

    @classmethod
    def parse(cls, value: str) -> SignPolicy:
        try:
            return cls[value.strip().upper()]
        except KeyError:
            raise InvalidInputError(f"Unknown sign policy: {value!r}") from None


class AuthLevel(IntEnum):
    NONE = 0
    PIN = 1
    BIOMETRIC = 2
    EXPLICIT = 3


class RiskFactor(StrEnum):
    SENSITIVE_EVENT_KIND = "sensitive_event_kind"
    HIGH_FREQUENCY = "high_frequency"
    NEW_APP = "new_app"
    FIRST_KIND = "first_kind"
    UNUSUAL_TIME = "unusual_time"

    @property
    def weight(self) -> int:
        return _RISK_WEIGHTS[self]

    @property
    def description(self) -> str:
        return _RISK_DESCRIPTIONS[self]


_RISK_WEIGHTS: dict[RiskFactor, int] = {
    RiskFactor.SENSITIVE_EVENT_KIND: RISK_WEIGHT_SENSITIVE_EVENT_KIND,
    RiskFactor.HIGH_FREQUENCY: RISK_WEIGHT_HIGH_FREQUENCY,
    RiskFactor.NEW_APP: RISK_WEIGHT_NEW_APP,
    RiskFactor.FIRST_KIND: RISK_WEIGHT_FIRST_KIND,
    RiskFactor.UNUSUAL_TIME: RISK_WEIGHT_UNUSUAL_TIME,
}

_RISK_DESCRIPTIONS: dict[RiskFactor, str] = {
    RiskFactor.SENSITIVE_EVENT_KIND: "Sensitive event type",
    RiskFactor.HIGH_FREQUENCY: "High request frequency",
    RiskFactor.NEW_APP: "Recently connected app",
    RiskFactor.FIRST_KIND: "First time signing this event type",
    RiskFactor.UNUSUAL_TIME: "Unusual time of day",
}


# ---------------------------------------------------------------------------
# Dual-clock expiry
# ---------------------------------------------------------------------------


def is_timestamp_expired(
    expires_at: int | None,
    created_at: int,
    created_at_monotonic: int,
    duration_ms: int | None,
    now: int,
    now_monotonic: int,
    skew_tolerance_ms: int = CLOCK_SKEW_TOLERANCE_MS,
) -> bool:
    """
    Return True if a record created at (created_at, created_at_monotonic)
    with the given expiry is no longer valid.

    Expired when any of these hold:
      - wall clock has reached expires_at
      - created_at lies more than skew_tolerance_ms in the future
      - monotonic clock is behind the creation reading (reboot or tamper)
      - monotonic elapsed time has reached duration_ms
      - no monotonic reading was stored and wall elapsed reached duration_ms

    Must stay in step with PermissionStore's SQL cleanup predicate.
    """
    if expires_at is not None and now >= expires_at:
        return True
    if created_at > now + skew_tolerance_ms:
        return True
    if duration_ms is not None:
        if created_at_monotonic > 0:
            if now_monotonic < created_at_monotonic:
                return True
            if now_monotonic - created_at_monotonic >= duration_ms:
                return True
        elif now >= created_at + duration_ms:
            return True
    return False


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Permission:
    caller_id: str
    request_type: str
    event_kind: int | None
    decision: Decision
    created_at: int
    expires_at: int | None = None
    created_at_monotonic: int = 0
    duration_ms: int | None = None
    id: int | None = None

    @property
    def is_generic(self) -> bool:
        return self.event_kind is None

    def is_expired(self, now: int, now_monotonic: int) -> bool:
        return is_timestamp_expired(
            self.expires_at,
            self.created_at,
            self.created_at_monotonic,
            self.duration_ms,
            now,
            now_monotonic,
        )

    @classmethod
    def from_row(cls, row) -> Permission:
        kind = row["event_kind"]
        return cls(
            id=row["id"],
            caller_id=row["caller_id"],
            request_type=row["request_type"],
            event_kind=None if kind == EVENT_KIND_GENERIC else kind,
            decision=Decision.from_string(row["decision"]),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            created_at_monotonic=row["created_at_monotonic"] or 0,
            duration_ms=row["duration_ms"],
        )


@dataclass(frozen=True)
class AppSettings:
    caller_id: str
    created_at: int
    expires_at: int | None = None
    created_at_monotonic: int = 0
    duration_ms: int | None = None
    sign_policy_override: SignPolicy | None = None

    def is_expired(self, now: int, now_monotonic: int) -> bool:
        if self.expires_at is None and self.duration_ms is None:
            return False
        return is_timestamp_expired(
            self.expires_at,
            self.created_at,
            self.created_at_monotonic,
            self.duration_ms,
            now,
            now_monotonic,
        )

    def age_ms(self, now: int, now_monotonic: int) -> int:
        """Time since first sight, monotonic when a usable reading exists."""
        if self.created_at_monotonic > 0 and now_monotonic >= self.created_at_monotonic:
            return now_monotonic - self.created_at_monotonic
        return now - self.created_at

    @classmethod
    def from_row(cls, row) -> AppSettings:
        override = row["sign_policy_override"]
        return cls(
            caller_id=row["caller_id"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            created_at_monotonic=row["created_at_monotonic"] or 0,
            duration_ms=row["duration_ms"],
            sign_policy_override=None if override is None else SignPolicy.from_ordinal(override),
        )


@dataclass(frozen=True)
class AuditLogEntry:
    id: int
    timestamp: int
    caller_id: str
    request_type: str
    event_kind: int | None
    decision: str
    was_automatic: bool
    previous_hash: str
    entry_hash: str

    @property
    def is_legacy(self) -> bool:
        return not self.entry_hash

    @classmethod
    def from_row(cls, row) -> AuditLogEntry:
        return cls(
            id=row["id"],
            timestamp=row["timestamp"],
            caller_id=row["caller_id"],
            request_type=row["request_type"],
            event_kind=row["event_kind"],
            decision=row["decision"],
            was_automatic=bool(row["was_automatic"]),
            previous_hash=row["previous_hash"] or "",
            entry_hash=row["entry_hash"] or "",
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "caller_id": self.caller_id,
            "request_type": self.request_type,
            "event_kind": self.event_kind,
            "decision": self.decision,
            "was_automatic": self.was_automatic,
            "entry_hash": self.entry_hash,
        }


@dataclass(frozen=True)
class ConnectedApp:
    caller_id: str
    permission_count: int
    last_used_time: int | None
    expires_at: int | None


@dataclass(frozen=True)
class RiskAssessment:
    score: int
    factors: tuple[RiskFactor, ...]
    required_auth: AuthLevel

    @property
    def reasons(self) -> list[str]:
        return [f.description for f in self.factors]


@dataclass(frozen=True)
class CleanupResult:
    permissions: int = 0
    app_settings: int = 0
    audit_entries: int = 0

    @property
    def total(self) -> int:
        return self.permissions + self.app_settings + self.audit_entries
