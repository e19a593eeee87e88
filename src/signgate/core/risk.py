"""
Risk assessment for a pending request.

Five independent factors, each with a fixed weight.  The score is the
capped sum of the weights present and maps to the authentication a user
must provide before the request may proceed:

    score >= 60  EXPLICIT
    score >= 40  BIOMETRIC
    score >= 20  PIN
    otherwise    NONE

Weights and thresholds are fixed policy constants, not configuration.
"""

from __future__ import annotations

import logging

from signgate.core.audit.writer import AuditLog
from signgate.core.clock import Clock
from signgate.core.constants import (
    FREQUENCY_WINDOW_MS,
    HIGH_FREQUENCY_THRESHOLD,
    MAX_RISK_SCORE,
    NEW_APP_THRESHOLD_MS,
    NORMAL_HOURS_END,
    NORMAL_HOURS_START,
    RISK_THRESHOLD_BIOMETRIC,
    RISK_THRESHOLD_EXPLICIT,
    RISK_THRESHOLD_PIN,
)
from signgate.core.kinds import is_sensitive
from signgate.core.models import AuthLevel, RiskAssessment, RiskFactor
from signgate.core.permissions import PermissionStore

logger = logging.getLogger(__name__)


def required_auth_for(score: int) -> AuthLevel:
    if score >= RISK_THRESHOLD_EXPLICIT:
        return AuthLevel.EXPLICIT
    if score >= RISK_THRESHOLD_BIOMETRIC:
        return AuthLevel.BIOMETRIC
    if score >= RISK_THRESHOLD_PIN:
        return AuthLevel.PIN
    return AuthLevel.NONE


def score_factors(factors: tuple[RiskFactor, ...]) -> int:
    return min(MAX_RISK_SCORE, sum(f.weight for f in factors))


class RiskAssessor:
    def __init__(self, audit: AuditLog, store: PermissionStore, clock: Clock) -> None:
        self._audit = audit
        self._store = store
        self._clock = clock

    def assess(self, caller_id: str, event_kind: int | None = None) -> RiskAssessment:
        now = self._clock.now()
        factors: list[RiskFactor] = []

        if event_kind is not None and is_sensitive(event_kind):
            factors.append(RiskFactor.SENSITIVE_EVENT_KIND)

        if self._audit.count_since(caller_id, now - FREQUENCY_WINDOW_MS) > HIGH_FREQUENCY_THRESHOLD:
            factors.append(RiskFactor.HIGH_FREQUENCY)

        if self._is_new_app(caller_id, now):
            factors.append(RiskFactor.NEW_APP)

        if (
            event_kind is not None
            and self._audit.count_allowed_for_kind(caller_id, event_kind) == 0
        ):
            factors.append(RiskFactor.FIRST_KIND)

        hour = self._clock.current_hour()
        if not NORMAL_HOURS_START <= hour <= NORMAL_HOURS_END:
            factors.append(RiskFactor.UNUSUAL_TIME)

        score = score_factors(tuple(factors))
        assessment = RiskAssessment(score, tuple(factors), required_auth_for(score))
        logger.debug(
            "Risk for %s kind=%s: %d (%s) -> %s",
            caller_id,
            event_kind,
            score,
            ", ".join(factors) or "none",
            assessment.required_auth.name,
        )
        return assessment

    def _is_new_app(self, caller_id: str, now: int) -> bool:
        settings = self._store.app_settings(caller_id)
        if settings is None:
            return True
        return settings.age_ms(now, self._clock.monotonic_now()) < NEW_APP_THRESHOLD_MS
