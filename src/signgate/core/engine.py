"""
PolicyEngine - composition root answering "what happens with this request now".

Usage::

    engine = PolicyEngine.open(load_config_or_default())
    result = await engine.evaluate(SigningRequest("com.example.app", RequestType.SIGN_EVENT, 1))
    if result.decision is Decision.ASK:
        # UI obtains result.required_auth, then records the user's answer:
        await engine.grant("com.example.app", RequestType.SIGN_EVENT, 1, PermissionDuration.ONE_DAY)

Evaluation order:
  1. validate input (InvalidInputError before any storage access)
  2. per-caller rate limit
  3. app connection expiry
  4. effective sign policy: caller override, else global
       MANUAL → ASK with risk
       AUTO   → ALLOW, velocity gated
       BASIC  → stored decision; ALLOW velocity gated, DENY, or ASK with risk

Work on one (caller, type, kind) tuple is serialized by a KeyedLock;
storage calls run in a worker thread.  A StorageError anywhere in
evaluation yields DENY (fail closed), never ALLOW.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum

from signgate.core.audit import AuditLog, ChainVerification
from signgate.core.clock import Clock, SystemClock
from signgate.core.config import SignGateConfig
from signgate.core.exceptions import InvalidInputError, StorageError
from signgate.core.keyring_store import resolve_secret
from signgate.core.kinds import parse_event_kind, sensitivity_warning
from signgate.core.locks import KeyedLock
from signgate.core.models import (
    AuditDecision,
    AuthLevel,
    CleanupResult,
    ConnectedApp,
    Decision,
    Permission,
    PermissionDuration,
    RequestType,
    RiskAssessment,
    SignPolicy,
)
from signgate.core.permissions import (
    PermissionStore,
    validate_caller_id,
    validate_event_kind,
    validate_request_type,
)
from signgate.core.ratelimit import RateLimiter
from signgate.core.risk import RiskAssessor
from signgate.core.store.database import Database
from signgate.core.velocity import VelocityLimits, VelocityTracker

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request / result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SigningRequest:
    caller_id: str
    request_type: RequestType
    event_kind: int | None = None
    duration_hint: PermissionDuration | None = None

    @classmethod
    def for_event(cls, caller_id: str, event_json: str) -> SigningRequest:
        """Build a SIGN_EVENT request from an unsigned event's JSON."""
        kind = parse_event_kind(event_json)
        if kind is None:
            raise InvalidInputError("event has no valid kind")
        return cls(caller_id, RequestType.SIGN_EVENT, kind)


class Outcome(StrEnum):
    ALLOWED = "allowed"
    DENIED = "denied"
    PROMPT = "prompt"
    RATE_LIMITED = "rate_limited"
    EXPIRED = "expired"
    VELOCITY_BLOCKED = "velocity_blocked"
    ERROR = "error"


@dataclass(frozen=True)
class EngineResult:
    decision: Decision
    outcome: Outcome
    required_auth: AuthLevel = AuthLevel.NONE
    risk: RiskAssessment | None = None
    reason: str = ""
    warning: str | None = None

    @property
    def allowed(self) -> bool:
        return self.decision is Decision.ALLOW

    def to_dict(self) -> dict:
        return {
            "decision": self.decision.value,
            "outcome": self.outcome.value,
            "required_auth": self.required_auth.name,
            "risk_score": self.risk.score if self.risk else None,
            "risk_factors": [f.value for f in self.risk.factors] if self.risk else [],
            "reason": self.reason,
            "warning": self.warning,
        }


def resolve_hmac_key(value: str) -> bytes | None:
    """Config value (literal or keyring placeholder) → key bytes, None if unset."""
    if not value:
        return None
    return resolve_secret(value).encode("utf-8")


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class PolicyEngine:
    def __init__(
        self,
        db: Database,
        *,
        clock: Clock | None = None,
        config: SignGateConfig | None = None,
        hmac_key: bytes | None = None,
    ) -> None:
        self._config = config or SignGateConfig()
        self._clock = clock or SystemClock()
        self._db = db

        rl = self._config.rate_limit
        vel = self._config.velocity
        self.audit = AuditLog(db, self._clock, hmac_key)
        self.store = PermissionStore(db, self._clock, self.audit, self._config.audit.retention_days)
        self.risk = RiskAssessor(self.audit, self.store, self._clock)
        self.rate_limiter = RateLimiter(self._clock, rl.window_ms, rl.max_requests, rl.max_entries)
        self.velocity = (
            VelocityTracker(db, self._clock, VelocityLimits(vel.hourly, vel.daily, vel.weekly))
            if vel.enabled
            else None
        )
        self._locks = KeyedLock()

    @classmethod
    def open(cls, config: SignGateConfig, clock: Clock | None = None) -> PolicyEngine:
        """Connect the configured database and build an engine over it."""
        key = resolve_hmac_key(config.audit.hmac_key)
        db = Database(config.db_path)
        db.connect()
        return cls(db, clock=clock, config=config, hmac_key=key)

    def close(self) -> None:
        self._db.close()

    @property
    def global_sign_policy(self) -> SignPolicy:
        return self._config.policy.global_sign_policy

    def reset_rate_limits(self) -> None:
        """Bulk clear of every caller's window (e.g. after a network change)."""
        self.rate_limiter.reset()
        logger.info("Rate limits reset")

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluate(self, request: SigningRequest) -> EngineResult:
        caller_id = validate_caller_id(request.caller_id)
        request_type = validate_request_type(request.request_type)
        kind = validate_event_kind(request.event_kind)

        limit = self.rate_limiter.check(caller_id)
        if not limit.allowed:
            if limit.first_rejection:
                await self._try_audit(
                    caller_id, request_type, kind, AuditDecision.DENY_RATE_LIMITED
                )
            return EngineResult(
                Decision.DENY,
                Outcome.RATE_LIMITED,
                reason=f"rate limited ({limit.count}/{limit.limit})",
            )

        try:
            async with self._locks.hold((caller_id, request_type, kind)):
                return await asyncio.to_thread(self._decide, caller_id, request_type, kind)
        except StorageError as exc:
            logger.error("Storage failure evaluating %s %s: %s", caller_id, request_type, exc)
            await self._try_audit(caller_id, request_type, kind, AuditDecision.DENY_ERROR)
            return EngineResult(Decision.DENY, Outcome.ERROR, reason=str(exc))

    def _decide(self, caller_id: str, request_type: RequestType, kind: int | None) -> EngineResult:
        self.store.ensure_app_known(caller_id)

        if self.store.is_app_expired(caller_id):
            self.audit.append(caller_id, request_type, kind, AuditDecision.DENY_EXPIRED, True)
            self.store.cleanup_expired()
            logger.warning("Denied %s: app connection expired", caller_id)
            return EngineResult(Decision.DENY, Outcome.EXPIRED, reason="app connection expired")

        override = self.store.sign_policy_override(caller_id)
        policy = override if override is not None else self.global_sign_policy

        if policy is SignPolicy.AUTO:
            return self._allow_automatically(caller_id, request_type, kind)

        if policy is SignPolicy.BASIC:
            decision = self.store.decision_for(caller_id, request_type, kind)
            if decision is Decision.ALLOW:
                return self._allow_automatically(caller_id, request_type, kind)
            if decision is Decision.DENY:
                self.audit.append(caller_id, request_type, kind, Decision.DENY, True)
                logger.warning(
                    "Denied %s %s kind=%s by stored decision", caller_id, request_type, kind
                )
                return EngineResult(Decision.DENY, Outcome.DENIED, reason="stored decision")

        return self._prompt(caller_id, kind)

    def _allow_automatically(
        self, caller_id: str, request_type: RequestType, kind: int | None
    ) -> EngineResult:
        if self.velocity is not None:
            velocity = self.velocity.check_and_record(caller_id, kind)
            if not velocity.allowed:
                self.audit.append(caller_id, request_type, kind, AuditDecision.DENY_VELOCITY, True)
                return EngineResult(
                    Decision.DENY, Outcome.VELOCITY_BLOCKED, reason=velocity.reason or ""
                )
        self.audit.append(caller_id, request_type, kind, Decision.ALLOW, True)
        logger.info("Allowed %s %s kind=%s automatically", caller_id, request_type, kind)
        return EngineResult(Decision.ALLOW, Outcome.ALLOWED)

    def _prompt(self, caller_id: str, kind: int | None) -> EngineResult:
        assessment = self.risk.assess(caller_id, kind)
        return EngineResult(
            Decision.ASK,
            Outcome.PROMPT,
            required_auth=assessment.required_auth,
            risk=assessment,
            warning=sensitivity_warning(kind) if kind is not None else None,
        )

    async def _try_audit(
        self, caller_id: str, request_type: RequestType, kind: int | None, decision: AuditDecision
    ) -> None:
        try:
            await asyncio.to_thread(
                self.audit.append, caller_id, request_type, kind, decision, True
            )
        except StorageError as exc:
            logger.error("Could not audit %s for %s: %s", decision, caller_id, exc)

    # ------------------------------------------------------------------
    # Terminal decisions (called back by the UI)
    # ------------------------------------------------------------------

    async def grant(
        self,
        caller_id: str,
        request_type: RequestType | str,
        event_kind: int | None = None,
        duration: PermissionDuration = PermissionDuration.FOREVER,
    ) -> Permission | None:
        return await self._resolve(caller_id, request_type, event_kind, Decision.ALLOW, duration)

    async def deny(
        self,
        caller_id: str,
        request_type: RequestType | str,
        event_kind: int | None = None,
        duration: PermissionDuration = PermissionDuration.FOREVER,
    ) -> Permission | None:
        return await self._resolve(caller_id, request_type, event_kind, Decision.DENY, duration)

    async def set_ask(
        self, caller_id: str, request_type: RequestType | str, event_kind: int | None = None
    ) -> Permission | None:
        return await self._resolve(
            caller_id, request_type, event_kind, Decision.ASK, PermissionDuration.FOREVER
        )

    async def record_one_time(
        self,
        caller_id: str,
        request_type: RequestType | str,
        event_kind: int | None,
        decision: Decision,
    ) -> None:
        """Audit a just-this-time answer; nothing is stored for reuse."""
        await self._resolve(
            caller_id, request_type, event_kind, decision, PermissionDuration.JUST_THIS_TIME
        )

    async def _resolve(
        self,
        caller_id: str,
        request_type: RequestType | str,
        event_kind: int | None,
        decision: Decision,
        duration: PermissionDuration,
    ) -> Permission | None:
        validate_caller_id(caller_id)
        request_type = validate_request_type(request_type)
        validate_event_kind(event_kind)
        async with self._locks.hold((caller_id, request_type, event_kind)):
            return await asyncio.to_thread(
                self._persist_and_audit, caller_id, request_type, event_kind, decision, duration
            )

    def _persist_and_audit(
        self,
        caller_id: str,
        request_type: RequestType,
        event_kind: int | None,
        decision: Decision,
        duration: PermissionDuration,
    ) -> Permission | None:
        if not duration.should_persist:
            self.audit.append(caller_id, request_type, event_kind, decision, False)
            return None
        if decision is Decision.ALLOW:
            permission = self.store.grant(caller_id, request_type, event_kind, duration)
        elif decision is Decision.DENY:
            permission = self.store.deny(caller_id, request_type, event_kind, duration)
        else:
            permission = self.store.set_ask(caller_id, request_type, event_kind)
        self.audit.append(caller_id, request_type, event_kind, decision, False)
        return permission

    async def update_decision(
        self,
        permission_id: int,
        decision: Decision,
        caller_id: str,
        request_type: RequestType | str,
        expected: Decision | None = None,
    ) -> Permission:
        request_type = validate_request_type(request_type)

        def _update() -> Permission:
            permission = self.store.update_decision(
                permission_id, decision, caller_id, request_type, expected
            )
            self.audit.append(caller_id, request_type, permission.event_kind, decision, False)
            return permission

        return await asyncio.to_thread(_update)

    async def revoke(
        self,
        caller_id: str,
        request_type: RequestType | str | None = None,
        event_kind: int | None = None,
    ) -> int:
        return await asyncio.to_thread(self.store.revoke, caller_id, request_type, event_kind)

    async def revoke_all(self, caller_id: str) -> int:
        return await asyncio.to_thread(self.store.revoke_all, caller_id)

    # ------------------------------------------------------------------
    # Maintenance and inspection
    # ------------------------------------------------------------------

    async def decision_for(
        self, caller_id: str, request_type: RequestType | str, event_kind: int | None = None
    ) -> Decision | None:
        return await asyncio.to_thread(self.store.decision_for, caller_id, request_type, event_kind)

    async def assess(self, caller_id: str, event_kind: int | None = None) -> RiskAssessment:
        validate_caller_id(caller_id)
        validate_event_kind(event_kind)
        return await asyncio.to_thread(self.risk.assess, caller_id, event_kind)

    async def cleanup_expired(self) -> CleanupResult:
        return await asyncio.to_thread(self.store.cleanup_expired)

    async def connected_apps(self) -> list[ConnectedApp]:
        return await asyncio.to_thread(self.store.connected_apps)

    async def verify_audit_chain(self) -> ChainVerification:
        return await asyncio.to_thread(self.audit.verify)
