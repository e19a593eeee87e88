"""
PermissionStore - persisted per-caller decisions with dual-clock expiry.

A permission is keyed on (caller_id, request_type, event_kind).  The
generic entry (no kind, stored as -1) covers every kind of that request
type except sensitive ones, which must always match exactly.

Expiry is evaluated at read time against both the wall clock and the
monotonic clock.  An expired row found on read is deleted with a
compare-and-delete so a concurrent re-grant is never lost.
"""

from __future__ import annotations

import logging
import re

from signgate.core.audit.writer import AuditLog
from signgate.core.clock import Clock
from signgate.core.constants import (
    AUDIT_RETENTION_DAYS,
    CLOCK_SKEW_TOLERANCE_MS,
    DAY_MS,
    EVENT_KIND_GENERIC,
    MAX_CALLER_ID_LENGTH,
)
from signgate.core.exceptions import InvalidInputError, RaceAbortedError
from signgate.core.kinds import is_sensitive, is_valid_kind
from signgate.core.models import (
    AppExpiryDuration,
    AppSettings,
    CleanupResult,
    ConnectedApp,
    Decision,
    Permission,
    PermissionDuration,
    RequestType,
    SignPolicy,
)
from signgate.core.store.database import Database

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")

_PERMISSION_COLUMNS = (
    "id, caller_id, request_type, event_kind, decision, expires_at, "
    "created_at, created_at_monotonic, duration_ms"
)
_SETTINGS_COLUMNS = (
    "caller_id, expires_at, created_at, created_at_monotonic, duration_ms, sign_policy_override"
)

# Mirrors models.is_timestamp_expired for rows with the given named parameters.
_EXPIRED_SQL = """
    (expires_at IS NOT NULL AND expires_at <= :now)
    OR (created_at > :now + :skew)
    OR (duration_ms IS NOT NULL AND created_at_monotonic > 0
        AND created_at_monotonic > :mono)
    OR (duration_ms IS NOT NULL AND created_at_monotonic > 0
        AND created_at_monotonic + duration_ms <= :mono)
    OR (duration_ms IS NOT NULL AND created_at_monotonic <= 0
        AND created_at + duration_ms <= :now)
"""

# App settings without any expiry never expire.
_SETTINGS_EXPIRED_SQL = f"""
    (expires_at IS NOT NULL OR duration_ms IS NOT NULL) AND ({_EXPIRED_SQL})
"""


def validate_caller_id(caller_id: str) -> str:
    if not isinstance(caller_id, str) or not caller_id.strip():
        raise InvalidInputError("caller id must be a non-empty string")
    if len(caller_id) > MAX_CALLER_ID_LENGTH:
        raise InvalidInputError(f"caller id longer than {MAX_CALLER_ID_LENGTH} characters")
    if _CONTROL_CHARS.search(caller_id):
        raise InvalidInputError("caller id contains control characters")
    return caller_id


def validate_event_kind(event_kind: int | None) -> int | None:
    if event_kind is not None and not is_valid_kind(event_kind):
        raise InvalidInputError(f"event kind out of range: {event_kind!r}")
    return event_kind


def validate_request_type(request_type: RequestType | str) -> RequestType:
    if isinstance(request_type, RequestType):
        return request_type
    return RequestType.parse(request_type)


def _stored_kind(event_kind: int | None) -> int:
    return EVENT_KIND_GENERIC if event_kind is None else event_kind


class PermissionStore:
    def __init__(
        self,
        db: Database,
        clock: Clock,
        audit: AuditLog,
        audit_retention_days: int = AUDIT_RETENTION_DAYS,
    ) -> None:
        self._db = db
        self._clock = clock
        self._audit = audit
        self._retention_ms = audit_retention_days * DAY_MS

    def _now(self) -> dict[str, int]:
        return {
            "now": self._clock.now(),
            "mono": self._clock.monotonic_now(),
            "skew": CLOCK_SKEW_TOLERANCE_MS,
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def grant(
        self,
        caller_id: str,
        request_type: RequestType | str,
        event_kind: int | None = None,
        duration: PermissionDuration = PermissionDuration.FOREVER,
    ) -> Permission | None:
        """
        Record ALLOW.  Returns None for JUST_THIS_TIME, which is never stored.

        FOREVER on a sensitive kind is clamped to ONE_DAY.
        """
        if (
            event_kind is not None
            and duration is PermissionDuration.FOREVER
            and is_valid_kind(event_kind)
            and is_sensitive(event_kind)
        ):
            logger.info("Clamping forever grant on sensitive kind %d to one day", event_kind)
            duration = PermissionDuration.ONE_DAY
        return self._save(caller_id, request_type, event_kind, Decision.ALLOW, duration)

    def deny(
        self,
        caller_id: str,
        request_type: RequestType | str,
        event_kind: int | None = None,
        duration: PermissionDuration = PermissionDuration.FOREVER,
    ) -> Permission | None:
        return self._save(caller_id, request_type, event_kind, Decision.DENY, duration)

    def set_ask(
        self, caller_id: str, request_type: RequestType | str, event_kind: int | None = None
    ) -> Permission:
        permission = self._save(
            caller_id, request_type, event_kind, Decision.ASK, PermissionDuration.FOREVER
        )
        assert permission is not None
        return permission

    def _save(
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
        if not isinstance(duration, PermissionDuration):
            raise InvalidInputError(f"Unknown permission duration: {duration!r}")
        if not duration.should_persist:
            return None

        now = self._clock.now()
        mono = self._clock.monotonic_now()
        millis = duration.millis
        expires_at = now + millis if millis is not None else None

        with self._db.transaction():
            self._db.execute(
                """
                INSERT INTO permissions
                    (caller_id, request_type, event_kind, decision, expires_at,
                     created_at, created_at_monotonic, duration_ms)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(caller_id, request_type, event_kind) DO UPDATE SET
                    decision = excluded.decision,
                    expires_at = excluded.expires_at,
                    created_at = excluded.created_at,
                    created_at_monotonic = excluded.created_at_monotonic,
                    duration_ms = excluded.duration_ms
                """,
                (
                    caller_id,
                    request_type.value,
                    _stored_kind(event_kind),
                    decision.value,
                    expires_at,
                    now,
                    mono,
                    millis,
                ),
            )
            saved = self._get(caller_id, request_type.value, _stored_kind(event_kind))
        logger.info(
            "Stored %s for %s %s kind=%s (%s)",
            decision,
            caller_id,
            request_type,
            event_kind,
            duration,
        )
        return saved

    def update_decision(
        self,
        permission_id: int,
        decision: Decision,
        caller_id: str,
        request_type: RequestType | str,
        expected: Decision | None = None,
    ) -> Permission:
        """
        Change the decision of an existing row.

        With *expected* set this is a compare-and-swap: RaceAbortedError if
        the stored decision changed underneath the caller.
        """
        validate_caller_id(caller_id)
        request_type = validate_request_type(request_type)
        with self._db.transaction():
            row = self._db.query_one(
                f"SELECT {_PERMISSION_COLUMNS} FROM permissions WHERE id = ?",  # noqa: S608
                (permission_id,),
            )
            if (
                row is None
                or row["caller_id"] != caller_id
                or row["request_type"] != request_type.value
            ):
                raise InvalidInputError(
                    f"No permission {permission_id} for {caller_id} {request_type}"
                )
            sql = "UPDATE permissions SET decision = ? WHERE id = ?"
            params: tuple = (decision.value, permission_id)
            if expected is not None:
                sql += " AND decision = ?"
                params += (expected.value,)
            if self._db.execute(sql, params).rowcount != 1:
                raise RaceAbortedError(
                    f"Permission {permission_id} no longer has decision {expected}"
                )
            updated = self._get_by_id(permission_id)
        logger.info("Permission %d for %s changed to %s", permission_id, caller_id, decision)
        assert updated is not None
        return updated

    def revoke(
        self,
        caller_id: str,
        request_type: RequestType | str | None = None,
        event_kind: int | None = None,
    ) -> int:
        """
        Delete permissions.  With no request type every permission of the
        caller goes; with a request type only that exact (type, kind) row.
        """
        validate_caller_id(caller_id)
        if request_type is None:
            deleted = self._db.execute(
                "DELETE FROM permissions WHERE caller_id = ?", (caller_id,)
            ).rowcount
        else:
            request_type = validate_request_type(request_type)
            validate_event_kind(event_kind)
            deleted = self._db.execute(
                "DELETE FROM permissions "
                "WHERE caller_id = ? AND request_type = ? AND event_kind = ?",
                (caller_id, request_type.value, _stored_kind(event_kind)),
            ).rowcount
        logger.info("Revoked %d permission(s) for %s", deleted, caller_id)
        return deleted

    def revoke_all(self, caller_id: str) -> int:
        return self.revoke(caller_id)

    def delete_permission(self, permission_id: int) -> bool:
        cursor = self._db.execute("DELETE FROM permissions WHERE id = ?", (permission_id,))
        return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _get(self, caller_id: str, request_type: str, stored_kind: int) -> Permission | None:
        row = self._db.query_one(
            f"SELECT {_PERMISSION_COLUMNS} FROM permissions "  # noqa: S608
            "WHERE caller_id = ? AND request_type = ? AND event_kind = ?",
            (caller_id, request_type, stored_kind),
        )
        return Permission.from_row(row) if row else None

    def _get_by_id(self, permission_id: int) -> Permission | None:
        row = self._db.query_one(
            f"SELECT {_PERMISSION_COLUMNS} FROM permissions WHERE id = ?",  # noqa: S608
            (permission_id,),
        )
        return Permission.from_row(row) if row else None

    def _live(self, caller_id: str, request_type: str, stored_kind: int) -> Permission | None:
        permission = self._get(caller_id, request_type, stored_kind)
        if permission is None:
            return None
        if permission.is_expired(self._clock.now(), self._clock.monotonic_now()):
            self._db.execute(
                "DELETE FROM permissions "
                "WHERE id = ? AND created_at = ? AND created_at_monotonic = ?",
                (permission.id, permission.created_at, permission.created_at_monotonic),
            )
            logger.debug("Dropped expired permission %s for %s", permission.id, caller_id)
            return None
        return permission

    def decision_for(
        self,
        caller_id: str,
        request_type: RequestType | str,
        event_kind: int | None = None,
    ) -> Decision | None:
        """
        Stored decision for a request, or None if nothing valid applies.

        Exact (type, kind) first; the generic entry only for non-sensitive
        kinds.
        """
        validate_caller_id(caller_id)
        request_type = validate_request_type(request_type)
        validate_event_kind(event_kind)

        with self._db.transaction():
            exact = self._live(caller_id, request_type.value, _stored_kind(event_kind))
            if exact is not None:
                return exact.decision
            if event_kind is None or is_sensitive(event_kind):
                return None
            generic = self._live(caller_id, request_type.value, EVENT_KIND_GENERIC)
            return generic.decision if generic is not None else None

    def permissions_for_caller(self, caller_id: str) -> list[Permission]:
        validate_caller_id(caller_id)
        rows = self._db.query_all(
            f"SELECT {_PERMISSION_COLUMNS} FROM permissions "  # noqa: S608
            f"WHERE caller_id = :caller AND NOT ({_EXPIRED_SQL}) "
            "ORDER BY request_type, event_kind",
            {"caller": caller_id, **self._now()},
        )
        return [Permission.from_row(r) for r in rows]

    def all_permissions(self) -> list[Permission]:
        rows = self._db.query_all(
            f"SELECT {_PERMISSION_COLUMNS} FROM permissions "  # noqa: S608
            f"WHERE NOT ({_EXPIRED_SQL}) ORDER BY caller_id, request_type, event_kind",
            self._now(),
        )
        return [Permission.from_row(r) for r in rows]

    def connected_apps(self) -> list[ConnectedApp]:
        """Callers with at least one live permission, most recently used first."""
        rows = self._db.query_all(
            "SELECT caller_id, count(*) AS permission_count FROM permissions "  # noqa: S608
            f"WHERE NOT ({_EXPIRED_SQL}) GROUP BY caller_id",
            self._now(),
        )
        apps = []
        for row in rows:
            caller_id = row["caller_id"]
            settings = self.app_settings(caller_id)
            apps.append(
                ConnectedApp(
                    caller_id=caller_id,
                    permission_count=row["permission_count"],
                    last_used_time=self._audit.last_used_time(caller_id),
                    expires_at=settings.expires_at if settings else None,
                )
            )
        apps.sort(key=lambda a: (a.last_used_time or 0, a.caller_id), reverse=True)
        return apps

    # ------------------------------------------------------------------
    # App settings
    # ------------------------------------------------------------------

    def app_settings(self, caller_id: str) -> AppSettings | None:
        row = self._db.query_one(
            f"SELECT {_SETTINGS_COLUMNS} FROM app_settings WHERE caller_id = ?",  # noqa: S608
            (caller_id,),
        )
        return AppSettings.from_row(row) if row else None

    def ensure_app_known(self, caller_id: str) -> bool:
        """Record first sight of a caller.  Returns True if it was new."""
        validate_caller_id(caller_id)
        cursor = self._db.execute(
            "INSERT OR IGNORE INTO app_settings (caller_id, created_at, created_at_monotonic) "
            "VALUES (?, ?, ?)",
            (caller_id, self._clock.now(), self._clock.monotonic_now()),
        )
        if cursor.rowcount == 1:
            logger.info("First request from %s", caller_id)
            return True
        return False

    def set_app_expiry(self, caller_id: str, duration: AppExpiryDuration) -> AppSettings:
        """
        Limit how long a caller stays connected, counted from now.

        A timed expiry restarts the caller's age, so it reads as a new app
        for the next day.  NEVER clears any expiry and leaves the age alone.
        """
        validate_caller_id(caller_id)
        now = self._clock.now()
        mono = self._clock.monotonic_now()
        millis = duration.millis
        with self._db.transaction():
            if millis is None:
                self._db.execute(
                    "INSERT INTO app_settings (caller_id, created_at, created_at_monotonic) "
                    "VALUES (?, ?, ?) "
                    "ON CONFLICT(caller_id) DO UPDATE SET expires_at = NULL, duration_ms = NULL",
                    (caller_id, now, mono),
                )
            else:
                self._db.execute(
                    """
                    INSERT INTO app_settings
                        (caller_id, expires_at, created_at, created_at_monotonic, duration_ms)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(caller_id) DO UPDATE SET
                        expires_at = excluded.expires_at,
                        created_at = excluded.created_at,
                        created_at_monotonic = excluded.created_at_monotonic,
                        duration_ms = excluded.duration_ms
                    """,
                    (caller_id, now + millis, now, mono, millis),
                )
            settings = self.app_settings(caller_id)
        logger.info("App expiry for %s set to %s", caller_id, duration)
        assert settings is not None
        return settings

    def is_app_expired(self, caller_id: str) -> bool:
        settings = self.app_settings(caller_id)
        if settings is None:
            return False
        return settings.is_expired(self._clock.now(), self._clock.monotonic_now())

    def sign_policy_override(self, caller_id: str) -> SignPolicy | None:
        settings = self.app_settings(caller_id)
        return settings.sign_policy_override if settings else None

    def set_sign_policy_override(self, caller_id: str, policy: SignPolicy | None) -> None:
        validate_caller_id(caller_id)
        value = None if policy is None else int(policy)
        self._db.execute(
            "INSERT INTO app_settings "
            "(caller_id, created_at, created_at_monotonic, sign_policy_override) "
            "VALUES (?, ?, ?, ?) "
            "ON CONFLICT(caller_id) DO UPDATE SET "
            "sign_policy_override = excluded.sign_policy_override",
            (caller_id, self._clock.now(), self._clock.monotonic_now(), value),
        )
        logger.info("Sign policy override for %s set to %s", caller_id, policy)

    def clear_app_settings(self, caller_id: str) -> bool:
        return self._db.execute(
            "DELETE FROM app_settings WHERE caller_id = ?", (caller_id,)
        ).rowcount == 1

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def cleanup_expired(self) -> CleanupResult:
        """
        Delete expired permissions, every permission of an expired app,
        the expired app settings themselves, and audit entries past
        retention.  Idempotent.
        """
        params = self._now()
        with self._db.transaction():
            expired_apps = [
                r["caller_id"]
                for r in self._db.query_all(
                    f"SELECT caller_id FROM app_settings "  # noqa: S608
                    f"WHERE {_SETTINGS_EXPIRED_SQL}",
                    params,
                )
            ]
            permissions = self._db.execute(
                f"DELETE FROM permissions WHERE {_EXPIRED_SQL}", params  # noqa: S608
            ).rowcount
            for caller_id in expired_apps:
                permissions += self._db.execute(
                    "DELETE FROM permissions WHERE caller_id = ?", (caller_id,)
                ).rowcount
            app_settings = self._db.execute(
                f"DELETE FROM app_settings WHERE {_SETTINGS_EXPIRED_SQL}", params  # noqa: S608
            ).rowcount
            audit_entries = self._audit.delete_older_than(params["now"] - self._retention_ms)

        result = CleanupResult(permissions, app_settings, audit_entries)
        if result.total:
            logger.info(
                "Cleanup removed %d permission(s), %d app setting(s), %d audit entr(ies)",
                result.permissions,
                result.app_settings,
                result.audit_entries,
            )
        return result
