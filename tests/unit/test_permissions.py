"""Unit tests for signgate.core.permissions - PermissionStore."""

from __future__ import annotations

from pathlib import Path

import pytest

from signgate.core.audit.writer import AuditLog
from signgate.core.clock import FakeClock
from signgate.core.constants import CLOCK_SKEW_TOLERANCE_MS, DAY_MS, HOUR_MS, MINUTE_MS
from signgate.core.exceptions import InvalidInputError, RaceAbortedError
from signgate.core.models import (
    AppExpiryDuration,
    Decision,
    Permission,
    PermissionDuration,
    RequestType,
    SignPolicy,
)
from signgate.core.permissions import PermissionStore
from signgate.core.store.database import Database

APP = "com.example.client"
SIGN = RequestType.SIGN_EVENT


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db(tmp_path: Path) -> Database:
    d = Database(tmp_path / "perm.db")
    d.connect()
    yield d
    d.close()


@pytest.fixture
def audit(db: Database, clock: FakeClock) -> AuditLog:
    return AuditLog(db, clock)


@pytest.fixture
def store(db: Database, clock: FakeClock, audit: AuditLog) -> PermissionStore:
    return PermissionStore(db, clock, audit)


def _count(db: Database) -> int:
    return db.query_one("SELECT count(*) FROM permissions")[0]


# ---------------------------------------------------------------------------
# Grant / deny / ask
# ---------------------------------------------------------------------------


class TestGrant:
    def test_grant_then_lookup(self, store: PermissionStore) -> None:
        store.grant(APP, SIGN, 1, PermissionDuration.FOREVER)
        assert store.decision_for(APP, SIGN, 1) is Decision.ALLOW

    def test_grant_accepts_string_request_type(self, store: PermissionStore) -> None:
        store.grant(APP, "sign_event", 1)
        assert store.decision_for(APP, SIGN, 1) is Decision.ALLOW

    def test_just_this_time_never_stored(self, store: PermissionStore, db: Database) -> None:
        assert store.grant(APP, SIGN, 1, PermissionDuration.JUST_THIS_TIME) is None
        assert store.decision_for(APP, SIGN, 1) is None
        assert _count(db) == 0

    def test_timed_grant_sets_expiry(self, store: PermissionStore, clock: FakeClock) -> None:
        p = store.grant(APP, SIGN, 1, PermissionDuration.ONE_HOUR)
        assert p.expires_at == clock.now() + HOUR_MS
        assert p.duration_ms == HOUR_MS
        assert p.created_at_monotonic == clock.monotonic_now()

    def test_forever_has_no_expiry(self, store: PermissionStore) -> None:
        p = store.grant(APP, SIGN, 1, PermissionDuration.FOREVER)
        assert p.expires_at is None
        assert p.duration_ms is None

    @pytest.mark.parametrize("kind", [0, 3, 4, 1059, 10002, 30000, 39999])
    def test_sensitive_forever_clamped(self, store: PermissionStore, clock: FakeClock, kind: int) -> None:
        p = store.grant(APP, SIGN, kind, PermissionDuration.FOREVER)
        assert p.expires_at is not None
        assert p.expires_at == clock.now() + DAY_MS

    def test_sensitive_short_grant_untouched(self, store: PermissionStore, clock: FakeClock) -> None:
        p = store.grant(APP, SIGN, 3, PermissionDuration.FIVE_MINUTES)
        assert p.expires_at == clock.now() + 5 * MINUTE_MS

    def test_upsert_latest_wins(self, store: PermissionStore, db: Database) -> None:
        store.grant(APP, SIGN, 1)
        store.grant(APP, SIGN, 1)
        assert _count(db) == 1
        store.deny(APP, SIGN, 1)
        assert _count(db) == 1
        assert store.decision_for(APP, SIGN, 1) is Decision.DENY

    def test_generic_and_specific_are_distinct_rows(self, store: PermissionStore, db: Database) -> None:
        store.grant(APP, SIGN)
        store.grant(APP, SIGN, 1)
        assert _count(db) == 2

    def test_set_ask_has_no_expiry(self, store: PermissionStore) -> None:
        p = store.set_ask(APP, SIGN, 1)
        assert p.decision is Decision.ASK
        assert p.expires_at is None
        assert store.decision_for(APP, SIGN, 1) is Decision.ASK


class TestInputValidation:
    @pytest.mark.parametrize("caller", ["", "   ", "a" * 256, "bad\ncaller", "nul\x00"])
    def test_bad_caller(self, store: PermissionStore, caller: str) -> None:
        with pytest.raises(InvalidInputError):
            store.grant(caller, SIGN, 1)

    @pytest.mark.parametrize("kind", [-1, 65536, 1 << 40])
    def test_bad_kind(self, store: PermissionStore, kind: int) -> None:
        with pytest.raises(InvalidInputError):
            store.decision_for(APP, SIGN, kind)

    def test_unknown_request_type(self, store: PermissionStore) -> None:
        with pytest.raises(InvalidInputError):
            store.grant(APP, "SIGN_ALL_THE_THINGS", 1)


# ---------------------------------------------------------------------------
# Lookup resolution
# ---------------------------------------------------------------------------


class TestDecisionFor:
    def test_specific_grant_does_not_cover_other_kinds(self, store: PermissionStore) -> None:
        store.grant(APP, SIGN, 1, PermissionDuration.FOREVER)
        assert store.decision_for(APP, SIGN, 1) is Decision.ALLOW
        assert store.decision_for(APP, SIGN, 7) is None

    def test_generic_grant_covers_ordinary_kinds_only(self, store: PermissionStore) -> None:
        store.grant(APP, SIGN, None, PermissionDuration.FOREVER)
        assert store.decision_for(APP, SIGN, 1) is Decision.ALLOW
        assert store.decision_for(APP, SIGN, 7) is Decision.ALLOW
        assert store.decision_for(APP, SIGN, 4) is None
        assert store.decision_for(APP, SIGN, 30001) is None

    def test_exact_beats_generic(self, store: PermissionStore) -> None:
        store.grant(APP, SIGN)
        store.deny(APP, SIGN, 7)
        assert store.decision_for(APP, SIGN, 7) is Decision.DENY
        assert store.decision_for(APP, SIGN, 1) is Decision.ALLOW

    def test_generic_lookup_without_kind(self, store: PermissionStore) -> None:
        store.grant(APP, RequestType.GET_PUBLIC_KEY)
        assert store.decision_for(APP, RequestType.GET_PUBLIC_KEY) is Decision.ALLOW

    def test_other_request_type_not_covered(self, store: PermissionStore) -> None:
        store.grant(APP, SIGN)
        assert store.decision_for(APP, RequestType.NIP44_DECRYPT) is None

    def test_other_caller_not_covered(self, store: PermissionStore) -> None:
        store.grant(APP, SIGN)
        assert store.decision_for("com.other", SIGN, 1) is None

    def test_expired_exact_falls_back_to_generic(self, store: PermissionStore, clock: FakeClock) -> None:
        store.grant(APP, SIGN)
        store.deny(APP, SIGN, 7, PermissionDuration.ONE_MINUTE)
        clock.advance(MINUTE_MS)
        assert store.decision_for(APP, SIGN, 7) is Decision.ALLOW


# ---------------------------------------------------------------------------
# Expiry triggers
# ---------------------------------------------------------------------------


class TestExpiryTriggers:
    def test_wall_clock_past_expiry(self, store: PermissionStore, clock: FakeClock, db: Database) -> None:
        store.grant(APP, SIGN, 1, PermissionDuration.ONE_HOUR)
        clock.set_wall(clock.now() + HOUR_MS)
        assert store.decision_for(APP, SIGN, 1) is None

    def test_created_at_in_future(self, store: PermissionStore, clock: FakeClock) -> None:
        # Clock rolled forward at grant time, then corrected back.
        start = clock.now()
        clock.set_wall(start + DAY_MS)
        store.grant(APP, SIGN, 1, PermissionDuration.FOREVER)
        clock.set_wall(start)
        assert store.decision_for(APP, SIGN, 1) is None

    def test_future_within_tolerance_kept(self, store: PermissionStore, clock: FakeClock) -> None:
        start = clock.now()
        clock.set_wall(start + CLOCK_SKEW_TOLERANCE_MS // 2)
        store.grant(APP, SIGN, 1)
        clock.set_wall(start)
        assert store.decision_for(APP, SIGN, 1) is Decision.ALLOW

    def test_monotonic_elapsed_despite_wall_rollback(self, store: PermissionStore, clock: FakeClock) -> None:
        store.grant(APP, SIGN, 1, PermissionDuration.TEN_MINUTES)
        wall = clock.now()
        clock.advance(10 * MINUTE_MS)
        clock.set_wall(wall)
        assert store.decision_for(APP, SIGN, 1) is None

    def test_monotonic_regression(self, store: PermissionStore, clock: FakeClock) -> None:
        store.grant(APP, SIGN, 1, PermissionDuration.ONE_HOUR)
        clock.reboot()
        assert store.decision_for(APP, SIGN, 1) is None

    def test_reboot_does_not_expire_forever(self, store: PermissionStore, clock: FakeClock) -> None:
        store.grant(APP, SIGN, 1, PermissionDuration.FOREVER)
        clock.reboot()
        assert store.decision_for(APP, SIGN, 1) is Decision.ALLOW

    def test_expired_row_deleted_on_read(self, store: PermissionStore, clock: FakeClock, db: Database) -> None:
        store.grant(APP, SIGN, 1, PermissionDuration.ONE_MINUTE)
        clock.advance(MINUTE_MS)
        store.decision_for(APP, SIGN, 1)
        assert _count(db) == 0


class TestCleanupExpired:

    def test_wall_clock_trigger(self, store: PermissionStore, clock: FakeClock, db: Database) -> None:
        store.grant(APP, SIGN, 1, PermissionDuration.ONE_MINUTE)
        clock.set_wall(clock.now() + MINUTE_MS)
        assert store.cleanup_expired().permissions == 1
        assert _count(db) == 0

    def test_future_created_trigger(self, store: PermissionStore, clock: FakeClock, db: Database) -> None:
        start = clock.now()
        clock.set_wall(start + DAY_MS)
        store.grant(APP, SIGN, 1)
        clock.set_wall(start)
        assert store.cleanup_expired().permissions == 1

    def test_monotonic_elapsed_trigger(self, store: PermissionStore, clock: FakeClock) -> None:
        store.grant(APP, SIGN, 1, PermissionDuration.ONE_HOUR)
        clock.set_monotonic(clock.monotonic_now() + HOUR_MS)
        assert store.cleanup_expired().permissions == 1

    def test_monotonic_regression_trigger(self, store: PermissionStore, clock: FakeClock) -> None:
        store.grant(APP, SIGN, 1, PermissionDuration.ONE_HOUR)
        clock.reboot()
        assert store.cleanup_expired().permissions == 1

    def test_legacy_row_wall_clock_fallback(self, store: PermissionStore, clock: FakeClock, db: Database) -> None:
        db.execute(
            "INSERT INTO permissions (caller_id, request_type, event_kind, decision, expires_at, "
            "created_at, created_at_monotonic, duration_ms) VALUES (?, ?, 1, 'allow', NULL, ?, 0, ?)",
            (APP, SIGN.value, clock.now(), HOUR_MS),
        )
        assert store.cleanup_expired().permissions == 0
        clock.advance(HOUR_MS)
        assert store.cleanup_expired().permissions == 1

    def test_live_rows_kept(self, store: PermissionStore, clock: FakeClock, db: Database) -> None:
        store.grant(APP, SIGN, 1)
        store.grant(APP, SIGN, 7, PermissionDuration.ONE_DAY)
        clock.advance(HOUR_MS)
        assert store.cleanup_expired().permissions == 0
        assert _count(db) == 2

    def test_idempotent(self, store: PermissionStore, clock: FakeClock) -> None:
        store.grant(APP, SIGN, 1, PermissionDuration.ONE_MINUTE)
        clock.advance(MINUTE_MS)
        store.cleanup_expired()
        assert store.cleanup_expired().total == 0

    def test_sql_and_python_predicates_agree(
        self, store: PermissionStore, clock: FakeClock, db: Database
    ) -> None:
        for kind, duration in [
            (1, PermissionDuration.ONE_MINUTE),
            (2, PermissionDuration.FIVE_MINUTES),
            (5, PermissionDuration.ONE_HOUR),
            (6, PermissionDuration.FOREVER),
        ]:
            store.grant(APP, SIGN, kind, duration)
        clock.advance(5 * MINUTE_MS)
        rows = [Permission.from_row(r) for r in db.query_all("SELECT * FROM permissions")]
        expired_in_python = {
            p.event_kind for p in rows if p.is_expired(clock.now(), clock.monotonic_now())
        }
        live_in_sql = {p.event_kind for p in store.permissions_for_caller(APP)}
        assert expired_in_python == {1, 2}
        assert live_in_sql == {5, 6}
        assert store.cleanup_expired().permissions == 2

    def test_expired_app_removes_its_permissions(self, store: PermissionStore, clock: FakeClock, db: Database) -> None:
        store.grant(APP, SIGN, 1)
        store.grant("com.other", SIGN, 1)
        store.set_app_expiry(APP, AppExpiryDuration.FIVE_MINUTES)
        clock.advance(5 * MINUTE_MS)
        result = store.cleanup_expired()
        assert result.permissions == 1
        assert result.app_settings == 1
        assert store.decision_for("com.other", SIGN, 1) is Decision.ALLOW

    def test_audit_retention_sweep(self, store: PermissionStore, audit: AuditLog, clock: FakeClock) -> None:
        audit.append(APP, SIGN, 1, Decision.ALLOW, False)
        clock.advance(31 * DAY_MS)
        audit.append(APP, SIGN, 1, Decision.ALLOW, False)
        assert store.cleanup_expired().audit_entries == 1
        assert audit.count() == 1


# ---------------------------------------------------------------------------
# Revoke / update
# ---------------------------------------------------------------------------


class TestRevoke:
    def test_revoke_single_tuple(self, store: PermissionStore) -> None:
        store.grant(APP, SIGN, 1)
        store.grant(APP, SIGN, 7)
        assert store.revoke(APP, SIGN, 1) == 1
        assert store.decision_for(APP, SIGN, 1) is None
        assert store.decision_for(APP, SIGN, 7) is Decision.ALLOW

    def test_revoke_generic_tuple(self, store: PermissionStore) -> None:
        store.grant(APP, SIGN)
        store.grant(APP, SIGN, 1)
        assert store.revoke(APP, SIGN) == 1
        assert store.decision_for(APP, SIGN, 1) is Decision.ALLOW

    def test_revoke_all(self, store: PermissionStore) -> None:
        store.grant(APP, SIGN, 1)
        store.grant(APP, RequestType.NIP44_ENCRYPT)
        store.grant("com.other", SIGN, 1)
        assert store.revoke_all(APP) == 2
        assert store.permissions_for_caller(APP) == []
        assert store.decision_for("com.other", SIGN, 1) is Decision.ALLOW

    def test_delete_permission(self, store: PermissionStore) -> None:
        p = store.grant(APP, SIGN, 1)
        assert store.delete_permission(p.id)
        assert not store.delete_permission(p.id)


class TestUpdateDecision:
    def test_update(self, store: PermissionStore) -> None:
        p = store.grant(APP, SIGN, 1)
        updated = store.update_decision(p.id, Decision.DENY, APP, SIGN)
        assert updated.decision is Decision.DENY

    def test_wrong_caller_rejected(self, store: PermissionStore) -> None:
        p = store.grant(APP, SIGN, 1)
        with pytest.raises(InvalidInputError):
            store.update_decision(p.id, Decision.DENY, "com.other", SIGN)

    def test_wrong_request_type_rejected(self, store: PermissionStore) -> None:
        p = store.grant(APP, SIGN, 1)
        with pytest.raises(InvalidInputError):
            store.update_decision(p.id, Decision.DENY, APP, RequestType.NIP04_DECRYPT)

    def test_compare_and_swap_lost(self, store: PermissionStore) -> None:
        p = store.grant(APP, SIGN, 1)
        store.deny(APP, SIGN, 1)
        with pytest.raises(RaceAbortedError):
            store.update_decision(p.id, Decision.ASK, APP, SIGN, expected=Decision.ALLOW)
        assert store.decision_for(APP, SIGN, 1) is Decision.DENY


# ---------------------------------------------------------------------------
# App settings and connected apps
# ---------------------------------------------------------------------------


class TestAppSettings:
    def test_ensure_app_known_once(self, store: PermissionStore, clock: FakeClock) -> None:
        assert store.ensure_app_known(APP)
        first = store.app_settings(APP)
        clock.advance(HOUR_MS)
        assert not store.ensure_app_known(APP)
        assert store.app_settings(APP).created_at == first.created_at

    def test_unknown_app_not_expired(self, store: PermissionStore) -> None:
        assert store.app_settings(APP) is None
        assert not store.is_app_expired(APP)

    def test_app_expiry(self, store: PermissionStore, clock: FakeClock) -> None:
        store.set_app_expiry(APP, AppExpiryDuration.ONE_HOUR)
        assert not store.is_app_expired(APP)
        clock.advance(HOUR_MS)
        assert store.is_app_expired(APP)

    def test_app_expiry_monotonic_regression(self, store: PermissionStore, clock: FakeClock) -> None:
        store.set_app_expiry(APP, AppExpiryDuration.ONE_DAY)
        clock.reboot()
        assert store.is_app_expired(APP)

    def test_never_clears_expiry_keeps_first_seen(self, store: PermissionStore, clock: FakeClock) -> None:
        store.ensure_app_known(APP)
        first_seen = store.app_settings(APP).created_at
        store.set_app_expiry(APP, AppExpiryDuration.FIVE_MINUTES)
        clock.advance(HOUR_MS)
        settings = store.set_app_expiry(APP, AppExpiryDuration.NEVER)
        assert settings.expires_at is None
        assert not store.is_app_expired(APP)
        assert settings.created_at >= first_seen

    def test_timed_expiry_restarts_age(self, store: PermissionStore, clock: FakeClock) -> None:
        store.ensure_app_known(APP)
        clock.advance(2 * DAY_MS)
        store.set_app_expiry(APP, AppExpiryDuration.ONE_WEEK)
        settings = store.app_settings(APP)
        assert settings.created_at == clock.now()
        assert settings.age_ms(clock.now(), clock.monotonic_now()) == 0

    def test_never_leaves_age_untouched(self, store: PermissionStore, clock: FakeClock) -> None:
        store.ensure_app_known(APP)
        first_seen = store.app_settings(APP).created_at
        clock.advance(2 * DAY_MS)
        settings = store.set_app_expiry(APP, AppExpiryDuration.NEVER)
        assert settings.created_at == first_seen
        assert settings.age_ms(clock.now(), clock.monotonic_now()) == 2 * DAY_MS

    def test_no_expiry_app_never_swept(self, store: PermissionStore, clock: FakeClock) -> None:
        store.ensure_app_known(APP)
        clock.advance(365 * DAY_MS)
        assert store.cleanup_expired().app_settings == 0

    def test_sign_policy_override(self, store: PermissionStore) -> None:
        assert store.sign_policy_override(APP) is None
        store.set_sign_policy_override(APP, SignPolicy.MANUAL)
        assert store.sign_policy_override(APP) is SignPolicy.MANUAL
        store.set_sign_policy_override(APP, None)
        assert store.sign_policy_override(APP) is None

    def test_override_preserves_expiry(self, store: PermissionStore) -> None:
        store.set_app_expiry(APP, AppExpiryDuration.ONE_DAY)
        store.set_sign_policy_override(APP, SignPolicy.AUTO)
        assert store.app_settings(APP).expires_at is not None

    def test_clear_app_settings(self, store: PermissionStore) -> None:
        store.ensure_app_known(APP)
        assert store.clear_app_settings(APP)
        assert store.app_settings(APP) is None


class TestConnectedApps:
    def test_sorted_by_last_use(self, store: PermissionStore, audit: AuditLog, clock: FakeClock) -> None:
        store.grant("com.a", SIGN, 1)
        store.grant("com.b", SIGN, 1)
        store.grant("com.b", SIGN, 7)
        audit.append("com.b", SIGN, 1, Decision.ALLOW, True)
        clock.advance(1000)
        audit.append("com.a", SIGN, 1, Decision.ALLOW, True)

        apps = store.connected_apps()
        assert [a.caller_id for a in apps] == ["com.a", "com.b"]
        assert apps[1].permission_count == 2
        assert apps[0].last_used_time == clock.now()

    def test_last_used_counts_allow_only(self, store: PermissionStore, audit: AuditLog) -> None:
        store.grant(APP, SIGN, 1)
        audit.append(APP, SIGN, 1, Decision.DENY, True)
        assert store.connected_apps()[0].last_used_time is None

    def test_expired_permissions_excluded(self, store: PermissionStore, clock: FakeClock) -> None:
        store.grant(APP, SIGN, 1, PermissionDuration.ONE_MINUTE)
        clock.advance(MINUTE_MS)
        assert store.connected_apps() == []

    def test_includes_app_expiry(self, store: PermissionStore, clock: FakeClock) -> None:
        store.grant(APP, SIGN, 1)
        store.set_app_expiry(APP, AppExpiryDuration.ONE_WEEK)
        assert store.connected_apps()[0].expires_at == clock.now() + 7 * DAY_MS

    def test_all_permissions_live_only(self, store: PermissionStore, clock: FakeClock) -> None:
        store.grant("com.b", SIGN, 7)
        store.deny("com.a", SIGN, 1)
        store.grant("com.c", SIGN, 1, PermissionDuration.ONE_MINUTE)
        clock.advance(MINUTE_MS)

        rows = store.all_permissions()
        assert [(p.caller_id, p.event_kind) for p in rows] == [("com.a", 1), ("com.b", 7)]
        assert rows[0].decision is Decision.DENY
        assert not rows[0].is_generic
