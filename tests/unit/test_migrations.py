"""Unit tests for signgate.core.store.migrations - schema migration system."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from signgate.core.audit.chain import ChainStatus
from signgate.core.audit.writer import AuditLog
from signgate.core.clock import FakeClock
from signgate.core.store.database import Database
from signgate.core.store.migrations import (
    LATEST_SCHEMA_VERSION,
    get_user_version,
    run_migrations,
)

# ---------------------------------------------------------------------------
# Helpers to simulate old database schemas
# ---------------------------------------------------------------------------

# Schema v1 - no dual-clock columns, no audit hash chain.
_SCHEMA_V1 = """
CREATE TABLE permissions (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    caller_id     TEXT    NOT NULL,
    request_type  TEXT    NOT NULL,
    event_kind    INTEGER NOT NULL DEFAULT -1,
    decision      TEXT    NOT NULL,
    expires_at    INTEGER,
    created_at    INTEGER NOT NULL
);
CREATE UNIQUE INDEX idx_permissions_key ON permissions(caller_id, request_type, event_kind);
CREATE TABLE app_settings (
    caller_id             TEXT PRIMARY KEY,
    expires_at            INTEGER,
    created_at            INTEGER NOT NULL,
    sign_policy_override  INTEGER
);
CREATE TABLE audit_log (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp      INTEGER NOT NULL,
    caller_id      TEXT    NOT NULL,
    request_type   TEXT    NOT NULL,
    event_kind     INTEGER,
    decision       TEXT    NOT NULL,
    was_automatic  INTEGER NOT NULL DEFAULT 0
);
INSERT INTO audit_log (timestamp, caller_id, request_type, event_kind, decision, was_automatic)
VALUES (1000, 'com.old', 'SIGN_EVENT', 1, 'allow', 0),
       (2000, 'com.old', 'SIGN_EVENT', 1, 'allow', 1);
INSERT INTO permissions (caller_id, request_type, event_kind, decision, expires_at, created_at)
VALUES ('com.old', 'SIGN_EVENT', 1, 'allow', NULL, 1000);
PRAGMA user_version = 1;
"""


def _column_names(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}


def _table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,)
    ).fetchone()
    return row is not None


def _make_v1(path: Path) -> None:
    conn = sqlite3.connect(str(path))
    conn.executescript(_SCHEMA_V1)
    conn.close()


# ---------------------------------------------------------------------------
# Fresh database
# ---------------------------------------------------------------------------


class TestFreshDatabase:
    def test_fresh_db_gets_all_tables(self, tmp_path: Path) -> None:
        db = Database(tmp_path / "fresh.db")
        db.connect()
        for table in ("permissions", "app_settings", "audit_log", "audit_anchor", "velocity"):
            assert _table_exists(db._db, table), table
        db.close()

    def test_fresh_db_sets_user_version(self, tmp_path: Path) -> None:
        db = Database(tmp_path / "fresh.db")
        db.connect()
        assert get_user_version(db._db) == LATEST_SCHEMA_VERSION
        db.close()

    def test_fresh_db_has_dual_clock_columns(self, tmp_path: Path) -> None:
        db = Database(tmp_path / "fresh.db")
        db.connect()
        assert {"created_at_monotonic", "duration_ms"} <= _column_names(db._db, "permissions")
        assert {"previous_hash", "entry_hash"} <= _column_names(db._db, "audit_log")
        db.close()

    def test_rerun_is_noop(self, tmp_path: Path) -> None:
        db = Database(tmp_path / "fresh.db")
        db.connect()
        assert run_migrations(db._db) == 0
        db.close()


# ---------------------------------------------------------------------------
# Upgrade from v1
# ---------------------------------------------------------------------------


class TestUpgradeFromV1:
    def test_v1_migrates(self, tmp_path: Path) -> None:
        path = tmp_path / "old.db"
        _make_v1(path)
        db = Database(path)
        db.connect()
        assert get_user_version(db._db) == LATEST_SCHEMA_VERSION
        assert "created_at_monotonic" in _column_names(db._db, "app_settings")
        db.close()

    def test_existing_rows_preserved(self, tmp_path: Path) -> None:
        path = tmp_path / "old.db"
        _make_v1(path)
        db = Database(path)
        db.connect()
        row = db.query_one("SELECT created_at_monotonic, duration_ms FROM permissions")
        assert row["created_at_monotonic"] == 0
        assert row["duration_ms"] is None
        assert db.table_counts()["audit_log"] == 2
        db.close()

    def test_legacy_audit_rows_partially_verified(self, tmp_path: Path) -> None:
        path = tmp_path / "old.db"
        _make_v1(path)
        db = Database(path)
        db.connect()
        audit = AuditLog(db, FakeClock())
        audit.append("com.old", "SIGN_EVENT", 1, "allow", True)
        result = audit.verify()
        assert result.status is ChainStatus.PARTIALLY_VERIFIED
        assert result.legacy_skipped == 2
        assert result.entries_checked == 1
        db.close()

    def test_newer_schema_rejected(self, tmp_path: Path) -> None:
        conn = sqlite3.connect(str(tmp_path / "future.db"), isolation_level=None)
        conn.execute(f"PRAGMA user_version = {LATEST_SCHEMA_VERSION + 1}")
        with pytest.raises(sqlite3.DatabaseError):
            run_migrations(conn)
        conn.close()
