"""
Schema migrations keyed on ``PRAGMA user_version``.

Each entry in _MIGRATIONS upgrades the schema by exactly one version and
runs inside its own transaction together with the version bump, so a
failed migration leaves the database at the previous version.

  v0 → v1  permissions, app_settings, audit_log (no hash chain)
  v1 → v2  dual-clock columns, audit hash chain, audit_anchor, velocity
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable

logger = logging.getLogger(__name__)

LATEST_SCHEMA_VERSION = 2


def get_user_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("PRAGMA user_version").fetchone()
    return int(row[0]) if row else 0


def _column_names(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}  # noqa: S608


def _add_column(conn: sqlite3.Connection, table: str, column: str, ddl: str) -> None:
    if column not in _column_names(conn, table):
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")


def _migrate_0_to_1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS permissions (
            id            INTEGER PRIMARY KEY AUTOINCREMENT,
            caller_id     TEXT    NOT NULL,
            request_type  TEXT    NOT NULL,
            event_kind    INTEGER NOT NULL DEFAULT -1,
            decision      TEXT    NOT NULL,
            expires_at    INTEGER,
            created_at    INTEGER NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_permissions_key
        ON permissions(caller_id, request_type, event_kind)
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS app_settings (
            caller_id             TEXT PRIMARY KEY,
            expires_at            INTEGER,
            created_at            INTEGER NOT NULL,
            sign_policy_override  INTEGER
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS audit_log (
            id             INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp      INTEGER NOT NULL,
            caller_id      TEXT    NOT NULL,
            request_type   TEXT    NOT NULL,
            event_kind     INTEGER,
            decision       TEXT    NOT NULL,
            was_automatic  INTEGER NOT NULL DEFAULT 0
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_caller ON audit_log(caller_id)")


def _migrate_1_to_2(conn: sqlite3.Connection) -> None:
    _add_column(conn, "permissions", "created_at_monotonic", "INTEGER NOT NULL DEFAULT 0")
    _add_column(conn, "permissions", "duration_ms", "INTEGER")
    _add_column(conn, "app_settings", "created_at_monotonic", "INTEGER NOT NULL DEFAULT 0")
    _add_column(conn, "app_settings", "duration_ms", "INTEGER")
    _add_column(conn, "audit_log", "previous_hash", "TEXT NOT NULL DEFAULT ''")
    _add_column(conn, "audit_log", "entry_hash", "TEXT NOT NULL DEFAULT ''")
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_audit_caller_kind
        ON audit_log(caller_id, event_kind, decision)
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS audit_anchor (
            id                 INTEGER PRIMARY KEY CHECK (id = 1),
            anchor_hash        TEXT    NOT NULL,
            anchored_entry_id  INTEGER NOT NULL,
            created_at         INTEGER NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS velocity (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            caller_id   TEXT    NOT NULL,
            event_kind  INTEGER,
            timestamp   INTEGER NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_velocity_caller ON velocity(caller_id, timestamp)"
    )


_MIGRATIONS: list[Callable[[sqlite3.Connection], None]] = [
    _migrate_0_to_1,
    _migrate_1_to_2,
]


def run_migrations(conn: sqlite3.Connection) -> int:
    """
    Bring the schema up to LATEST_SCHEMA_VERSION.

    The connection must be in autocommit mode (isolation_level=None).
    Returns the number of migrations applied.
    """
    current = get_user_version(conn)
    if current > LATEST_SCHEMA_VERSION:
        raise sqlite3.DatabaseError(
            f"Database schema v{current} is newer than this build supports "
            f"(v{LATEST_SCHEMA_VERSION})"
        )

    applied = 0
    for version in range(current, LATEST_SCHEMA_VERSION):
        migrate = _MIGRATIONS[version]
        conn.execute("BEGIN IMMEDIATE")
        try:
            migrate(conn)
            conn.execute(f"PRAGMA user_version = {version + 1}")
        except Exception:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
        applied += 1
        logger.info("Applied schema migration v%d -> v%d", version, version + 1)
    return applied
