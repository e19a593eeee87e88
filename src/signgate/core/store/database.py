"""
SQLite database handle.

One connection per Database, shared across threads behind an RLock.
The connection runs in autocommit mode; multi-statement work goes
through ``transaction()``, which nests by joining the outer transaction.

Usage::

    db = Database(path)
    db.connect()
    with db.transaction():
        db.execute("DELETE FROM permissions WHERE caller_id = ?", (caller,))
    db.close()
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from signgate.core.exceptions import StorageError
from signgate.core.store.migrations import run_migrations

logger = logging.getLogger(__name__)

MEMORY = ":memory:"


class Database:
    def __init__(self, path: Path | str) -> None:
        self._path = path if path == MEMORY else Path(path)
        self._db: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._depth = 0

    @property
    def path(self) -> Path | str:
        return self._path

    @property
    def is_connected(self) -> bool:
        return self._db is not None

    def connect(self) -> None:
        if self._db is not None:
            return
        conn: sqlite3.Connection | None = None
        try:
            if isinstance(self._path, Path):
                self._path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self._path), check_same_thread=False, isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA busy_timeout=5000")
            applied = run_migrations(conn)
        except (sqlite3.Error, OSError) as exc:
            if conn is not None:
                conn.close()
            raise StorageError(f"Cannot open database {self._path}: {exc}") from exc
        self._db = conn
        logger.debug("Database opened at %s (%d migrations applied)", self._path, applied)

    def close(self) -> None:
        with self._lock:
            if self._db is not None:
                self._db.close()
                self._db = None

    def __enter__(self) -> Database:
        self.connect()
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def _conn(self) -> sqlite3.Connection:
        if self._db is None:
            raise StorageError("Database is not connected")
        return self._db

    def execute(self, sql: str, params: Sequence[Any] | dict[str, Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                return self._conn().execute(sql, params)
            except sqlite3.Error as exc:
                raise StorageError(str(exc)) from exc

    def query_one(
        self, sql: str, params: Sequence[Any] | dict[str, Any] = ()
    ) -> sqlite3.Row | None:
        with self._lock:
            return self.execute(sql, params).fetchone()

    def query_all(self, sql: str, params: Sequence[Any] | dict[str, Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.execute(sql, params).fetchall()

    @contextmanager
    def transaction(self) -> Iterator[Database]:
        """
        Run the enclosed statements atomically.

        Holds the database lock for the whole block, so a read followed by a
        conditional write cannot interleave with another thread.
        """
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            self.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield self
            except BaseException:
                self._depth = 0
                self._rollback()
                raise
            self._depth = 0
            try:
                self._conn().execute("COMMIT")
            except sqlite3.Error as exc:
                self._rollback()
                raise StorageError(f"Commit failed: {exc}") from exc

    def _rollback(self) -> None:
        conn = self._conn()
        if not conn.in_transaction:
            return
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error:
            logger.exception("Rollback failed on %s", self._path)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def table_counts(self) -> dict[str, int]:
        counts = {}
        for table in ("permissions", "app_settings", "audit_log", "velocity"):
            row = self.query_one(f"SELECT count(*) FROM {table}")  # noqa: S608
            counts[table] = row[0] if row else 0
        return counts
