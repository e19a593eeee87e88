"""Unit tests for signgate.core.store.database - connection and transactions."""

from __future__ import annotations

from pathlib import Path

import pytest

from signgate.core.exceptions import StorageError
from signgate.core.store.database import Database


@pytest.fixture
def db(tmp_path: Path) -> Database:
    d = Database(tmp_path / "test.db")
    d.connect()
    yield d
    d.close()


def _insert_setting(db: Database, caller: str) -> None:
    db.execute(
        "INSERT INTO app_settings (caller_id, created_at, created_at_monotonic) VALUES (?, 0, 0)",
        (caller,),
    )


class TestConnect:
    def test_creates_parent_directory(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "dir" / "signgate.db"
        d = Database(path)
        d.connect()
        assert path.exists()
        d.close()

    def test_connect_idempotent(self, db: Database) -> None:
        db.connect()
        assert db.is_connected

    def test_in_memory(self) -> None:
        with Database(":memory:") as d:
            assert d.table_counts()["permissions"] == 0

    def test_closed_database_raises_storage_error(self, tmp_path: Path) -> None:
        d = Database(tmp_path / "closed.db")
        with pytest.raises(StorageError):
            d.execute("SELECT 1")

    def test_unopenable_path_raises_storage_error(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("x")
        with pytest.raises(StorageError):
            Database(blocker / "sub.db").connect()


class TestTransaction:
    def test_commit(self, db: Database) -> None:
        with db.transaction():
            _insert_setting(db, "a")
        assert db.table_counts()["app_settings"] == 1

    def test_rollback_on_error(self, db: Database) -> None:
        with pytest.raises(RuntimeError):
            with db.transaction():
                _insert_setting(db, "a")
                raise RuntimeError("boom")
        assert db.table_counts()["app_settings"] == 0

    def test_nested_joins_outer(self, db: Database) -> None:
        with pytest.raises(RuntimeError):
            with db.transaction():
                with db.transaction():
                    _insert_setting(db, "inner")
                _insert_setting(db, "outer")
                raise RuntimeError("boom")
        assert db.table_counts()["app_settings"] == 0

    def test_usable_after_rollback(self, db: Database) -> None:
        with pytest.raises(RuntimeError):
            with db.transaction():
                raise RuntimeError("boom")
        with db.transaction():
            _insert_setting(db, "b")
        assert db.table_counts()["app_settings"] == 1

    def test_failed_commit_rolls_back(self, db: Database) -> None:
        db.execute("PRAGMA foreign_keys=ON")
        db.execute("CREATE TABLE parent (id INTEGER PRIMARY KEY)")
        db.execute(
            "CREATE TABLE child (parent_id INTEGER "
            "REFERENCES parent(id) DEFERRABLE INITIALLY DEFERRED)"
        )
        with pytest.raises(StorageError, match="Commit failed"):
            with db.transaction():
                db.execute("INSERT INTO child (parent_id) VALUES (42)")
                _insert_setting(db, "lost")

        assert not db._db.in_transaction
        assert db.table_counts()["app_settings"] == 0
        with db.transaction():
            _insert_setting(db, "b")
        assert db.table_counts()["app_settings"] == 1

    def test_original_error_survives_dead_transaction(self, db: Database) -> None:
        with pytest.raises(RuntimeError, match="boom"):
            with db.transaction():
                db._db.execute("ROLLBACK")
                raise RuntimeError("boom")
        with db.transaction():
            _insert_setting(db, "b")
        assert db.table_counts()["app_settings"] == 1

    def test_sql_error_wrapped(self, db: Database) -> None:
        with pytest.raises(StorageError):
            db.execute("SELECT * FROM no_such_table")

    def test_unique_permission_key_enforced(self, db: Database) -> None:
        sql = (
            "INSERT INTO permissions (caller_id, request_type, event_kind, decision, created_at) "
            "VALUES ('a', 'SIGN_EVENT', -1, 'allow', 0)"
        )
        db.execute(sql)
        with pytest.raises(StorageError):
            db.execute(sql)
