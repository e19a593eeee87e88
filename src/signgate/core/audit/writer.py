"""
AuditLog - append and query the hash-chained decision log.

Appends are serialized: the previous hash is read and the new row
inserted inside one database transaction, which holds the database lock, so
concurrent appends always produce a single linear chain.

Retention deletes only a contiguous head of the chain and records the
hash of the newest deleted row in ``audit_anchor``; verification then
starts from that anchor instead of the genesis hash.
"""

from __future__ import annotations

import logging

from signgate.core.audit.chain import (
    ChainVerification,
    compute_entry_hash,
    replay_hashes,
    verify_chain,
)
from signgate.core.clock import Clock
from signgate.core.constants import AUDIT_GENESIS_HASH, AUDIT_PAGE_MAX
from signgate.core.models import AuditDecision, AuditLogEntry, Decision
from signgate.core.store.database import Database

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, timestamp, caller_id, request_type, event_kind, decision, "
    "was_automatic, previous_hash, entry_hash"
)


def clamp_page(limit: int, offset: int) -> tuple[int, int]:
    return max(1, min(limit, AUDIT_PAGE_MAX)), max(0, offset)


class AuditLog:
    def __init__(self, db: Database, clock: Clock, hmac_key: bytes | None = None) -> None:
        self._db = db
        self._clock = clock
        self._key = hmac_key or None

    @property
    def keyed(self) -> bool:
        return self._key is not None

    # ------------------------------------------------------------------
    # Append
    # ------------------------------------------------------------------

    def append(
        self,
        caller_id: str,
        request_type: str,
        event_kind: int | None,
        decision: Decision | AuditDecision | str,
        was_automatic: bool,
    ) -> AuditLogEntry:
        decision = str(decision)
        request_type = str(request_type)
        with self._db.transaction():
            previous_hash = self._head_hash()
            timestamp = self._clock.now()
            entry_hash = compute_entry_hash(
                previous_hash,
                caller_id,
                request_type,
                event_kind,
                decision,
                timestamp,
                was_automatic,
                self._key,
            )
            cursor = self._db.execute(
                """
                INSERT INTO audit_log
                    (timestamp, caller_id, request_type, event_kind, decision,
                     was_automatic, previous_hash, entry_hash)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    timestamp,
                    caller_id,
                    request_type,
                    event_kind,
                    decision,
                    int(was_automatic),
                    previous_hash,
                    entry_hash,
                ),
            )
            entry_id = cursor.lastrowid

        logger.debug(
            "audit: %s %s kind=%s -> %s (auto=%s)",
            caller_id,
            request_type,
            event_kind,
            decision,
            was_automatic,
        )
        return AuditLogEntry(
            id=entry_id,
            timestamp=timestamp,
            caller_id=caller_id,
            request_type=request_type,
            event_kind=event_kind,
            decision=decision,
            was_automatic=was_automatic,
            previous_hash=previous_hash,
            entry_hash=entry_hash,
        )

    def _head_hash(self) -> str:
        row = self._db.query_one("SELECT entry_hash FROM audit_log ORDER BY id DESC LIMIT 1")
        if row is not None:
            return row["entry_hash"] or ""
        return self.anchor_hash()

    def anchor_hash(self) -> str:
        row = self._db.query_one("SELECT anchor_hash FROM audit_anchor WHERE id = 1")
        return row["anchor_hash"] if row else AUDIT_GENESIS_HASH

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def recent(self, limit: int = AUDIT_PAGE_MAX) -> list[AuditLogEntry]:
        return self.page(limit, 0)

    def page(self, limit: int, offset: int = 0) -> list[AuditLogEntry]:
        """Newest first; limit clamped to 1..100, offset to >= 0."""
        limit, offset = clamp_page(limit, offset)
        rows = self._db.query_all(
            f"SELECT {_COLUMNS} FROM audit_log "  # noqa: S608
            "ORDER BY timestamp DESC, id DESC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [AuditLogEntry.from_row(r) for r in rows]

    def for_caller(
        self, caller_id: str, limit: int = AUDIT_PAGE_MAX, offset: int = 0
    ) -> list[AuditLogEntry]:
        limit, offset = clamp_page(limit, offset)
        rows = self._db.query_all(
            f"SELECT {_COLUMNS} FROM audit_log WHERE caller_id = ? "  # noqa: S608
            "ORDER BY timestamp DESC, id DESC LIMIT ? OFFSET ?",
            (caller_id, limit, offset),
        )
        return [AuditLogEntry.from_row(r) for r in rows]

    def all_ordered(self) -> list[AuditLogEntry]:
        """Every entry in insertion order."""
        rows = self._db.query_all(f"SELECT {_COLUMNS} FROM audit_log ORDER BY id ASC")  # noqa: S608
        return [AuditLogEntry.from_row(r) for r in rows]

    def count(self) -> int:
        row = self._db.query_one("SELECT count(*) FROM audit_log")
        return row[0] if row else 0

    def count_allowed_for_kind(self, caller_id: str, event_kind: int) -> int:
        row = self._db.query_one(
            "SELECT count(*) FROM audit_log "
            "WHERE caller_id = ? AND event_kind = ? AND decision = ?",
            (caller_id, event_kind, Decision.ALLOW.value),
        )
        return row[0] if row else 0

    def count_since(self, caller_id: str, since: int) -> int:
        row = self._db.query_one(
            "SELECT count(*) FROM audit_log WHERE caller_id = ? AND timestamp >= ?",
            (caller_id, since),
        )
        return row[0] if row else 0

    def last_used_time(self, caller_id: str) -> int | None:
        row = self._db.query_one(
            "SELECT max(timestamp) FROM audit_log WHERE caller_id = ? AND decision = ?",
            (caller_id, Decision.ALLOW.value),
        )
        return row[0] if row else None

    def last_used_time_for_permission(
        self, caller_id: str, request_type: str, event_kind: int | None
    ) -> int | None:
        if event_kind is None:
            kind_clause, params = "event_kind IS NULL", (caller_id, str(request_type))
        else:
            kind_clause, params = "event_kind = ?", (caller_id, str(request_type), event_kind)
        row = self._db.query_one(
            "SELECT max(timestamp) FROM audit_log "  # noqa: S608
            f"WHERE caller_id = ? AND request_type = ? AND {kind_clause} AND decision = 'allow'",
            params,
        )
        return row[0] if row else None

    def distinct_callers(self) -> list[str]:
        rows = self._db.query_all("SELECT DISTINCT caller_id FROM audit_log ORDER BY caller_id")
        return [r["caller_id"] for r in rows]

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def delete_older_than(self, cutoff: int) -> int:
        """
        Delete the longest head of the chain whose entries all predate *cutoff*.

        An older entry that sits after a newer one (wall clock stepped back)
        is kept until everything before it has aged out.
        """
        with self._db.transaction():
            row = self._db.query_one(
                "SELECT min(id) FROM audit_log WHERE timestamp >= ?", (cutoff,)
            )
            boundary = row[0] if row else None
            if boundary is None:
                last = self._db.query_one("SELECT max(id) FROM audit_log")
                if last is None or last[0] is None:
                    return 0
                boundary = last[0] + 1

            newest = self._db.query_one(
                "SELECT id, entry_hash FROM audit_log WHERE id < ? ORDER BY id DESC LIMIT 1",
                (boundary,),
            )
            if newest is None:
                return 0

            if newest["entry_hash"]:
                self._db.execute(
                    """
                    INSERT INTO audit_anchor (id, anchor_hash, anchored_entry_id, created_at)
                    VALUES (1, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        anchor_hash = excluded.anchor_hash,
                        anchored_entry_id = excluded.anchored_entry_id,
                        created_at = excluded.created_at
                    """,
                    (newest["entry_hash"], newest["id"], self._clock.now()),
                )
            deleted = self._db.execute("DELETE FROM audit_log WHERE id < ?", (boundary,)).rowcount

        logger.info("Audit retention removed %d entries (anchor at id %d)", deleted, newest["id"])
        return deleted

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self) -> ChainVerification:
        with self._db.transaction():
            entries = self.all_ordered()
            anchor = self.anchor_hash()
        result = verify_chain(entries, self._key, anchor)
        if not result.ok:
            logger.warning(
                "Audit chain verification failed: %s at entry %s", result.status, result.entry_id
            )
        return result

    def replay(self) -> list[str]:
        return replay_hashes(self.all_ordered(), self._key, self.anchor_hash())
