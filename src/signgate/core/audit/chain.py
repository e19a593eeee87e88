"""
Hash chain over audit entries.

  entry_hash = H(previous_hash ‖ canonical(entry))

H is HMAC-SHA256 when a key is configured, plain SHA-256 otherwise.
canonical() is sorted-key compact JSON of the entry's content fields, so
field boundaries are unambiguous whatever the caller id contains.  The
first entry chains from the retention anchor if one exists, else from
the empty genesis hash.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum

from signgate.core.constants import AUDIT_GENESIS_HASH
from signgate.core.models import AuditLogEntry


def canonical_entry(
    caller_id: str,
    request_type: str,
    event_kind: int | None,
    decision: str,
    timestamp: int,
    was_automatic: bool,
) -> bytes:
    payload = {
        "caller_id": caller_id,
        "decision": decision,
        "event_kind": event_kind,
        "request_type": request_type,
        "timestamp": timestamp,
        "was_automatic": was_automatic,
    }
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode(
        "utf-8"
    )


def compute_entry_hash(
    previous_hash: str,
    caller_id: str,
    request_type: str,
    event_kind: int | None,
    decision: str,
    timestamp: int,
    was_automatic: bool,
    key: bytes | None = None,
) -> str:
    message = previous_hash.encode("utf-8") + canonical_entry(
        caller_id, request_type, event_kind, decision, timestamp, was_automatic
    )
    if key:
        return hmac.new(key, message, hashlib.sha256).hexdigest()
    return hashlib.sha256(message).hexdigest()


def hash_entry(entry: AuditLogEntry, previous_hash: str, key: bytes | None = None) -> str:
    return compute_entry_hash(
        previous_hash,
        entry.caller_id,
        entry.request_type,
        entry.event_kind,
        entry.decision,
        entry.timestamp,
        entry.was_automatic,
        key,
    )


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


class ChainStatus(StrEnum):
    VALID = "valid"
    PARTIALLY_VERIFIED = "partially_verified"  # legacy unhashed rows skipped
    TRUNCATED = "truncated"  # head of the chain removed without an anchor
    BROKEN = "broken"  # previous_hash link does not match
    TAMPERED = "tampered"  # stored hash does not match content


@dataclass(frozen=True)
class ChainVerification:
    status: ChainStatus
    entry_id: int | None = None
    legacy_skipped: int = 0
    entries_checked: int = 0

    @property
    def ok(self) -> bool:
        return self.status in (ChainStatus.VALID, ChainStatus.PARTIALLY_VERIFIED)


def _same(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def verify_chain(
    entries: Sequence[AuditLogEntry],
    key: bytes | None = None,
    anchor_hash: str = AUDIT_GENESIS_HASH,
) -> ChainVerification:
    """
    Walk *entries* in insertion order and check every link and hash.

    Rows written before the chain existed (empty entry_hash) are skipped
    while they precede all hashed rows; an unhashed row after a hashed one
    means a hash was wiped and counts as tampering.
    """
    expected_prev = anchor_hash
    known = {e.entry_hash for e in entries if e.entry_hash}
    legacy = 0
    checked = 0
    seen_hashed = False

    for entry in entries:
        if entry.is_legacy:
            if seen_hashed:
                return ChainVerification(ChainStatus.TAMPERED, entry.id, legacy, checked)
            legacy += 1
            continue

        if not _same(entry.previous_hash, expected_prev):
            if not seen_hashed and entry.previous_hash and entry.previous_hash not in known:
                status = ChainStatus.TRUNCATED
            else:
                status = ChainStatus.BROKEN
            return ChainVerification(status, entry.id, legacy, checked)

        recomputed = hash_entry(entry, entry.previous_hash, key)
        if not _same(recomputed, entry.entry_hash):
            return ChainVerification(ChainStatus.TAMPERED, entry.id, legacy, checked)

        expected_prev = entry.entry_hash
        seen_hashed = True
        checked += 1

    status = ChainStatus.PARTIALLY_VERIFIED if legacy else ChainStatus.VALID
    return ChainVerification(status, None, legacy, checked)


def replay_hashes(
    entries: Sequence[AuditLogEntry],
    key: bytes | None = None,
    anchor_hash: str = AUDIT_GENESIS_HASH,
) -> list[str]:
    """Recompute the whole chain from its start, ignoring stored hashes."""
    hashes = []
    prev = anchor_hash
    for entry in entries:
        prev = hash_entry(entry, prev, key)
        hashes.append(prev)
    return hashes
