"""Append-only, hash-chained audit log of every decision."""

from signgate.core.audit.chain import (
    ChainStatus,
    ChainVerification,
    compute_entry_hash,
    verify_chain,
)
from signgate.core.audit.writer import AuditLog

__all__ = [
    "AuditLog",
    "ChainStatus",
    "ChainVerification",
    "compute_entry_hash",
    "verify_chain",
]
