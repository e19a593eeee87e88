"""
Event-kind classification.

A kind is sensitive when signing it can change the user's identity,
social graph, relay configuration, or private message state.  Sensitive
kinds never fall back to a generic permission and never receive an
unbounded grant.
"""

from __future__ import annotations

import json
import logging

from signgate.core.constants import (
    KIND_BLOCKED_RELAY_LIST,
    KIND_BOOKMARK_LIST,
    KIND_CONTACTS,
    KIND_DM_RELAY_LIST,
    KIND_ENCRYPTED_DM,
    KIND_GIFT_WRAP,
    KIND_METADATA,
    KIND_MUTE_LIST,
    KIND_RELAY_LIST,
    KIND_REPORT,
    KIND_SEARCH_RELAY_LIST,
    MAX_EVENT_KIND,
    MIN_EVENT_KIND,
    REPLACEABLE_KIND_MAX,
    REPLACEABLE_KIND_MIN,
    SENSITIVE_KINDS,
)

logger = logging.getLogger(__name__)

_WARNINGS: dict[int, str] = {
    KIND_METADATA: "Modifying profile metadata can affect your identity across all clients",
    KIND_CONTACTS: "Modifying contacts/follow list can affect who you follow across all clients",
    KIND_ENCRYPTED_DM: "Signing a private/Encrypted direct message",
    KIND_GIFT_WRAP: "Signing a gift-wrapped private message",
    KIND_REPORT: "Publishing a report against another user or event",
    KIND_MUTE_LIST: "Modifying your mute list changes what you see across all clients",
    KIND_RELAY_LIST: "Modifying relay list can affect your connectivity across all clients",
    KIND_BOOKMARK_LIST: "Modifying your bookmark list",
    KIND_SEARCH_RELAY_LIST: "Modifying your search relay list",
    KIND_BLOCKED_RELAY_LIST: "Modifying your blocked relay list",
    KIND_DM_RELAY_LIST: "Modifying the relays that receive your private messages",
}

_REPLACEABLE_WARNING = "Modifying a replaceable list or set stored under your identity"


def is_valid_kind(kind: int) -> bool:
    if not isinstance(kind, int) or isinstance(kind, bool):
        return False
    return MIN_EVENT_KIND <= kind <= MAX_EVENT_KIND


def is_sensitive(kind: int) -> bool:
    """Return True for listed sensitive kinds and the 30000–39999 range."""
    return kind in SENSITIVE_KINDS or REPLACEABLE_KIND_MIN <= kind <= REPLACEABLE_KIND_MAX


def sensitivity_warning(kind: int) -> str | None:
    """Human-readable warning for a sensitive kind, None otherwise."""
    if kind in _WARNINGS:
        return _WARNINGS[kind]
    if REPLACEABLE_KIND_MIN <= kind <= REPLACEABLE_KIND_MAX:
        return _REPLACEABLE_WARNING
    return None


def parse_event_kind(event_json: str) -> int | None:
    """
    Extract the integer ``kind`` from a serialized event.

    Returns None for unparseable JSON, a missing or non-integer kind,
    or a kind outside 0–65535.
    """
    try:
        event = json.loads(event_json)
    except (ValueError, TypeError):
        logger.debug("Unparseable event payload")
        return None
    if not isinstance(event, dict):
        return None
    kind = event.get("kind")
    if not isinstance(kind, int) or isinstance(kind, bool):
        return None
    return kind if is_valid_kind(kind) else None
