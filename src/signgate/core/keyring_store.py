"""
OS keyring storage for the audit HMAC key.

Config files hold a placeholder such as ``keyring:signgate:audit_hmac_key``
instead of the secret; the secret itself lives in the platform keyring.
The ``keyring`` package is imported lazily so the rest of SignGate works
on hosts without a keyring backend.
"""

from __future__ import annotations

import logging

from signgate.core.exceptions import KeyringError

logger = logging.getLogger(__name__)

SERVICE_NAME = "signgate"
KEYRING_PREFIX = "keyring:"


def is_keyring_placeholder(value: str) -> bool:
    return value.startswith(KEYRING_PREFIX)


def store_token(key: str, secret: str) -> str:
    """Store *secret* in the keyring and return the placeholder for config."""
    import keyring

    keyring.set_password(SERVICE_NAME, key, secret)
    logger.info("Stored %s in OS keyring", key)
    return f"{KEYRING_PREFIX}{SERVICE_NAME}:{key}"


def retrieve_token(placeholder: str) -> str | None:
    """Resolve a placeholder; None if it is not one or the entry is missing."""
    if not is_keyring_placeholder(placeholder):
        return None
    service, _, key = placeholder[len(KEYRING_PREFIX) :].partition(":")
    if not key:
        return None

    import keyring

    return keyring.get_password(service, key)


def resolve_secret(value: str) -> str:
    """
    Return *value* unchanged, or the keyring secret it points to.

    Raises KeyringError if a placeholder cannot be resolved.
    """
    if not is_keyring_placeholder(value):
        return value
    try:
        secret = retrieve_token(value)
    except Exception as exc:  # noqa: BLE001
        raise KeyringError(f"Keyring lookup failed for {value}: {exc}") from exc
    if secret is None:
        raise KeyringError(f"No keyring entry for {value}")
    return secret
