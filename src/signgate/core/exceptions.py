"""SignGate exception hierarchy."""

from __future__ import annotations


class SignGateError(Exception):
    """Base exception for all SignGate errors."""


class ConfigError(SignGateError):
    """Raised when the configuration is invalid or cannot be read."""


class ConfigNotFoundError(ConfigError):
    """Raised when the configuration file does not exist."""


class StorageError(SignGateError):
    """Raised when the permission or audit database cannot be read or written."""


class InvalidInputError(SignGateError):
    """Raised for a malformed caller id, event kind, request type, or duration."""


class RaceAbortedError(SignGateError):
    """Raised when a compare-and-update lost a race; the caller should retry."""


class KeyringError(SignGateError):
    """Raised when the audit HMAC key cannot be resolved from the keyring."""
