"""Unit tests for optional keyring integration."""

from __future__ import annotations

import pytest

from signgate.core.exceptions import KeyringError
from signgate.core.keyring_store import (
    KEYRING_PREFIX,
    SERVICE_NAME,
    is_keyring_placeholder,
    resolve_secret,
    retrieve_token,
    store_token,
)


def _mock_keyring(monkeypatch, store: dict):
    import sys
    import types

    mock_keyring = types.ModuleType("keyring")
    mock_keyring.set_password = lambda svc, key, val: store.update({f"{svc}:{key}": val})  # type: ignore[attr-defined]
    mock_keyring.get_password = lambda svc, key: store.get(f"{svc}:{key}")  # type: ignore[attr-defined]
    monkeypatch.setitem(sys.modules, "keyring", mock_keyring)
    return mock_keyring


class TestIsKeyringPlaceholder:
    def test_valid_placeholder(self):
        assert is_keyring_placeholder("keyring:signgate:audit_hmac_key")

    def test_plain_value(self):
        assert not is_keyring_placeholder("a-literal-hmac-key")

    def test_empty_string(self):
        assert not is_keyring_placeholder("")


class TestStoreAndRetrieve:
    def test_round_trip_mocked(self, monkeypatch):
        """Mock keyring to verify store/retrieve round-trip."""
        _mock_keyring(monkeypatch, {})

        placeholder = store_token("audit_hmac_key", "secret123")
        assert placeholder == f"{KEYRING_PREFIX}{SERVICE_NAME}:audit_hmac_key"
        assert retrieve_token(placeholder) == "secret123"

    def test_retrieve_nonexistent_returns_none(self, monkeypatch):
        _mock_keyring(monkeypatch, {})
        assert retrieve_token("keyring:signgate:nonexistent") is None

    def test_retrieve_non_placeholder_returns_none(self):
        assert retrieve_token("not-a-keyring-placeholder") is None

    def test_placeholder_without_key_returns_none(self):
        assert retrieve_token("keyring:signgate") is None


class TestResolveSecret:
    def test_literal_passes_through(self):
        assert resolve_secret("plain-key") == "plain-key"

    def test_placeholder_resolved(self, monkeypatch):
        _mock_keyring(monkeypatch, {"signgate:audit_hmac_key": "from-keyring"})
        assert resolve_secret("keyring:signgate:audit_hmac_key") == "from-keyring"

    def test_missing_entry_raises(self, monkeypatch):
        _mock_keyring(monkeypatch, {})
        with pytest.raises(KeyringError, match="No keyring entry"):
            resolve_secret("keyring:signgate:audit_hmac_key")

    def test_backend_failure_raises(self, monkeypatch):
        mock = _mock_keyring(monkeypatch, {})

        def _fail(svc, key):
            raise RuntimeError("no backend")

        mock.get_password = _fail  # type: ignore[attr-defined]
        with pytest.raises(KeyringError, match="no backend"):
            resolve_secret("keyring:signgate:audit_hmac_key")


class TestConstants:
    def test_service_name(self):
        assert SERVICE_NAME == "signgate"

    def test_prefix(self):
        assert KEYRING_PREFIX == "keyring:"
