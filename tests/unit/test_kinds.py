"""Unit tests for signgate.core.kinds - sensitivity classifier and kind parsing."""

from __future__ import annotations

import pytest

from signgate.core.constants import SENSITIVE_KINDS
from signgate.core.kinds import is_sensitive, is_valid_kind, parse_event_kind, sensitivity_warning


class TestIsSensitive:
    @pytest.mark.parametrize("kind", sorted(SENSITIVE_KINDS))
    def test_listed_kinds_sensitive(self, kind: int) -> None:
        assert is_sensitive(kind)

    @pytest.mark.parametrize("kind", [30000, 30023, 39999])
    def test_replaceable_range_inclusive(self, kind: int) -> None:
        assert is_sensitive(kind)

    @pytest.mark.parametrize("kind", [1, 7, 1111, 9735, 29999, 40000, 65535])
    def test_ordinary_kinds_not_sensitive(self, kind: int) -> None:
        assert not is_sensitive(kind)

    def test_metadata_listed_explicitly(self) -> None:
        assert is_sensitive(0)


class TestSensitivityWarning:
    def test_profile_warning(self) -> None:
        assert "profile" in sensitivity_warning(0)

    def test_contacts_warning(self) -> None:
        assert "contacts" in sensitivity_warning(3)

    def test_encrypted_dm_warning(self) -> None:
        assert "Encrypted" in sensitivity_warning(4)

    def test_every_sensitive_kind_has_warning(self) -> None:
        for kind in [*SENSITIVE_KINDS, 30000, 35000, 39999]:
            assert sensitivity_warning(kind), kind

    def test_ordinary_kind_has_no_warning(self) -> None:
        assert sensitivity_warning(1) is None
        assert sensitivity_warning(40000) is None


class TestParseEventKind:
    def test_valid_kind(self) -> None:
        assert parse_event_kind('{"kind": 1, "content": "hi"}') == 1

    def test_boundaries(self) -> None:
        assert parse_event_kind('{"kind": 0}') == 0
        assert parse_event_kind('{"kind": 65535}') == 65535

    def test_out_of_range(self) -> None:
        assert parse_event_kind('{"kind": -1}') is None
        assert parse_event_kind('{"kind": 65536}') is None

    def test_missing_kind(self) -> None:
        assert parse_event_kind('{"content": "hi"}') is None

    def test_invalid_json(self) -> None:
        assert parse_event_kind("not json") is None

    def test_non_integer_kind(self) -> None:
        assert parse_event_kind('{"kind": "1"}') is None
        assert parse_event_kind('{"kind": 1.5}') is None
        assert parse_event_kind('{"kind": true}') is None

    def test_non_object(self) -> None:
        assert parse_event_kind("[1, 2]") is None


def test_is_valid_kind_rejects_bool() -> None:
    assert not is_valid_kind(True)
    assert is_valid_kind(7)
