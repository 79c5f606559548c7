from __future__ import annotations

from vikingsync.services.sentinels import (
    CLEAR_STRING_SENTINEL,
    CLEAR_TIME_SENTINEL,
    is_field_cleared,
    is_time_field_cleared,
    normalize_for_display,
    normalize_when_for_display,
    sentinel_for_field,
)


def test_sentinel_depends_on_field_kind() -> None:
    assert sentinel_for_field("SignedInBy") == CLEAR_STRING_SENTINEL
    assert sentinel_for_field("SignedOutBy") == CLEAR_STRING_SENTINEL
    assert sentinel_for_field("SignedInWhen") == CLEAR_TIME_SENTINEL
    assert sentinel_for_field("SignedOutWhen") == CLEAR_TIME_SENTINEL


def test_cleared_values() -> None:
    for value in (None, "", "---", "   ", " "):
        assert is_field_cleared(value)
    for value in ("Alice", "0", 0, False):
        assert not is_field_cleared(value)
    assert is_time_field_cleared(" ")
    assert not is_time_field_cleared("2025-06-01 10:00")


def test_display_normalization() -> None:
    assert normalize_for_display("---") is None
    assert normalize_for_display("Bob") == "Bob"
    assert normalize_when_for_display(" ") is None
    assert normalize_when_for_display("09:30") == "09:30"
