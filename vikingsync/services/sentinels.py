from __future__ import annotations

from typing import Any


# Upstream has no "null" for FlexiRecord cells; these values mean "cleared".
CLEAR_STRING_SENTINEL = "---"
CLEAR_TIME_SENTINEL = " "

# Fields written with the time sentinel; everything else takes the string sentinel.
TIME_FIELD_SUFFIX = "When"


def is_time_field(field_name: str) -> bool:
    return field_name.endswith(TIME_FIELD_SUFFIX)


def sentinel_for_field(field_name: str) -> str:
    return CLEAR_TIME_SENTINEL if is_time_field(field_name) else CLEAR_STRING_SENTINEL


def is_field_cleared(value: Any) -> bool:
    if value is None:
        return True
    if not isinstance(value, str):
        return False
    return value == "" or value == CLEAR_STRING_SENTINEL or value.strip() == ""


def is_time_field_cleared(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def normalize_for_display(value: Any) -> Any:
    return None if is_field_cleared(value) else value


def normalize_when_for_display(value: Any) -> Any:
    return None if is_time_field_cleared(value) else value
