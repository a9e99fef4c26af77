"""Helpers shared by the tabular node handlers."""

from __future__ import annotations

import math
from collections.abc import Mapping
from datetime import date, datetime, time, timezone
from typing import Any

from ..errors import ValidationError

Row = dict[str, Any]


def is_rows(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(item, Mapping) for item in value)


def extract_rows(inputs: Mapping[str, Any], key: str = "data", required: bool = True) -> list[Row]:
    """Return the row list a handler should work on.

    ``inputs[key]`` wins; otherwise the first list of mappings found among the
    inputs is used.
    """

    value = inputs.get(key)
    if is_rows(value):
        return [dict(row) for row in value]
    for candidate in inputs.values():
        if is_rows(candidate) and candidate:
            return [dict(row) for row in candidate]
    if isinstance(value, list) and not value:
        return []
    if required:
        raise ValidationError("no tabular data provided")
    return []


def to_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    try:
        number = float(str(value).strip())
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def is_empty(value: Any) -> bool:
    return value is None or value == ""


def json_safe(value: Any) -> Any:
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        return None
    return value


def _compare(left: Any, right: Any, op: str) -> bool:
    left_number, right_number = to_number(left), to_number(right)
    if left_number is not None and right_number is not None:
        left, right = left_number, right_number
    try:
        return left > right if op == "gt" else left < right
    except TypeError:
        return False


def _same(left: Any, right: Any) -> bool:
    left_number, right_number = to_number(left), to_number(right)
    if left_number is not None and right_number is not None:
        return left_number == right_number
    return str(left).casefold() == str(right).casefold()


def _range(expected: Any) -> tuple[float, float]:
    """Parse a ``between`` value: ``"low, high"`` or a two item list."""

    parts = expected.split(",") if isinstance(expected, str) else expected
    if not isinstance(parts, (list, tuple)) or len(parts) != 2:
        raise ValidationError("between needs a value of the form 'low, high'")
    low, high = to_number(parts[0]), to_number(parts[1])
    if low is None or high is None:
        raise ValidationError(f"between bounds must be numbers, got {expected!r}")
    return low, high


def to_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, date):
        moment = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            moment = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    # Aware and naive values are compared on the UTC clock.
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment


def _compare_dates(left: Any, right: Any, op: str) -> bool:
    left_moment, right_moment = to_datetime(left), to_datetime(right)
    if left_moment is None or right_moment is None:
        return False
    return left_moment < right_moment if op == "before" else left_moment > right_moment


def matches(row: Mapping[str, Any], condition: Mapping[str, Any]) -> bool:
    """Evaluate one filter condition against a row.

    Text comparisons ignore case. Apart from ``isEmpty`` and ``isNotEmpty``,
    a missing cell never matches.
    """

    field = condition.get("field")
    operator = condition.get("operator", "equals")
    expected = condition.get("value")
    actual = row.get(field) if field is not None else None

    if operator == "isEmpty":
        return is_empty(actual)
    if operator == "isNotEmpty":
        return not is_empty(actual)
    if operator == "between":
        low, high = _range(expected)
        number = to_number(actual)
        return number is not None and low <= number <= high
    if operator not in _VALUE_OPERATORS:
        raise ValidationError(f"unknown condition operator: {operator}")
    if actual is None:
        return False

    if operator == "equals":
        return _same(actual, expected)
    if operator == "notEquals":
        return not _same(actual, expected)
    if operator in ("greaterThan", "lessThan"):
        return _compare(actual, expected, "gt" if operator == "greaterThan" else "lt")
    if operator in ("before", "after"):
        return _compare_dates(actual, expected, operator)

    text, needle = str(actual).casefold(), str(expected).casefold()
    if operator == "contains":
        return needle in text
    if operator == "startsWith":
        return text.startswith(needle)
    return text.endswith(needle)


_VALUE_OPERATORS = frozenset(
    ("equals", "notEquals", "contains", "startsWith", "endsWith", "greaterThan", "lessThan", "before", "after")
)


def filter_rows(rows: list[Row], conditions: list[Mapping[str, Any]], combinator: str = "and") -> list[Row]:
    if not conditions:
        return list(rows)
    check = all if combinator == "and" else any
    return [row for row in rows if check(matches(row, condition) for condition in conditions)]


def _sort_key(value: Any, descending: bool) -> tuple[bool, int, Any]:
    missing = is_empty(value)
    number = to_number(value)
    if number is not None:
        key: tuple[int, Any] = (0, number)
    else:
        key = (1, "" if missing else str(value))
    # Missing values sort last in either direction.
    return (not missing if descending else missing, *key)


def sort_rows(rows: list[Row], sort_by: list[Mapping[str, Any]]) -> list[Row]:
    ordered = list(rows)
    for spec in reversed(sort_by):
        field = spec.get("field")
        descending = spec.get("direction") == "desc"
        ordered.sort(key=lambda row: _sort_key(row.get(field), descending), reverse=descending)
    return ordered
