"""
group_keys.py — Group Value Normalization

A group value can arrive as a number, a numeric string or a padded string
depending on where the rows came from. Every place that builds or looks up
a group key goes through normalize_group_value so that 3, 3.0, "3" and " 3 "
all land on the same key.
"""

from __future__ import annotations

import math
from typing import Any, Generic, Iterable, Iterator, TypeVar

from engine.coercion import is_missing, is_number, to_float, to_python

T = TypeVar("T")

MISSING_GROUP = "null"
KEY_DELIMITER = "|"


def _number_key(number: float) -> str:
    if number.is_integer():
        return str(int(number))
    return repr(number)


def normalize_group_value(value: Any) -> str:
    """
    Canonical string form of a group value.

    Missing values map to "null", booleans to "true"/"false" and strings
    are trimmed. Numbers and numeric strings share one form: integral
    values drop their fractional part, so 3, "3.0" and " 3 " all give "3".
    """
    value = to_python(value)
    if is_missing(value):
        return MISSING_GROUP
    if isinstance(value, bool):
        return "true" if value else "false"
    if is_number(value):
        return _number_key(float(value))
    text = str(value).strip()
    number = to_float(text)
    if number is not None:
        return _number_key(number)
    return text


def build_group_key(values: Iterable[Any]) -> str:
    """Join normalized values into a composite key."""
    return KEY_DELIMITER.join(normalize_group_value(v) for v in values)


def _numeric_form(value: Any) -> float | None:
    number = to_float(to_python(value))
    if number is None or not math.isfinite(number):
        return None
    return number


class GroupKeyIndex(Generic[T]):
    """
    Mapping from group values to items with numeric-equality fallback.

    Lookup first tries the canonical string key, then compares numerically
    so "1.50" finds an entry stored under 1.5.
    """

    def __init__(self):
        self._by_key: dict[str, T] = {}
        self._by_number: dict[float, str] = {}

    def add(self, value: Any, item: T) -> str:
        key = normalize_group_value(value)
        self._by_key[key] = item
        number = _numeric_form(key)
        if number is not None:
            self._by_number.setdefault(number, key)
        return key

    def get(self, value: Any, default: T | None = None) -> T | None:
        key = normalize_group_value(value)
        if key in self._by_key:
            return self._by_key[key]
        number = _numeric_form(key)
        if number is not None and number in self._by_number:
            return self._by_key[self._by_number[number]]
        return default

    def __contains__(self, value: Any) -> bool:
        return self.get(value) is not None

    def __len__(self) -> int:
        return len(self._by_key)

    def __iter__(self) -> Iterator[str]:
        return iter(self._by_key)

    def items(self):
        return self._by_key.items()
