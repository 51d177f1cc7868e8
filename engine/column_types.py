"""
column_types.py — Column Type Detection

Classifies each column as number, percentage or string. The result is
display metadata only; no algorithm downstream branches on it.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Sequence

from config.settings import AnalysisSettings
from engine.coercion import Rows, column_names, is_missing, is_number, iter_rows, to_float

logger = logging.getLogger(__name__)


class ColumnType(str, Enum):
    NUMBER = "number"
    PERCENTAGE = "percentage"
    STRING = "string"


def _non_missing(values: Sequence[Any]) -> list[Any]:
    return [v for v in values if not is_missing(v)]


def _looks_like_fraction_column(values: Sequence[Any], ratio: float) -> bool:
    """At least `ratio` of the non-empty values parse as numbers in [0, 1]."""
    present = _non_missing(values)
    if not present:
        return False
    in_range = 0
    for value in present:
        number = to_float(value)
        if number is not None and 0 <= number <= 1:
            in_range += 1
    return in_range / len(present) >= ratio


def detect_column_type(
    column: str,
    values: Sequence[Any],
    settings: AnalysisSettings | None = None,
) -> ColumnType:
    """
    Classify a single column from its values.

    Precedence:
        1. percentage keyword in the name and mostly [0, 1] values
        2. any string value containing "%"
        3. mostly numeric with every value strictly inside (0, 1)
        4. mostly numeric
        5. string
    """
    settings = settings or AnalysisSettings()
    name = column.lower()

    if any(keyword in name for keyword in settings.percentage_keywords):
        if _looks_like_fraction_column(values, settings.numeric_ratio):
            return ColumnType.PERCENTAGE

    if any(isinstance(v, str) and "%" in v for v in values):
        return ColumnType.PERCENTAGE

    present = _non_missing(values)
    numbers = [float(v) for v in present if is_number(v)]

    if present and len(numbers) / len(present) >= settings.numeric_ratio:
        low, high = min(numbers), max(numbers)
        if low >= 0 and high <= 1 and low != 0 and high != 1:
            return ColumnType.PERCENTAGE
        return ColumnType.NUMBER

    return ColumnType.STRING


def detect_column_types(
    rows: Rows,
    settings: AnalysisSettings | None = None,
    sample_size: int | None = None,
) -> dict[str, ColumnType]:
    """
    Classify every column discovered from the first row.

    Args:
        rows: Row collection or DataFrame
        settings: Analysis settings (keywords, numeric ratio)
        sample_size: Only inspect the first N rows when given

    Returns:
        {column_name: ColumnType}
    """
    records = list(iter_rows(rows))
    if not records:
        return {}
    if sample_size is not None:
        records = records[:sample_size]

    types = {}
    for column in column_names(records):
        values = [row.get(column) for row in records]
        types[column] = detect_column_type(column, values, settings)

    logger.debug("Detected column types for %d columns", len(types))
    return types
