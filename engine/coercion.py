# coercion.py — Lenient value handling shared by every engine stage
"""
coercion.py — Value Coercion Helpers

Spreadsheet input mixes numbers, numeric strings, blanks and text in the
same column. These helpers define, in one place, what counts as missing,
what counts as a number, and how rows become a DataFrame.
"""

from __future__ import annotations

import math
from numbers import Number
from typing import Any, Iterable, Mapping, Sequence

import numpy as np
import pandas as pd


Row = Mapping[str, Any]
Rows = Sequence[Row] | pd.DataFrame


def is_missing(value: Any) -> bool:
    """True for None, NaN/NaT and empty strings."""
    if value is None:
        return True
    if isinstance(value, str):
        return value == ""
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def is_number(value: Any) -> bool:
    """True for real, finite numbers that are not booleans."""
    if isinstance(value, (bool, np.bool_)):
        return False
    if not isinstance(value, Number):
        return False
    try:
        return math.isfinite(float(value))
    except (TypeError, ValueError, OverflowError):
        return False


def to_float(value: Any) -> float | None:
    """
    Coerce a value to a finite float.

    Numbers pass through, numeric strings are parsed after trimming.
    Returns None for anything else (including NaN and infinities).
    """
    if is_number(value):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = float(text)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def to_python(value: Any) -> Any:
    """Unwrap numpy scalars into plain Python values."""
    if isinstance(value, np.generic):
        return value.item()
    return value


def iter_rows(rows: Rows) -> Iterable[dict]:
    """Yield each row as a fresh dict, whatever the container."""
    if isinstance(rows, pd.DataFrame):
        for record in rows.to_dict(orient="records"):
            yield {k: to_python(v) for k, v in record.items()}
        return
    for row in rows:
        yield dict(row)


def to_frame(rows: Rows) -> pd.DataFrame:
    """Build an object-typed DataFrame from rows, preserving field order."""
    if isinstance(rows, pd.DataFrame):
        return rows.astype(object)
    records = list(rows)
    if not records:
        return pd.DataFrame()
    return pd.DataFrame.from_records(records).astype(object)


def column_names(rows: Rows) -> list[str]:
    """Field names, discovered from the first row."""
    if isinstance(rows, pd.DataFrame):
        return [str(c) for c in rows.columns]
    if len(rows) == 0:
        return []
    return list(rows[0].keys())


def column_series(frame: pd.DataFrame, column: str) -> pd.Series:
    """Return a column, or an all-missing series when the column is absent."""
    if column in frame.columns:
        return frame[column]
    return pd.Series([None] * len(frame), index=frame.index, dtype=object)


def numeric_series(frame: pd.DataFrame, column: str) -> pd.Series:
    """Leniently coerce a column to floats; unparseable values become NaN."""
    coerced = column_series(frame, column).map(to_float)
    return pd.to_numeric(coerced, errors="coerce").astype(float)


def numeric_values(rows: Iterable[Row], field: str, lenient: bool = False) -> np.ndarray:
    """
    Extract the numeric values of one field.

    Args:
        rows: Rows to read
        field: Field name
        lenient: Also accept numeric strings

    Returns:
        1-D float array, missing and non-numeric values dropped
    """
    values = []
    for row in rows:
        raw = row.get(field)
        if lenient:
            number = to_float(raw)
            if number is not None:
                values.append(number)
        elif is_number(raw):
            values.append(float(raw))
    return np.asarray(values, dtype=float)
