# aggregation.py — Group-by aggregation with concurrent reducers
"""
aggregation.py — Row Filtering & Group-By Aggregation

Produces one summary row per distinct group key with any mix of
sum / count / max / min / distinct-count reducers.

Numeric parsing is lenient: a value that fails to parse contributes zero
to sums and is ignored by max/min. Sums therefore stay well-defined on
mixed-type spreadsheet input.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import pandas as pd

from engine.coercion import (
    Rows,
    column_series,
    is_missing,
    iter_rows,
    numeric_series,
    to_frame,
)
from engine.group_keys import build_group_key, normalize_group_value
from engine.validators import sanitize_dict_for_json

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

COUNT_FIELD = "_count"
SUM_SUFFIX = "_sum"
COUNT_SUFFIX = "_count"
MAX_SUFFIX = "_max"
MIN_SUFFIX = "_min"
DISTINCT_SUFFIX = "_distinct_count"


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class AggregationConfig:
    """Group-by fields plus independently configured reducer columns."""
    group_by: list[str] = field(default_factory=list)
    sum_columns: list[str] = field(default_factory=list)
    count_columns: list[str] = field(default_factory=list)
    max_columns: list[str] = field(default_factory=list)
    min_columns: list[str] = field(default_factory=list)
    distinct_columns: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict | None) -> "AggregationConfig":
        data = data or {}
        return cls(
            group_by=list(data.get("group_by") or data.get("groupBy") or []),
            sum_columns=list(data.get("sum_columns") or data.get("sumColumns") or []),
            count_columns=list(data.get("count_columns") or data.get("countColumns") or []),
            max_columns=list(data.get("max_columns") or data.get("maxColumns") or []),
            min_columns=list(data.get("min_columns") or data.get("minColumns") or []),
            distinct_columns=list(data.get("distinct_columns") or data.get("distinctColumns") or []),
        )

    def referenced_columns(self) -> set[str]:
        return set(self.group_by).union(
            self.sum_columns, self.count_columns, self.max_columns,
            self.min_columns, self.distinct_columns,
        )


@dataclass
class FilterConfig:
    """
    Pre-aggregation row filter.

    type "unique": keep rows whose column_b value is present and does not
    appear anywhere in column_a.
    type "equals": keep rows whose target_column equals target_value.
    """
    type: str
    column_a: str | None = None
    column_b: str | None = None
    target_column: str | None = None
    target_value: Any = None


# =============================================================================
# FILTERING
# =============================================================================

def filter_rows(rows: Rows, config: FilterConfig | None) -> list[dict]:
    """
    Apply a FilterConfig; rows are returned unchanged when it is incomplete.

    Values are compared through normalize_group_value, so 3 matches "3".
    """
    records = list(iter_rows(rows))
    if config is None:
        return records

    if config.type == "unique" and config.column_a and config.column_b:
        seen = {
            normalize_group_value(row.get(config.column_a))
            for row in records
            if not is_missing(row.get(config.column_a))
        }
        filtered = [
            row for row in records
            if not is_missing(row.get(config.column_b))
            and normalize_group_value(row.get(config.column_b)) not in seen
        ]
    elif config.type == "equals" and config.target_column:
        target = normalize_group_value(config.target_value)
        filtered = [
            row for row in records
            if normalize_group_value(row.get(config.target_column)) == target
        ]
    else:
        logger.debug("Filter %r incomplete, returning rows unchanged", config.type)
        return records

    logger.debug("Filter %s kept %d of %d rows", config.type, len(filtered), len(records))
    return filtered


# =============================================================================
# AGGREGATION
# =============================================================================

def _present_mask(series: pd.Series) -> pd.Series:
    return ~series.map(is_missing).astype(bool)


def aggregate(rows: Rows, config: AggregationConfig) -> list[dict]:
    """
    Group rows by config.group_by and apply every configured reducer.

    Args:
        rows: Row collection or DataFrame
        config: AggregationConfig

    Returns:
        One dict per group, in first-seen order:
        {
            <group_by fields>: first value seen for the group,
            _count: rows in group,
            <f>_sum: float,
            <f>_count: non-empty occurrences,
            <f>_max / <f>_min: float | None,
            <f>_distinct_count: distinct non-empty values
        }
        With an empty group_by the rows are passed through unchanged.
    """
    if not config.group_by:
        return list(iter_rows(rows))

    frame = to_frame(rows)
    if frame.empty:
        return []

    group_by = list(config.group_by)
    keys = pd.Series(
        [build_group_key(values) for values in zip(*(column_series(frame, c) for c in group_by))],
        index=frame.index,
        dtype=object,
    )
    first_seen = ~keys.duplicated()

    result = pd.DataFrame(
        {c: column_series(frame, c)[first_seen].to_numpy() for c in group_by},
        index=pd.Index(keys[first_seen].to_numpy(), dtype=object),
    )
    result[COUNT_FIELD] = keys.groupby(keys, sort=False).size()

    for column in config.sum_columns:
        numbers = numeric_series(frame, column).fillna(0.0)
        result[f"{column}{SUM_SUFFIX}"] = numbers.groupby(keys, sort=False).sum()

    for column in config.count_columns:
        present = _present_mask(column_series(frame, column)).astype(int)
        result[f"{column}{COUNT_SUFFIX}"] = present.groupby(keys, sort=False).sum()

    for column in config.max_columns:
        numbers = numeric_series(frame, column)
        result[f"{column}{MAX_SUFFIX}"] = numbers.groupby(keys, sort=False).max()

    for column in config.min_columns:
        numbers = numeric_series(frame, column)
        result[f"{column}{MIN_SUFFIX}"] = numbers.groupby(keys, sort=False).min()

    for column in config.distinct_columns:
        values = column_series(frame, column)
        present = _present_mask(values)
        distinct = values[present].groupby(keys[present], sort=False).nunique()
        result[f"{column}{DISTINCT_SUFFIX}"] = distinct.reindex(result.index, fill_value=0)

    records = sanitize_dict_for_json(result.to_dict(orient="records"))
    for record in records:
        record[COUNT_FIELD] = int(record[COUNT_FIELD])
        for column in config.count_columns:
            record[f"{column}{COUNT_SUFFIX}"] = int(record[f"{column}{COUNT_SUFFIX}"])
        for column in config.distinct_columns:
            record[f"{column}{DISTINCT_SUFFIX}"] = int(record[f"{column}{DISTINCT_SUFFIX}"])

    logger.debug("Aggregated %d rows into %d groups by %s", len(frame), len(records), group_by)
    return records
