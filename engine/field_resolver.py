"""
field_resolver.py — Value / Count Indicator Resolution

Decides which two columns of the aggregated rows drive classification.

Priority, applied independently to each indicator:
    1. explicit configuration (first analysis field = value, second = count)
    2. naming convention ("_sum" suffix for value; "_count" suffix or a
       count keyword for count)
    3. first / second numeric column
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from engine.coercion import Row, is_missing, is_number
from engine.errors import FieldResolutionError

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

VALUE_SUFFIX = "_sum"
COUNT_SUFFIX = "_count"
DISTINCT_SUFFIX = "_distinct_count"
COUNT_KEYWORDS = ("count", "计数", "数量", "次数")

LABEL_SUFFIXES = {
    "_distinct_count": "distinct count",
    "_sum": "total",
    "_count": "count",
    "_max": "max",
    "_min": "min",
}


@dataclass(frozen=True)
class AnalysisField:
    """A column included in profiling, with a short description of its meaning."""
    field_name: str
    description: str = ""


@dataclass(frozen=True)
class ResolvedFields:
    value_field: str
    count_field: str
    value_label: str
    count_label: str
    value_source: str
    count_source: str


def field_label(name: str, description: str = "") -> str:
    """Readable label: the configured description, else the name with its reducer suffix spelled out."""
    if description:
        return description
    if name == "_count":
        return "row count"
    for suffix, word in LABEL_SUFFIXES.items():
        if name.endswith(suffix) and len(name) > len(suffix):
            return f"{name[: -len(suffix)]} {word}"
    return name


def numeric_columns(rows: Sequence[Row]) -> list[str]:
    """Columns (first-row order) holding at least one real number."""
    if not rows:
        return []
    return [
        name for name in rows[0].keys()
        if any(is_number(row.get(name)) for row in rows if not is_missing(row.get(name)))
    ]


class FieldResolver:
    """Resolves the value and count indicators for a set of aggregated rows."""

    def __init__(self, count_keywords: Sequence[str] = COUNT_KEYWORDS):
        self.count_keywords = tuple(k.lower() for k in count_keywords)

    def resolve(
        self,
        rows: Sequence[Row],
        analysis_fields: Sequence[AnalysisField] = (),
        exclude: Sequence[str] = (),
    ) -> ResolvedFields:
        """
        Resolve both indicators.

        Args:
            rows: Aggregated rows
            analysis_fields: Configured analysis fields, in order
            exclude: Columns never chosen by inference (group-by / subject fields)

        Returns:
            ResolvedFields

        Raises:
            FieldResolutionError: If a configured field is absent from the rows,
                or no candidate exists for an indicator
        """
        columns = list(rows[0].keys()) if rows else []
        numeric = [c for c in numeric_columns(rows) if c not in exclude]
        descriptions = {f.field_name: f.description for f in analysis_fields}

        for configured in analysis_fields[:2]:
            if configured.field_name not in columns:
                raise FieldResolutionError(
                    f'Configured analysis field "{configured.field_name}" not found in data. '
                    f"Available: {', '.join(columns)}"
                )

        if analysis_fields:
            value_field, value_source = analysis_fields[0].field_name, "configured"
        else:
            value_field, value_source = self._infer_value(numeric)

        if len(analysis_fields) > 1:
            count_field, count_source = analysis_fields[1].field_name, "configured"
        else:
            count_field, count_source = self._infer_count(numeric, value_field)

        if value_field is None:
            raise FieldResolutionError("No numeric column available for the value indicator")
        if count_field is None:
            raise FieldResolutionError("No numeric column available for the count indicator")

        logger.debug(
            "Resolved value=%s (%s), count=%s (%s)",
            value_field, value_source, count_field, count_source,
        )
        return ResolvedFields(
            value_field=value_field,
            count_field=count_field,
            value_label=field_label(value_field, descriptions.get(value_field, "")),
            count_label=field_label(count_field, descriptions.get(count_field, "")),
            value_source=value_source,
            count_source=count_source,
        )

    def _infer_value(self, numeric: list[str]) -> tuple[str | None, str]:
        for name in numeric:
            if name.endswith(VALUE_SUFFIX):
                return name, "suffix"
        if numeric:
            return numeric[0], "position"
        return None, "none"

    def _infer_count(self, numeric: list[str], value_field: str | None) -> tuple[str | None, str]:
        candidates = [c for c in numeric if c != value_field]
        for name in candidates:
            if name.endswith(COUNT_SUFFIX) and not name.endswith(DISTINCT_SUFFIX):
                return name, "suffix"
        for name in candidates:
            if any(keyword in name.lower() for keyword in self.count_keywords):
                return name, "keyword"
        if candidates:
            return candidates[0], "position"
        return None, "none"
