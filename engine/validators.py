# validators.py — Input validation & JSON sanitization
# Row collection checks, run configuration guards, output cleaning
"""
validators.py — Input Validation

Production implementation for:
- Row collection validation
- Aggregation / method / profile configuration checks
- JSON-safe output sanitization
"""

from __future__ import annotations

import dataclasses
import math
from enum import Enum
from typing import Any

import numpy as np
import pandas as pd


# =============================================================================
# CONSTANTS
# =============================================================================

VALID_METHODS = {"iqr", "stddev"}
VALID_FILTER_TYPES = {"unique", "equals"}


# =============================================================================
# ROW VALIDATION
# =============================================================================

def validate_rows(rows: Any) -> tuple[bool, str | None]:
    """
    Validate that a row collection is suitable for analysis.

    Returns:
        (is_valid, error_message)
    """
    if rows is None:
        return False, "No data provided"

    if isinstance(rows, pd.DataFrame):
        if len(rows.columns) == 0:
            return False, "Data has no columns"
        if len(rows) == 0:
            return False, "Data has no rows"
        return True, None

    if isinstance(rows, (str, bytes)) or not hasattr(rows, "__len__"):
        return False, "Data must be a sequence of rows"

    if len(rows) == 0:
        return False, "Data has no rows"

    first = rows[0]
    if not hasattr(first, "keys"):
        return False, "Each row must be a mapping of field name to value"

    if len(first.keys()) == 0:
        return False, "Data has no columns"

    return True, None


# =============================================================================
# CONFIGURATION VALIDATION
# =============================================================================

def validate_aggregation_config(config: Any, columns: list[str]) -> tuple[bool, str | None]:
    """
    Check that every group-by field exists in the data.

    Reducer columns may be absent; they aggregate as all-missing.
    """
    if config is None:
        return True, None

    missing = [c for c in config.group_by if c not in columns]
    if missing:
        return False, f"Group-by field(s) not found in data: {', '.join(missing)}"

    return True, None


def validate_filter_config(config: Any) -> tuple[bool, str | None]:
    """Check a FilterConfig's type."""
    if config is None:
        return True, None

    if config.type not in VALID_FILTER_TYPES:
        return False, f"Unknown filter type: {config.type}. Allowed: {', '.join(sorted(VALID_FILTER_TYPES))}"

    return True, None


def validate_method_config(config: Any) -> tuple[bool, str | None]:
    """Check the analysis method and that multipliers are non-negative finite numbers."""
    if config is None:
        return True, None

    method = getattr(config.method, "value", config.method)
    if method not in VALID_METHODS:
        return False, f"Unknown analysis method: {method}. Allowed: {', '.join(sorted(VALID_METHODS))}"

    for label, pair in (("iqr", config.iqr), ("stddev", config.stddev)):
        for name in ("upper", "lower"):
            value = getattr(pair, name)
            if not isinstance(value, (int, float)) or not math.isfinite(value) or value < 0:
                return False, f"{label} {name} multiplier must be a non-negative number, got {value!r}"

    return True, None


def validate_profile_config(config: Any, columns: list[str]) -> tuple[bool, str | None]:
    """Check the profile group-by field exists when one is configured."""
    if config is None or not config.group_by_field:
        return True, None

    if config.group_by_field not in columns:
        return False, f'Group field "{config.group_by_field}" not found in aggregated data'

    return True, None


# =============================================================================
# OUTPUT SANITIZATION
# =============================================================================

def sanitize_dict_for_json(obj: Any) -> Any:
    """
    Recursively sanitize a dict/list for JSON serialization.
    Handles numpy types, NaN, Inf, enums and dataclasses.
    """
    if obj is None:
        return None

    if isinstance(obj, Enum):
        return obj.value

    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return sanitize_dict_for_json(dataclasses.asdict(obj))

    if isinstance(obj, dict):
        return {k: sanitize_dict_for_json(v) for k, v in obj.items()}

    if isinstance(obj, (list, tuple)):
        return [sanitize_dict_for_json(v) for v in obj]

    if isinstance(obj, (np.integer,)):
        return int(obj)

    if isinstance(obj, (np.floating,)):
        if np.isnan(obj) or np.isinf(obj):
            return None
        return float(obj)

    if isinstance(obj, np.ndarray):
        return sanitize_dict_for_json(obj.tolist())

    if isinstance(obj, (np.bool_,)):
        return bool(obj)

    if isinstance(obj, float):
        if obj != obj or obj == float("inf") or obj == float("-inf"):  # NaN check
            return None
        return obj

    return obj
