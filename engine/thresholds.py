# thresholds.py — IQR / mean-stddev thresholds and five-way classification
"""
thresholds.py — Threshold Classifier

Computes high/low bounds for a value indicator and a count indicator, then
assigns each row one of five categories:

    double-high          value >= high_v and count >= high_c     risk high
    high-on-value-field  value >= high_v                          risk high
    high-on-count-field  count >= high_c                          risk high
    middle               low_v < value < high_v, low_c < count < high_c   risk low
    low                  anything else                            risk low

Rows whose indicators are not numeric are labelled anomalous (risk medium).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Sequence

import numpy as np

from config.settings import AnalysisSettings
from engine.coercion import Row, to_float
from engine.errors import ConfigError, ThresholdError

logger = logging.getLogger(__name__)


# =============================================================================
# ENUMS
# =============================================================================

class AnalysisMethod(str, Enum):
    IQR = "iqr"
    STDDEV = "stddev"


class Category(str, Enum):
    DOUBLE_HIGH = "double-high"
    HIGH_ON_VALUE = "high-on-value-field"
    HIGH_ON_COUNT = "high-on-count-field"
    MIDDLE = "middle"
    LOW = "low"
    ANOMALOUS = "anomalous"
    UNKNOWN = "unknown"


class RiskLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    UNKNOWN = "unknown"


# Reporting order for the five regular categories
CATEGORY_ORDER = (
    Category.DOUBLE_HIGH,
    Category.HIGH_ON_VALUE,
    Category.HIGH_ON_COUNT,
    Category.MIDDLE,
    Category.LOW,
)

CATEGORY_RISK = {
    Category.DOUBLE_HIGH: RiskLevel.HIGH,
    Category.HIGH_ON_VALUE: RiskLevel.HIGH,
    Category.HIGH_ON_COUNT: RiskLevel.HIGH,
    Category.MIDDLE: RiskLevel.LOW,
    Category.LOW: RiskLevel.LOW,
    Category.ANOMALOUS: RiskLevel.MEDIUM,
    Category.UNKNOWN: RiskLevel.UNKNOWN,
}


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class MultiplierPair:
    upper: float
    lower: float


@dataclass
class MethodConfig:
    """Chosen method plus the multiplier pair for each method."""
    method: AnalysisMethod = AnalysisMethod.IQR
    iqr: MultiplierPair = field(default_factory=lambda: MultiplierPair(1.5, 0.0))
    stddev: MultiplierPair = field(default_factory=lambda: MultiplierPair(2.0, 2.0))

    def __post_init__(self):
        try:
            self.method = AnalysisMethod(self.method)
        except ValueError as e:
            raise ConfigError(f"Unknown analysis method: {self.method!r}") from e

    @classmethod
    def from_settings(cls, settings: AnalysisSettings, method: AnalysisMethod | str = AnalysisMethod.IQR) -> "MethodConfig":
        return cls(
            method=method,
            iqr=MultiplierPair(settings.iqr_upper_multiplier, settings.iqr_lower_multiplier),
            stddev=MultiplierPair(settings.stddev_upper_multiplier, settings.stddev_lower_multiplier),
        )

    @classmethod
    def from_dict(cls, data: dict | None, settings: AnalysisSettings | None = None) -> "MethodConfig":
        data = data or {}
        base = cls.from_settings(settings or AnalysisSettings())
        method = data.get("method", base.method)

        def pair(key: str, default: MultiplierPair) -> MultiplierPair:
            raw = data.get(key) or {}
            return MultiplierPair(
                upper=float(raw.get("upper", raw.get("upperMultiplier", default.upper))),
                lower=float(raw.get("lower", raw.get("lowerMultiplier", default.lower))),
            )

        return cls(method=method, iqr=pair("iqr", base.iqr), stddev=pair("stddev", base.stddev))

    @property
    def multipliers(self) -> MultiplierPair:
        return self.iqr if self.method == AnalysisMethod.IQR else self.stddev


# =============================================================================
# THRESHOLDS
# =============================================================================

@dataclass(frozen=True)
class FieldThresholds:
    """Bounds for one indicator; quartile or moment fields depend on the method."""
    high: float
    low: float
    q1: float | None = None
    q2: float | None = None
    q3: float | None = None
    iqr: float | None = None
    mean: float | None = None
    stddev: float | None = None


@dataclass(frozen=True)
class ClassificationParams:
    value_field: str
    count_field: str
    method: AnalysisMethod
    upper_multiplier: float
    lower_multiplier: float
    value: FieldThresholds
    count: FieldThresholds
    value_label: str = ""
    count_label: str = ""
    sample_size: int = 0

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "method": self.method.value,
            "value_field": self.value_field,
            "value_label": self.value_label or self.value_field,
            "count_field": self.count_field,
            "count_label": self.count_label or self.count_field,
            "upper_multiplier": self.upper_multiplier,
            "lower_multiplier": self.lower_multiplier,
            "sample_size": self.sample_size,
        }
        for prefix, thresholds in (("value", self.value), ("count", self.count)):
            data[f"{prefix}_high_threshold"] = thresholds.high
            data[f"{prefix}_low_threshold"] = thresholds.low
            if self.method == AnalysisMethod.IQR:
                data[f"{prefix}_q1"] = thresholds.q1
                data[f"{prefix}_q2"] = thresholds.q2
                data[f"{prefix}_q3"] = thresholds.q3
                data[f"{prefix}_iqr"] = thresholds.iqr
            else:
                data[f"{prefix}_mean"] = thresholds.mean
                data[f"{prefix}_stddev"] = thresholds.stddev
        return data


def compute_field_thresholds(
    values: Sequence[float] | np.ndarray,
    method: AnalysisMethod,
    multipliers: MultiplierPair,
) -> FieldThresholds:
    """
    Compute high/low bounds for one indicator.

    IQR quartiles index the sorted sample at floor(n*0.25), floor(n*0.5)
    and floor(n*0.75) with no interpolation. The stddev method uses the
    population standard deviation.

    Raises:
        ThresholdError: If the sample is empty
    """
    array = np.asarray(values, dtype=float)
    array = array[np.isfinite(array)]
    n = array.size
    if n == 0:
        raise ThresholdError("No numeric values to compute thresholds from")

    if method == AnalysisMethod.IQR:
        ordered = np.sort(array)
        q1 = float(ordered[int(math.floor(n * 0.25))])
        q2 = float(ordered[int(math.floor(n * 0.5))])
        q3 = float(ordered[int(math.floor(n * 0.75))])
        iqr = q3 - q1
        return FieldThresholds(
            high=q3 + multipliers.upper * iqr,
            low=q1 - multipliers.lower * iqr,
            q1=q1, q2=q2, q3=q3, iqr=iqr,
        )

    mean = float(array.mean())
    stddev = float(array.std())
    return FieldThresholds(
        high=mean + multipliers.upper * stddev,
        low=mean - multipliers.lower * stddev,
        mean=mean, stddev=stddev,
    )


def build_classification_params(
    rows: Sequence[Row],
    value_field: str,
    count_field: str,
    method_config: MethodConfig | None = None,
    value_label: str = "",
    count_label: str = "",
) -> ClassificationParams:
    """
    Compute the parameter set for one collection of rows.

    Raises:
        ThresholdError: If either indicator has no numeric values
    """
    method_config = method_config or MethodConfig()
    multipliers = method_config.multipliers

    values = [v for v in (to_float(row.get(value_field)) for row in rows) if v is not None]
    counts = [c for c in (to_float(row.get(count_field)) for row in rows) if c is not None]

    try:
        value_thresholds = compute_field_thresholds(values, method_config.method, multipliers)
        count_thresholds = compute_field_thresholds(counts, method_config.method, multipliers)
    except ThresholdError as e:
        raise ThresholdError(
            f"Cannot compute {method_config.method.value} thresholds for "
            f'"{value_field}" / "{count_field}": {e}'
        ) from e

    return ClassificationParams(
        value_field=value_field,
        count_field=count_field,
        method=method_config.method,
        upper_multiplier=multipliers.upper,
        lower_multiplier=multipliers.lower,
        value=value_thresholds,
        count=count_thresholds,
        value_label=value_label,
        count_label=count_label,
        sample_size=len(rows),
    )


# =============================================================================
# CLASSIFICATION
# =============================================================================

@dataclass(frozen=True)
class Classification:
    category: Category
    risk_level: RiskLevel


@dataclass(frozen=True)
class ClassificationRule:
    category: Category
    condition: str
    risk_level: RiskLevel
    description: str


def classify_values(value: float, count: float, params: ClassificationParams) -> Category:
    """Apply the five-branch decision; the first matching branch wins."""
    high_value = value >= params.value.high
    high_count = count >= params.count.high
    low_value = value <= params.value.low
    low_count = count <= params.count.low

    if high_value and high_count:
        return Category.DOUBLE_HIGH
    if high_value:
        return Category.HIGH_ON_VALUE
    if high_count:
        return Category.HIGH_ON_COUNT
    if not low_value and not low_count:
        return Category.MIDDLE
    return Category.LOW


class ThresholdClassifier:
    """Classifies rows against a ClassificationParams set."""

    def classify(self, row: Row, params: ClassificationParams) -> Classification:
        value = to_float(row.get(params.value_field))
        count = to_float(row.get(params.count_field))
        if value is None or count is None:
            logger.warning(
                "Anomalous row: %s=%r, %s=%r are not both numeric",
                params.value_field, row.get(params.value_field),
                params.count_field, row.get(params.count_field),
            )
            return Classification(Category.ANOMALOUS, RiskLevel.MEDIUM)

        category = classify_values(value, count, params)
        return Classification(category, CATEGORY_RISK[category])

    def rules(self, params: ClassificationParams) -> list[ClassificationRule]:
        """Human-readable rules with the actual threshold values filled in."""
        v_name = params.value_label or params.value_field
        c_name = params.count_label or params.count_field
        v_high, v_low = _fmt(params.value.high), _fmt(params.value.low)
        c_high, c_low = _fmt(params.count.high), _fmt(params.count.low)

        return [
            ClassificationRule(
                Category.DOUBLE_HIGH,
                f"{v_name} ≥ {v_high} and {c_name} ≥ {c_high}",
                RiskLevel.HIGH,
                f"High on both {v_name} and {c_name}",
            ),
            ClassificationRule(
                Category.HIGH_ON_VALUE,
                f"{v_name} ≥ {v_high} and {c_name} < {c_high}",
                RiskLevel.HIGH,
                f"High {v_name} with ordinary {c_name}",
            ),
            ClassificationRule(
                Category.HIGH_ON_COUNT,
                f"{c_name} ≥ {c_high} and {v_name} < {v_high}",
                RiskLevel.HIGH,
                f"High {c_name} with ordinary {v_name}",
            ),
            ClassificationRule(
                Category.MIDDLE,
                f"{v_low} < {v_name} < {v_high} and {c_low} < {c_name} < {c_high}",
                RiskLevel.LOW,
                "Inside the normal range on both indicators",
            ),
            ClassificationRule(
                Category.LOW,
                f"{v_name} ≤ {v_low} or {c_name} ≤ {c_low}",
                RiskLevel.LOW,
                "At or below the low bound on at least one indicator",
            ),
        ]


def _fmt(number: float) -> str:
    if float(number).is_integer():
        return f"{int(number):,}"
    return f"{number:,.2f}"
