# normality.py — Normality test battery and distribution identification
"""
normality.py — Statistical Test Suite

Per numeric field (optionally per group of rows):
- Skewness / excess kurtosis (population moments)
- Kolmogorov-Smirnov test against a fitted normal
- Anderson-Darling test with small-sample correction
- Z-score moment test on skewness and kurtosis
- Best-fit distribution heuristic when KS and Z-score both reject

Samples larger than the configured cap are down-sampled first. Results are
exploratory diagnostics, not hypothesis-test-grade inference at scale.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Sequence

import numpy as np
from scipy import stats

from config.settings import AnalysisSettings
from engine.coercion import Row, is_missing, is_number, numeric_values
from engine.errors import AnalysisCancelled
from engine.group_keys import KEY_DELIMITER, normalize_group_value

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

KS_MIN_N = 5
AD_MIN_N = 3
AD_MAX_N = 5000
ZSCORE_MIN_N = 8
MOMENTS_MIN_N = 3

Z_CRITICAL = 1.96
KS_MAX_TERMS = 200
KS_TERM_TOLERANCE = 1e-15
KS_P_FLOOR = 1e-4
KS_P_CEIL = 1 - 1e-4
AD_P_FLOOR = 1e-10
LARGE_SAMPLE_NOTE_N = 200

NO_DISTRIBUTION = "none"

CONSTANT_MESSAGE = "All values identical; treated as normal"

DISTRIBUTION_NOTES = {
    "log-normal": "Right-skewed; close to normal after a log transform. Typical of incomes and prices.",
    "exponential": "Rapidly decaying right-skewed shape. Typical of waiting times and failure intervals.",
    "gamma": "Flexible right-skewed shape that includes log-normal-like and exponential cases.",
    "poisson": "Discrete non-negative integers. Typical of event counts.",
}


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class TestOutcome:
    statistic: float
    p_value: float
    is_normal: bool
    interpretation: str
    applicable: bool = True


@dataclass
class DistributionFit:
    best_fit: str
    log_normal: float
    exponential: float
    gamma: float
    poisson: float
    interpretation: str


@dataclass
class FieldTestResult:
    field_name: str
    sample_size: int
    skewness: float
    kurtosis: float
    ks_test: TestOutcome
    z_score_test: TestOutcome
    anderson_darling_test: TestOutcome
    distribution_fit: DistributionFit | None = None
    sampled: bool = False

    @property
    def is_normal(self) -> bool:
        """A field counts as normal when both KS and Z-score accept."""
        return self.ks_test.is_normal and self.z_score_test.is_normal

    def to_dict(self) -> dict:
        data = asdict(self)
        data["is_normal"] = self.is_normal
        return data


@dataclass
class TestSummary:
    total_fields: int = 0
    normal_fields: int = 0
    non_normal_fields: int = 0
    most_common_distribution: str = NO_DISTRIBUTION


@dataclass
class OverallSummary(TestSummary):
    total_groups: int = 0


@dataclass
class GroupTestResults:
    group_key: str
    group_name: str
    row_count: int
    results: list[FieldTestResult]
    summary: TestSummary


@dataclass
class NormalityTestResults:
    has_groups: bool
    group_by_fields: list[str] = field(default_factory=list)
    results: list[FieldTestResult] = field(default_factory=list)
    summary: TestSummary | None = None
    group_results: list[GroupTestResults] = field(default_factory=list)
    overall_summary: OverallSummary | None = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "has_groups": self.has_groups,
            "group_by_fields": list(self.group_by_fields),
        }
        if self.has_groups:
            data["group_results"] = [
                {
                    "group_key": g.group_key,
                    "group_name": g.group_name,
                    "row_count": g.row_count,
                    "results": [r.to_dict() for r in g.results],
                    "summary": asdict(g.summary),
                }
                for g in self.group_results
            ]
            data["overall_summary"] = asdict(self.overall_summary) if self.overall_summary else None
        else:
            data["results"] = [r.to_dict() for r in self.results]
            data["summary"] = asdict(self.summary) if self.summary else None
        return data


# =============================================================================
# HELPERS
# =============================================================================

def _not_applicable(reason: str, is_normal: bool, p_value: float = 1.0) -> TestOutcome:
    return TestOutcome(
        statistic=0.0,
        p_value=p_value,
        is_normal=is_normal,
        interpretation=reason,
        applicable=False,
    )


def _constant_outcome() -> TestOutcome:
    return TestOutcome(statistic=0.0, p_value=1.0, is_normal=True, interpretation=CONSTANT_MESSAGE)


def _is_constant(values: np.ndarray) -> bool:
    return values.size > 0 and bool(np.all(values == values[0]))


def sample_values(
    values: Sequence[float] | np.ndarray,
    max_size: int,
    rng: np.random.Generator | None = None,
) -> np.ndarray:
    """
    Down-sample to at most max_size points.

    The index range is split into max_size equal strata and one index is
    drawn uniformly from each, so the sample covers the whole input.
    """
    array = np.asarray(values, dtype=float)
    n = array.size
    if n <= max_size:
        return array

    rng = rng or np.random.default_rng()
    step = n / max_size
    offsets = np.arange(max_size) * step + rng.random(max_size) * step
    indices = np.minimum(np.floor(offsets).astype(int), n - 1)
    return array[indices]


# =============================================================================
# MOMENTS
# =============================================================================

def skewness_kurtosis(values: Sequence[float] | np.ndarray) -> tuple[float, float]:
    """
    Population skewness and excess kurtosis.

    Returns (0, 0) for fewer than three values or zero variance.
    """
    array = np.asarray(values, dtype=float)
    if array.size < MOMENTS_MIN_N or _is_constant(array):
        return 0.0, 0.0

    skew = float(stats.skew(array, bias=True))
    kurt = float(stats.kurtosis(array, fisher=True, bias=True))
    if not (math.isfinite(skew) and math.isfinite(kurt)):
        return 0.0, 0.0
    return skew, kurt


# =============================================================================
# KOLMOGOROV-SMIRNOV
# =============================================================================

def kolmogorov_p_value(d: float, n: int) -> float:
    """
    Asymptotic two-sided Kolmogorov p-value.

    p = 2 * sum_{k>=1} (-1)^(k-1) * exp(-2 k^2 lambda^2), lambda = d * sqrt(n)
    """
    lam = d * math.sqrt(n)
    if lam <= 0:
        return 1.0

    total = 0.0
    for k in range(1, KS_MAX_TERMS + 1):
        term = (-1) ** (k - 1) * math.exp(-2 * k * k * lam * lam)
        total += term
        if abs(term) < KS_TERM_TOLERANCE:
            break
    return 2 * total


def ks_test(values: Sequence[float] | np.ndarray, alpha: float = 0.05) -> TestOutcome:
    """
    KS test against a normal with the sample mean and (n-1) standard deviation.

    Requires n >= 5. The p-value is clamped to [1e-4, 1 - 1e-4].
    """
    array = np.asarray(values, dtype=float)
    n = array.size

    if _is_constant(array):
        return _constant_outcome()
    if n < KS_MIN_N:
        return _not_applicable(f"Sample too small for KS test (n={n} < {KS_MIN_N})", is_normal=True)

    mean = float(array.mean())
    std = float(array.std(ddof=1))

    sorted_values = np.sort(array)
    theoretical = stats.norm.cdf(sorted_values, loc=mean, scale=std)
    upper_step = np.arange(1, n + 1) / n
    lower_step = np.arange(0, n) / n
    d = float(max(np.max(np.abs(upper_step - theoretical)), np.max(np.abs(lower_step - theoretical))))

    p_value = min(max(kolmogorov_p_value(d, n), KS_P_FLOOR), KS_P_CEIL)
    is_normal = p_value > alpha

    if is_normal:
        interpretation = f"Consistent with a normal distribution (p={p_value:.6f} > {alpha})"
    else:
        interpretation = f"Not normally distributed (p={p_value:.6f} <= {alpha})"

    return TestOutcome(statistic=d, p_value=p_value, is_normal=is_normal, interpretation=interpretation)


# =============================================================================
# ANDERSON-DARLING
# =============================================================================

def _anderson_darling_p_value(a2_star: float) -> float:
    """Piecewise p-value approximation keyed on the corrected statistic."""
    a = a2_star
    if a <= 0.2:
        p = 1 - math.exp(-13.436 + 101.14 * a - 223.73 * a ** 2)
    elif a <= 0.34:
        p = 1 - math.exp(-8.318 + 42.796 * a - 59.938 * a ** 2)
    elif a <= 0.6:
        p = math.exp(0.9177 - 4.279 * a - 1.38 * a ** 2)
    elif a <= 0.75:
        p = math.exp(1.2937 - 5.524 * a + 0.0097 * a ** 2)
    elif a <= 1.0:
        p = math.exp(0.9253 - 3.790 * a - 1.391 * a ** 2)
    else:
        p = math.exp(0.7763 - 3.423 * a - 0.503 * a ** 2)
    return min(max(p, AD_P_FLOOR), 1.0)


def anderson_darling_test(values: Sequence[float] | np.ndarray, alpha: float = 0.05) -> TestOutcome:
    """
    Anderson-Darling normality test.

    Valid for 3 <= n <= 5000; outside that range the result is marked
    not applicable with is_normal=False.
    """
    array = np.asarray(values, dtype=float)
    n = array.size

    if _is_constant(array):
        return _constant_outcome()
    if n < AD_MIN_N:
        return _not_applicable(f"Sample too small for Anderson-Darling test (n={n} < {AD_MIN_N})", is_normal=False)
    if n > AD_MAX_N:
        return _not_applicable(
            f"Sample too large for Anderson-Darling test (n={n} > {AD_MAX_N}); use the KS result",
            is_normal=False,
            p_value=0.0,
        )

    sorted_values = np.sort(array)
    mean = float(sorted_values.mean())
    std = float(sorted_values.std(ddof=1))
    z = (sorted_values - mean) / std

    i = np.arange(1, n + 1)
    log_cdf = stats.norm.logcdf(z)
    log_sf_reversed = stats.norm.logsf(z[::-1])
    a2 = -n - float(np.sum((2 * i - 1) * (log_cdf + log_sf_reversed))) / n
    a2_star = a2 * (1 + 0.75 / n + 2.25 / n ** 2)

    p_value = _anderson_darling_p_value(a2_star)
    is_normal = p_value > alpha

    comparison = ">" if is_normal else "<="
    verdict = "Consistent with a normal distribution" if is_normal else "Not normally distributed"
    interpretation = f"{verdict} (A2*={a2_star:.4f}, p={p_value:.4f} {comparison} {alpha})"

    return TestOutcome(statistic=a2_star, p_value=p_value, is_normal=is_normal, interpretation=interpretation)


# =============================================================================
# Z-SCORE (MOMENT) TEST
# =============================================================================

def z_score_test(values: Sequence[float] | np.ndarray, alpha: float = 0.05) -> TestOutcome:
    """
    Normality from standardized skewness and kurtosis.

    Normal only when both |z_skew| and |z_kurt| are below 1.96. The
    statistic is the larger |z|; the p-value is the smaller two-tailed p.
    Requires n >= 8.
    """
    array = np.asarray(values, dtype=float)
    n = array.size

    if _is_constant(array):
        return _constant_outcome()
    if n < ZSCORE_MIN_N:
        return _not_applicable(f"Sample too small for Z-score test (n={n} < {ZSCORE_MIN_N})", is_normal=True)

    skew, kurt = skewness_kurtosis(array)

    se_skew = math.sqrt(6 * n * (n - 1) / ((n - 2) * (n + 1) * (n + 3)))
    se_kurt = math.sqrt(24 * n * (n - 1) ** 2 / ((n - 3) * (n - 2) * (n + 3) * (n + 5)))
    z_skew = skew / se_skew
    z_kurt = kurt / se_kurt

    skew_ok = abs(z_skew) < Z_CRITICAL
    kurt_ok = abs(z_kurt) < Z_CRITICAL
    is_normal = skew_ok and kurt_ok

    statistic = max(abs(z_skew), abs(z_kurt))
    p_value = min(2 * float(stats.norm.sf(abs(z_skew))), 2 * float(stats.norm.sf(abs(z_kurt))))

    if is_normal:
        interpretation = (
            f"Consistent with a normal distribution (skewness={skew:.4f}, kurtosis={kurt:.4f}, "
            f"z_skew={z_skew:.4f}, z_kurt={z_kurt:.4f}, both within ±{Z_CRITICAL})"
        )
    else:
        issues = []
        if not skew_ok:
            direction = "right-skewed" if skew > 0 else "left-skewed"
            issues.append(f"skewness={skew:.4f} ({direction}), z={z_skew:.4f}")
        if not kurt_ok:
            shape = "heavy-tailed" if kurt > 0 else "light-tailed"
            issues.append(f"kurtosis={kurt:.4f} ({shape}), z={z_kurt:.4f}")
        interpretation = f"Not normally distributed ({' and '.join(issues)} outside ±{Z_CRITICAL})"

        mild = abs(skew) < 1 and abs(kurt) < 1
        if mild and n > LARGE_SAMPLE_NOTE_N:
            interpretation += " [mild deviation flagged by a large sample; check the other tests]"

    return TestOutcome(statistic=statistic, p_value=p_value, is_normal=is_normal, interpretation=interpretation)


# =============================================================================
# DISTRIBUTION IDENTIFICATION
# =============================================================================

def _exponential_score(sorted_values: np.ndarray, mean: float) -> float:
    """Map the max CDF deviation from a fitted exponential onto [0.1, 1]."""
    if mean <= 0:
        return 0.1
    n = sorted_values.size
    theoretical = 1 - np.exp(-sorted_values / mean)
    upper_step = np.arange(1, n + 1) / n
    lower_step = np.arange(0, n) / n
    d = float(max(np.max(np.abs(upper_step - theoretical)), np.max(np.abs(lower_step - theoretical))))
    if d < 0.3:
        return 0.1 + (0.3 - d) / 0.3 * 0.9
    return 0.1


def identify_distribution(values: Sequence[float] | np.ndarray) -> DistributionFit:
    """
    Score log-normal, exponential, gamma and Poisson plausibility.

    Ties go to the later family in that order.
    """
    array = np.asarray(values, dtype=float)
    if array.size == 0 or _is_constant(array):
        return DistributionFit(
            best_fit="constant",
            log_normal=0.0,
            exponential=0.0,
            gamma=0.0,
            poisson=0.0,
            interpretation="All values identical; constant distribution",
        )

    mean = float(array.mean())
    variance = float(array.var())

    positive = array[array > 0]
    log_normal = 0.0
    log_values = np.log(positive)
    if log_values.size and not _is_constant(log_values):
        log_outcome = ks_test(log_values)
        if log_outcome.applicable:
            log_normal = log_outcome.p_value

    exponential = _exponential_score(np.sort(array), mean)

    shape = mean * mean / variance
    gamma = 0.6 if 0.5 < shape < 3 else 0.3

    is_integer = bool(np.all(array == np.round(array)))
    poisson = 0.7 if is_integer and array.min() >= 0 else 0.2

    scores = {
        "log-normal": log_normal,
        "exponential": exponential,
        "gamma": gamma,
        "poisson": poisson,
    }
    best_fit = "log-normal"
    for label, score in scores.items():
        if score >= scores[best_fit]:
            best_fit = label

    return DistributionFit(
        best_fit=best_fit,
        log_normal=log_normal,
        exponential=exponential,
        gamma=gamma,
        poisson=poisson,
        interpretation=DISTRIBUTION_NOTES[best_fit],
    )


# =============================================================================
# FIELD / DATASET RUNNERS
# =============================================================================

def test_field(
    field_name: str,
    values: Sequence[float] | np.ndarray,
    settings: AnalysisSettings | None = None,
    rng: np.random.Generator | None = None,
) -> FieldTestResult:
    """Run the whole battery on one numeric sample."""
    settings = settings or AnalysisSettings()
    raw = np.asarray(values, dtype=float)
    sample = sample_values(raw, settings.max_sample_size, rng)
    alpha = settings.alpha

    skew, kurt = skewness_kurtosis(sample)
    ks = ks_test(sample, alpha)
    z = z_score_test(sample, alpha)
    ad = anderson_darling_test(sample, alpha)

    fit = None
    if not ks.is_normal and not z.is_normal:
        fit = identify_distribution(sample)

    return FieldTestResult(
        field_name=field_name,
        sample_size=int(sample.size),
        skewness=skew,
        kurtosis=kurt,
        ks_test=ks,
        z_score_test=z,
        anderson_darling_test=ad,
        distribution_fit=fit,
        sampled=sample.size < raw.size,
    )


# Not a pytest test, despite the name.
test_field.__test__ = False


def numeric_fields(rows: Sequence[Row], exclude: Sequence[str] = ()) -> list[str]:
    """Fields whose first non-missing value is a number."""
    if not rows:
        return []
    fields = []
    for name in rows[0].keys():
        if name in exclude:
            continue
        for row in rows:
            value = row.get(name)
            if is_missing(value):
                continue
            if is_number(value):
                fields.append(name)
            break
    return fields


def _summarize(results: list[FieldTestResult]) -> TestSummary:
    distributions = Counter(r.distribution_fit.best_fit for r in results if r.distribution_fit)
    most_common = distributions.most_common(1)[0][0] if distributions else NO_DISTRIBUTION
    normal = sum(1 for r in results if r.is_normal)
    return TestSummary(
        total_fields=len(results),
        normal_fields=normal,
        non_normal_fields=len(results) - normal,
        most_common_distribution=most_common,
    )


def _test_rows(
    rows: Sequence[Row],
    fields: Sequence[str],
    settings: AnalysisSettings,
    rng: np.random.Generator,
) -> list[FieldTestResult]:
    results = []
    for name in fields:
        values = numeric_values(rows, name)
        if values.size == 0:
            continue
        results.append(test_field(name, values, settings, rng))
    return results


def run_normality_tests(
    rows: Sequence[Row],
    fields: Sequence[str] | None = None,
    group_by_fields: Sequence[str] | None = None,
    settings: AnalysisSettings | None = None,
    should_cancel: Callable[[], bool] | None = None,
) -> NormalityTestResults:
    """
    Run the battery on every selected field, optionally per group.

    Args:
        rows: Aggregated rows
        fields: Fields to test (default: every numeric field not used for grouping)
        group_by_fields: Partition rows by these fields' normalized values
        settings: Analysis settings (alpha, sample cap, seed)
        should_cancel: Polled between groups; raises AnalysisCancelled when true

    Returns:
        NormalityTestResults, either with results/summary (ungrouped) or
        group_results/overall_summary (grouped)
    """
    settings = settings or AnalysisSettings()
    rng = np.random.default_rng(settings.sample_seed)
    group_by_fields = [f for f in (group_by_fields or []) if f]
    if fields is None:
        fields = numeric_fields(rows, exclude=group_by_fields)
    fields = list(fields)

    if not group_by_fields:
        results = _test_rows(rows, fields, settings, rng)
        summary = _summarize(results)
        logger.debug("Normality: %d/%d fields normal", summary.normal_fields, summary.total_fields)
        return NormalityTestResults(has_groups=False, results=results, summary=summary)

    partitions: dict[str, list[Row]] = {}
    labels: dict[str, list[str]] = {}
    for row in rows:
        parts = [normalize_group_value(row.get(f)) for f in group_by_fields]
        key = KEY_DELIMITER.join(parts)
        if key not in partitions:
            partitions[key] = []
            labels[key] = parts
        partitions[key].append(row)

    group_results = []
    for key, group_rows in partitions.items():
        if should_cancel is not None and should_cancel():
            raise AnalysisCancelled("Normality testing cancelled")

        parts = labels[key]
        if len(group_by_fields) == 1:
            name = parts[0]
        else:
            name = ", ".join(f"{f}={v}" for f, v in zip(group_by_fields, parts))

        results = _test_rows(group_rows, fields, settings, rng)
        group_results.append(GroupTestResults(
            group_key=key,
            group_name=name,
            row_count=len(group_rows),
            results=results,
            summary=_summarize(results),
        ))

    all_results = [r for g in group_results for r in g.results]
    overall = _summarize(all_results)
    overall_summary = OverallSummary(
        total_fields=overall.total_fields,
        normal_fields=overall.normal_fields,
        non_normal_fields=overall.non_normal_fields,
        most_common_distribution=overall.most_common_distribution,
        total_groups=len(group_results),
    )
    logger.debug(
        "Normality: %d groups, %d/%d fields normal",
        len(group_results), overall.normal_fields, overall.total_fields,
    )

    return NormalityTestResults(
        has_groups=True,
        group_by_fields=list(group_by_fields),
        group_results=group_results,
        overall_summary=overall_summary,
    )
