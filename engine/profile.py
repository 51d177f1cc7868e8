# profile.py — Per-group threshold profiling of aggregated rows
"""
profile.py — Profile Orchestrator

Builds one ClassificationParams set per distinct group value (plus a
dataset-wide fallback), classifies every aggregated row against its own
group's thresholds and summarises the result per category.

Collaborators (field resolver, classifier) are passed in explicitly.
Output rows are new dicts; input rows are never mutated.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from config.settings import AnalysisSettings
from engine.coercion import Row, is_number, iter_rows, to_float
from engine.errors import AnalysisCancelled, ProfileError, ThresholdError
from engine.field_resolver import AnalysisField, FieldResolver, ResolvedFields
from engine.group_keys import GroupKeyIndex, normalize_group_value
from engine.thresholds import (
    CATEGORY_ORDER,
    CATEGORY_RISK,
    AnalysisMethod,
    Category,
    ClassificationParams,
    ClassificationRule,
    MethodConfig,
    RiskLevel,
    ThresholdClassifier,
    build_classification_params,
)
from engine.validators import sanitize_dict_for_json

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

CATEGORY_FIELD = "_category"
RISK_FIELD = "_risk_level"
SCOPE_FIELD = "_threshold_scope"

SCOPE_GROUP = "group"
SCOPE_DATASET = "dataset"
SCOPE_NONE = "none"

OVERALL_KEY = "all"

CATEGORY_DESCRIPTIONS = {
    Category.DOUBLE_HIGH: "High on both indicators",
    Category.HIGH_ON_VALUE: "High on the value indicator only",
    Category.HIGH_ON_COUNT: "High on the count indicator only",
    Category.MIDDLE: "Within the normal range on both indicators",
    Category.LOW: "At or below the low bound",
}


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class ProfileConfig:
    """
    What to profile.

    subject_field: the entity column (e.g. account id), never used as an indicator
    group_by_field: compute thresholds separately per value of this column
    analysis_fields: ordered; the first is the value indicator, the second the count
    """
    subject_field: str = ""
    group_by_field: str = ""
    analysis_fields: list[AnalysisField] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict | None) -> "ProfileConfig":
        data = data or {}
        raw_fields = data.get("analysis_fields") or data.get("analysisFields") or []
        analysis_fields = []
        for item in raw_fields:
            if isinstance(item, str):
                analysis_fields.append(AnalysisField(item))
            else:
                analysis_fields.append(AnalysisField(
                    item.get("field_name") or item.get("fieldName"),
                    item.get("description", ""),
                ))
        return cls(
            subject_field=data.get("subject_field") or data.get("subjectFieldName") or "",
            group_by_field=(data.get("group_by_field") or data.get("groupByFieldName") or "").strip(),
            analysis_fields=analysis_fields,
        )

    @property
    def excluded_fields(self) -> list[str]:
        return [f for f in (self.subject_field, self.group_by_field) if f]


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class ClassificationModel:
    """Per-group parameter sets plus the dataset-wide fallback."""
    fields: ResolvedFields
    method_config: MethodConfig
    group_by_field: str
    groups: GroupKeyIndex[ClassificationParams]
    fallback: ClassificationParams | None

    def params_for(self, row: Row) -> tuple[ClassificationParams | None, str]:
        """Parameter set for a row and the scope it came from."""
        if self.group_by_field:
            params = self.groups.get(row.get(self.group_by_field))
            if params is not None:
                return params, SCOPE_GROUP
        if self.fallback is not None:
            return self.fallback, SCOPE_DATASET
        return None, SCOPE_NONE


@dataclass
class CategorySummary:
    category: Category
    description: str
    risk_level: RiskLevel
    object_count: int = 0
    value_total: float = 0.0
    count_total: float = 0.0
    average: float = 0.0
    field_totals: dict[str, float] = field(default_factory=dict)


@dataclass
class CoverageReport:
    total_rows: int = 0
    group_rows: int = 0
    dataset_rows: int = 0
    fallback_rows: int = 0
    unknown_rows: int = 0
    anomalous_rows: int = 0
    unmatched_keys: list[str] = field(default_factory=list)

    @property
    def classified_rows(self) -> int:
        return self.total_rows - self.unknown_rows - self.anomalous_rows


@dataclass
class GroupProfile:
    group_key: str
    group_label: str
    row_count: int
    params: ClassificationParams
    rules: list[ClassificationRule]
    categories: list[CategorySummary]
    narrative: str = ""


@dataclass
class ProfileResult:
    rows: list[dict]
    fields: ResolvedFields
    method: AnalysisMethod
    has_groups: bool
    group_by_field: str
    groups: list[GroupProfile]
    overall_categories: list[CategorySummary]
    coverage: CoverageReport
    model: ClassificationModel

    def to_dict(self) -> dict:
        data = {
            "rows": self.rows,
            "fields": self.fields,
            "method": self.method,
            "has_groups": self.has_groups,
            "group_by_field": self.group_by_field,
            "groups": [
                {
                    "group_key": g.group_key,
                    "group_label": g.group_label,
                    "row_count": g.row_count,
                    "params": g.params.to_dict(),
                    "rules": g.rules,
                    "categories": g.categories,
                    "narrative": g.narrative,
                }
                for g in self.groups
            ],
            "overall_categories": self.overall_categories,
            "coverage": self.coverage,
        }
        data = sanitize_dict_for_json(data)
        data["coverage"]["classified_rows"] = self.coverage.classified_rows
        return data


# =============================================================================
# SUMMARIES
# =============================================================================

def _number(value: Any) -> float:
    number = to_float(value)
    return number if number is not None else 0.0


def summarize_categories(
    rows: Sequence[Row],
    fields: ResolvedFields,
    analysis_fields: Sequence[AnalysisField] = (),
) -> list[CategorySummary]:
    """Object count and indicator totals for each of the five categories."""
    summaries = {
        category: CategorySummary(
            category=category,
            description=CATEGORY_DESCRIPTIONS[category],
            risk_level=CATEGORY_RISK[category],
            field_totals={f.field_name: 0.0 for f in analysis_fields},
        )
        for category in CATEGORY_ORDER
    }

    for row in rows:
        summary = summaries.get(Category(row[CATEGORY_FIELD]))
        if summary is None:
            continue
        summary.object_count += 1
        summary.value_total += _number(row.get(fields.value_field))
        summary.count_total += _number(row.get(fields.count_field))
        for name in summary.field_totals:
            if is_number(row.get(name)):
                summary.field_totals[name] += float(row[name])

    for summary in summaries.values():
        if summary.count_total > 0:
            summary.average = summary.value_total / summary.count_total

    return list(summaries.values())


def build_narrative(profile: GroupProfile, fields: ResolvedFields) -> str:
    """Deterministic description of one group's thresholds and category mix."""
    params = profile.params
    v_name, c_name = fields.value_label, fields.count_label

    if params.method == AnalysisMethod.IQR:
        method = (
            f"IQR method (high = Q3 + {params.upper_multiplier:g}×IQR, "
            f"low = Q1 − {params.lower_multiplier:g}×IQR)"
        )
        stats = (
            f"{v_name}: Q1={params.value.q1:,.2f}, Q3={params.value.q3:,.2f}, IQR={params.value.iqr:,.2f}. "
            f"{c_name}: Q1={params.count.q1:,.2f}, Q3={params.count.q3:,.2f}, IQR={params.count.iqr:,.2f}."
        )
    else:
        method = (
            f"mean/standard deviation method (high = mean + {params.upper_multiplier:g}σ, "
            f"low = mean − {params.lower_multiplier:g}σ)"
        )
        stats = (
            f"{v_name}: mean={params.value.mean:,.2f}, σ={params.value.stddev:,.2f}. "
            f"{c_name}: mean={params.count.mean:,.2f}, σ={params.count.stddev:,.2f}."
        )

    thresholds = (
        f"Thresholds: {v_name} high {params.value.high:,.2f} / low {params.value.low:,.2f}; "
        f"{c_name} high {params.count.high:,.2f} / low {params.count.low:,.2f}."
    )
    mix = ", ".join(f"{s.category.value} {s.object_count}" for s in profile.categories)

    return (
        f"{profile.group_label}: {profile.row_count} objects classified with the {method}. "
        f"{stats} {thresholds} Category counts: {mix}."
    )


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class ProfileOrchestrator:
    """Coordinates field resolution, per-group thresholds and classification."""

    def __init__(
        self,
        resolver: FieldResolver | None = None,
        classifier: ThresholdClassifier | None = None,
        settings: AnalysisSettings | None = None,
    ):
        self.resolver = resolver or FieldResolver()
        self.classifier = classifier or ThresholdClassifier()
        self.settings = settings or AnalysisSettings()

    def build_model(
        self,
        rows: Sequence[Row],
        profile_config: ProfileConfig | None = None,
        method_config: MethodConfig | None = None,
        should_cancel: Callable[[], bool] | None = None,
    ) -> ClassificationModel:
        """
        Compute per-group parameter sets and the dataset-wide fallback.

        Groups whose indicators have no numeric values are skipped (their
        rows fall back to dataset-wide thresholds).

        Raises:
            FieldResolutionError: If the indicators cannot be resolved
            ThresholdError: If no thresholds can be computed at all
            AnalysisCancelled: If should_cancel returns True between groups
        """
        if not rows:
            raise ProfileError("No aggregated rows to profile")

        profile_config = profile_config or ProfileConfig()
        method_config = method_config or MethodConfig.from_settings(self.settings)
        fields = self.resolver.resolve(rows, profile_config.analysis_fields, profile_config.excluded_fields)

        def params_for(subset: Sequence[Row]) -> ClassificationParams:
            return build_classification_params(
                subset, fields.value_field, fields.count_field, method_config,
                value_label=fields.value_label, count_label=fields.count_label,
            )

        try:
            fallback = params_for(rows)
        except ThresholdError:
            if not profile_config.group_by_field:
                raise
            logger.warning("No dataset-wide thresholds; unmatched rows will be labelled unknown")
            fallback = None

        groups: GroupKeyIndex[ClassificationParams] = GroupKeyIndex()
        group_by = profile_config.group_by_field
        if group_by:
            partitions: dict[str, list[Row]] = {}
            for row in rows:
                partitions.setdefault(normalize_group_value(row.get(group_by)), []).append(row)

            for key, subset in partitions.items():
                if should_cancel is not None and should_cancel():
                    raise AnalysisCancelled("Profiling cancelled")
                try:
                    groups.add(key, params_for(subset))
                except ThresholdError as e:
                    logger.warning("Skipping thresholds for %s=%s: %s", group_by, key, e)

            if len(groups) == 0 and fallback is None:
                raise ThresholdError(
                    f'No group of "{group_by}" has numeric values for '
                    f'"{fields.value_field}" and "{fields.count_field}"'
                )

        logger.debug("Built classification model: %d group parameter sets", len(groups))
        return ClassificationModel(
            fields=fields,
            method_config=method_config,
            group_by_field=group_by,
            groups=groups,
            fallback=fallback,
        )

    def apply_model(self, rows: Sequence[Row], model: ClassificationModel) -> tuple[list[dict], CoverageReport]:
        """
        Classify rows against a model.

        Each row gets its own group's thresholds; rows whose group value has
        no parameter set use the dataset-wide fallback, and are labelled
        unknown only when there is no fallback either.

        Returns:
            (annotated_rows, coverage)
        """
        coverage = CoverageReport()
        unmatched: Counter = Counter()
        annotated = []

        for row in iter_rows(rows):
            coverage.total_rows += 1
            params, scope = model.params_for(row)

            if params is None:
                category, risk = Category.UNKNOWN, RiskLevel.UNKNOWN
                coverage.unknown_rows += 1
            else:
                result = self.classifier.classify(row, params)
                category, risk = result.category, result.risk_level
                if category == Category.ANOMALOUS:
                    coverage.anomalous_rows += 1

            if scope == SCOPE_GROUP:
                coverage.group_rows += 1
            elif not model.group_by_field:
                coverage.dataset_rows += 1
            else:
                unmatched[normalize_group_value(row.get(model.group_by_field))] += 1
                if scope == SCOPE_DATASET:
                    coverage.fallback_rows += 1

            row[CATEGORY_FIELD] = category.value
            row[RISK_FIELD] = risk.value
            row[SCOPE_FIELD] = scope
            annotated.append(row)

        coverage.unmatched_keys = list(unmatched)
        if unmatched:
            logger.warning(
                "%d rows in %d unmatched groups of %s (fallback: %d, unknown: %d)",
                sum(unmatched.values()), len(unmatched), model.group_by_field,
                coverage.fallback_rows, coverage.unknown_rows,
            )
        return annotated, coverage

    def run(
        self,
        rows: Sequence[Row],
        profile_config: ProfileConfig | None = None,
        method_config: MethodConfig | None = None,
        should_cancel: Callable[[], bool] | None = None,
    ) -> ProfileResult:
        """
        Build a model from rows, classify the same rows and summarise.

        Args:
            rows: Aggregated rows
            profile_config: Subject / group-by / analysis fields
            method_config: IQR or stddev plus multipliers
            should_cancel: Cooperative cancellation check

        Returns:
            ProfileResult
        """
        profile_config = profile_config or ProfileConfig()
        model = self.build_model(rows, profile_config, method_config, should_cancel)
        annotated, coverage = self.apply_model(rows, model)
        fields = model.fields
        analysis_fields = profile_config.analysis_fields

        profiles = []
        if model.group_by_field:
            members: dict[str, list[dict]] = {}
            for row in annotated:
                key = normalize_group_value(row.get(model.group_by_field))
                members.setdefault(key, []).append(row)
            for key, params in model.groups.items():
                group_rows = members.get(key, [])
                profiles.append(self._group_profile(
                    key, f"{model.group_by_field}={key}", group_rows, params, fields, analysis_fields,
                ))
        else:
            profiles.append(self._group_profile(
                OVERALL_KEY, "Overall", annotated, model.fallback, fields, analysis_fields,
            ))

        logger.info(
            "Profiled %d rows into %d group(s) using %s thresholds",
            coverage.total_rows, len(profiles), model.method_config.method.value,
        )
        return ProfileResult(
            rows=annotated,
            fields=fields,
            method=model.method_config.method,
            has_groups=bool(model.group_by_field),
            group_by_field=model.group_by_field,
            groups=profiles,
            overall_categories=summarize_categories(annotated, fields, analysis_fields),
            coverage=coverage,
            model=model,
        )

    def _group_profile(
        self,
        key: str,
        label: str,
        rows: list[dict],
        params: ClassificationParams,
        fields: ResolvedFields,
        analysis_fields: Sequence[AnalysisField],
    ) -> GroupProfile:
        profile = GroupProfile(
            group_key=key,
            group_label=label,
            row_count=len(rows),
            params=params,
            rules=self.classifier.rules(params),
            categories=summarize_categories(rows, fields, analysis_fields),
        )
        profile.narrative = build_narrative(profile, fields)
        return profile
