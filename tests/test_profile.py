"""Tests for engine.profile."""

import json

import pytest

from engine.errors import FieldResolutionError, ProfileError
from engine.field_resolver import AnalysisField, ResolvedFields
from engine.group_keys import GroupKeyIndex
from engine.profile import (
    CATEGORY_FIELD,
    RISK_FIELD,
    SCOPE_FIELD,
    ClassificationModel,
    ProfileConfig,
    ProfileOrchestrator,
)
from engine.thresholds import AnalysisMethod, Category, MethodConfig


def _row(account, type_, amount, count):
    return {"account": account, "type": type_, "amount_sum": amount, "_count": count}


@pytest.fixture
def rows():
    # Group A: value Q1=10, Q3=30 -> high 60; count Q1=2, Q3=3 -> high 4.5, low 2
    group_a = [
        _row("a1", "A", 5, 1),
        _row("a2", "A", 10, 2),
        _row("a3", "A", 20, 3),
        _row("a4", "A", 30, 4),
        _row("a5", "A", 65, 3),
    ]
    # Group B: every count equals its own high threshold (10)
    group_b = [
        _row("b1", "B", 1000, 10),
        _row("b2", "B", 1100, 10),
        _row("b3", "B", 1200, 10),
        _row("b4", "B", 1300, 10),
    ]
    return group_a + group_b


@pytest.fixture
def grouped_config():
    return ProfileConfig(subject_field="account", group_by_field="type")


def _category(result, account):
    return next(r[CATEGORY_FIELD] for r in result.rows if r["account"] == account)


# ── per-group profiling ──────────────────────────────────────────────

class TestGroupedProfile:
    def test_each_group_uses_its_own_thresholds(self, rows, grouped_config):
        result = ProfileOrchestrator().run(rows, grouped_config)
        assert result.has_groups
        assert [g.group_key for g in result.groups] == ["A", "B"]
        assert _category(result, "a5") == Category.HIGH_ON_VALUE.value
        assert _category(result, "a4") == Category.MIDDLE.value
        assert _category(result, "a1") == Category.LOW.value
        assert all(_category(result, f"b{i}") == Category.HIGH_ON_COUNT.value for i in range(1, 5))

    def test_group_params(self, rows, grouped_config):
        result = ProfileOrchestrator().run(rows, grouped_config)
        params_a = result.groups[0].params
        assert (params_a.value.q1, params_a.value.q3, params_a.value.high) == (10.0, 30.0, 60.0)
        assert params_a.count.high == 4.5

    def test_resolved_fields(self, rows, grouped_config):
        result = ProfileOrchestrator().run(rows, grouped_config)
        assert result.fields.value_field == "amount_sum"
        assert result.fields.count_field == "_count"

    def test_category_summary(self, rows, grouped_config):
        result = ProfileOrchestrator().run(rows, grouped_config)
        summaries = {s.category: s for s in result.groups[0].categories}
        high_value = summaries[Category.HIGH_ON_VALUE]
        assert high_value.object_count == 1
        assert high_value.value_total == 65.0
        assert high_value.count_total == 3.0
        assert high_value.average == pytest.approx(65 / 3)
        assert summaries[Category.DOUBLE_HIGH].object_count == 0
        assert summaries[Category.DOUBLE_HIGH].average == 0.0

    def test_overall_categories_span_groups(self, rows, grouped_config):
        result = ProfileOrchestrator().run(rows, grouped_config)
        overall = {s.category: s.object_count for s in result.overall_categories}
        assert overall[Category.HIGH_ON_COUNT] == 4
        assert sum(overall.values()) == len(rows)

    def test_configured_analysis_field_totals(self, rows):
        config = ProfileConfig(
            group_by_field="type",
            analysis_fields=[AnalysisField("amount_sum", "Amount"), AnalysisField("_count", "Transactions")],
        )
        result = ProfileOrchestrator().run(rows, config)
        b_summaries = {s.category: s for s in result.groups[1].categories}
        assert b_summaries[Category.HIGH_ON_COUNT].field_totals == {"amount_sum": 4600.0, "_count": 40.0}
        assert "Amount" in result.groups[0].narrative

    def test_rows_are_new_dicts(self, rows, grouped_config):
        result = ProfileOrchestrator().run(rows, grouped_config)
        assert CATEGORY_FIELD not in rows[0]
        assert result.rows[0][RISK_FIELD] == "low"
        assert result.rows[0][SCOPE_FIELD] == "group"

    def test_coverage(self, rows, grouped_config):
        coverage = ProfileOrchestrator().run(rows, grouped_config).coverage
        assert coverage.total_rows == 9
        assert coverage.group_rows == 9
        assert coverage.fallback_rows == 0
        assert coverage.classified_rows == 9

    def test_rules_and_narrative(self, rows, grouped_config):
        group = ProfileOrchestrator().run(rows, grouped_config).groups[0]
        assert len(group.rules) == 5
        assert group.group_label == "type=A"
        assert "IQR" in group.narrative
        assert "Q1=10.00" in group.narrative

    def test_json_safe(self, rows, grouped_config):
        data = ProfileOrchestrator().run(rows, grouped_config).to_dict()
        text = json.dumps(data)
        assert "high-on-value-field" in text
        assert data["coverage"]["classified_rows"] == 9
        assert data["method"] == "iqr"


# ── model reuse and fallback ─────────────────────────────────────────

class TestModelMatching:
    def test_fuzzy_group_match(self, rows, grouped_config):
        orchestrator = ProfileOrchestrator()
        model = orchestrator.build_model(rows, grouped_config)
        annotated, coverage = orchestrator.apply_model([_row("x", " A ", 65, 3)], model)
        assert annotated[0][CATEGORY_FIELD] == Category.HIGH_ON_VALUE.value
        assert annotated[0][SCOPE_FIELD] == "group"
        assert coverage.unmatched_keys == []

    def test_numeric_group_values(self):
        rows = [_row(f"a{i}", 1, v, c) for i, (v, c) in enumerate([(5, 1), (10, 2), (20, 3), (30, 4)])]
        orchestrator = ProfileOrchestrator()
        model = orchestrator.build_model(rows, ProfileConfig(group_by_field="type"))
        annotated, _ = orchestrator.apply_model([_row("x", "1.0", 65, 3)], model)
        assert annotated[0][SCOPE_FIELD] == "group"
        assert annotated[0][CATEGORY_FIELD] == Category.HIGH_ON_VALUE.value

    def test_numeric_string_rows_join_their_group(self):
        rows = [_row(f"a{i}", 3, 10 * i, i) for i in range(1, 9)]
        rows.append(_row("stray", "3.0", 10, 1))
        result = ProfileOrchestrator().run(rows, ProfileConfig(subject_field="account", group_by_field="type"))
        assert [g.group_key for g in result.groups] == ["3"]
        assert result.groups[0].row_count == 9
        assert _category(result, "stray") == Category.LOW.value
        assert result.coverage.group_rows == 9

    def test_unmatched_rows_use_dataset_fallback(self, rows, grouped_config, caplog):
        orchestrator = ProfileOrchestrator()
        model = orchestrator.build_model(rows, grouped_config)
        annotated, coverage = orchestrator.apply_model([_row("x", "C", 5, 1)], model)
        assert annotated[0][SCOPE_FIELD] == "dataset"
        assert annotated[0][CATEGORY_FIELD] == Category.LOW.value
        assert coverage.fallback_rows == 1
        assert coverage.unmatched_keys == ["C"]
        assert "unmatched" in caplog.text

    def test_unknown_without_fallback(self):
        fields = ResolvedFields("amount_sum", "_count", "amount total", "row count", "suffix", "suffix")
        model = ClassificationModel(
            fields=fields,
            method_config=MethodConfig(),
            group_by_field="type",
            groups=GroupKeyIndex(),
            fallback=None,
        )
        annotated, coverage = ProfileOrchestrator().apply_model([_row("x", "A", 5, 1)], model)
        assert annotated[0][CATEGORY_FIELD] == Category.UNKNOWN.value
        assert annotated[0][RISK_FIELD] == "unknown"
        assert coverage.unknown_rows == 1
        assert coverage.classified_rows == 0

    def test_group_without_numbers_falls_back(self, rows, grouped_config):
        rows = rows + [_row("c1", "C", "n/a", "n/a"), _row("c2", "C", "n/a", "n/a")]
        result = ProfileOrchestrator().run(rows, grouped_config)
        assert [g.group_key for g in result.groups] == ["A", "B"]
        assert result.coverage.fallback_rows == 2
        assert result.coverage.anomalous_rows == 2

    def test_anomalous_row_counted(self, rows, grouped_config):
        rows = rows + [_row("a6", "A", "oops", 3)]
        result = ProfileOrchestrator().run(rows, grouped_config)
        assert _category(result, "a6") == Category.ANOMALOUS.value
        assert result.coverage.anomalous_rows == 1


# ── ungrouped / method / config ──────────────────────────────────────

class TestProfileOptions:
    def test_ungrouped_single_profile(self, rows):
        result = ProfileOrchestrator().run(rows, ProfileConfig(subject_field="account"))
        assert not result.has_groups
        assert [g.group_key for g in result.groups] == ["all"]
        assert result.groups[0].row_count == 9
        assert result.coverage.dataset_rows == 9

    def test_stddev_method(self, rows, grouped_config):
        method = MethodConfig(method=AnalysisMethod.STDDEV)
        result = ProfileOrchestrator().run(rows, grouped_config, method)
        assert result.method == AnalysisMethod.STDDEV
        assert "mean" in result.groups[0].narrative
        assert result.groups[0].params.value.mean == pytest.approx(26.0)

    def test_string_method(self, rows, grouped_config):
        result = ProfileOrchestrator().run(rows, grouped_config, MethodConfig(method="stddev"))
        assert result.method is AnalysisMethod.STDDEV
        assert result.to_dict()["method"] == "stddev"

    def test_empty_rows(self):
        with pytest.raises(ProfileError):
            ProfileOrchestrator().run([])

    def test_unresolvable_fields(self, rows):
        config = ProfileConfig(analysis_fields=[AnalysisField("missing_sum")])
        with pytest.raises(FieldResolutionError):
            ProfileOrchestrator().run(rows, config)

    def test_config_from_dict(self):
        config = ProfileConfig.from_dict({
            "subjectFieldName": "account",
            "groupByFieldName": " type ",
            "analysisFields": [{"fieldName": "amount_sum", "description": "Amount"}, "_count"],
        })
        assert config.group_by_field == "type"
        assert config.analysis_fields == [AnalysisField("amount_sum", "Amount"), AnalysisField("_count")]
        assert config.excluded_fields == ["account", "type"]
