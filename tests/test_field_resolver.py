"""Tests for engine.field_resolver."""

import pytest

from engine.errors import FieldResolutionError
from engine.field_resolver import AnalysisField, FieldResolver, field_label


ROWS = [
    {"account": "a1", "type": 1, "amount_sum": 10.0, "account_distinct_count": 1, "_count": 2},
    {"account": "a2", "type": 2, "amount_sum": 30.0, "account_distinct_count": 1, "_count": 5},
]


class TestFieldResolver:
    def test_suffix_convention(self):
        fields = FieldResolver().resolve(ROWS, exclude=["type"])
        assert fields.value_field == "amount_sum"
        assert fields.count_field == "_count"
        assert fields.value_source == "suffix"
        assert fields.count_source == "suffix"

    def test_configuration_wins(self):
        configured = [AnalysisField("_count", "Transactions"), AnalysisField("amount_sum", "Amount")]
        fields = FieldResolver().resolve(ROWS, configured)
        assert fields.value_field == "_count"
        assert fields.count_field == "amount_sum"
        assert fields.value_source == fields.count_source == "configured"
        assert fields.value_label == "Transactions"

    def test_single_configured_field_infers_count(self):
        fields = FieldResolver().resolve(ROWS, [AnalysisField("amount_sum")], exclude=["type"])
        assert fields.value_source == "configured"
        assert fields.count_field == "_count"

    def test_missing_configured_field_raises(self):
        with pytest.raises(FieldResolutionError, match="total_sum"):
            FieldResolver().resolve(ROWS, [AnalysisField("total_sum")])

    def test_position_fallback(self):
        rows = [{"name": "a", "x": 1, "y": 2}]
        fields = FieldResolver().resolve(rows)
        assert (fields.value_field, fields.count_field) == ("x", "y")
        assert fields.value_source == fields.count_source == "position"

    def test_count_keyword(self):
        rows = [{"amt": 1.5, "z": 2, "txn count": 3}]
        fields = FieldResolver().resolve(rows)
        assert fields.value_field == "amt"
        assert fields.count_field == "txn count"
        assert fields.count_source == "keyword"

    def test_excluded_columns_never_inferred(self):
        rows = [{"region": 1, "x": 2, "y": 3}]
        fields = FieldResolver().resolve(rows, exclude=["region"])
        assert (fields.value_field, fields.count_field) == ("x", "y")

    def test_not_enough_numeric_columns(self):
        with pytest.raises(FieldResolutionError):
            FieldResolver().resolve([{"name": "a", "x": 1}])


class TestFieldLabel:
    def test_suffixes(self):
        assert field_label("amount_sum") == "amount total"
        assert field_label("_count") == "row count"
        assert field_label("payee_distinct_count") == "payee distinct count"

    def test_description_wins(self):
        assert field_label("amount_sum", "Total amount") == "Total amount"
