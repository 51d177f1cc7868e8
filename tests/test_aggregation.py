"""Tests for engine.aggregation."""

import numpy as np
import pandas as pd
import pytest

from engine.aggregation import AggregationConfig, FilterConfig, aggregate, filter_rows


# ── aggregate ────────────────────────────────────────────────────────

class TestAggregate:
    def test_sum_example(self):
        rows = [
            {"g": "A", "v": 10},
            {"g": "A", "v": 12},
            {"g": "B", "v": 100},
            {"g": "B", "v": 120},
        ]
        result = aggregate(rows, AggregationConfig(group_by=["g"], sum_columns=["v"]))
        assert result == [
            {"g": "A", "_count": 2, "v_sum": 22.0},
            {"g": "B", "_count": 2, "v_sum": 220.0},
        ]

    def test_empty_group_by_passes_rows_through(self):
        rows = [{"g": "A", "v": 1}, {"g": "B", "v": 2}]
        result = aggregate(rows, AggregationConfig(sum_columns=["v"]))
        assert result == rows
        assert result[0] is not rows[0]

    def test_first_seen_group_order(self):
        rows = [{"g": "B"}, {"g": "A"}, {"g": "B"}]
        result = aggregate(rows, AggregationConfig(group_by=["g"]))
        assert [r["g"] for r in result] == ["B", "A"]
        assert [r["_count"] for r in result] == [2, 1]

    def test_composite_key(self):
        rows = [
            {"a": "x", "b": 1},
            {"a": "x", "b": 2},
            {"a": "x", "b": 1},
        ]
        result = aggregate(rows, AggregationConfig(group_by=["a", "b"]))
        assert len(result) == 2
        assert result[0] == {"a": "x", "b": 1, "_count": 2}

    def test_numeric_and_string_group_values_merge(self):
        rows = [{"g": 1, "v": 1}, {"g": "1", "v": 2}, {"g": 1.0, "v": 3}]
        result = aggregate(rows, AggregationConfig(group_by=["g"], sum_columns=["v"]))
        assert len(result) == 1
        assert result[0]["_count"] == 3
        assert result[0]["v_sum"] == 6.0

    def test_decimal_and_padded_numeric_strings_merge(self):
        rows = [{"g": 3, "v": 1}, {"g": "3.0", "v": 2}, {"g": " 3 ", "v": 4}]
        result = aggregate(rows, AggregationConfig(group_by=["g"], sum_columns=["v"]))
        assert result == [{"g": 3, "_count": 3, "v_sum": 7.0}]

    def test_count_and_distinct_skip_missing(self):
        rows = [
            {"g": "x", "c": 1},
            {"g": "x", "c": None},
            {"g": "x", "c": 1},
            {"g": "x", "c": ""},
            {"g": "y", "c": "a"},
        ]
        config = AggregationConfig(group_by=["g"], count_columns=["c"], distinct_columns=["c"])
        x, y = aggregate(rows, config)
        assert x["_count"] == 4
        assert x["c_count"] == 2
        assert x["c_distinct_count"] == 1
        assert y["c_count"] == 1
        assert y["c_distinct_count"] == 1

    def test_lenient_numeric_parsing(self):
        rows = [
            {"g": "x", "v": "5"},
            {"g": "x", "v": "abc"},
            {"g": "x", "v": 3},
            {"g": "y", "v": "n/a"},
        ]
        config = AggregationConfig(group_by=["g"], sum_columns=["v"], max_columns=["v"], min_columns=["v"])
        x, y = aggregate(rows, config)
        assert x["v_sum"] == 8.0
        assert x["v_max"] == 5.0
        assert x["v_min"] == 3.0
        assert y["v_sum"] == 0.0
        assert y["v_max"] is None
        assert y["v_min"] is None

    def test_missing_group_value_forms_its_own_group(self):
        rows = [{"g": None, "v": 1}, {"g": "A", "v": 2}, {"g": None, "v": 3}]
        result = aggregate(rows, AggregationConfig(group_by=["g"], sum_columns=["v"]))
        assert len(result) == 2
        assert result[0]["g"] is None
        assert result[0]["v_sum"] == 4.0

    def test_overlapping_reducers(self):
        rows = [{"g": "x", "v": 2}, {"g": "x", "v": 4}]
        config = AggregationConfig(
            group_by=["g"], sum_columns=["v"], count_columns=["v"],
            max_columns=["v"], min_columns=["v"], distinct_columns=["v"],
        )
        (row,) = aggregate(rows, config)
        assert row == {
            "g": "x", "_count": 2, "v_sum": 6.0, "v_count": 2,
            "v_max": 4.0, "v_min": 2.0, "v_distinct_count": 2,
        }

    def test_dataframe_input(self):
        df = pd.DataFrame({"g": ["A", "A", "B"], "v": [1.0, 2.0, 3.0]})
        result = aggregate(df, AggregationConfig(group_by=["g"], sum_columns=["v"]))
        assert [r["v_sum"] for r in result] == [3.0, 3.0]

    def test_empty_rows(self):
        assert aggregate([], AggregationConfig(group_by=["g"])) == []

    def test_input_rows_not_mutated(self):
        rows = [{"g": "A", "v": 1}]
        aggregate(rows, AggregationConfig(group_by=["g"], sum_columns=["v"]))
        assert rows == [{"g": "A", "v": 1}]


# ── invariants ───────────────────────────────────────────────────────

class TestAggregationInvariants:
    @pytest.fixture
    def random_rows(self):
        rng = np.random.default_rng(7)
        rows = []
        for _ in range(500):
            value = rng.choice([None, "", "x", 1, 2, 3, 4.5])
            rows.append({
                "g": str(rng.choice(["a", "b", "c", "d"])),
                "h": int(rng.integers(0, 3)),
                "v": value.item() if hasattr(value, "item") else value,
            })
        return rows

    def test_counts_sum_to_input_size(self, random_rows):
        result = aggregate(random_rows, AggregationConfig(group_by=["g", "h"]))
        assert sum(r["_count"] for r in result) == len(random_rows)

    def test_distinct_le_count_le_rows(self, random_rows):
        config = AggregationConfig(group_by=["g"], count_columns=["v"], distinct_columns=["v"])
        for row in aggregate(random_rows, config):
            assert row["v_distinct_count"] <= row["v_count"] <= row["_count"]


# ── filter ───────────────────────────────────────────────────────────

class TestFilterRows:
    def test_no_config_returns_copies(self):
        rows = [{"a": 1}]
        result = filter_rows(rows, None)
        assert result == rows
        assert result[0] is not rows[0]

    def test_unique_mode(self):
        rows = [
            {"payer": 1, "payee": 2},
            {"payer": 2, "payee": 3},
            {"payer": 4, "payee": None},
            {"payer": 5, "payee": "3"},
        ]
        config = FilterConfig(type="unique", column_a="payer", column_b="payee")
        result = filter_rows(rows, config)
        assert [r["payer"] for r in result] == [2, 5]

    def test_equals_mode_loose(self):
        rows = [{"type": 1}, {"type": "1"}, {"type": " 1 "}, {"type": 2}]
        config = FilterConfig(type="equals", target_column="type", target_value="1")
        assert len(filter_rows(rows, config)) == 3

    def test_incomplete_config_keeps_rows(self):
        rows = [{"a": 1}, {"a": 2}]
        assert filter_rows(rows, FilterConfig(type="unique", column_a="a")) == rows
