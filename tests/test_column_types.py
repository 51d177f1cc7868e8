"""Tests for engine.column_types."""

import pandas as pd

from config.settings import AnalysisSettings
from engine.column_types import ColumnType, detect_column_type, detect_column_types


# ── single column ────────────────────────────────────────────────────

class TestDetectColumnType:
    def test_keyword_with_fraction_values(self):
        assert detect_column_type("conversion_rate", [0.1, 0.5, 1, 0]) == ColumnType.PERCENTAGE

    def test_keyword_without_fraction_values_is_number(self):
        assert detect_column_type("growth_rate", [12, 40, 75]) == ColumnType.NUMBER

    def test_percent_sign_in_string(self):
        assert detect_column_type("share", ["12%", "30%", "n/a"]) == ColumnType.PERCENTAGE

    def test_values_strictly_inside_unit_interval(self):
        assert detect_column_type("score", [0.2, 0.3, 0.9]) == ColumnType.PERCENTAGE

    def test_boundary_values_are_number(self):
        assert detect_column_type("flag", [0, 0.5, 1]) == ColumnType.NUMBER

    def test_plain_numbers(self):
        assert detect_column_type("amount", [1, 2, 3]) == ColumnType.NUMBER

    def test_missing_values_ignored(self):
        assert detect_column_type("amount", [None, "", 1, 2]) == ColumnType.NUMBER

    def test_mostly_text(self):
        assert detect_column_type("name", ["a", "b", 1]) == ColumnType.STRING

    def test_all_missing_is_string(self):
        assert detect_column_type("empty", [None, None]) == ColumnType.STRING

    def test_numeric_ratio_from_settings(self):
        values = [1, 2, 3, "x"]
        assert detect_column_type("mixed", values) == ColumnType.STRING
        loose = AnalysisSettings(numeric_ratio=0.7)
        assert detect_column_type("mixed", values, loose) == ColumnType.NUMBER


# ── whole dataset ────────────────────────────────────────────────────

class TestDetectColumnTypes:
    def test_every_column_in_order(self):
        rows = [
            {"account": "a1", "amount": 10.5, "ratio": 0.25},
            {"account": "a2", "amount": 20.0, "ratio": 0.75},
        ]
        types = detect_column_types(rows)
        assert list(types) == ["account", "amount", "ratio"]
        assert types["account"] == ColumnType.STRING
        assert types["amount"] == ColumnType.NUMBER
        assert types["ratio"] == ColumnType.PERCENTAGE

    def test_dataframe_input(self):
        df = pd.DataFrame({"amount": [1, 2, 3], "label": ["x", "y", "z"]})
        types = detect_column_types(df)
        assert types == {"amount": ColumnType.NUMBER, "label": ColumnType.STRING}

    def test_sample_size_limits_rows(self):
        rows = [{"v": 1}, {"v": 2}] + [{"v": "text"}] * 10
        assert detect_column_types(rows, sample_size=2)["v"] == ColumnType.NUMBER
        assert detect_column_types(rows)["v"] == ColumnType.STRING

    def test_empty(self):
        assert detect_column_types([]) == {}
