"""Tests for config.settings, config.llm_config and engine.validators."""

import dataclasses
import math

import numpy as np
import pandas as pd
import pytest

from config.llm_config import GroqConfig, GroqLLM, LLMError
from config.settings import AnalysisSettings, load_settings
from engine.aggregation import AggregationConfig
from engine.column_types import ColumnType
from engine.errors import ConfigError
from engine.profile import ProfileConfig
from engine.thresholds import MethodConfig, MultiplierPair
from engine.validators import (
    sanitize_dict_for_json,
    validate_aggregation_config,
    validate_method_config,
    validate_profile_config,
    validate_rows,
)


# ── settings ─────────────────────────────────────────────────────────

class TestSettings:
    def test_defaults(self):
        settings = AnalysisSettings()
        assert settings.alpha == 0.05
        assert settings.max_sample_size == 5000
        assert (settings.iqr_upper_multiplier, settings.iqr_lower_multiplier) == (1.5, 0.0)
        assert (settings.stddev_upper_multiplier, settings.stddev_lower_multiplier) == (2.0, 2.0)

    def test_environment(self):
        settings = load_settings(environ={
            "SEGPROF_ALPHA": "0.01",
            "SEGPROF_MAX_SAMPLE_SIZE": "1000",
            "SEGPROF_SAMPLE_SEED": "7",
            "SEGPROF_USE_LLM": "yes",
            "SEGPROF_PERCENTAGE_KEYWORDS": "pct, share",
        })
        assert settings.alpha == 0.01
        assert settings.max_sample_size == 1000
        assert settings.sample_seed == 7
        assert settings.use_llm is True
        assert settings.percentage_keywords == ("pct", "share")

    def test_overrides_beat_environment(self):
        settings = load_settings(environ={"SEGPROF_ALPHA": "0.01"}, alpha=0.1)
        assert settings.alpha == 0.1

    def test_malformed_value(self):
        with pytest.raises(ConfigError, match="SEGPROF_ALPHA"):
            load_settings(environ={"SEGPROF_ALPHA": "abc"})

    def test_out_of_range(self):
        with pytest.raises(ConfigError):
            AnalysisSettings(alpha=2)
        with pytest.raises(ConfigError):
            AnalysisSettings(iqr_upper_multiplier=-1)

    def test_method_config_from_settings(self):
        settings = AnalysisSettings(iqr_upper_multiplier=3.0)
        assert MethodConfig.from_settings(settings).iqr == MultiplierPair(3.0, 0.0)


# ── validators ───────────────────────────────────────────────────────

class TestValidators:
    def test_rows(self):
        assert validate_rows(None) == (False, "No data provided")
        assert not validate_rows([])[0]
        assert not validate_rows("text")[0]
        assert not validate_rows([1, 2])[0]
        assert not validate_rows(pd.DataFrame())[0]
        assert validate_rows([{"a": 1}]) == (True, None)
        assert validate_rows(pd.DataFrame({"a": [1]})) == (True, None)

    def test_aggregation_group_by_must_exist(self):
        ok, message = validate_aggregation_config(AggregationConfig(group_by=["x"]), ["a"])
        assert not ok and "x" in message
        assert validate_aggregation_config(AggregationConfig(sum_columns=["missing"]), ["a"])[0]

    def test_method_multipliers(self):
        assert validate_method_config(MethodConfig())[0]
        bad = MethodConfig(stddev=MultiplierPair(-1.0, 2.0))
        ok, message = validate_method_config(bad)
        assert not ok and "stddev" in message

    def test_profile_group_field(self):
        assert validate_profile_config(ProfileConfig(), [])[0]
        assert not validate_profile_config(ProfileConfig(group_by_field="type"), ["a"])[0]

    def test_sanitize(self):
        @dataclasses.dataclass
        class Point:
            x: float
            kind: ColumnType

        data = {
            "nan": float("nan"),
            "inf": np.float64("inf"),
            "int": np.int64(3),
            "bool": np.bool_(True),
            "array": np.array([1.5, 2.5]),
            "enum": ColumnType.NUMBER,
            "tuple": (1, 2),
            "point": Point(1.0, ColumnType.STRING),
        }
        clean = sanitize_dict_for_json(data)
        assert clean["nan"] is None
        assert clean["inf"] is None
        assert clean["int"] == 3 and isinstance(clean["int"], int)
        assert clean["bool"] is True
        assert clean["array"] == [1.5, 2.5]
        assert clean["enum"] == "number"
        assert clean["tuple"] == [1, 2]
        assert clean["point"] == {"x": 1.0, "kind": "string"}
        assert not any(isinstance(v, float) and math.isnan(v) for v in clean.values())


# ── llm config ───────────────────────────────────────────────────────

class TestGroqClient:
    def test_unavailable_without_key(self, monkeypatch):
        monkeypatch.delenv("GROQ_API_KEY", raising=False)
        llm = GroqLLM()
        assert not llm.is_available()
        with pytest.raises(LLMError):
            llm.generate("hello")

    def test_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("GROQ_API_KEY", "test-key")
        assert GroqLLM().is_available()
        assert GroqLLM(GroqConfig(api_key="explicit")).config.api_key == "explicit"
