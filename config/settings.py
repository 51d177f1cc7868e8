# settings.py — Analysis tunables and logging setup
"""
settings.py — Analysis Settings

All statistical constants, sampling limits and default multipliers live
here. Values can be overridden through SEGPROF_* environment variables.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace

from engine.errors import ConfigError


# =============================================================================
# CONSTANTS
# =============================================================================

ENV_PREFIX = "SEGPROF_"

DEFAULT_ALPHA = 0.05
DEFAULT_MAX_SAMPLE_SIZE = 5000
DEFAULT_NUMERIC_RATIO = 0.8
DEFAULT_PERCENTAGE_KEYWORDS = (
    "percent", "percentage", "rate", "ratio", "%",
    "比例", "百分比", "占比",
)

DEFAULT_IQR_UPPER = 1.5
DEFAULT_IQR_LOWER = 0.0
DEFAULT_STDDEV_UPPER = 2.0
DEFAULT_STDDEV_LOWER = 2.0

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


# =============================================================================
# SETTINGS
# =============================================================================

@dataclass(frozen=True)
class AnalysisSettings:
    """Immutable container for every tunable used by a run."""

    alpha: float = DEFAULT_ALPHA
    max_sample_size: int = DEFAULT_MAX_SAMPLE_SIZE
    sample_seed: int | None = None

    numeric_ratio: float = DEFAULT_NUMERIC_RATIO
    percentage_keywords: tuple[str, ...] = field(default=DEFAULT_PERCENTAGE_KEYWORDS)

    iqr_upper_multiplier: float = DEFAULT_IQR_UPPER
    iqr_lower_multiplier: float = DEFAULT_IQR_LOWER
    stddev_upper_multiplier: float = DEFAULT_STDDEV_UPPER
    stddev_lower_multiplier: float = DEFAULT_STDDEV_LOWER

    use_llm: bool = False
    log_level: str = "INFO"

    def __post_init__(self):
        if not 0 < self.alpha < 1:
            raise ConfigError(f"alpha must be in (0, 1), got {self.alpha}")
        if self.max_sample_size < 8:
            raise ConfigError(f"max_sample_size must be at least 8, got {self.max_sample_size}")
        if not 0 < self.numeric_ratio <= 1:
            raise ConfigError(f"numeric_ratio must be in (0, 1], got {self.numeric_ratio}")
        for name in (
            "iqr_upper_multiplier", "iqr_lower_multiplier",
            "stddev_upper_multiplier", "stddev_lower_multiplier",
        ):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be non-negative")


def _parse_env_value(name: str, raw: str, current):
    """Parse an environment string into the type of the current default."""
    try:
        if isinstance(current, bool):
            lowered = raw.strip().lower()
            if lowered in {"1", "true", "yes", "on"}:
                return True
            if lowered in {"0", "false", "no", "off"}:
                return False
            raise ValueError(raw)
        if isinstance(current, tuple):
            return tuple(part.strip() for part in raw.split(",") if part.strip())
        if isinstance(current, float):
            return float(raw)
        if isinstance(current, int) or name == "sample_seed":
            return int(raw)
    except ValueError as e:
        raise ConfigError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}") from e
    return raw


def load_settings(environ: dict | None = None, **overrides) -> AnalysisSettings:
    """
    Build settings from defaults, environment variables and overrides.

    Args:
        environ: Mapping to read instead of os.environ
        **overrides: Explicit values, highest precedence

    Returns:
        AnalysisSettings

    Raises:
        ConfigError: If a value cannot be parsed or is out of range
    """
    env = os.environ if environ is None else environ
    base = AnalysisSettings()
    values = {}

    for f in fields(AnalysisSettings):
        raw = env.get(f"{ENV_PREFIX}{f.name.upper()}")
        if raw is not None and raw != "":
            values[f.name] = _parse_env_value(f.name, raw, getattr(base, f.name))

    values.update(overrides)
    return replace(base, **values)


def configure_logging(level: str | int | None = None) -> None:
    """Install a basic stream handler for scripts and notebooks."""
    if level is None:
        level = os.environ.get(f"{ENV_PREFIX}LOG_LEVEL", "INFO")
    logging.basicConfig(level=level, format=LOG_FORMAT)
