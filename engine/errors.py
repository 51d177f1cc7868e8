"""
errors.py — Exception hierarchy for the profiling engine.

Statistical tests never raise for small or degenerate samples; these are
reserved for configuration problems and conditions the caller must handle.
"""

from __future__ import annotations


class AnalysisError(Exception):
    """Base exception for all analysis errors."""
    error_type = "ANALYSIS_FAILED"


class ConfigError(AnalysisError):
    """Raised when a run or settings configuration is invalid."""
    error_type = "CONFIG_INVALID"


class FieldResolutionError(AnalysisError):
    """Raised when the value/count indicator fields cannot be resolved."""
    error_type = "FIELD_UNRESOLVED"


class ThresholdError(AnalysisError):
    """Raised when classification thresholds cannot be computed."""
    error_type = "THRESHOLD_FAILED"


class ProfileError(AnalysisError):
    """Raised when profile classification cannot proceed."""
    error_type = "PROFILE_FAILED"


class AnalysisCancelled(AnalysisError):
    """Raised at a cooperative checkpoint once a run has been cancelled."""
    error_type = "CANCELLED"
