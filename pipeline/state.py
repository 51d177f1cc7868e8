# state.py — Shared PipelineState schema
# TypedDict definition for state passed between nodes
"""
state.py — Pipeline State Schema

Defines the TypedDict structure for state passed between LangGraph nodes.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Sequence, TypedDict

from config.settings import AnalysisSettings
from engine.aggregation import AggregationConfig, FilterConfig
from engine.column_types import ColumnType
from engine.normality import NormalityTestResults
from engine.profile import ProfileConfig, ProfileResult
from engine.thresholds import MethodConfig


class PipelineState(TypedDict, total=False):
    """
    Shared state passed between all pipeline nodes.

    All fields are optional (total=False) to support partial updates.
    """

    # =========================================================================
    # INPUT LAYER
    # =========================================================================
    rows: Any  # Sequence of mappings or a DataFrame
    filter_config: FilterConfig | dict | None
    aggregation_config: AggregationConfig | dict | None
    profile_config: ProfileConfig | dict | None
    method_config: MethodConfig | dict | None
    settings: AnalysisSettings | None
    run_normality: bool
    normality_fields: list[str] | None  # None = every numeric field
    normality_group_by: list[str] | None  # None = profile group-by field
    llm: Any  # Object with rewrite_narrative(text, context); None = settings.use_llm decides

    # =========================================================================
    # DATA LAYER
    # =========================================================================
    row_count: int
    column_types: dict[str, ColumnType] | None
    filtered_rows: list[dict] | None
    filtered_count: int
    aggregated_rows: list[dict] | None

    # =========================================================================
    # ANALYSIS LAYER
    # =========================================================================
    normality: NormalityTestResults | None
    profile: ProfileResult | None
    narratives: dict[str, str] | None
    warnings: list[str]

    # =========================================================================
    # OUTPUT LAYER
    # =========================================================================
    report: dict | None  # JSON-safe final payload (or error payload)

    # =========================================================================
    # CONTROL LAYER
    # =========================================================================
    current_node: str | None
    progress: float
    progress_message: str | None
    cancel_event: threading.Event | None
    cancelled: bool

    # =========================================================================
    # ERROR LAYER
    # =========================================================================
    error: str | None
    error_type: str | None
    failed_node: str | None
    partial_results: bool
    recovery_hint: str | None

    # =========================================================================
    # CALLBACKS (not persisted)
    # =========================================================================
    progress_callback: Callable[[dict], None] | None


def create_initial_state(
    rows: Any,
    aggregation_config: AggregationConfig | dict | None = None,
    filter_config: FilterConfig | dict | None = None,
    profile_config: ProfileConfig | dict | None = None,
    method_config: MethodConfig | dict | None = None,
    settings: AnalysisSettings | None = None,
    run_normality: bool = True,
    normality_fields: Sequence[str] | None = None,
    normality_group_by: Sequence[str] | None = None,
    llm: Any = None,
    progress_callback: Callable[[dict], None] | None = None,
    cancel_event: threading.Event | None = None,
) -> PipelineState:
    """
    Create a fresh PipelineState with default values.

    Configuration objects may be given as dataclasses or plain dicts;
    dicts are converted by validate_input_node.
    """
    return PipelineState(
        # Input
        rows=rows,
        filter_config=filter_config,
        aggregation_config=aggregation_config,
        profile_config=profile_config,
        method_config=method_config,
        settings=settings,
        run_normality=run_normality,
        normality_fields=list(normality_fields) if normality_fields is not None else None,
        normality_group_by=list(normality_group_by) if normality_group_by is not None else None,
        llm=llm,

        # Data
        row_count=0,
        column_types=None,
        filtered_rows=None,
        filtered_count=0,
        aggregated_rows=None,

        # Analysis
        normality=None,
        profile=None,
        narratives=None,
        warnings=[],

        # Output
        report=None,

        # Control
        current_node=None,
        progress=0.0,
        progress_message=None,
        cancel_event=cancel_event,
        cancelled=False,

        # Error
        error=None,
        error_type=None,
        failed_node=None,
        partial_results=False,
        recovery_hint=None,

        # Callbacks
        progress_callback=progress_callback,
    )
