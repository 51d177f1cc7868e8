# nodes.py — Pipeline stages (individual graph node functions)
# Steps: validate → type → filter → aggregate → test → classify → summarize
"""
nodes.py — LangGraph Pipeline Nodes

Each node is a pure function that takes PipelineState and returns state
updates. Engine errors are caught here and routed to handle_error_node;
cancellation is checked on entry to every node and routed to
cancelled_node.

Node Responsibilities:
- validate_input_node: Validate rows, build configuration objects
- detect_column_types_node: Column display types
- filter_rows_node: Optional pre-aggregation filter
- aggregate_node: Group-by aggregation
- test_normality_node: Normality battery per field (and per group)
- classify_profiles_node: Per-group thresholds and classification
- summarize_node: Narratives and the final report payload
- handle_error_node / cancelled_node: Terminal payloads
"""

from __future__ import annotations

import logging

from config.llm_config import LLMError, get_llm
from config.settings import AnalysisSettings
from engine.aggregation import AggregationConfig, FilterConfig, aggregate, filter_rows
from engine.coercion import column_names
from engine.column_types import detect_column_types
from engine.errors import AnalysisCancelled, AnalysisError
from engine.normality import run_normality_tests
from engine.profile import ProfileConfig, ProfileOrchestrator
from engine.thresholds import MethodConfig
from engine.validators import (
    sanitize_dict_for_json,
    validate_aggregation_config,
    validate_filter_config,
    validate_method_config,
    validate_profile_config,
    validate_rows,
)

logger = logging.getLogger(__name__)


# =============================================================================
# PROGRESS HELPERS
# =============================================================================

def _emit_progress(
    state: dict,
    node: str,
    progress: float,
    message: str,
    status: str = "running",
) -> None:
    """
    Emit a progress update via the callback if available.

    Args:
        state: Current pipeline state
        node: Current node name
        progress: Progress value (0.0 - 1.0)
        message: Human-readable progress message
        status: "running" | "complete" | "failed" | "cancelled"
    """
    callback = state.get("progress_callback")
    if callback and callable(callback):
        try:
            callback({
                "node": node,
                "status": status,
                "progress": progress,
                "message": message,
            })
        except Exception:
            logger.debug("Progress callback raised", exc_info=True)


def _create_error_state(
    state: dict,
    node: str,
    error_msg: str,
    error_type: str,
    recovery_hint: str,
) -> dict:
    """Create state update for error routing."""
    logger.error("%s failed (%s): %s", node, error_type, error_msg)
    return {
        "error": error_msg,
        "error_type": error_type,
        "failed_node": node,
        "recovery_hint": recovery_hint,
        "current_node": node,
        "partial_results": _has_partial_results(state),
    }


def _create_cancelled_state(node: str) -> dict:
    logger.info("Run cancelled at %s", node)
    return {"cancelled": True, "current_node": node}


def _has_partial_results(state: dict) -> bool:
    """Check if state has any usable partial results."""
    return any([
        state.get("aggregated_rows"),
        state.get("normality"),
        state.get("profile"),
    ])


def _is_cancelled(state: dict) -> bool:
    event = state.get("cancel_event")
    return event is not None and event.is_set()


def _should_cancel(state: dict):
    """Zero-argument cancellation check for engine loops."""
    return lambda: _is_cancelled(state)


def _settings(state: dict) -> AnalysisSettings:
    return state.get("settings") or AnalysisSettings()


RECOVERY_HINTS = {
    "CONFIG_INVALID": "Check the aggregation, filter, profile and method settings.",
    "FIELD_UNRESOLVED": "Configure the analysis fields explicitly (value field first, count field second).",
    "THRESHOLD_FAILED": "Make sure the value and count fields contain numbers after aggregation.",
    "PROFILE_FAILED": "Check that aggregation produced rows to profile.",
}


def _error_from(state: dict, node: str, error: AnalysisError) -> dict:
    hint = RECOVERY_HINTS.get(error.error_type, "Please check the input data and try again.")
    return _create_error_state(state, node, str(error), error.error_type, hint)


# =============================================================================
# NODE: VALIDATE INPUT
# =============================================================================

def validate_input_node(state: dict) -> dict:
    """
    Validate rows and normalise configuration objects.

    Output state updates:
        - row_count: int
        - settings, aggregation_config, filter_config, profile_config, method_config
    """
    node_name = "validate_input"
    if _is_cancelled(state):
        return _create_cancelled_state(node_name)
    _emit_progress(state, node_name, 0.02, "Validating input...")

    rows = state.get("rows")
    is_valid, error_msg = validate_rows(rows)
    if not is_valid:
        return _create_error_state(
            state, node_name,
            error_msg,
            "INVALID_INPUT",
            "Provide a non-empty sequence of rows (mappings of field name to value).",
        )

    settings = _settings(state)
    try:
        aggregation_config = state.get("aggregation_config") or AggregationConfig()
        if isinstance(aggregation_config, dict):
            aggregation_config = AggregationConfig.from_dict(aggregation_config)

        filter_config = state.get("filter_config")
        if isinstance(filter_config, dict):
            filter_config = FilterConfig(
                type=filter_config.get("type", ""),
                column_a=filter_config.get("column_a") or filter_config.get("columnA"),
                column_b=filter_config.get("column_b") or filter_config.get("columnB"),
                target_column=filter_config.get("target_column") or filter_config.get("targetColumn"),
                target_value=filter_config.get("target_value", filter_config.get("targetValue")),
            )

        profile_config = state.get("profile_config") or ProfileConfig()
        if isinstance(profile_config, dict):
            profile_config = ProfileConfig.from_dict(profile_config)

        method_config = state.get("method_config")
        if method_config is None or isinstance(method_config, dict):
            method_config = MethodConfig.from_dict(method_config, settings)
    except AnalysisError as e:
        return _error_from(state, node_name, e)
    except (TypeError, ValueError) as e:
        return _create_error_state(
            state, node_name, f"Invalid configuration: {e}", "CONFIG_INVALID", RECOVERY_HINTS["CONFIG_INVALID"],
        )

    columns = column_names(rows)
    for is_valid, error_msg in (
        validate_filter_config(filter_config),
        validate_aggregation_config(aggregation_config, columns),
        validate_method_config(method_config),
    ):
        if not is_valid:
            return _create_error_state(
                state, node_name, error_msg, "CONFIG_INVALID", RECOVERY_HINTS["CONFIG_INVALID"],
            )

    row_count = len(rows)
    logger.info("Validated %d rows, %d columns", row_count, len(columns))
    _emit_progress(state, node_name, 0.05, "Input validated", "complete")

    return {
        "row_count": row_count,
        "settings": settings,
        "aggregation_config": aggregation_config,
        "filter_config": filter_config,
        "profile_config": profile_config,
        "method_config": method_config,
        "current_node": node_name,
        "progress": 0.05,
        "progress_message": "Input validated",
    }


# =============================================================================
# NODE: DETECT COLUMN TYPES
# =============================================================================

def detect_column_types_node(state: dict) -> dict:
    """Attach display-only column types for the raw rows."""
    node_name = "detect_column_types"
    if _is_cancelled(state):
        return _create_cancelled_state(node_name)
    _emit_progress(state, node_name, 0.07, "Detecting column types...")

    column_types = detect_column_types(state["rows"], _settings(state))

    _emit_progress(state, node_name, 0.10, "Column types detected", "complete")
    return {
        "column_types": column_types,
        "current_node": node_name,
        "progress": 0.10,
        "progress_message": "Column types detected",
    }


# =============================================================================
# NODE: FILTER ROWS
# =============================================================================

def filter_rows_node(state: dict) -> dict:
    """Apply the optional row filter."""
    node_name = "filter_rows"
    if _is_cancelled(state):
        return _create_cancelled_state(node_name)
    _emit_progress(state, node_name, 0.12, "Filtering rows...")

    filtered = filter_rows(state["rows"], state.get("filter_config"))
    if not filtered:
        return _create_error_state(
            state, node_name,
            "No rows left after filtering",
            "EMPTY_RESULT",
            "Relax the filter or check the target value.",
        )
    if state.get("filter_config") is not None and len(filtered) < state.get("row_count", 0):
        logger.info("Filter kept %d of %d rows", len(filtered), state.get("row_count", 0))

    _emit_progress(state, node_name, 0.15, "Rows filtered", "complete")
    return {
        "filtered_rows": filtered,
        "filtered_count": len(filtered),
        "current_node": node_name,
        "progress": 0.15,
        "progress_message": "Rows filtered",
    }


# =============================================================================
# NODE: AGGREGATE
# =============================================================================

def aggregate_node(state: dict) -> dict:
    """Group filtered rows and compute reducers."""
    node_name = "aggregate"
    if _is_cancelled(state):
        return _create_cancelled_state(node_name)
    _emit_progress(state, node_name, 0.18, "Aggregating...")

    config = state["aggregation_config"]
    try:
        aggregated = aggregate(state["filtered_rows"], config)
    except AnalysisError as e:
        return _error_from(state, node_name, e)
    except Exception as e:
        logger.exception("Aggregation failed")
        return _create_error_state(
            state, node_name, f"Aggregation failed: {e}", "AGGREGATION_FAILED",
            "Check the group-by and reducer columns.",
        )

    logger.info("Aggregated %d rows into %d", state.get("filtered_count", 0), len(aggregated))
    _emit_progress(state, node_name, 0.30, f"{len(aggregated)} groups", "complete")
    return {
        "aggregated_rows": aggregated,
        "current_node": node_name,
        "progress": 0.30,
        "progress_message": "Aggregation complete",
    }


# =============================================================================
# NODE: TEST NORMALITY
# =============================================================================

def test_normality_node(state: dict) -> dict:
    """
    Run the normality battery on the aggregated rows.

    Grouped by normality_group_by when given, else by the profile group-by
    field when one is configured. Skipped when run_normality is False.
    """
    node_name = "test_normality"
    if _is_cancelled(state):
        return _create_cancelled_state(node_name)

    if not state.get("run_normality", True):
        logger.info("Normality testing skipped")
        return {"normality": None, "current_node": node_name, "progress": 0.60}

    _emit_progress(state, node_name, 0.32, "Testing distributions...")

    group_by = state.get("normality_group_by")
    if group_by is None:
        profile_config = state.get("profile_config")
        group_by = [profile_config.group_by_field] if profile_config and profile_config.group_by_field else []

    rows = state["aggregated_rows"]
    missing = [f for f in group_by if f not in column_names(rows)]
    if missing:
        return _create_error_state(
            state, node_name,
            f"Normality group field(s) not found in aggregated data: {', '.join(missing)}",
            "CONFIG_INVALID",
            RECOVERY_HINTS["CONFIG_INVALID"],
        )

    try:
        results = run_normality_tests(
            rows,
            fields=state.get("normality_fields"),
            group_by_fields=group_by,
            settings=_settings(state),
            should_cancel=_should_cancel(state),
        )
    except AnalysisCancelled:
        return _create_cancelled_state(node_name)
    except AnalysisError as e:
        return _error_from(state, node_name, e)
    except Exception as e:
        logger.exception("Normality testing failed")
        return _create_error_state(
            state, node_name, f"Normality testing failed: {e}", "NORMALITY_FAILED",
            "Check that the tested fields are numeric.",
        )

    summary = results.overall_summary if results.has_groups else results.summary
    logger.info("Normality: %d of %d field results normal", summary.normal_fields, summary.total_fields)
    _emit_progress(state, node_name, 0.60, "Distribution tests complete", "complete")
    return {
        "normality": results,
        "current_node": node_name,
        "progress": 0.60,
        "progress_message": "Distribution tests complete",
    }


# Not a pytest test, despite the name.
test_normality_node.__test__ = False


# =============================================================================
# NODE: CLASSIFY PROFILES
# =============================================================================

def classify_profiles_node(state: dict) -> dict:
    """Compute per-group thresholds and classify every aggregated row."""
    node_name = "classify_profiles"
    if _is_cancelled(state):
        return _create_cancelled_state(node_name)
    _emit_progress(state, node_name, 0.62, "Classifying...")

    rows = state["aggregated_rows"]
    profile_config = state["profile_config"]
    is_valid, error_msg = validate_profile_config(profile_config, column_names(rows))
    if not is_valid:
        return _create_error_state(state, node_name, error_msg, "CONFIG_INVALID", RECOVERY_HINTS["CONFIG_INVALID"])

    orchestrator = ProfileOrchestrator(settings=_settings(state))
    try:
        profile = orchestrator.run(
            rows,
            profile_config,
            state["method_config"],
            should_cancel=_should_cancel(state),
        )
    except AnalysisCancelled:
        return _create_cancelled_state(node_name)
    except AnalysisError as e:
        return _error_from(state, node_name, e)

    warnings = list(state.get("warnings", []))
    coverage = profile.coverage
    if coverage.anomalous_rows:
        warnings.append(f"{coverage.anomalous_rows} rows have non-numeric indicator values (anomalous)")
    if coverage.fallback_rows:
        warnings.append(f"{coverage.fallback_rows} rows classified with dataset-wide thresholds")
    if coverage.unknown_rows:
        warnings.append(f"{coverage.unknown_rows} rows could not be classified (unknown)")

    _emit_progress(state, node_name, 0.85, "Classification complete", "complete")
    return {
        "profile": profile,
        "warnings": warnings,
        "current_node": node_name,
        "progress": 0.85,
        "progress_message": "Classification complete",
    }


# =============================================================================
# NODE: SUMMARIZE
# =============================================================================

def _resolve_llm(state: dict):
    llm = state.get("llm")
    if llm is not None:
        return llm
    if _settings(state).use_llm:
        return get_llm()
    return None


def summarize_node(state: dict) -> dict:
    """
    Build narratives and the JSON-safe report.

    When an LLM is available each group narrative is rewritten; any LLM
    failure keeps the deterministic text and records a warning.

    Output state updates:
        - narratives: {group_key: text}
        - report: dict
    """
    node_name = "summarize"
    if _is_cancelled(state):
        return _create_cancelled_state(node_name)
    _emit_progress(state, node_name, 0.88, "Writing summary...")

    profile = state["profile"]
    warnings = list(state.get("warnings", []))
    narratives = {g.group_key: g.narrative for g in profile.groups}

    llm = _resolve_llm(state)
    if llm is not None:
        subject = state["profile_config"].subject_field
        context = f"Each object is one {subject}." if subject else None
        for key, text in narratives.items():
            try:
                narratives[key] = llm.rewrite_narrative(text, context)
            except LLMError as e:
                logger.warning("LLM narrative failed for %s: %s", key, e)
                warnings.append(f"LLM narrative unavailable for {key}; using generated text")

    if profile.has_groups:
        analysis = f"Profiled by {profile.group_by_field}: {len(profile.groups)} groups"
    else:
        analysis = narratives.get(profile.groups[0].group_key, "") if profile.groups else ""

    normality = state.get("normality")
    report = {
        "is_error": False,
        "summary": {
            "total_rows": state.get("row_count", 0),
            "filtered_rows": state.get("filtered_count", 0),
            "grouped_rows": len(state.get("aggregated_rows") or []),
        },
        "column_types": state.get("column_types") or {},
        "profile": profile.to_dict(),
        "narratives": narratives,
        "analysis": analysis,
        "normality": normality.to_dict() if normality is not None else None,
        "warnings": warnings,
    }

    _emit_progress(state, node_name, 1.0, "Report ready", "complete")
    return {
        "narratives": narratives,
        "report": sanitize_dict_for_json(report),
        "warnings": warnings,
        "current_node": node_name,
        "progress": 1.0,
        "progress_message": "Report ready",
    }


# =============================================================================
# NODE: HANDLE ERROR
# =============================================================================

def handle_error_node(state: dict) -> dict:
    """Prepare the error payload, with partial results when available."""
    node_name = "handle_error"
    _emit_progress(state, node_name, 0.99, "Handling error...", "failed")

    error = state.get("error", "An unknown error occurred")
    error_type = state.get("error_type", "UNKNOWN")
    has_partial = state.get("partial_results", False)

    error_payload = {
        "is_error": True,
        "error_message": error,
        "error_type": error_type,
        "failed_node": state.get("failed_node", "unknown"),
        "recovery_hint": state.get("recovery_hint", "Please check the input data and try again."),
        "has_partial_results": has_partial,
    }

    if has_partial:
        normality = state.get("normality")
        error_payload["partial_results"] = {
            "aggregated_rows": state.get("aggregated_rows"),
            "normality": normality.to_dict() if normality is not None else None,
            "warnings": state.get("warnings", []) + [f"Analysis incomplete: {error}"],
        }

    return {
        "report": sanitize_dict_for_json(error_payload),
        "current_node": node_name,
        "progress": 1.0,
        "progress_message": f"Error: {error_type}",
    }


# =============================================================================
# NODE: CANCELLED
# =============================================================================

def cancelled_node(state: dict) -> dict:
    """Terminal node for cooperatively cancelled runs."""
    node_name = "cancelled"
    _emit_progress(state, node_name, state.get("progress", 0.0), "Analysis cancelled", "cancelled")
    return {
        "report": {
            "is_error": True,
            "error_message": "Analysis cancelled",
            "error_type": AnalysisCancelled.error_type,
            "failed_node": state.get("current_node"),
            "has_partial_results": False,
        },
        "cancelled": True,
        "current_node": node_name,
        "progress_message": "Cancelled",
    }
