# graph.py — LangGraph workflow definition and run entry points
# Defines state machine, node edges, conditional routing, background runner
"""
graph.py — LangGraph Workflow Definition

Flow:
    START → validate_input → detect_column_types → filter_rows → aggregate
          → test_normality → classify_profiles → summarize → END

Any node that sets state["error"] routes to handle_error; any node that
sets state["cancelled"] routes to cancelled. Both are terminal.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Iterator, Literal

from langgraph.graph import END, START, StateGraph

from pipeline.nodes import (
    aggregate_node,
    cancelled_node,
    classify_profiles_node,
    detect_column_types_node,
    filter_rows_node,
    handle_error_node,
    summarize_node,
    test_normality_node,
    validate_input_node,
)
from pipeline.state import PipelineState, create_initial_state

logger = logging.getLogger(__name__)


# Happy-path order; each stage routes to the next one.
STAGES = (
    ("validate_input", validate_input_node),
    ("detect_column_types", detect_column_types_node),
    ("filter_rows", filter_rows_node),
    ("aggregate", aggregate_node),
    ("test_normality", test_normality_node),
    ("classify_profiles", classify_profiles_node),
    ("summarize", summarize_node),
)


# =============================================================================
# CONDITIONAL ROUTING
# =============================================================================

def route_after_node(state: PipelineState) -> Literal["continue", "error", "cancelled"]:
    """
    Conditional router: check for cancellation or error, route accordingly.

    Returns:
        "cancelled" if the run was cancelled, "error" if state has an
        error, "continue" otherwise
    """
    if state.get("cancelled"):
        return "cancelled"
    if state.get("error"):
        return "error"
    return "continue"


# =============================================================================
# GRAPH BUILDER
# =============================================================================

def build_pipeline_graph() -> StateGraph:
    """
    Build the LangGraph workflow.

    Returns:
        Uncompiled StateGraph
    """
    workflow = StateGraph(PipelineState)

    for name, node in STAGES:
        workflow.add_node(name, node)
    workflow.add_node("handle_error", handle_error_node)
    workflow.add_node("cancelled", cancelled_node)

    workflow.add_edge(START, STAGES[0][0])

    for index, (name, _) in enumerate(STAGES):
        next_stage = STAGES[index + 1][0] if index + 1 < len(STAGES) else END
        workflow.add_conditional_edges(
            name,
            route_after_node,
            {
                "continue": next_stage,
                "error": "handle_error",
                "cancelled": "cancelled",
            },
        )

    workflow.add_edge("handle_error", END)
    workflow.add_edge("cancelled", END)

    return workflow


_compiled_graph = None
_compile_lock = threading.Lock()


def get_compiled_graph():
    """
    Get or create the compiled graph singleton.

    Returns:
        Compiled graph ready for .invoke() or .stream()
    """
    global _compiled_graph
    with _compile_lock:
        if _compiled_graph is None:
            _compiled_graph = build_pipeline_graph().compile()
    return _compiled_graph


# =============================================================================
# GRAPH EXECUTION
# =============================================================================

def run_analysis(rows: Any, **options) -> dict:
    """
    Run the complete pipeline synchronously.

    Args:
        rows: Sequence of mappings or a DataFrame
        **options: Passed to create_initial_state (aggregation_config,
            filter_config, profile_config, method_config, settings,
            run_normality, normality_fields, normality_group_by, llm,
            progress_callback, cancel_event)

    Returns:
        Final PipelineState dict; state["report"] holds the JSON-safe
        result or error payload

    Example:
        result = run_analysis(
            rows,
            aggregation_config={"group_by": ["account"], "sum_columns": ["amount"]},
            profile_config={"analysis_fields": ["amount_sum", "_count"]},
        )
        if result["report"]["is_error"]:
            print(result["report"]["error_message"])
    """
    initial_state = create_initial_state(rows, **options)
    return get_compiled_graph().invoke(initial_state)


def stream_analysis(rows: Any, **options) -> Iterator[tuple[str, dict]]:
    """
    Stream the pipeline, yielding state after each node.

    Yields:
        Tuple of (node_name, accumulated_state) after each node execution
    """
    initial_state = create_initial_state(rows, **options)
    accumulated_state = dict(initial_state)

    for event in get_compiled_graph().stream(initial_state):
        for node_name, state_update in event.items():
            accumulated_state.update(state_update or {})
            yield node_name, accumulated_state


# =============================================================================
# BACKGROUND EXECUTION
# =============================================================================

class AnalysisRunner:
    """
    Runs analyses on a single background worker thread.

    Each submit() returns a Future resolving to the final state. cancel()
    sets the run's cancel event; the pipeline stops at its next
    checkpoint and finishes through the cancelled node.

    Example:
        with AnalysisRunner() as runner:
            future = runner.submit(rows, aggregation_config=config)
            state = future.result()
    """

    def __init__(self):
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="segment-profiler")
        self._events: dict[Future, threading.Event] = {}
        self._lock = threading.Lock()
        self._closed = False

    def submit(
        self,
        rows: Any,
        on_complete: Callable[[dict], None] | None = None,
        **options,
    ) -> Future:
        """
        Queue a run.

        Args:
            rows: Input rows
            on_complete: Called with the final state on the worker thread
            **options: Passed to run_analysis (cancel_event is managed here)
        """
        if self._closed:
            raise RuntimeError("AnalysisRunner is closed")

        event = threading.Event()
        options["cancel_event"] = event

        def task() -> dict:
            state = run_analysis(rows, **options)
            if on_complete is not None:
                on_complete(state)
            return state

        future = self._executor.submit(task)
        with self._lock:
            self._events[future] = event
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._events.pop(future, None)

    def cancel(self, future: Future | None = None) -> None:
        """Cancel one run, or every pending and running run when future is None."""
        with self._lock:
            targets = [future] if future is not None else list(self._events)
            events = [self._events[f] for f in targets if f in self._events]
        logger.info("Cancelling %d run(s)", len(events))
        for event in events:
            event.set()
        for target in targets:
            target.cancel()

    def close(self, wait: bool = True, cancel_pending: bool = False) -> None:
        """Shut the worker down; optionally cancel outstanding runs first."""
        if self._closed:
            return
        self._closed = True
        if cancel_pending:
            self.cancel()
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "AnalysisRunner":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close(wait=True, cancel_pending=exc_type is not None)
