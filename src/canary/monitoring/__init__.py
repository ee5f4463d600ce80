"""Monitoring components for the rollout controller."""

from .metrics import (
    ROLLOUT_WEIGHT,
    ROLLOUT_TRANSITIONS,
    ANALYSIS_MEASUREMENTS,
    ANALYSIS_RUNS,
    ROLLBACKS_TOTAL,
    ROLLBACK_ESCALATIONS,
)

from .tracing import (
    tracer,
    get_current_span,
    set_span_attributes,
    record_exception,
)

__all__ = [
    # Prometheus metrics
    "ROLLOUT_WEIGHT",
    "ROLLOUT_TRANSITIONS",
    "ANALYSIS_MEASUREMENTS",
    "ANALYSIS_RUNS",
    "ROLLBACKS_TOTAL",
    "ROLLBACK_ESCALATIONS",
    # Tracing
    "tracer",
    "get_current_span",
    "set_span_attributes",
    "record_exception",
]
