"""
Observability Module for the Batch Engine

Provides:
- Structured logging with correlation IDs
- Metrics collection (operations, conflict retries, inventory movements, timings)
"""

from core.observability.metrics import (
    MetricsCollector,
    get_metrics,
    record_operation_started,
    record_operation_completed,
    record_operation_failed,
    record_conflict_retry,
    record_inventory_movement,
    record_processing_time,
    track_operation,
)

from core.observability.logging import (
    get_logger,
    configure_logging,
    CorrelationContext,
    with_correlation,
)

__all__ = [
    # Metrics
    "MetricsCollector",
    "get_metrics",
    "record_operation_started",
    "record_operation_completed",
    "record_operation_failed",
    "record_conflict_retry",
    "record_inventory_movement",
    "record_processing_time",
    "track_operation",
    # Logging
    "get_logger",
    "configure_logging",
    "CorrelationContext",
    "with_correlation",
]
