"""Order reconciliation - keeps orders, their figures and their reservations consistent."""

from reconciliation.engine import (
    BatchUpdate,
    BatchUpdateResult,
    OrderOutcome,
    OrderReconciler,
    UpdateType,
    check_order_fields,
    reservation_for,
    resolve_status,
)

__all__ = [
    "BatchUpdate",
    "BatchUpdateResult",
    "OrderOutcome",
    "OrderReconciler",
    "UpdateType",
    "check_order_fields",
    "reservation_for",
    "resolve_status",
]
