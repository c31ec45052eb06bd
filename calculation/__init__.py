"""Calculation engine - order totals, balances and payment status.

Exposes pure functions:
- compute_total(count, size, price, mode) -> Decimal
- compute_balance(total, amount_paid) -> Decimal
- derive_payment_status(total, amount_paid) -> OrderStatus
- compute_order_figures(order) -> OrderFigures
- summarize_orders(orders) -> OrderSummary
"""

from calculation.engine import (
    OrderFigures,
    OrderSummary,
    compute_balance,
    compute_order_figures,
    compute_total,
    derive_payment_status,
    summarize_orders,
    to_number,
)

__all__ = [
    "OrderFigures",
    "OrderSummary",
    "compute_balance",
    "compute_order_figures",
    "compute_total",
    "derive_payment_status",
    "summarize_orders",
    "to_number",
]
