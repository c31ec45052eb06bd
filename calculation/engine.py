"""Order arithmetic.

One formula table serves order entry, listings, bulk updates and summaries:

    count_cost       count * price
    size_cost        size * price
    count_size_cost  count * size * price

Nothing here raises on bad input. Missing or non-numeric values count as 0
and an unknown mode falls back to count_size_cost, so a half-filled order
can always be displayed. Rejecting such orders is the reconciler's job.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Union

from core.models.entities import (
    DEFAULT_CALCULATION_MODE,
    CalculationMode,
    Order,
    OrderStatus,
    to_mode,
)

ZERO = Decimal("0")

Number = Union[Decimal, int, float, str, None]


# =============================================================================
# Utility Functions
# =============================================================================

def to_number(value: Any) -> Decimal:
    """Convert value to Decimal, treating anything unparseable as 0."""
    if value is None or isinstance(value, bool):
        return ZERO
    if isinstance(value, Decimal):
        return value if value.is_finite() else ZERO
    if isinstance(value, str):
        value = value.strip().replace(",", "")
        if value == "":
            return ZERO
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return ZERO
    return number if number.is_finite() else ZERO


# =============================================================================
# Core Formulas
# =============================================================================

def compute_total(
    quantity_count: Number,
    unit_size: Number,
    unit_price: Number,
    mode: Any = DEFAULT_CALCULATION_MODE,
) -> Decimal:
    """Compute an order total under the given calculation mode."""
    count = to_number(quantity_count)
    size = to_number(unit_size)
    price = to_number(unit_price)

    mode = to_mode(mode)
    if mode == CalculationMode.COUNT_PRICE:
        return count * price
    if mode == CalculationMode.SIZE_PRICE:
        return size * price
    return count * size * price


def compute_balance(total: Number, amount_paid: Number) -> Decimal:
    """Outstanding amount, never negative."""
    balance = to_number(total) - to_number(amount_paid)
    return balance if balance > ZERO else ZERO


def derive_payment_status(total: Number, amount_paid: Number) -> OrderStatus:
    """Payment status implied by the amounts.

    A zero total is pending regardless of payment.
    """
    total = to_number(total)
    paid = to_number(amount_paid)

    if total == ZERO:
        return OrderStatus.PENDING
    if paid >= total:
        return OrderStatus.PAID
    if paid > ZERO:
        return OrderStatus.PARTIAL
    return OrderStatus.PENDING


# =============================================================================
# Per-order and Aggregate Figures
# =============================================================================

@dataclass
class OrderFigures:
    """Derived amounts for one order."""
    total: Decimal
    balance: Decimal
    derived_status: OrderStatus

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": str(self.total),
            "balance": str(self.balance),
            "derived_status": self.derived_status.value,
        }


def compute_order_figures(order: Order) -> OrderFigures:
    """Compute total, balance and derived status from the order's own fields."""
    total = compute_total(
        order.quantity_count,
        order.unit_size,
        order.unit_price,
        order.calculation_mode,
    )
    return OrderFigures(
        total=total,
        balance=compute_balance(total, order.amount_paid),
        derived_status=derive_payment_status(total, order.amount_paid),
    )


@dataclass
class OrderSummary:
    """Totals over a set of orders."""
    order_count: int = 0
    total_amount: Decimal = ZERO
    total_paid: Decimal = ZERO
    total_balance: Decimal = ZERO
    by_status: Dict[str, int] = field(default_factory=dict)
    by_inventory_type: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_count": self.order_count,
            "total_amount": str(self.total_amount),
            "total_paid": str(self.total_paid),
            "total_balance": str(self.total_balance),
            "by_status": dict(self.by_status),
            "by_inventory_type": {
                k: {"count": v["count"], "revenue": str(v["revenue"])}
                for k, v in self.by_inventory_type.items()
            },
        }


def summarize_orders(orders: Iterable[Order]) -> OrderSummary:
    """Aggregate totals, payments and balances.

    Each order is recomputed with its own mode, so the summary always agrees
    with the per-order figures.
    """
    summary = OrderSummary()
    for order in orders:
        figures = compute_order_figures(order)
        summary.order_count += 1
        summary.total_amount += figures.total
        summary.total_paid += to_number(order.amount_paid)
        summary.total_balance += figures.balance

        status = order.status.value
        summary.by_status[status] = summary.by_status.get(status, 0) + 1

        bucket = summary.by_inventory_type.setdefault(
            order.inventory_type.value, {"count": 0, "revenue": ZERO}
        )
        bucket["count"] += 1
        bucket["revenue"] += figures.total

    return summary
