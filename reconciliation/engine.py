"""Order reconciliation - validate, commit, edit, cancel and bulk-update orders.

Exposes OrderReconciler, which keeps each order's cached total, balance and
status consistent with its own fields, and its inventory reservation
consistent with the ledger:

- commit_order(order) -> OrderOutcome
- edit_order(order_id, changes, status=None) -> OrderOutcome
- cancel_order(order_id) -> OrderOutcome
- batch_update(order_ids, update) -> BatchUpdateResult

Status policy: a status the caller sets explicitly is kept as an override
until it is cleared or a later explicit status matches the derived one.
Payment statuses that disagree with the amounts are reported as
status_override_mismatch anomalies, never silently corrected.
"""

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from calculation.engine import (
    OrderFigures,
    OrderSummary,
    compute_order_figures,
    summarize_orders,
)
from core.audit import AuditEventType, AuditLogger
from core.config import EngineSettings
from core.errors import (
    ConcurrencyConflict,
    InsufficientInventory,
    InvalidInput,
    OrderNotFound,
)
from core.locking import run_with_retry
from core.models.anomalies import Anomaly, AnomalyKind
from core.models.entities import (
    PAYMENT_STATUSES,
    CalculationMode,
    InventoryType,
    LenientDecimal,
    Order,
    OrderStatus,
)
from core.models.refs import utcnow
from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import track_operation
from inventory.ledger import InventoryLedger, LedgerTransaction, validation_errors

logger = get_logger(__name__)

ZERO = Decimal("0")

# Statuses a caller may set at creation; payment statuses are always derived
WORKFLOW_STATUSES = frozenset({OrderStatus.CONFIRMED, OrderStatus.COMPLETED, OrderStatus.CANCELLED})

# Cached or bookkeeping fields callers cannot edit
READ_ONLY_FIELDS = frozenset({
    "id", "total", "balance", "status_overridden", "reserved_quantity", "created_at", "updated_at",
})

FIELD_BY_ALIAS = {f.alias: name for name, f in Order.model_fields.items() if f.alias}


# =============================================================================
# Requests & Results
# =============================================================================

class UpdateType(str, Enum):
    STATUS = "status"
    PAYMENT = "payment"
    BOTH = "both"


class BatchUpdate(BaseModel):
    """The same status and/or payment applied to several orders."""
    model_config = ConfigDict(populate_by_name=True)

    update_type: UpdateType = Field(UpdateType.STATUS, alias="updateType")
    status: Optional[OrderStatus] = None
    amount_paid: LenientDecimal = None

    @model_validator(mode="before")
    @classmethod
    def _blank_status(cls, data):
        if isinstance(data, dict) and data.get("status") == "":
            data = dict(data)
            data["status"] = None
        return data

    @property
    def sets_status(self) -> bool:
        return self.update_type in (UpdateType.STATUS, UpdateType.BOTH)

    @property
    def sets_payment(self) -> bool:
        return self.update_type in (UpdateType.PAYMENT, UpdateType.BOTH)


@dataclass
class OrderOutcome:
    """A stored order plus the figures and warnings behind it."""
    order: Order
    figures: OrderFigures
    warnings: List[Anomaly] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": self.order.model_dump(mode="json"),
            "figures": self.figures.to_dict(),
            "warnings": [w.model_dump(mode="json") for w in self.warnings],
        }


@dataclass
class BatchUpdateResult:
    orders: List[Order]
    summary: OrderSummary
    warnings: List[Anomaly] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orders": [o.model_dump(mode="json") for o in self.orders],
            "summary": self.summary.to_dict(),
            "warnings": [w.model_dump(mode="json") for w in self.warnings],
        }


# =============================================================================
# Utility Functions
# =============================================================================

def order_key(order_id: str) -> str:
    """Lock key of an order; shares the ledger's lock manager with batch ids."""
    return f"order:{order_id}"


def reservation_for(order: Order) -> int:
    """Units an order should hold against its batch."""
    if order.status == OrderStatus.CANCELLED or not order.source_batch_id:
        return 0
    if not order.quantity_count or order.quantity_count <= 0:
        return 0
    return order.quantity_count


def resolve_status(
    derived: OrderStatus,
    requested: Optional[OrderStatus],
    current: Optional[Order] = None,
) -> Tuple[OrderStatus, bool]:
    """Return (status, overridden) under the override policy."""
    if requested is None:
        if current is not None and current.status_overridden:
            return current.status, True
        return derived, False
    if requested == derived:
        return derived, False
    return requested, True


def override_mismatch(order: Order, figures: OrderFigures) -> Optional[Anomaly]:
    """Flag an overridden status the amounts do not support."""
    if not order.status_overridden:
        return None
    if order.status in PAYMENT_STATUSES and order.status != figures.derived_status:
        message = (
            f"Order {order.id} is marked {order.status.value} but the amounts "
            f"say {figures.derived_status.value}"
        )
    elif order.status == OrderStatus.COMPLETED and figures.balance > ZERO:
        message = f"Order {order.id} is completed with {figures.balance} still outstanding"
    else:
        return None
    return Anomaly(
        kind=AnomalyKind.STATUS_OVERRIDE_MISMATCH,
        entity_id=order.id,
        message=message,
        evidence={
            "status": order.status.value,
            "derived_status": figures.derived_status.value,
            "total": str(figures.total),
            "amount_paid": str(order.amount_paid),
            "balance": str(figures.balance),
        },
    )


def check_order_fields(order: Order) -> Dict[str, str]:
    """Field-level validation. Returns ``{field: message}``, empty when valid."""
    errors: Dict[str, str] = {}

    if not order.customer_name or not order.customer_name.strip():
        errors["customer_name"] = "Customer name is required"
    if order.order_date is None:
        errors["order_date"] = "Date is required"
    if order.unit_price is None or order.unit_price <= 0:
        errors["unit_price"] = "Price must be greater than 0"

    if order.calculation_mode != CalculationMode.SIZE_PRICE:
        if order.quantity_count is None or order.quantity_count <= 0:
            errors["quantity_count"] = "Count must be greater than 0"
    elif order.quantity_count is not None and order.quantity_count < 0:
        errors["quantity_count"] = "Count cannot be negative"

    if order.calculation_mode != CalculationMode.COUNT_PRICE:
        if order.unit_size is None or order.unit_size <= 0:
            errors["unit_size"] = "Size must be greater than 0"

    if order.inventory_type == InventoryType.PARTS and not order.part_type:
        errors["part_type"] = "Part type is required for parts inventory"
    elif order.inventory_type != InventoryType.PARTS and order.part_type:
        errors["part_type"] = "Part type is only valid for parts inventory"

    if order.amount_paid is None or order.amount_paid < 0:
        errors["amount_paid"] = "Amount paid must be 0 or greater"

    return errors


# =============================================================================
# Reconciler
# =============================================================================

class OrderReconciler:
    """Order book kept in step with the inventory ledger.

    Usage:
        reconciler = OrderReconciler(ledger)
        outcome = reconciler.commit_order({
            "customer": "Ada", "date": "2024-05-01",
            "count": 10, "size": 2.5, "price": 500,
            "batch_id": "lb-1",
        })
        outcome.order.total  # Decimal("12500.0")
    """

    def __init__(
        self,
        ledger: InventoryLedger,
        audit: Optional[AuditLogger] = None,
        settings: Optional[EngineSettings] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self.ledger = ledger
        self.audit = audit or ledger.audit
        self.settings = settings or ledger.settings
        self.id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self._orders: Dict[str, Order] = {}

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _coerce(order: Union[Order, Dict[str, Any]]) -> Order:
        if isinstance(order, Order):
            return order
        try:
            return Order.model_validate(order)
        except ValidationError as e:
            raise InvalidInput("Invalid order", validation_errors(e))

    def _run(self, operation: str, func: Callable[[], Any], **correlation) -> Any:
        with with_correlation(operation=operation, **correlation), track_operation(operation):
            return run_with_retry(operation, func, self.settings.retry)

    def _store(self, tx: LedgerTransaction, order: Order) -> None:
        def put():
            self._orders[order.id] = order
        tx.on_commit(put)

    def _lock_ids(self, order_id: str, *orders: Optional[Order]) -> List[str]:
        ids = [order_key(order_id)]
        for order in orders:
            if order is not None and order.source_batch_id:
                ids.append(order.source_batch_id)
        return ids

    def _recheck(self, order_id: str, expected: Order) -> None:
        """Raise ConcurrencyConflict if the order changed since it was read."""
        if self._orders.get(order_id) is not expected:
            raise ConcurrencyConflict([order_key(order_id)])

    def _current(self, order_id: str) -> Order:
        with self.ledger.locks.snapshot():
            order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFound([order_id])
        return order

    def _move_reservation(
        self,
        tx: LedgerTransaction,
        current: Optional[Order],
        updated: Order,
    ) -> int:
        """Bring the ledger in line with ``updated``'s reservation.

        The new reservation is taken before the old one is returned, so a
        failed edit leaves the old reservation in place.
        """
        old_qty = current.reserved_quantity if current is not None else 0
        new_qty = reservation_for(updated)
        old_key = (current.source_batch_id, current.inventory_source) if old_qty else None
        new_key = (updated.source_batch_id, updated.inventory_source) if new_qty else None

        for batch_id in {k[0] for k in (old_key, new_key) if k}:
            if batch_id not in tx.batch_ids:
                # The order moved to another batch after we chose which locks to take
                raise ConcurrencyConflict([batch_id])

        if old_key is not None and old_key == new_key:
            delta = new_qty - old_qty
            if delta > 0:
                tx.reserve(new_key[0], new_key[1], delta)
            elif delta < 0:
                tx.release(old_key[0], old_key[1], -delta)
            return new_qty

        if new_key is not None:
            tx.reserve(new_key[0], new_key[1], new_qty)
        if old_key is not None:
            tx.release(old_key[0], old_key[1], old_qty)
        return new_qty

    def _finalize(
        self,
        order: Order,
        requested_status: Optional[OrderStatus],
        current: Optional[Order],
        **extra,
    ) -> Tuple[Order, OrderFigures]:
        figures = compute_order_figures(order)
        status, overridden = resolve_status(figures.derived_status, requested_status, current)
        updates = {
            "total": figures.total,
            "balance": figures.balance,
            "status": status,
            "status_overridden": overridden,
        }
        updates.update(extra)
        return order.model_copy(update=updates), figures

    # =========================================================================
    # Validation
    # =========================================================================

    def validate_order(self, order: Union[Order, Dict[str, Any]]) -> Order:
        """Check an order's fields and, when it draws on a batch, availability.

        An order already in the book gets its own reservation counted as
        available.

        Returns:
            The parsed order

        Raises:
            InvalidInput: With a field -> message map
            BatchNotFound: If the referenced batch is unknown
            InsufficientInventory: If the count exceeds what the batch has
        """
        order = self._coerce(order)
        errors = check_order_fields(order)
        if errors:
            logger.info("Order rejected", extra_fields={"errors": errors})
            raise InvalidInput("Order validation failed", errors)

        if order.source_batch_id and order.quantity_count:
            source = order.inventory_source
            available = self.ledger.available_quantity(order.source_batch_id, source)

            if order.id:
                with self.ledger.locks.snapshot():
                    existing = self._orders.get(order.id)
                if (
                    existing is not None
                    and existing.reserved_quantity
                    and existing.source_batch_id == order.source_batch_id
                    and existing.inventory_source == source
                ):
                    available += existing.reserved_quantity

            if order.quantity_count > available:
                batch = self.ledger.get_batch(order.source_batch_id, source)
                raise InsufficientInventory(batch.batch_id, order.quantity_count, available, source.label)

        return order

    # =========================================================================
    # Order Lifecycle
    # =========================================================================

    def commit_order(self, order: Union[Order, Dict[str, Any]], actor: str = "system") -> OrderOutcome:
        """Validate a new order, reserve its inventory and store it.

        A payment status supplied by the caller is ignored; confirmed,
        completed and cancelled are kept as overrides.

        Raises:
            InvalidInput: If fields are invalid or the id is taken
            BatchNotFound: If the referenced batch is unknown
            InsufficientInventory: If the batch cannot cover the count
            ConcurrencyConflict: If the batch stays locked through every retry
        """
        order = self._coerce(order)
        errors = check_order_fields(order)
        if errors:
            logger.info("Order rejected", extra_fields={"errors": errors})
            raise InvalidInput("Order validation failed", errors)

        order_id = order.id or self.id_factory()
        requested = order.status if order.status in WORKFLOW_STATUSES else None
        now = utcnow()

        def attempt():
            with self.ledger.transaction(self._lock_ids(order_id, order), actor=actor) as tx:
                if order_id in self._orders:
                    raise InvalidInput(
                        f"Order id {order_id} is already registered",
                        {"id": "Duplicate order id"},
                    )
                stored, figures = self._finalize(
                    order, requested, None, id=order_id, created_at=now, updated_at=now,
                )
                reserved = self._move_reservation(tx, None, stored)
                stored = stored.model_copy(update={"reserved_quantity": reserved})
                self._store(tx, stored)
                tx.audit(
                    AuditEventType.ORDER_CREATED,
                    f"Order {order_id} created for {stored.customer_name}",
                    entity_type="order",
                    entity_id=order_id,
                    old=None,
                    new=stored,
                )
                return stored, figures

        stored, figures = self._run(
            "commit_order", attempt, order_id=order_id, batch_id=order.source_batch_id,
        )
        warnings = [a for a in [override_mismatch(stored, figures)] if a]
        logger.info(
            f"Order {order_id} committed",
            extra_fields={"total": str(stored.total), "status": stored.status.value},
        )
        return OrderOutcome(stored, figures, warnings)

    def edit_order(
        self,
        order_id: str,
        changes: Dict[str, Any],
        status: Optional[Union[OrderStatus, str]] = None,
        actor: str = "system",
    ) -> OrderOutcome:
        """Apply field changes, move the reservation and recompute.

        ``status`` (or a "status" key in ``changes``) sets an explicit status.

        Raises:
            OrderNotFound: If the order is unknown
            InvalidInput: If the changes are invalid or the order is cancelled
            InsufficientInventory: If the new count cannot be covered
            ConcurrencyConflict: If a lock stays busy through every retry
        """
        changes = {FIELD_BY_ALIAS.get(k, k): v for k, v in (changes or {}).items()}
        if "status" in changes:
            status = changes.pop("status")
        blocked = sorted(READ_ONLY_FIELDS & set(changes))
        if blocked:
            raise InvalidInput(
                f"Cannot edit computed fields: {', '.join(blocked)}",
                {name: "Field cannot be edited" for name in blocked},
            )
        requested = self._parse_status(status)

        def attempt():
            current = self._current(order_id)
            if current.status == OrderStatus.CANCELLED:
                raise InvalidInput(
                    f"Order {order_id} is cancelled",
                    {"status": "Cancelled orders cannot be edited"},
                )

            data = current.model_dump()
            data.update(changes)
            edited = self._coerce(data)
            errors = check_order_fields(edited)
            if errors:
                logger.info("Order edit rejected", extra_fields={"errors": errors})
                raise InvalidInput("Order validation failed", errors)

            with self.ledger.transaction(self._lock_ids(order_id, current, edited), actor=actor) as tx:
                self._recheck(order_id, current)
                stored, figures = self._finalize(edited, requested, current, updated_at=utcnow())
                reserved = self._move_reservation(tx, current, stored)
                stored = stored.model_copy(update={"reserved_quantity": reserved})
                self._store(tx, stored)
                tx.audit(
                    AuditEventType.ORDER_EDITED,
                    f"Order {order_id} edited",
                    entity_type="order",
                    entity_id=order_id,
                    old=current,
                    new=stored,
                )
                return stored, figures

        stored, figures = self._run("edit_order", attempt, order_id=order_id)
        warnings = [a for a in [override_mismatch(stored, figures)] if a]
        for warning in warnings:
            logger.warning(warning.message, extra_fields=warning.evidence)
        return OrderOutcome(stored, figures, warnings)

    def cancel_order(self, order_id: str, actor: str = "system") -> OrderOutcome:
        """Release an order's reservation and mark it cancelled.

        Cancelling an already cancelled order changes nothing.

        Raises:
            OrderNotFound: If the order is unknown
        """
        def attempt():
            current = self._current(order_id)
            figures = compute_order_figures(current)
            if current.status == OrderStatus.CANCELLED:
                return current, figures, 0

            with self.ledger.transaction(self._lock_ids(order_id, current), actor=actor) as tx:
                self._recheck(order_id, current)
                cancelled = current.model_copy(update={
                    "status": OrderStatus.CANCELLED,
                    "status_overridden": True,
                    "updated_at": utcnow(),
                })
                self._move_reservation(tx, current, cancelled)
                cancelled = cancelled.model_copy(update={"reserved_quantity": 0})
                self._store(tx, cancelled)
                tx.audit(
                    AuditEventType.ORDER_CANCELLED,
                    f"Order {order_id} cancelled",
                    entity_type="order",
                    entity_id=order_id,
                    old=current,
                    new=cancelled,
                )
                return cancelled, figures, current.reserved_quantity

        cancelled, figures, released = self._run("cancel_order", attempt, order_id=order_id)
        logger.info(f"Order {order_id} cancelled", extra_fields={"released": released})
        return OrderOutcome(cancelled, figures)

    def clear_status_override(self, order_id: str, actor: str = "system") -> OrderOutcome:
        """Drop an explicit status and go back to the derived one.

        Raises:
            OrderNotFound: If the order is unknown
            InvalidInput: If the order is cancelled
        """
        current = self._current(order_id)
        if current.status == OrderStatus.CANCELLED:
            raise InvalidInput(f"Order {order_id} is cancelled", {"status": "Cancelled orders keep their status"})

        def attempt():
            with self.ledger.transaction([order_key(order_id)], actor=actor) as tx:
                latest = self._orders.get(order_id)
                if latest is None:
                    raise OrderNotFound([order_id])
                figures = compute_order_figures(latest)
                if not latest.status_overridden:
                    return latest, figures
                cleared = latest.model_copy(update={
                    "status": figures.derived_status,
                    "status_overridden": False,
                    "updated_at": utcnow(),
                })
                self._store(tx, cleared)
                tx.audit(
                    AuditEventType.ORDER_OVERRIDE_CLEARED,
                    f"Order {order_id} status override cleared",
                    entity_type="order",
                    entity_id=order_id,
                    old=latest,
                    new=cleared,
                )
                return cleared, figures

        cleared, figures = self._run("clear_status_override", attempt, order_id=order_id)
        return OrderOutcome(cleared, figures)

    # =========================================================================
    # Bulk Update
    # =========================================================================

    def batch_update(
        self,
        order_ids: Iterable[str],
        update: Union[BatchUpdate, Dict[str, Any]],
        actor: str = "system",
    ) -> BatchUpdateResult:
        """Apply one status and/or payment to several orders atomically.

        Each order is recomputed with its own mode, count, size and price.
        Either every order is updated or none is.

        Raises:
            InvalidInput: If an id is unknown or the update is incomplete
            InsufficientInventory: If un-cancelling an order cannot be covered
            ConcurrencyConflict: If a lock stays busy through every retry
        """
        order_ids = list(dict.fromkeys(order_ids or []))
        if not isinstance(update, BatchUpdate):
            try:
                update = BatchUpdate.model_validate(update)
            except ValidationError as e:
                raise InvalidInput("Invalid batch update", validation_errors(e))

        errors: Dict[str, str] = {}
        if not order_ids:
            errors["order_ids"] = "Select at least one order"
        if update.sets_status and update.status is None:
            errors["status"] = "Status is required"
        if update.sets_payment and (update.amount_paid is None or update.amount_paid < 0):
            errors["amount_paid"] = "Amount paid must be 0 or greater"
        if errors:
            raise InvalidInput("Batch update validation failed", errors)

        with self.ledger.locks.snapshot():
            missing = [oid for oid in order_ids if oid not in self._orders]
        if missing:
            raise OrderNotFound(missing)

        def attempt():
            updated_orders: List[Order] = []
            warnings: List[Anomaly] = []
            now = utcnow()
            with self.ledger.locks.snapshot():
                snapshot = [self._orders[oid] for oid in order_ids if oid in self._orders]
            lock_ids = [order_key(oid) for oid in order_ids]
            lock_ids += [o.source_batch_id for o in snapshot if o.source_batch_id]

            with self.ledger.transaction(lock_ids, actor=actor) as tx:
                for order_id in order_ids:
                    latest = self._orders.get(order_id)
                    if latest is None:
                        raise OrderNotFound([order_id])

                    changed = latest
                    if update.sets_payment:
                        changed = changed.model_copy(update={"amount_paid": update.amount_paid})
                    requested = update.status if update.sets_status else None

                    stored, figures = self._finalize(changed, requested, latest, updated_at=now)
                    reserved = self._move_reservation(tx, latest, stored)
                    stored = stored.model_copy(update={"reserved_quantity": reserved})
                    self._store(tx, stored)
                    tx.audit(
                        AuditEventType.ORDERS_BATCH_UPDATED,
                        f"Order {order_id} updated in bulk ({update.update_type.value})",
                        entity_type="order",
                        entity_id=order_id,
                        old=latest,
                        new=stored,
                        batch_size=len(order_ids),
                    )
                    updated_orders.append(stored)
                    mismatch = override_mismatch(stored, figures)
                    if mismatch:
                        warnings.append(mismatch)
            return updated_orders, warnings

        updated_orders, warnings = self._run("batch_update", attempt)
        logger.info(
            f"Batch updated {len(updated_orders)} order(s)",
            extra_fields={"update_type": update.update_type.value, "warnings": len(warnings)},
        )
        return BatchUpdateResult(
            orders=updated_orders,
            summary=summarize_orders(updated_orders),
            warnings=warnings,
        )

    # =========================================================================
    # Loading & Queries
    # =========================================================================

    def load_order(self, order: Union[Order, Dict[str, Any]], actor: str = "system") -> Order:
        """Accept a stored order from a collaborator.

        Its reservation is assumed to be reflected in the batch counts
        already, so the ledger is not touched. A stored status that differs
        from the derived one is kept as an override.

        Raises:
            InvalidInput: If the order has no id or the id is taken
        """
        order = self._coerce(order)
        if not order.id:
            raise InvalidInput("Stored orders need an id", {"id": "Order id is required"})

        figures = compute_order_figures(order)
        overridden = order.status != figures.derived_status
        loaded = order.model_copy(update={
            "total": figures.total,
            "balance": figures.balance,
            "status_overridden": overridden,
            "reserved_quantity": reservation_for(order),
        })

        def attempt():
            with self.ledger.transaction([order_key(order.id)], actor=actor) as tx:
                if order.id in self._orders:
                    raise InvalidInput(
                        f"Order id {order.id} is already registered",
                        {"id": "Duplicate order id"},
                    )
                self._store(tx, loaded)
                tx.audit(
                    AuditEventType.ORDER_CREATED,
                    f"Order {order.id} loaded",
                    entity_type="order",
                    entity_id=order.id,
                    old=None,
                    new=loaded,
                    loaded=True,
                )
            return loaded

        return self._run("load_order", attempt, order_id=order.id)

    def get_order(self, order_id: str) -> Order:
        """Raises OrderNotFound for unknown ids."""
        return self._current(order_id)

    def orders(self) -> List[Order]:
        with self.ledger.locks.snapshot():
            return list(self._orders.values())

    def summary(self, order_ids: Optional[Iterable[str]] = None) -> OrderSummary:
        """Totals over all orders, or over ``order_ids``."""
        if order_ids is None:
            return summarize_orders(self.orders())
        wanted = set(order_ids)
        return summarize_orders(o for o in self.orders() if o.id in wanted)

    @staticmethod
    def _parse_status(status: Optional[Union[OrderStatus, str]]) -> Optional[OrderStatus]:
        if status is None or status == "":
            return None
        try:
            return OrderStatus(status)
        except ValueError:
            raise InvalidInput(f"Unknown order status: {status}", {"status": "Unknown status"})
