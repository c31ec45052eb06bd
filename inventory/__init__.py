"""Inventory ledger - batch records, availability, reservations and expiry."""

from inventory.expiry import (
    add_months,
    default_expiry_date,
    is_expired,
    is_expiring_soon,
)
from inventory.ledger import (
    InventoryLedger,
    LedgerTransaction,
    as_source,
    available_in,
)

__all__ = [
    "InventoryLedger",
    "LedgerTransaction",
    "as_source",
    "available_in",
    "add_months",
    "default_expiry_date",
    "is_expired",
    "is_expiring_soon",
]
