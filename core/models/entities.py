"""Core entity models - orders, live batches, dressed batches and lineage edges.

These models are the records exchanged with collaborators (forms, storage,
reports). Batch records are frozen snapshots: the inventory ledger replaces a
record with an updated copy instead of mutating it, so a reader holding a
record always sees a consistent state.

Order input fields are parsed leniently. A malformed number becomes ``None``
rather than failing construction, so display-path arithmetic can treat it as
0 and order validation can report it against the right field.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.functional_validators import BeforeValidator
from typing_extensions import Annotated


# =============================================================================
# Enumerations
# =============================================================================

class CalculationMode(str, Enum):
    """Which of count, size, or both is multiplied by price."""
    COUNT_PRICE = "count_cost"
    SIZE_PRICE = "size_cost"
    COUNT_SIZE_PRICE = "count_size_cost"


DEFAULT_CALCULATION_MODE = CalculationMode.COUNT_SIZE_PRICE


class InventoryType(str, Enum):
    """Inventory an order draws against."""
    LIVE = "live"
    DRESSED = "dressed"  # whole dressed birds
    PARTS = "parts"      # by-product parts of a dressed batch


class OrderStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


PAYMENT_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PARTIAL, OrderStatus.PAID})


class LiveBatchStatus(str, Enum):
    HEALTHY = "healthy"
    SICK = "sick"
    QUARANTINE = "quarantine"
    PROCESSING = "processing"


class DressedBatchStatus(str, Enum):
    IN_STORAGE = "in_storage"
    SOLD = "sold"
    EXPIRED = "expired"
    DAMAGED = "damaged"


class RelationshipKind(str, Enum):
    """How much of the source batch a processing run consumed."""
    FULLY_PROCESSED = "processed_from"
    PARTIALLY_PROCESSED = "partial_processed_from"


STANDARD_PART_TYPES = ("neck", "feet", "gizzard", "dog_food")


def normalize_part_type(name: Any) -> Optional[str]:
    """Normalize a part name to lower snake case ("Dog Food" -> "dog_food")."""
    if name is None:
        return None
    s = re.sub(r"[\s\-]+", "_", str(name).strip().lower())
    return s or None


# =============================================================================
# Value Parsers
# =============================================================================

def _parse_decimal(value):
    """Parse decimal from numbers or strings with thousands separators."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("Boolean is not a number")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        s = value.strip().replace(",", "")
        if s == "":
            return None
        try:
            return Decimal(s)
        except InvalidOperation:
            raise ValueError(f"Cannot parse number: {value}")
    return value


def _parse_int(value):
    """Parse integer from various formats."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("Boolean is not a count")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"Count must be a whole number: {value}")
        return int(value)
    if isinstance(value, Decimal):
        if value != value.to_integral_value():
            raise ValueError(f"Count must be a whole number: {value}")
        return int(value)
    if isinstance(value, str):
        s = value.strip().replace(",", "")
        if s == "":
            return None
        try:
            number = Decimal(s)
        except InvalidOperation:
            raise ValueError(f"Cannot parse count: {value}")
        return _parse_int(number)
    return value


def _parse_date(value):
    """Parse date from various string formats."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        s = value.strip()
        if s == "":
            return None
        for fmt in ("%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%m/%d/%Y", "%d/%m/%Y"):
            try:
                return datetime.strptime(s[:19], fmt).date()
            except ValueError:
                continue
        raise ValueError(f"Cannot parse date: {s}")
    return value


def _lenient(parser):
    """Wrap a parser so unparseable input becomes None."""
    def parse(value):
        try:
            result = parser(value)
        except (ValueError, TypeError):
            return None
        if isinstance(result, Decimal) and not result.is_finite():
            return None
        return result
    return parse


def to_mode(value: Any) -> CalculationMode:
    """Map a calculation mode to the enum; missing or unknown uses the default.

    The single resolver for modes: order parsing and the calculation engine
    both go through it.
    """
    if isinstance(value, CalculationMode):
        return value
    try:
        return CalculationMode(str(value).strip().lower())
    except ValueError:
        return DEFAULT_CALCULATION_MODE


# Annotated types for automatic parsing
DecimalValue = Annotated[Decimal, BeforeValidator(_parse_decimal)]
IntValue = Annotated[int, BeforeValidator(_parse_int)]
DateValue = Annotated[date, BeforeValidator(_parse_date)]

LenientDecimal = Annotated[Optional[Decimal], BeforeValidator(_lenient(_parse_decimal))]
LenientInt = Annotated[Optional[int], BeforeValidator(_lenient(_parse_int))]
LenientDate = Annotated[Optional[date], BeforeValidator(_lenient(_parse_date))]
ModeValue = Annotated[CalculationMode, BeforeValidator(to_mode)]


# =============================================================================
# Base Model
# =============================================================================

class EntityBase(BaseModel):
    """Base model for engine records. Records are immutable snapshots."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)


# =============================================================================
# Inventory Source
# =============================================================================

class InventorySource(EntityBase):
    """Which count of a batch an order or reservation draws against."""
    inventory_type: InventoryType = InventoryType.LIVE
    part_type: Optional[str] = None

    @field_validator("part_type", mode="before")
    @classmethod
    def _normalize_part(cls, value):
        return normalize_part_type(value)

    @model_validator(mode="after")
    def _check_part(self):
        if self.inventory_type == InventoryType.PARTS and not self.part_type:
            raise ValueError("part_type is required for parts inventory")
        if self.inventory_type != InventoryType.PARTS and self.part_type:
            raise ValueError("part_type is only valid for parts inventory")
        return self

    @classmethod
    def live(cls) -> "InventorySource":
        return cls(inventory_type=InventoryType.LIVE)

    @classmethod
    def dressed_whole(cls) -> "InventorySource":
        return cls(inventory_type=InventoryType.DRESSED)

    @classmethod
    def dressed_part(cls, part_type: str) -> "InventorySource":
        return cls(inventory_type=InventoryType.PARTS, part_type=part_type)

    @property
    def label(self) -> str:
        """Name of the counted item, used in messages."""
        if self.inventory_type == InventoryType.PARTS:
            return self.part_type
        if self.inventory_type == InventoryType.DRESSED:
            return "dressed chickens"
        return "chickens"


# =============================================================================
# Batches
# =============================================================================

class LiveBatch(EntityBase):
    """A cohort of living birds.

    ``current_count`` only goes down through sales, mortality and processing.
    Mortality is whatever is left unexplained by the tracked outflows.
    """
    id: str
    batch_id: str = Field(..., description="Human-readable batch code")
    initial_count: IntValue = Field(..., gt=0)
    current_count: IntValue = Field(..., ge=0)
    average_weight: Optional[DecimalValue] = None
    status: LiveBatchStatus = LiveBatchStatus.HEALTHY
    breed: Optional[str] = None
    hatch_date: Optional[DateValue] = None

    # Tracked outflows
    processed_count: IntValue = Field(default=0, ge=0)
    transferred_count: IntValue = Field(default=0, ge=0)
    sold_count: IntValue = Field(default=0, ge=0)

    version: int = 0

    @model_validator(mode="after")
    def _check_counts(self):
        if self.current_count > self.initial_count:
            raise ValueError(
                f"current_count ({self.current_count}) exceeds initial_count ({self.initial_count})"
            )
        if self.mortality < 0:
            raise ValueError(
                f"Tracked outflows exceed initial_count for batch {self.batch_id}"
            )
        return self

    @property
    def mortality(self) -> int:
        return (
            self.initial_count
            - self.current_count
            - self.processed_count
            - self.transferred_count
            - self.sold_count
        )

    @property
    def capacity(self) -> int:
        """Most birds the batch can hold now that some have left for good."""
        return self.initial_count - self.processed_count - self.transferred_count


class DressedBatch(EntityBase):
    """A cohort of processed product: whole birds plus by-product parts.

    Whole-bird and part counts deplete independently.
    """
    id: str
    batch_id: str = Field(..., description="Human-readable batch code")
    initial_count: IntValue = Field(..., ge=0)
    current_count: Optional[IntValue] = Field(default=None, ge=0)
    processing_quantity: Optional[IntValue] = Field(default=None, ge=0)
    average_weight: Optional[DecimalValue] = None
    parts_count: Dict[str, int] = Field(default_factory=dict)
    parts_weight: Dict[str, Decimal] = Field(default_factory=dict)
    initial_parts_count: Dict[str, int] = Field(default_factory=dict)
    status: DressedBatchStatus = DressedBatchStatus.IN_STORAGE
    processing_date: Optional[DateValue] = None
    expiry_date: Optional[DateValue] = None
    size_category: Optional[str] = None
    storage_location: Optional[str] = None
    notes: Optional[str] = None

    version: int = 0

    @model_validator(mode="before")
    @classmethod
    def _normalize_parts(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for key in ("parts_count", "parts_weight", "initial_parts_count"):
            raw = data.get(key) or {}
            data[key] = {normalize_part_type(k): v for k, v in raw.items() if normalize_part_type(k)}
        if not data["initial_parts_count"]:
            data["initial_parts_count"] = dict(data["parts_count"])
        return data

    @model_validator(mode="after")
    def _check_counts(self):
        if self.current_count is not None and self.current_count > self.initial_count:
            raise ValueError(
                f"current_count ({self.current_count}) exceeds initial_count ({self.initial_count})"
            )
        for part, count in self.parts_count.items():
            if count < 0:
                raise ValueError(f"parts_count[{part}] cannot be negative")
        for part, weight in self.parts_weight.items():
            if weight < 0:
                raise ValueError(f"parts_weight[{part}] cannot be negative")
        return self


class BatchRelationship(EntityBase):
    """Directed edge from a live batch to the dressed batch it produced."""
    id: str
    source_batch_id: str
    target_batch_id: str
    kind: RelationshipKind
    quantity: IntValue = Field(..., gt=0, description="Birds moved across this edge")
    created_at: Optional[datetime] = None
    notes: Optional[str] = None


# =============================================================================
# Orders
# =============================================================================

class Order(EntityBase):
    """One customer transaction.

    Input fields accept the original record names (``customer``, ``count``,
    ``size``, ``price``, ``batch_id``) as aliases. ``total``, ``balance`` and
    ``status`` are cached by the reconciler whenever the order changes.
    """
    id: Optional[str] = None
    customer_name: Optional[str] = Field(default=None, alias="customer")
    order_date: LenientDate = Field(default=None, alias="date")
    quantity_count: LenientInt = Field(default=None, alias="count")
    unit_size: LenientDecimal = Field(default=None, alias="size")
    unit_price: LenientDecimal = Field(default=None, alias="price")
    amount_paid: LenientDecimal = Decimal("0")
    calculation_mode: ModeValue = DEFAULT_CALCULATION_MODE
    inventory_type: InventoryType = InventoryType.LIVE
    part_type: Optional[str] = None
    source_batch_id: Optional[str] = Field(default=None, alias="batch_id")
    status: OrderStatus = OrderStatus.PENDING
    notes: Optional[str] = None

    # Cached computed fields
    total: Decimal = Decimal("0")
    balance: Decimal = Decimal("0")
    status_overridden: bool = False
    reserved_quantity: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("part_type", mode="before")
    @classmethod
    def _normalize_part(cls, value):
        return normalize_part_type(value)

    @field_validator("amount_paid", mode="before")
    @classmethod
    def _blank_payment_is_zero(cls, value):
        if value is None or (isinstance(value, str) and value.strip() == ""):
            return Decimal("0")
        return value

    @field_validator("source_batch_id", "customer_name", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and value.strip() == "":
            return None
        return value

    @property
    def inventory_source(self) -> InventorySource:
        """Inventory this order draws from.

        Raises:
            ValueError: If a parts order has no part type
        """
        return InventorySource(inventory_type=self.inventory_type, part_type=self.part_type)
