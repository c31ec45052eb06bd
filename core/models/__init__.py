"""Core data models - entities, anomalies and audit records.

This package contains the records exchanged between the engine and its
collaborators. None of them know how they are stored or displayed.
"""

from core.models.entities import (
    # Base
    EntityBase,
    DecimalValue,
    IntValue,
    DateValue,

    # Enums
    CalculationMode,
    DEFAULT_CALCULATION_MODE,
    InventoryType,
    OrderStatus,
    PAYMENT_STATUSES,
    LiveBatchStatus,
    DressedBatchStatus,
    RelationshipKind,
    STANDARD_PART_TYPES,
    normalize_part_type,

    # Entities
    InventorySource,
    LiveBatch,
    DressedBatch,
    BatchRelationship,
    Order,
)

from core.models.anomalies import (
    Anomaly,
    AnomalyKind,
)

from core.models.refs import (
    AuditEvent,
    AuditSeverity,
)

__all__ = [
    # Base
    "EntityBase",
    "DecimalValue",
    "IntValue",
    "DateValue",

    # Enums
    "CalculationMode",
    "DEFAULT_CALCULATION_MODE",
    "InventoryType",
    "OrderStatus",
    "PAYMENT_STATUSES",
    "LiveBatchStatus",
    "DressedBatchStatus",
    "RelationshipKind",
    "STANDARD_PART_TYPES",
    "normalize_part_type",

    # Entities
    "InventorySource",
    "LiveBatch",
    "DressedBatch",
    "BatchRelationship",
    "Order",

    # Anomalies
    "Anomaly",
    "AnomalyKind",

    # Audit
    "AuditEvent",
    "AuditSeverity",
]
