"""Audit models for the change trail the engine hands to collaborators."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditSeverity(str, Enum):
    """Severity levels for audit events."""
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class AuditEvent(BaseModel):
    """A change record for one entity.

    ``changed_fields`` maps each field that changed to ``{"old": .., "new": ..}``.
    A created entity has ``old`` set to None for every field. Rejected
    operations that are still worth recording (LINEAGE_VIOLATION) carry no
    changed fields, only ``details``.
    """
    event_id: str = Field(..., description="Unique event identifier")
    timestamp: datetime = Field(default_factory=utcnow, description="Event timestamp")
    event_type: str = Field(..., description="Type of event (ORDER_EDITED, BATCH_PROCESSED, etc.)")
    severity: AuditSeverity = Field(default=AuditSeverity.INFO, description="Event severity")

    # Subject
    entity_type: str = Field(..., description="order, live_batch, dressed_batch or batch_relationship")
    entity_id: str = Field(..., description="Id of the changed entity")
    changed_fields: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    # Details
    message: str = Field(..., description="Human-readable message")
    details: Dict[str, Any] = Field(default_factory=dict, description="Additional event details")
    correlation_id: Optional[str] = Field(None, description="Groups the records of one operation")

    # Actor
    actor: str = Field(default="system", description="Who/what performed the action")
