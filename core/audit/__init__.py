"""Core audit module - change records and their persistence backends."""

from core.audit.events import (
    AuditLogger,
    AuditEventType,
    AuditBackend,
    InMemoryAuditBackend,
    JSONFileAuditBackend,
    create_audit_event,
    diff_fields,
)

__all__ = [
    "AuditLogger",
    "AuditEventType",
    "AuditBackend",
    "InMemoryAuditBackend",
    "JSONFileAuditBackend",
    "create_audit_event",
    "diff_fields",
]
