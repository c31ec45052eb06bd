"""Audit change records and their persistence backends.

Every mutation the engine performs produces an AuditEvent naming the entity,
the fields that changed (old and new values) and a timestamp. The engine only
produces the trail; storing and displaying it as edit history belongs to the
backend a collaborator plugs in.
"""

import json
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

from pydantic import BaseModel

from core.models.refs import AuditEvent, AuditSeverity, utcnow
from core.observability.logging import get_logger

logger = get_logger(__name__)

# Bookkeeping fields that change on every write and carry no meaning for history
IGNORED_FIELDS = frozenset({"version", "updated_at"})


class AuditEventType(str, Enum):
    """Standard audit event types."""
    # Order events
    ORDER_CREATED = "ORDER_CREATED"
    ORDER_EDITED = "ORDER_EDITED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    ORDERS_BATCH_UPDATED = "ORDERS_BATCH_UPDATED"
    ORDER_OVERRIDE_CLEARED = "ORDER_OVERRIDE_CLEARED"

    # Inventory events
    BATCH_REGISTERED = "BATCH_REGISTERED"
    INVENTORY_RESERVED = "INVENTORY_RESERVED"
    INVENTORY_RELEASED = "INVENTORY_RELEASED"
    MORTALITY_RECORDED = "MORTALITY_RECORDED"
    BATCH_STATUS_CHANGED = "BATCH_STATUS_CHANGED"
    BATCH_EXPIRED = "BATCH_EXPIRED"

    # Processing events
    BATCH_PROCESSED = "BATCH_PROCESSED"
    DRESSED_BATCH_CREATED = "DRESSED_BATCH_CREATED"
    REMAINDER_BATCH_CREATED = "REMAINDER_BATCH_CREATED"
    LINEAGE_RECORDED = "LINEAGE_RECORDED"
    LINEAGE_VIOLATION = "LINEAGE_VIOLATION"


Record = Union[BaseModel, Dict[str, Any], None]


def _as_dict(record: Record) -> Dict[str, Any]:
    if record is None:
        return {}
    if isinstance(record, BaseModel):
        return record.model_dump(mode="json")
    return json.loads(json.dumps(record, default=str))


def diff_fields(old: Record, new: Record) -> Dict[str, Dict[str, Any]]:
    """Return ``{field: {"old": .., "new": ..}}`` for every field that differs.

    Values are compared in their JSON form so Decimal("2.50") and
    Decimal("2.5") count as a change only when their text differs.
    """
    old_values = _as_dict(old)
    new_values = _as_dict(new)
    changes = {}
    for key in sorted(set(old_values) | set(new_values)):
        if key in IGNORED_FIELDS:
            continue
        before = old_values.get(key)
        after = new_values.get(key)
        if before != after:
            changes[key] = {"old": before, "new": after}
    return changes


def create_audit_event(
    event_type: AuditEventType,
    message: str,
    entity_type: str,
    entity_id: str,
    changed_fields: Optional[Dict[str, Dict[str, Any]]] = None,
    severity: AuditSeverity = AuditSeverity.INFO,
    details: Optional[Dict[str, Any]] = None,
    actor: str = "system",
    correlation_id: Optional[str] = None,
) -> AuditEvent:
    """Create a new audit event with auto-generated ID and timestamp.

    Args:
        event_type: Type of event
        message: Human-readable message
        entity_type: Kind of entity that changed
        entity_id: Id of the entity that changed
        changed_fields: Field-level old/new values
        severity: Event severity level
        details: Additional structured details
        actor: Who/what performed the action
        correlation_id: Shared id for all records of one operation

    Returns:
        Configured AuditEvent ready for logging
    """
    return AuditEvent(
        event_id=str(uuid.uuid4()),
        timestamp=utcnow(),
        event_type=event_type.value,
        severity=severity,
        entity_type=entity_type,
        entity_id=entity_id,
        changed_fields=changed_fields or {},
        message=message,
        details=details or {},
        actor=actor,
        correlation_id=correlation_id,
    )


class AuditBackend(ABC):
    """Where change records end up.

    Subclasses implement ``log`` and either ``_scan`` (every stored event,
    oldest first) or a ``query`` of their own.
    """

    @abstractmethod
    def log(self, event: AuditEvent) -> None:
        """Persist an audit event."""

    def _scan(
        self, start_time: Optional[datetime], end_time: Optional[datetime]
    ) -> Iterator[AuditEvent]:
        raise NotImplementedError

    def query(
        self,
        event_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Stored events matching every given filter, oldest first, at most ``limit``."""
        results: List[AuditEvent] = []
        for event in self._scan(start_time, end_time):
            if event_type and event.event_type != event_type:
                continue
            if entity_id and event.entity_id != entity_id:
                continue
            if start_time and event.timestamp < start_time:
                continue
            if end_time and event.timestamp > end_time:
                continue
            results.append(event)
            if len(results) >= limit:
                break
        return results


class JSONFileAuditBackend(AuditBackend):
    """One JSON Lines file per day under ``base_path``, named YYYY-MM-DD.jsonl.

    Events are appended one per line under a lock, so engine threads
    committing on different batches can share one backend.
    """

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _day_file(self, day: datetime) -> Path:
        return self.base_path / f"{day:%Y-%m-%d}.jsonl"

    def log(self, event: AuditEvent) -> None:
        line = json.dumps(event.model_dump(mode="json"))
        with self._lock:
            with open(self._day_file(event.timestamp), "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def _scan(self, start_time, end_time):
        # File names sort chronologically; skip whole days outside the window
        for path in sorted(self.base_path.glob("*.jsonl")):
            day = datetime.strptime(path.stem, "%Y-%m-%d").date()
            if start_time and day < start_time.date():
                continue
            if end_time and day > end_time.date():
                break
            with self._lock:
                with open(path, "r", encoding="utf-8") as f:
                    lines = f.readlines()
            for line in lines:
                if line.strip():
                    yield AuditEvent.model_validate_json(line)


class InMemoryAuditBackend(AuditBackend):
    """In-memory audit backend, the default for tests and embedded use."""

    def __init__(self):
        self._events: List[AuditEvent] = []

    def log(self, event: AuditEvent) -> None:
        self._events.append(event)

    def _scan(self, start_time, end_time):
        return iter(list(self._events))

    @property
    def events(self) -> List[AuditEvent]:
        return list(self._events)

    def clear(self) -> None:
        self._events.clear()


class AuditLogger:
    """Fans change records out to every registered backend.

    Usage:
        audit = AuditLogger()
        audit.add_backend(JSONFileAuditBackend(Path("./audit")))

        audit.record_change(
            AuditEventType.ORDER_EDITED,
            "Order ORD-1 edited",
            entity_type="order",
            entity_id="ORD-1",
            old=old_order,
            new=new_order,
        )
    """

    def __init__(self, backends: Optional[Iterable[AuditBackend]] = None):
        self._backends: List[AuditBackend] = list(backends or [])

    def add_backend(self, backend: AuditBackend) -> None:
        """Add an audit backend."""
        self._backends.append(backend)

    def log(self, event: AuditEvent) -> None:
        """Log event to all backends."""
        for backend in self._backends:
            try:
                backend.log(event)
            except Exception:
                # A broken audit store must not undo a committed change
                logger.exception(
                    f"Audit logging failed for backend {type(backend).__name__}",
                    extra_fields={"event_id": event.event_id, "event_type": event.event_type},
                )

    def record_change(
        self,
        event_type: AuditEventType,
        message: str,
        entity_type: str,
        entity_id: str,
        old: Record = None,
        new: Record = None,
        **kwargs,
    ) -> Optional[AuditEvent]:
        """Diff ``old`` against ``new`` and log the result.

        Returns the event, or None when nothing changed.
        """
        changes = diff_fields(old, new)
        if not changes:
            return None
        event = create_audit_event(
            event_type,
            message,
            entity_type=entity_type,
            entity_id=entity_id,
            changed_fields=changes,
            **kwargs,
        )
        self.log(event)
        return event

    def query(
        self,
        event_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Query events from all backends (returns first backend's results)."""
        if not self._backends:
            return []
        return self._backends[0].query(event_type, entity_id, start_time, end_time, limit)

    def history(self, entity_id: str, limit: int = 100) -> List[AuditEvent]:
        """Edit history of one entity, oldest first."""
        return self.query(entity_id=entity_id, limit=limit)
