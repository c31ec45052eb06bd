"""Inventory ledger - the only writer of batch counts.

Holds live and dressed batch records and changes their counts through
transactions. A transaction holds the locks of the batches it touches, stages
revised records, and on success swaps all of them in at once together with
any deferred callbacks (a lineage edge, a stored order). Nothing staged
becomes visible if the block raises.

Usage:
    ledger = InventoryLedger()
    ledger.add_live_batch({"id": "lb-1", "batch_id": "LB-001",
                           "initial_count": 100, "current_count": 100})

    ledger.reserve("lb-1", InventorySource.live(), 20)  # -> 80
"""

import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import BaseModel, ValidationError

from core.audit import AuditEventType, AuditLogger, InMemoryAuditBackend
from core.config import EngineSettings, get_settings
from core.errors import BatchNotFound, InsufficientInventory, InvalidInput
from core.locking import BatchLockManager, run_with_retry
from core.models.entities import (
    DressedBatch,
    DressedBatchStatus,
    InventorySource,
    InventoryType,
    LiveBatch,
    LiveBatchStatus,
)
from core.models.refs import AuditSeverity
from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import record_inventory_movement, track_operation
from inventory.expiry import is_expired, is_expiring_soon

logger = get_logger(__name__)

Batch = Union[LiveBatch, DressedBatch]
SourceLike = Union[InventorySource, InventoryType, str, None]


# =============================================================================
# Helpers
# =============================================================================

def validation_errors(exc: ValidationError) -> Dict[str, str]:
    """Flatten a pydantic ValidationError into ``{field: message}``."""
    errors = {}
    for err in exc.errors():
        key = ".".join(str(p) for p in err.get("loc", ())) or "__root__"
        errors.setdefault(key, err.get("msg", "invalid value"))
    return errors


def as_source(source: SourceLike, part_type: Optional[str] = None) -> InventorySource:
    """Coerce an inventory type name or enum into an InventorySource.

    Raises:
        InvalidInput: If the type is unknown or the part type is missing
    """
    if isinstance(source, InventorySource):
        return source
    try:
        return InventorySource(
            inventory_type=source or InventoryType.LIVE,
            part_type=part_type,
        )
    except ValidationError as e:
        raise InvalidInput("Invalid inventory source", validation_errors(e))


def require_quantity(quantity: Any, name: str = "quantity") -> int:
    """Accept a positive whole number only."""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidInput(
            f"{name} must be a positive whole number, got {quantity!r}",
            {name: "Must be a positive whole number"},
        )
    return quantity


def available_in(record: Batch, source: InventorySource) -> int:
    """Units of ``source`` the record has available right now."""
    if isinstance(record, LiveBatch):
        return record.current_count

    if source.inventory_type == InventoryType.PARTS:
        return record.parts_count.get(source.part_type, 0)

    # Unset fields fall through; an explicit 0 means sold out
    if record.current_count is not None:
        return record.current_count
    if record.processing_quantity is not None:
        return record.processing_quantity
    return record.initial_count


def entity_type_of(record: Batch) -> str:
    return "live_batch" if isinstance(record, LiveBatch) else "dressed_batch"


def revise(record: BaseModel, **changes) -> BaseModel:
    """Return a validated copy of ``record`` with ``changes`` and a bumped version."""
    data = record.model_dump()
    data.update(changes)
    data["version"] = record.version + 1
    try:
        return type(record).model_validate(data)
    except ValidationError as e:
        raise InvalidInput(
            f"Update would leave {type(record).__name__} {record.id} inconsistent",
            validation_errors(e),
        )


# =============================================================================
# Transaction
# =============================================================================

@dataclass
class PendingAudit:
    event_type: AuditEventType
    message: str
    entity_type: str
    entity_id: str
    old: Any
    new: Any
    severity: AuditSeverity = AuditSeverity.INFO
    details: Dict[str, Any] = field(default_factory=dict)


class LedgerTransaction:
    """Staged changes against the ledger, applied together on commit.

    Reads through the transaction see its own staged records first.
    """

    def __init__(self, ledger: "InventoryLedger", batch_ids: List[str], actor: str):
        self.ledger = ledger
        self.batch_ids = batch_ids
        self.actor = actor
        self.correlation_id = str(uuid.uuid4())
        self._staged: Dict[str, Batch] = {}
        self._callbacks: List[Callable[[], None]] = []
        self._audits: List[PendingAudit] = []
        self._movements: List[Tuple[str, int]] = []

    # ---- reads --------------------------------------------------------------

    def live(self, batch_id: str) -> LiveBatch:
        record = self._staged.get(batch_id)
        if isinstance(record, LiveBatch):
            return record
        return self.ledger.get_live_batch(batch_id)

    def dressed(self, batch_id: str) -> DressedBatch:
        record = self._staged.get(batch_id)
        if isinstance(record, DressedBatch):
            return record
        return self.ledger.get_dressed_batch(batch_id)

    def batch(self, batch_id: str, source: InventorySource) -> Batch:
        if source.inventory_type == InventoryType.LIVE:
            return self.live(batch_id)
        return self.dressed(batch_id)

    def available(self, batch_id: str, source: InventorySource) -> int:
        return available_in(self.batch(batch_id, source), source)

    # ---- staging ------------------------------------------------------------

    def stage(self, record: Batch) -> Batch:
        """Stage a new or revised record.

        Raises:
            RuntimeError: If an existing batch is staged without holding its lock
        """
        if record.id not in self.batch_ids and self.ledger.exists(record.id):
            raise RuntimeError(f"Batch {record.id} changed outside its lock")
        self._staged[record.id] = record
        return record

    def update(self, record: Batch, **changes) -> Batch:
        return self.stage(revise(record, **changes))

    def on_commit(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` as part of the commit, under the snapshot lock."""
        self._callbacks.append(callback)

    def audit(
        self,
        event_type: AuditEventType,
        message: str,
        entity_type: str,
        entity_id: str,
        old: Any = None,
        new: Any = None,
        severity: AuditSeverity = AuditSeverity.INFO,
        **details,
    ) -> None:
        """Queue a change record, emitted only if the transaction commits."""
        self._audits.append(
            PendingAudit(event_type, message, entity_type, entity_id, old, new, severity, details)
        )

    def movement(self, kind: str, quantity: int) -> None:
        self._movements.append((kind, quantity))

    # ---- count changes ------------------------------------------------------

    def reserve(self, batch_id: str, source: InventorySource, quantity: int) -> int:
        """Take ``quantity`` units out of availability. Returns what remains.

        Raises:
            InvalidInput: If quantity is not a positive whole number
            BatchNotFound: If the batch is unknown
            InsufficientInventory: If quantity exceeds availability
        """
        quantity = require_quantity(quantity)
        record = self.batch(batch_id, source)
        available = available_in(record, source)
        if quantity > available:
            raise InsufficientInventory(record.batch_id, quantity, available, source.label)

        remaining = available - quantity
        if isinstance(record, LiveBatch):
            new = self.update(
                record,
                current_count=remaining,
                sold_count=record.sold_count + quantity,
            )
        elif source.inventory_type == InventoryType.PARTS:
            parts = dict(record.parts_count)
            parts[source.part_type] = remaining
            new = self.update(record, parts_count=parts)
        else:
            new = self.update(record, current_count=remaining)

        self.audit(
            AuditEventType.INVENTORY_RESERVED,
            f"Reserved {quantity} {source.label} from batch {record.batch_id}",
            entity_type=entity_type_of(record),
            entity_id=record.id,
            old=record,
            new=new,
            quantity=quantity,
            source=source.label,
        )
        self.movement("reserved", quantity)
        return remaining

    def release(self, batch_id: str, source: InventorySource, quantity: int) -> int:
        """Return ``quantity`` units to availability. Returns the new amount.

        Raises:
            InvalidInput: If quantity is invalid or would exceed the ceiling
            BatchNotFound: If the batch is unknown
        """
        quantity = require_quantity(quantity)
        record = self.batch(batch_id, source)
        available = available_in(record, source)
        restored = available + quantity

        if isinstance(record, LiveBatch):
            ceiling = record.capacity
        elif source.inventory_type == InventoryType.PARTS:
            ceiling = max(record.initial_parts_count.get(source.part_type, 0), available)
        else:
            ceiling = record.initial_count

        if restored > ceiling:
            raise InvalidInput(
                f"Cannot release {quantity} {source.label} to batch {record.batch_id}: "
                f"{available} available, at most {ceiling} can be held",
                {"quantity": f"Release exceeds batch ceiling of {ceiling}"},
            )

        if isinstance(record, LiveBatch):
            new = self.update(
                record,
                current_count=restored,
                sold_count=max(0, record.sold_count - quantity),
            )
        elif source.inventory_type == InventoryType.PARTS:
            parts = dict(record.parts_count)
            parts[source.part_type] = restored
            new = self.update(record, parts_count=parts)
        else:
            new = self.update(record, current_count=restored)

        self.audit(
            AuditEventType.INVENTORY_RELEASED,
            f"Released {quantity} {source.label} to batch {record.batch_id}",
            entity_type=entity_type_of(record),
            entity_id=record.id,
            old=record,
            new=new,
            quantity=quantity,
            source=source.label,
        )
        self.movement("released", quantity)
        return restored


# =============================================================================
# Ledger
# =============================================================================

class InventoryLedger:
    """Owns live and dressed batch records and every change to their counts."""

    def __init__(
        self,
        audit: Optional[AuditLogger] = None,
        settings: Optional[EngineSettings] = None,
        locks: Optional[BatchLockManager] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self.settings = settings or get_settings()
        self.audit = audit or AuditLogger([InMemoryAuditBackend()])
        self.locks = locks or BatchLockManager(self.settings)
        self.id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self._live: Dict[str, LiveBatch] = {}
        self._dressed: Dict[str, DressedBatch] = {}

    # =========================================================================
    # Transactions
    # =========================================================================

    @contextmanager
    def transaction(self, batch_ids: Iterable[str], actor: str = "system"):
        """Lock ``batch_ids`` and stage changes, committing them on success.

        Raises:
            ConcurrencyConflict: If a batch lock is not acquired in time
        """
        with self.locks.hold(batch_ids) as held:
            tx = LedgerTransaction(self, held, actor)
            yield tx
            self._commit(tx)

    def _commit(self, tx: LedgerTransaction) -> None:
        with self.locks.snapshot():
            previous = {
                batch_id: (self._live.get(batch_id), self._dressed.get(batch_id))
                for batch_id in tx._staged
            }
            try:
                for record in tx._staged.values():
                    target = self._live if isinstance(record, LiveBatch) else self._dressed
                    target[record.id] = record
                for callback in tx._callbacks:
                    callback()
            except Exception:
                for batch_id, (live, dressed) in previous.items():
                    self._restore(self._live, batch_id, live)
                    self._restore(self._dressed, batch_id, dressed)
                raise

        for pending in tx._audits:
            self.audit.record_change(
                pending.event_type,
                pending.message,
                entity_type=pending.entity_type,
                entity_id=pending.entity_id,
                old=pending.old,
                new=pending.new,
                severity=pending.severity,
                details=pending.details or None,
                actor=tx.actor,
                correlation_id=tx.correlation_id,
            )
        for kind, quantity in tx._movements:
            record_inventory_movement(kind, quantity)

    @staticmethod
    def _restore(store: Dict[str, Batch], batch_id: str, record: Optional[Batch]) -> None:
        if record is None:
            store.pop(batch_id, None)
        else:
            store[batch_id] = record

    def exists(self, batch_id: str) -> bool:
        return batch_id in self._live or batch_id in self._dressed

    def _run(self, operation: str, func: Callable[[], Any], **correlation) -> Any:
        with with_correlation(operation=operation, **correlation), track_operation(operation):
            return run_with_retry(operation, func, self.settings.retry)

    # =========================================================================
    # Registration and Lookup
    # =========================================================================

    def _coerce(self, model, data: Union[BaseModel, Dict[str, Any]]):
        if isinstance(data, model):
            return data
        if isinstance(data, BaseModel):
            data = data.model_dump()
        data = dict(data)
        if not data.get("id"):
            data["id"] = self.id_factory()
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise InvalidInput(f"Invalid {model.__name__}", validation_errors(e))

    def _register(self, record: Batch, actor: str) -> Batch:
        with self.transaction([record.id], actor=actor) as tx:
            if self.exists(record.id):
                raise InvalidInput(
                    f"Batch id {record.id} is already registered",
                    {"id": "Duplicate batch id"},
                )
            tx.stage(record)
            tx.audit(
                AuditEventType.BATCH_REGISTERED,
                f"Registered {type(record).__name__} {record.batch_id}",
                entity_type=entity_type_of(record),
                entity_id=record.id,
                old=None,
                new=record,
            )
        logger.info(f"Registered batch {record.batch_id}", extra_fields={"batch": record.id})
        return record

    def add_live_batch(self, batch: Union[LiveBatch, Dict[str, Any]], actor: str = "system") -> LiveBatch:
        """Register a live batch supplied by a collaborator.

        Raises:
            InvalidInput: If the record is malformed or the id is taken
        """
        record = self._coerce(LiveBatch, batch)
        return self._run("add_live_batch", lambda: self._register(record, actor), batch_id=record.id)

    def add_dressed_batch(self, batch: Union[DressedBatch, Dict[str, Any]], actor: str = "system") -> DressedBatch:
        """Register a dressed batch supplied by a collaborator.

        Raises:
            InvalidInput: If the record is malformed or the id is taken
        """
        record = self._coerce(DressedBatch, batch)
        return self._run("add_dressed_batch", lambda: self._register(record, actor), batch_id=record.id)

    def get_live_batch(self, batch_id: str) -> LiveBatch:
        with self.locks.snapshot():
            record = self._live.get(batch_id)
        if record is None:
            raise BatchNotFound(batch_id, "live batch")
        return record

    def get_dressed_batch(self, batch_id: str) -> DressedBatch:
        with self.locks.snapshot():
            record = self._dressed.get(batch_id)
        if record is None:
            raise BatchNotFound(batch_id, "dressed batch")
        return record

    def get_batch(self, batch_id: str, source: SourceLike = None) -> Batch:
        """The live batch for live sources, else the dressed batch."""
        source = as_source(source)
        if source.inventory_type == InventoryType.LIVE:
            return self.get_live_batch(batch_id)
        return self.get_dressed_batch(batch_id)

    def find_by_code(self, batch_code: str) -> Optional[Batch]:
        """Look a batch up by its human-readable code."""
        with self.locks.snapshot():
            for record in list(self._live.values()) + list(self._dressed.values()):
                if record.batch_id == batch_code:
                    return record
        return None

    def live_batches(self) -> List[LiveBatch]:
        with self.locks.snapshot():
            return list(self._live.values())

    def dressed_batches(self) -> List[DressedBatch]:
        with self.locks.snapshot():
            return list(self._dressed.values())

    def new_id(self) -> str:
        return self.id_factory()

    # =========================================================================
    # Availability
    # =========================================================================

    def available_quantity(
        self,
        batch_id: str,
        source: SourceLike = None,
        part_type: Optional[str] = None,
    ) -> int:
        """Units currently available from a batch.

        Live birds use ``current_count``. Whole dressed birds use
        ``current_count``, else ``processing_quantity``, else
        ``initial_count``. Parts use ``parts_count[part]`` (0 when absent).

        Raises:
            BatchNotFound: If the batch is unknown
        """
        source = as_source(source, part_type)
        return available_in(self.get_batch(batch_id, source), source)

    def reserve(
        self,
        batch_id: str,
        source: SourceLike,
        quantity: int,
        part_type: Optional[str] = None,
        actor: str = "system",
    ) -> int:
        """Atomically check and take ``quantity`` units. Returns what remains.

        ``part_type`` names the part when ``source`` is "parts", as in
        available_quantity.

        Raises:
            InvalidInput: If quantity is not a positive whole number
            BatchNotFound: If the batch is unknown
            InsufficientInventory: If quantity exceeds availability
            ConcurrencyConflict: If the batch stays locked through every retry
        """
        source = as_source(source, part_type)

        def attempt():
            with self.transaction([batch_id], actor=actor) as tx:
                remaining = tx.reserve(batch_id, source, quantity)
            logger.info(
                f"Reserved {quantity} {source.label} from {batch_id}",
                extra_fields={"available": remaining},
            )
            return remaining

        return self._run("reserve", attempt, batch_id=batch_id)

    def release(
        self,
        batch_id: str,
        source: SourceLike,
        quantity: int,
        part_type: Optional[str] = None,
        actor: str = "system",
    ) -> int:
        """Return ``quantity`` units to a batch. Returns the new availability.

        Raises:
            InvalidInput: If quantity is invalid or exceeds the batch ceiling
            BatchNotFound: If the batch is unknown
            ConcurrencyConflict: If the batch stays locked through every retry
        """
        source = as_source(source, part_type)

        def attempt():
            with self.transaction([batch_id], actor=actor) as tx:
                restored = tx.release(batch_id, source, quantity)
            logger.info(
                f"Released {quantity} {source.label} to {batch_id}",
                extra_fields={"available": restored},
            )
            return restored

        return self._run("release", attempt, batch_id=batch_id)

    # =========================================================================
    # Live Batch Events
    # =========================================================================

    def record_mortality(
        self,
        batch_id: str,
        count: int,
        reason: Optional[str] = None,
        actor: str = "system",
    ) -> LiveBatch:
        """Remove birds that died from a live batch.

        Raises:
            InvalidInput: If count is not a positive whole number
            InsufficientInventory: If more birds die than remain
        """
        count = require_quantity(count, "count")

        def attempt():
            with self.transaction([batch_id], actor=actor) as tx:
                record = tx.live(batch_id)
                if count > record.current_count:
                    raise InsufficientInventory(record.batch_id, count, record.current_count)
                new = tx.update(record, current_count=record.current_count - count)
                tx.audit(
                    AuditEventType.MORTALITY_RECORDED,
                    f"Recorded {count} deaths in batch {record.batch_id}",
                    entity_type="live_batch",
                    entity_id=record.id,
                    old=record,
                    new=new,
                    severity=AuditSeverity.WARN,
                    count=count,
                    reason=reason,
                )
                tx.movement("mortality", count)
            logger.warning(
                f"Mortality recorded: {count} birds",
                extra_fields={"reason": reason, "mortality_total": new.mortality},
            )
            return new

        return self._run("record_mortality", attempt, batch_id=batch_id)

    def update_live_status(self, batch_id: str, status: Any, actor: str = "system") -> LiveBatch:
        """Set a live batch's health status.

        Raises:
            InvalidInput: If the status is unknown
        """
        try:
            status = LiveBatchStatus(status)
        except ValueError:
            raise InvalidInput(f"Unknown live batch status: {status}", {"status": "Unknown status"})

        def attempt():
            with self.transaction([batch_id], actor=actor) as tx:
                record = tx.live(batch_id)
                if record.status == status:
                    return record
                new = tx.update(record, status=status)
                tx.audit(
                    AuditEventType.BATCH_STATUS_CHANGED,
                    f"Batch {record.batch_id} status {record.status.value} -> {status.value}",
                    entity_type="live_batch",
                    entity_id=record.id,
                    old=record,
                    new=new,
                )
                return new

        return self._run("update_live_status", attempt, batch_id=batch_id)

    # =========================================================================
    # Dressed Batch Events
    # =========================================================================

    def update_dressed_status(self, batch_id: str, status: Any, actor: str = "system") -> DressedBatch:
        """Set a dressed batch's storage status.

        Raises:
            InvalidInput: If the status is unknown
        """
        try:
            status = DressedBatchStatus(status)
        except ValueError:
            raise InvalidInput(f"Unknown dressed batch status: {status}", {"status": "Unknown status"})

        def attempt():
            with self.transaction([batch_id], actor=actor) as tx:
                record = tx.dressed(batch_id)
                if record.status == status:
                    return record
                new = tx.update(record, status=status)
                tx.audit(
                    AuditEventType.BATCH_STATUS_CHANGED,
                    f"Batch {record.batch_id} status {record.status.value} -> {status.value}",
                    entity_type="dressed_batch",
                    entity_id=record.id,
                    old=record,
                    new=new,
                )
                return new

        return self._run("update_dressed_status", attempt, batch_id=batch_id)

    def expire_dressed_batches(self, today: Optional[date] = None, actor: str = "system") -> List[str]:
        """Mark in-storage batches past their expiry date as expired.

        Returns:
            Ids of the batches that were expired
        """
        today = today or date.today()
        candidates = [
            b.id for b in self.dressed_batches()
            if b.status == DressedBatchStatus.IN_STORAGE and is_expired(b, today)
        ]
        if not candidates:
            return []

        def attempt():
            expired = []
            with self.transaction(candidates, actor=actor) as tx:
                for batch_id in candidates:
                    record = tx.dressed(batch_id)
                    # Re-check under the lock
                    if record.status != DressedBatchStatus.IN_STORAGE or not is_expired(record, today):
                        continue
                    new = tx.update(record, status=DressedBatchStatus.EXPIRED)
                    tx.audit(
                        AuditEventType.BATCH_EXPIRED,
                        f"Batch {record.batch_id} expired on {record.expiry_date}",
                        entity_type="dressed_batch",
                        entity_id=record.id,
                        old=record,
                        new=new,
                        severity=AuditSeverity.WARN,
                    )
                    expired.append(batch_id)
            return expired

        expired = self._run("expire_dressed_batches", attempt)
        if expired:
            logger.info(f"Expired {len(expired)} dressed batch(es)", extra_fields={"batch_ids": expired})
        return expired

    def expiring_soon(self, today: Optional[date] = None) -> List[DressedBatch]:
        """In-storage dressed batches that expire within the configured window."""
        today = today or date.today()
        days = self.settings.expiring_soon_days
        return [b for b in self.dressed_batches() if is_expiring_soon(b, today, days)]
