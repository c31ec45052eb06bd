"""Batch relationship graph - which live batch each dressed batch came from.

Edges run from a live batch to the dressed batch a processing run produced.
Two rules hold for every edge the graph accepts:

- the outgoing quantities of a live batch never add up to more than its
  initial count
- a dressed batch has exactly one inbound edge
"""

import uuid
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from core.audit import AuditEventType, AuditLogger, create_audit_event
from core.config import EngineSettings
from core.errors import InvalidInput, LineageViolation
from core.models.anomalies import Anomaly, AnomalyKind
from core.models.entities import BatchRelationship, LiveBatch, RelationshipKind
from core.models.refs import AuditSeverity, utcnow
from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import track_operation
from core.locking import run_with_retry
from inventory.ledger import InventoryLedger, LedgerTransaction, require_quantity, validation_errors
from lineage.models import YieldReport

logger = get_logger(__name__)

HUNDRED = Decimal("100")


class BatchRelationshipGraph:
    """Live → dressed edges, kept consistent with the ledger's batches.

    Shares the ledger's locks, so an edge appended by a processing run becomes
    visible in the same instant as the batches it connects.
    """

    def __init__(
        self,
        ledger: InventoryLedger,
        audit: Optional[AuditLogger] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self.ledger = ledger
        self.audit = audit or ledger.audit
        self.settings = settings or ledger.settings
        self._edges: Dict[str, BatchRelationship] = {}
        self._by_source: Dict[str, List[str]] = {}
        self._by_target: Dict[str, str] = {}

    # =========================================================================
    # Checks
    # =========================================================================

    def _processed_total(self, live_batch_id: str) -> int:
        return sum(self._edges[e].quantity for e in self._by_source.get(live_batch_id, []))

    def _check(self, source: LiveBatch, target_batch_id: str, quantity: int) -> None:
        """Raise LineageViolation if the edge would break a graph rule."""
        if target_batch_id in self._by_target:
            raise LineageViolation(
                f"Dressed batch {target_batch_id} already has a source batch",
                source_batch_id=source.id,
                target_batch_id=target_batch_id,
                requested=quantity,
            )
        already = self._processed_total(source.id)
        if already + quantity > source.initial_count:
            raise LineageViolation(
                f"Processing {quantity} birds from batch {source.batch_id} would exceed its "
                f"initial count of {source.initial_count} ({already} already processed)",
                source_batch_id=source.id,
                target_batch_id=target_batch_id,
                requested=quantity,
                limit=source.initial_count - already,
            )

    def report_violation(self, error: LineageViolation, actor: str) -> None:
        logger.error(error.message, extra_fields=error.to_dict())
        self.audit.log(
            create_audit_event(
                AuditEventType.LINEAGE_VIOLATION,
                error.message,
                entity_type="batch_relationship",
                entity_id=error.target_batch_id or error.source_batch_id or "unknown",
                severity=AuditSeverity.ERROR,
                details=error.to_dict(),
                actor=actor,
            )
        )

    def _append(self, edge: BatchRelationship) -> None:
        self._edges[edge.id] = edge
        self._by_source.setdefault(edge.source_batch_id, []).append(edge.id)
        self._by_target[edge.target_batch_id] = edge.id

    # =========================================================================
    # Writes
    # =========================================================================

    def stage_edge(
        self,
        tx: LedgerTransaction,
        source: LiveBatch,
        target_batch_id: str,
        quantity: int,
        kind: RelationshipKind,
        notes: Optional[str] = None,
        edge_id: Optional[str] = None,
    ) -> BatchRelationship:
        """Check an edge now and append it when ``tx`` commits.

        The caller must hold the source batch's lock through ``tx``.

        Raises:
            LineageViolation: If the edge breaks a graph rule
        """
        quantity = require_quantity(quantity)
        with self.ledger.locks.snapshot():
            self._check(source, target_batch_id, quantity)

        edge = BatchRelationship(
            id=edge_id or self.ledger.new_id(),
            source_batch_id=source.id,
            target_batch_id=target_batch_id,
            kind=kind,
            quantity=quantity,
            created_at=utcnow(),
            notes=notes,
        )

        def commit_edge():
            # Re-checked under the snapshot lock at commit time
            self._check(source, target_batch_id, quantity)
            self._append(edge)

        tx.on_commit(commit_edge)
        tx.audit(
            AuditEventType.LINEAGE_RECORDED,
            f"Batch {source.batch_id} -> {target_batch_id}: {quantity} birds ({kind.value})",
            entity_type="batch_relationship",
            entity_id=edge.id,
            old=None,
            new=edge,
        )
        return edge

    def record_processing(
        self,
        source_batch_id: str,
        target_batch_id: str,
        quantity: int,
        kind: Union[RelationshipKind, str],
        notes: Optional[str] = None,
        actor: str = "system",
    ) -> BatchRelationship:
        """Append an edge between two batches already known to the ledger.

        Raises:
            InvalidInput: If quantity or kind is invalid, or a batch is unknown
            LineageViolation: If the edge breaks a graph rule
        """
        try:
            kind = RelationshipKind(kind)
        except ValueError:
            raise InvalidInput(f"Unknown relationship kind: {kind}", {"kind": "Unknown kind"})

        def attempt():
            with self.ledger.transaction([source_batch_id], actor=actor) as tx:
                source = tx.live(source_batch_id)
                tx.dressed(target_batch_id)
                return self.stage_edge(tx, source, target_batch_id, quantity, kind, notes)

        with with_correlation(operation="record_processing", batch_id=source_batch_id), \
                track_operation("record_processing"):
            try:
                edge = run_with_retry("record_processing", attempt, self.settings.retry)
            except LineageViolation as e:
                self.report_violation(e, actor)
                raise

        logger.info(
            f"Recorded lineage {source_batch_id} -> {target_batch_id}",
            extra_fields={"quantity": edge.quantity, "kind": edge.kind.value},
        )
        return edge

    def load_relationship(
        self,
        edge: Union[BatchRelationship, Dict[str, Any]],
        actor: str = "system",
    ) -> BatchRelationship:
        """Accept a collaborator-supplied edge, with the same checks as new ones.

        Raises:
            InvalidInput: If the edge is malformed or a batch is unknown
            LineageViolation: If the edge breaks a graph rule
        """
        if not isinstance(edge, BatchRelationship):
            data = dict(edge)
            data.setdefault("id", str(uuid.uuid4()))
            try:
                edge = BatchRelationship.model_validate(data)
            except ValidationError as e:
                raise InvalidInput("Invalid batch relationship", validation_errors(e))

        def attempt():
            with self.ledger.transaction([edge.source_batch_id], actor=actor) as tx:
                source = tx.live(edge.source_batch_id)
                tx.dressed(edge.target_batch_id)
                return self.stage_edge(
                    tx, source, edge.target_batch_id, edge.quantity, edge.kind,
                    notes=edge.notes, edge_id=edge.id,
                )

        with with_correlation(operation="load_relationship", batch_id=edge.source_batch_id):
            try:
                return run_with_retry("load_relationship", attempt, self.settings.retry)
            except LineageViolation as e:
                self.report_violation(e, actor)
                raise

    # =========================================================================
    # Reads
    # =========================================================================

    def lineage_of(self, dressed_batch_id: str) -> Optional[BatchRelationship]:
        """The inbound edge of a dressed batch, or None."""
        with self.ledger.locks.snapshot():
            edge_id = self._by_target.get(dressed_batch_id)
            return self._edges[edge_id] if edge_id else None

    def outgoing(self, live_batch_id: str) -> List[BatchRelationship]:
        """Edges leaving a live batch, oldest first."""
        with self.ledger.locks.snapshot():
            return [self._edges[e] for e in self._by_source.get(live_batch_id, [])]

    def processed_total(self, live_batch_id: str) -> int:
        with self.ledger.locks.snapshot():
            return self._processed_total(live_batch_id)

    def descendants(self, live_batch_id: str) -> List[str]:
        """Ids of the dressed batches produced from a live batch."""
        return [edge.target_batch_id for edge in self.outgoing(live_batch_id)]

    def relationships(self) -> List[BatchRelationship]:
        with self.ledger.locks.snapshot():
            return list(self._edges.values())

    def yield_rate(self, dressed_batch_id: str) -> YieldReport:
        """Dressed units per bird processed, as a percentage.

        Dressed units are the batch's ``processing_quantity`` when recorded,
        else its ``initial_count``.

        Raises:
            BatchNotFound: If the dressed batch is unknown
            InvalidInput: If the dressed batch has no lineage
        """
        with self.ledger.locks.snapshot():
            dressed = self.ledger.get_dressed_batch(dressed_batch_id)
            edge = self.lineage_of(dressed_batch_id)

        if edge is None:
            raise InvalidInput(
                f"Dressed batch {dressed.batch_id} has no recorded source batch",
                {"dressed_batch_id": "No lineage recorded"},
            )

        birds = edge.quantity
        units = dressed.processing_quantity if dressed.processing_quantity is not None else dressed.initial_count
        rate = (Decimal(units) / Decimal(birds) * HUNDRED).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

        evidence = {"birds_processed": birds, "dressed_units": units, "rate": str(rate)}
        anomaly = None
        if rate < 0 or rate > HUNDRED:
            anomaly = Anomaly(
                kind=AnomalyKind.YIELD_OUT_OF_RANGE,
                entity_id=dressed.id,
                message=f"Yield of {rate}% for batch {dressed.batch_id} is outside 0-100%",
                evidence=evidence,
            )
        elif rate < self.settings.low_yield_threshold:
            anomaly = Anomaly(
                kind=AnomalyKind.LOW_YIELD,
                entity_id=dressed.id,
                message=(
                    f"Yield of {rate}% for batch {dressed.batch_id} is below "
                    f"{self.settings.low_yield_threshold}%"
                ),
                evidence=evidence,
            )
        if anomaly:
            logger.warning(anomaly.message, extra_fields=evidence)

        return YieldReport(
            dressed_batch_id=dressed.id,
            source_batch_id=edge.source_batch_id,
            rate=rate,
            birds_processed=birds,
            dressed_units=units,
            anomaly=anomaly,
        )
