"""Processing transaction - live birds into a dressed batch, all or nothing.

A run:
1. checks 0 < quantity <= live current_count
2. moves quantity out of the live batch
3. creates the dressed batch (whole birds plus parts)
4. records the lineage edge, partial when birds remain
5. optionally moves the remaining birds into a new live batch

Every record change and the edge are staged in one ledger transaction, so
readers see either none of a run or all of it.
"""

from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from core.audit import AuditEventType
from core.errors import InsufficientInventory, InvalidInput, LineageViolation
from core.locking import run_with_retry
from core.models.anomalies import Anomaly, AnomalyKind
from core.models.entities import (
    STANDARD_PART_TYPES,
    DressedBatch,
    LiveBatch,
    RelationshipKind,
    normalize_part_type,
)
from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import track_operation
from inventory.expiry import default_expiry_date
from inventory.ledger import InventoryLedger, validation_errors
from lineage.graph import BatchRelationshipGraph
from processing.models import ProcessingRequest, ProcessingResult

logger = get_logger(__name__)

# Soft limits on parts; breaking them warns but does not fail the run
PART_COUNT_FACTOR = 3
MAX_PART_UNIT_WEIGHT = Decimal("5")
MIN_PART_UNIT_WEIGHT = Decimal("0.001")


def _part_number(value: Any, whole: bool) -> Optional[Union[int, Decimal]]:
    """Parse one part count or weight. Empty means 0; garbage returns None."""
    if value is None or (isinstance(value, str) and value.strip() == ""):
        return 0 if whole else Decimal("0")
    if isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value).strip().replace(",", ""))
    except InvalidOperation:
        return None
    if not number.is_finite():
        return None
    if whole:
        if number != number.to_integral_value():
            return None
        return int(number)
    return number


def validate_parts(
    parts_count: Dict[str, Any],
    parts_weight: Dict[str, Any],
    whole_birds: int,
    batch_ref: Optional[str] = None,
) -> Tuple[Dict[str, int], Dict[str, Decimal], List[Anomaly]]:
    """Check part counts against part weights.

    Count and weight must both be positive or both be zero. Standard parts
    missing from the input are recorded as zero.

    Returns:
        (counts, weights, warnings)

    Raises:
        InvalidInput: If a value is unparseable, negative or unpaired
    """
    counts = {normalize_part_type(k): v for k, v in parts_count.items() if normalize_part_type(k)}
    weights = {normalize_part_type(k): v for k, v in parts_weight.items() if normalize_part_type(k)}

    errors: Dict[str, str] = {}
    parsed_counts: Dict[str, int] = {p: 0 for p in STANDARD_PART_TYPES}
    parsed_weights: Dict[str, Decimal] = {p: Decimal("0") for p in STANDARD_PART_TYPES}
    warnings: List[Anomaly] = []

    for part in sorted(set(counts) | set(weights)):
        count = _part_number(counts.get(part), whole=True)
        weight = _part_number(weights.get(part), whole=False)

        if count is None:
            errors[f"parts_count.{part}"] = f"Count for {part} must be a whole number"
        elif count < 0:
            errors[f"parts_count.{part}"] = f"Count for {part} cannot be negative"
        if weight is None:
            errors[f"parts_weight.{part}"] = f"Weight for {part} must be a number"
        elif weight < 0:
            errors[f"parts_weight.{part}"] = f"Weight for {part} cannot be negative"
        if any(key.endswith(f".{part}") for key in errors):
            continue

        if count > 0 and weight <= 0:
            errors[f"parts_weight.{part}"] = f"Weight is required when count is provided for {part}"
            continue
        if weight > 0 and count <= 0:
            errors[f"parts_count.{part}"] = f"Count is required when weight is provided for {part}"
            continue

        parsed_counts[part] = count
        parsed_weights[part] = weight

        if count > whole_birds * PART_COUNT_FACTOR:
            warnings.append(Anomaly(
                kind=AnomalyKind.PART_COUNT_HIGH,
                entity_id=batch_ref,
                message=f"{part} count ({count}) is unusually high for {whole_birds} birds",
                evidence={"part": part, "count": count, "whole_birds": whole_birds},
            ))
        if count > 0:
            unit_weight = weight / count
            if unit_weight > MAX_PART_UNIT_WEIGHT or unit_weight < MIN_PART_UNIT_WEIGHT:
                warnings.append(Anomaly(
                    kind=AnomalyKind.PART_WEIGHT_UNUSUAL,
                    entity_id=batch_ref,
                    message=f"{part} weight per unit ({unit_weight:.3f} kg) seems unusual",
                    evidence={"part": part, "count": count, "weight": str(weight)},
                ))

    if errors:
        raise InvalidInput("Invalid parts data", errors)

    return parsed_counts, parsed_weights, warnings


class ProcessingService:
    """Runs processing transactions against a ledger and its lineage graph."""

    def __init__(self, ledger: InventoryLedger, graph: BatchRelationshipGraph):
        self.ledger = ledger
        self.graph = graph
        self.settings = ledger.settings

    def _coerce(self, request: Union[ProcessingRequest, Dict[str, Any]]) -> ProcessingRequest:
        if isinstance(request, ProcessingRequest):
            return request
        try:
            return ProcessingRequest.model_validate(request)
        except ValidationError as e:
            raise InvalidInput("Invalid processing request", validation_errors(e))

    def process_batch(self, request: Union[ProcessingRequest, Dict[str, Any]]) -> ProcessingResult:
        """Convert live birds into a new dressed batch atomically.

        Raises:
            InvalidInput: If the request or its parts data is malformed
            BatchNotFound: If the source batch is unknown
            InsufficientInventory: If quantity is not within 1..current_count
            LineageViolation: If the batch's recorded lineage is already full
            ConcurrencyConflict: If the batch stays locked through every retry
        """
        request = self._coerce(request)

        with with_correlation(
            operation="process_batch",
            batch_id=request.source_batch_id,
            actor=request.actor,
        ), track_operation("process_batch"):
            parts_count, parts_weight, warnings = validate_parts(
                request.parts_count,
                request.parts_weight,
                whole_birds=max(request.quantity, 0),
                batch_ref=request.dressed_batch_code,
            )

            try:
                source, dressed, remainder, edge = run_with_retry(
                    "process_batch",
                    lambda: self._run(request, parts_count, parts_weight),
                    self.settings.retry,
                )
            except LineageViolation as e:
                self.graph.report_violation(e, request.actor)
                raise

            yield_report = self.graph.yield_rate(dressed.id)
            if yield_report.anomaly:
                warnings.append(yield_report.anomaly)

            logger.info(
                f"Processed {request.quantity} birds from {source.batch_id} into {dressed.batch_id}",
                extra_fields={
                    "remaining": source.current_count,
                    "remainder_batch": remainder.batch_id if remainder else None,
                    "kind": edge.kind.value,
                },
            )

        return ProcessingResult(
            source=source,
            dressed=dressed,
            remainder=remainder,
            relationship=edge,
            yield_report=yield_report,
            warnings=warnings,
        )

    def _run(self, request: ProcessingRequest, parts_count, parts_weight):
        settings = self.settings

        with self.ledger.transaction([request.source_batch_id], actor=request.actor) as tx:
            source = tx.live(request.source_batch_id)
            quantity = request.quantity
            before = source.current_count

            if quantity <= 0 or quantity > before:
                raise InsufficientInventory(source.batch_id, quantity, before)

            kind = (
                RelationshipKind.PARTIALLY_PROCESSED
                if quantity < before
                else RelationshipKind.FULLY_PROCESSED
            )

            processing_date = request.processing_date or date.today()
            expiry_date = request.expiry_date or default_expiry_date(
                processing_date, settings.expiry_months
            )
            average_weight = (
                request.average_weight
                or source.average_weight
                or settings.default_average_weight
            )
            run_number = len(self.graph.outgoing(source.id)) + 1

            if request.dressed_batch_id and self.ledger.exists(request.dressed_batch_id):
                raise InvalidInput(
                    f"Batch id {request.dressed_batch_id} is already registered",
                    {"dressed_batch_id": "Duplicate batch id"},
                )

            dressed = DressedBatch(
                id=request.dressed_batch_id or self.ledger.new_id(),
                batch_id=request.dressed_batch_code or f"{source.batch_id}-D{run_number}",
                initial_count=quantity,
                current_count=quantity,
                processing_quantity=quantity,
                average_weight=average_weight,
                parts_count=parts_count,
                parts_weight=parts_weight,
                processing_date=processing_date,
                expiry_date=expiry_date,
                size_category=request.size_category,
                storage_location=request.storage_location,
                notes=request.notes,
            )
            tx.stage(dressed)

            remaining = before - quantity
            changes = {
                "current_count": remaining,
                "processed_count": source.processed_count + quantity,
            }

            remainder = None
            if request.split_remainder and remaining > 0:
                remainder = LiveBatch(
                    id=self.ledger.new_id(),
                    batch_id=request.remainder_batch_code or f"{source.batch_id}-R",
                    initial_count=remaining,
                    current_count=remaining,
                    average_weight=source.average_weight,
                    status=source.status,
                    breed=source.breed,
                    hatch_date=source.hatch_date,
                )
                tx.stage(remainder)
                changes["current_count"] = 0
                changes["transferred_count"] = source.transferred_count + remaining

            updated = tx.update(source, **changes)
            edge = self.graph.stage_edge(tx, source, dressed.id, quantity, kind, notes=request.notes)

            tx.audit(
                AuditEventType.BATCH_PROCESSED,
                f"Processed {quantity} birds from batch {source.batch_id}",
                entity_type="live_batch",
                entity_id=source.id,
                old=source,
                new=updated,
                quantity=quantity,
                dressed_batch_id=dressed.id,
            )
            tx.audit(
                AuditEventType.DRESSED_BATCH_CREATED,
                f"Created dressed batch {dressed.batch_id} from {source.batch_id}",
                entity_type="dressed_batch",
                entity_id=dressed.id,
                old=None,
                new=dressed,
            )
            if remainder is not None:
                tx.audit(
                    AuditEventType.REMAINDER_BATCH_CREATED,
                    f"Moved {remaining} remaining birds from {source.batch_id} to {remainder.batch_id}",
                    entity_type="live_batch",
                    entity_id=remainder.id,
                    old=None,
                    new=remainder,
                    source_batch_id=source.id,
                )
            tx.movement("processed", quantity)

        return updated, dressed, remainder, edge
