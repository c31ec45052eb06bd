"""Request and result models for processing runs."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.models.anomalies import Anomaly
from core.models.entities import (
    BatchRelationship,
    DateValue,
    DecimalValue,
    DressedBatch,
    LiveBatch,
)
from lineage.models import YieldReport


class ProcessingRequest(BaseModel):
    """Convert ``quantity`` live birds of one batch into a new dressed batch.

    Part counts and weights are keyed by part name and parsed when the run
    is validated, so one bad entry is reported next to its part.
    """
    model_config = ConfigDict(populate_by_name=True)

    source_batch_id: str
    quantity: int
    dressed_batch_code: Optional[str] = None
    dressed_batch_id: Optional[str] = None

    split_remainder: bool = Field(False, alias="create_new_batch_for_remaining")
    remainder_batch_code: Optional[str] = Field(None, alias="remaining_batch_id")

    average_weight: Optional[DecimalValue] = None
    parts_count: Dict[str, Any] = Field(default_factory=dict)
    parts_weight: Dict[str, Any] = Field(default_factory=dict)

    processing_date: Optional[DateValue] = None
    expiry_date: Optional[DateValue] = None
    size_category: Optional[str] = "medium"
    storage_location: Optional[str] = None
    notes: Optional[str] = None

    actor: str = "system"


class ProcessingResult(BaseModel):
    """Everything a processing run changed or created."""
    source: LiveBatch
    dressed: DressedBatch
    remainder: Optional[LiveBatch] = None
    relationship: BatchRelationship
    yield_report: YieldReport
    warnings: List[Anomaly] = Field(default_factory=list)
