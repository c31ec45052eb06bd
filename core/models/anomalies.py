"""Domain warnings returned alongside successful results.

An anomaly is a valid-but-unusual state the caller should surface, such as a
yield above 100% or a manual status that disagrees with the amount paid. It
never aborts an operation.
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class AnomalyKind(str, Enum):
    YIELD_OUT_OF_RANGE = "yield_out_of_range"
    LOW_YIELD = "low_yield"
    STATUS_OVERRIDE_MISMATCH = "status_override_mismatch"
    PART_COUNT_HIGH = "part_count_high"
    PART_WEIGHT_UNUSUAL = "part_weight_unusual"


class Anomaly(BaseModel):
    """A flagged, non-fatal condition on an entity."""
    kind: AnomalyKind
    entity_id: Optional[str] = Field(None, description="Batch or order the anomaly concerns")
    message: str
    evidence: Dict[str, Any] = Field(default_factory=dict)
