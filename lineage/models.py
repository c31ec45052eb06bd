"""Result models for lineage queries."""

from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel

from core.models.anomalies import Anomaly


class YieldReport(BaseModel):
    """Dressed units obtained per live bird processed, as a percentage.

    ``rate`` is not clamped. A rate outside 0-100 or below the low-yield
    threshold carries an anomaly instead.
    """
    dressed_batch_id: str
    source_batch_id: str
    rate: Decimal
    birds_processed: int
    dressed_units: int
    anomaly: Optional[Anomaly] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
