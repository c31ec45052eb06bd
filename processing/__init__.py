"""Processing transactions - live birds into dressed batches."""

from processing.models import ProcessingRequest, ProcessingResult
from processing.transaction import ProcessingService, validate_parts

__all__ = [
    "ProcessingRequest",
    "ProcessingResult",
    "ProcessingService",
    "validate_parts",
]
