"""Typed engine errors.

InvalidInput and InsufficientInventory are expected, user-facing outcomes.
LineageViolation means the bookkeeping of a source batch is already wrong.
ConcurrencyConflict is transient and is retried before it reaches a caller.
"""

from typing import Any, Dict, List, Optional


class EngineError(Exception):
    """Base exception for batch engine errors."""
    code = "ENGINE_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class InvalidInput(EngineError):
    """A required field is missing or out of range."""
    code = "INVALID_INPUT"

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.errors = errors or {}

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["errors"] = dict(self.errors)
        return data


class BatchNotFound(InvalidInput):
    """Batch id is unknown to the ledger."""
    code = "BATCH_NOT_FOUND"

    def __init__(self, batch_id: str, batch_type: str = "batch"):
        super().__init__(
            f"Unknown {batch_type}: {batch_id}",
            {"batch_id": f"Unknown {batch_type}: {batch_id}"},
        )
        self.batch_id = batch_id
        self.batch_type = batch_type


class OrderNotFound(InvalidInput):
    """Order id is unknown to the order book."""
    code = "ORDER_NOT_FOUND"

    def __init__(self, order_ids: List[str]):
        joined = ", ".join(order_ids)
        super().__init__(f"Unknown order(s): {joined}", {"order_ids": joined})
        self.order_ids = list(order_ids)


class InsufficientInventory(EngineError):
    """Requested quantity exceeds what the batch has available."""
    code = "INSUFFICIENT_INVENTORY"

    def __init__(
        self,
        batch_id: str,
        requested: Any,
        available: Any,
        source: Optional[str] = None,
    ):
        item = source or "birds"
        super().__init__(
            f"Insufficient {item} in batch {batch_id}. "
            f"Available: {available}, Required: {requested}"
        )
        self.batch_id = batch_id
        self.requested = requested
        self.available = available
        self.source = source

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "batch_id": self.batch_id,
            "requested": self.requested,
            "available": self.available,
            "source": self.source,
        })
        return data


class LineageViolation(EngineError):
    """Processing would move more birds out of a batch than it ever held."""
    code = "LINEAGE_VIOLATION"

    def __init__(
        self,
        message: str,
        source_batch_id: Optional[str] = None,
        target_batch_id: Optional[str] = None,
        requested: Optional[int] = None,
        limit: Optional[int] = None,
    ):
        super().__init__(message)
        self.source_batch_id = source_batch_id
        self.target_batch_id = target_batch_id
        self.requested = requested
        self.limit = limit

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "source_batch_id": self.source_batch_id,
            "target_batch_id": self.target_batch_id,
            "requested": self.requested,
            "limit": self.limit,
        })
        return data


class ConcurrencyConflict(EngineError):
    """A batch lock could not be acquired in time."""
    code = "CONCURRENCY_CONFLICT"

    def __init__(self, batch_ids: List[str], attempts: int = 1):
        super().__init__(
            f"Concurrent update in progress for batch(es) {', '.join(batch_ids)}; "
            f"gave up after {attempts} attempt(s)"
        )
        self.batch_ids = list(batch_ids)
        self.attempts = attempts

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"batch_ids": self.batch_ids, "attempts": self.attempts})
        return data
