"""
Engine Logging

Every engine module logs through get_logger(__name__). Lines emitted while
an operation runs carry that operation's correlation fields, so a single line
says which batch or order it was about:

    logger = get_logger(__name__)

    with with_correlation(operation="reserve", batch_id="LB-001"):
        logger.info("Reserved 20 chickens", extra_fields={"available": 80})

Output is human-readable by default; FLOCK_LOG_JSON=true switches to one
JSON object per line.
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


ENGINE_LOGGERS = ["calculation", "inventory", "lineage", "processing", "reconciliation", "core"]


# =============================================================================
# Correlation
# =============================================================================

@dataclass
class CorrelationContext:
    """Who and what the current engine operation is about."""
    operation: Optional[str] = None
    batch_id: Optional[str] = None
    order_id: Optional[str] = None
    actor: Optional[str] = None
    request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Set fields only."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    def merge(self, **kwargs) -> "CorrelationContext":
        values = self.to_dict()
        values.update({k: v for k, v in kwargs.items() if v is not None})
        return CorrelationContext(**values)

    def label(self) -> str:
        """Short form for human-readable lines, e.g. reserve/LB-001/order:o-1."""
        parts: List[str] = []
        if self.operation:
            parts.append(self.operation)
        if self.batch_id:
            parts.append(self.batch_id)
        if self.order_id:
            parts.append(f"order:{self.order_id}")
        return "/".join(parts) or "-"


_current: ContextVar[CorrelationContext] = ContextVar("flock_correlation", default=CorrelationContext())


def get_correlation_context() -> CorrelationContext:
    return _current.get()


@contextmanager
def with_correlation(**fields):
    """
    Layer correlation fields over the current ones for the duration of the block.

    Fields passed as None keep the outer value; the outer context comes back
    on exit even if the block raises.
    """
    ctx = _current.get().merge(**fields)
    token = _current.set(ctx)
    try:
        yield ctx
    finally:
        _current.reset(token)


# =============================================================================
# Formatters
# =============================================================================

def _record_time(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, tz=timezone.utc)


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per record: timestamp, level, logger and message, then the
    correlation fields, then any extra_fields passed on the call.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": _record_time(record).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(get_correlation_context().to_dict())
        entry.update(getattr(record, "extra_fields", None) or {})
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """2024-05-01 08:00:00 [INFO ] inventory.ledger [reserve/LB-001]: Reserved 20 chickens"""

    def format(self, record: logging.LogRecord) -> str:
        stamp = _record_time(record).strftime("%Y-%m-%d %H:%M:%S")
        line = (
            f"{stamp} [{record.levelname:5}] {record.name} "
            f"[{get_correlation_context().label()}]: {record.getMessage()}"
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


# =============================================================================
# Logger
# =============================================================================

class CorrelatedLogger:
    """
    Thin wrapper over a stdlib logger that accepts extra_fields on each call.

    The fields end up on the record as record.extra_fields, where the
    formatters above pick them up.
    """

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def log(self, level: int, msg: str, *args, extra_fields: Optional[Dict[str, Any]] = None,
            exc_info=None):
        if not self._logger.isEnabledFor(level):
            return
        if exc_info is True:
            exc_info = sys.exc_info()
        record = self._logger.makeRecord(
            self._logger.name, level, "(engine)", 0, msg, args, exc_info,
        )
        record.extra_fields = dict(extra_fields or {})
        self._logger.handle(record)

    def debug(self, msg: str, *args, **kwargs):
        self.log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self.log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self.log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self.log(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs):
        kwargs["exc_info"] = True
        self.log(logging.ERROR, msg, *args, **kwargs)


_loggers: Dict[str, CorrelatedLogger] = {}
_configured = False


def _level_from_settings(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level: Optional[int] = None, json_format: Optional[bool] = None):
    """
    Attach one stdout handler to the engine's top-level loggers.

    Args:
        level: Logging level; FLOCK_LOG_LEVEL when omitted
        json_format: JSON lines instead of human-readable; FLOCK_LOG_JSON when omitted

    Only the first call has an effect. The engine loggers stop propagating so
    an embedding application keeps its own root configuration.
    """
    global _configured
    if _configured:
        return

    from core.config import get_settings
    settings = get_settings()
    if level is None:
        level = _level_from_settings(settings.log_level)
    if json_format is None:
        json_format = settings.log_json

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(StructuredFormatter() if json_format else HumanReadableFormatter())

    for name in ENGINE_LOGGERS:
        engine_logger = logging.getLogger(name)
        engine_logger.setLevel(level)
        engine_logger.addHandler(handler)
        engine_logger.propagate = False

    _configured = True


def get_logger(name: str) -> CorrelatedLogger:
    """Correlated logger for a module; configures logging on first use."""
    if name not in _loggers:
        if not _configured:
            configure_logging()
        _loggers[name] = CorrelatedLogger(logging.getLogger(name))
    return _loggers[name]
