"""
Engine Metrics

In-memory counters for what the engine did since start-up:
- operations started/completed/failed per operation name, failures per error code
- batch-lock conflict retries
- chickens reserved, released, processed and lost to mortality
- operation and stage timings (average and p95 over a bounded window)

Nothing is exported; an embedding application reads get_metrics().get_summary().
"""

import statistics
import time
from collections import Counter, defaultdict, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Deque, Dict, Optional

OPERATION_COUNTERS = ("started", "completed", "failed", "conflict_retries")
INVENTORY_MOVEMENTS = ("reserved", "released", "processed", "mortality")
MAX_TIMING_SAMPLES = 1000


def _p95(samples) -> float:
    if not samples:
        return 0.0
    ordered = sorted(samples)
    return ordered[min(int(len(ordered) * 0.95), len(ordered) - 1)]


@dataclass
class TimingWindow:
    """Most recent timing samples, overall and per stage."""
    overall: Deque[float] = field(default_factory=lambda: deque(maxlen=MAX_TIMING_SAMPLES))
    stages: Dict[str, Deque[float]] = field(
        default_factory=lambda: defaultdict(lambda: deque(maxlen=MAX_TIMING_SAMPLES))
    )

    def add(self, stage: str, duration_ms: float) -> None:
        self.overall.append(duration_ms)
        self.stages[stage].append(duration_ms)

    def stats(self, stage: Optional[str] = None) -> Dict[str, float]:
        samples = self.overall if stage is None else self.stages.get(stage, ())
        return {
            "average_ms": statistics.mean(samples) if samples else 0.0,
            "p95_ms": _p95(samples),
            "sample_count": len(samples),
        }


class MetricsCollector:
    """
    Thread-safe counters shared by every ledger, graph and reconciler in the process.

    Usage:
        metrics = MetricsCollector.instance()
        metrics.record_operation_started("reserve")
        metrics.record_operation_completed("reserve", duration_ms=3.2)
    """

    _instance: Optional["MetricsCollector"] = None
    _instance_lock = Lock()

    def __init__(self):
        self._lock = Lock()
        self._clear()

    def _clear(self) -> None:
        self.totals: Counter = Counter()
        self.by_name: Dict[str, Counter] = defaultdict(Counter)
        self.by_error: Counter = Counter()
        self.inventory: Counter = Counter()
        self.timings = TimingWindow()

    @classmethod
    def instance(cls) -> "MetricsCollector":
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def reset(self) -> None:
        with self._lock:
            self._clear()

    def _count(self, operation: str, counter: str) -> None:
        self.totals[counter] += 1
        self.by_name[operation][counter] += 1

    def record_operation_started(self, operation: str):
        with self._lock:
            self._count(operation, "started")

    def record_operation_completed(self, operation: str, duration_ms: float = None):
        with self._lock:
            self._count(operation, "completed")
            if duration_ms:
                self.timings.add(f"operation.{operation}", duration_ms)

    def record_operation_failed(self, operation: str, error_code: str = None):
        with self._lock:
            self._count(operation, "failed")
            if error_code:
                self.by_error[error_code] += 1

    def record_conflict_retry(self, operation: str, attempt: int):
        """A batch-lock race was lost and ``operation`` will be tried again."""
        with self._lock:
            self._count(operation, "conflict_retries")

    def record_inventory_movement(self, movement: str, quantity: int):
        """Add ``quantity`` chickens to one of the INVENTORY_MOVEMENTS totals."""
        if movement not in INVENTORY_MOVEMENTS:
            raise ValueError(f"Unknown inventory movement: {movement}")
        with self._lock:
            self.inventory[movement] += quantity

    def record_processing_time(self, stage: str, duration_ms: float):
        with self._lock:
            self.timings.add(stage, duration_ms)

    def get_timing_stats(self, stage: str = None) -> Dict[str, float]:
        with self._lock:
            return self.timings.stats(stage)

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            operations: Dict[str, Any] = {c: self.totals[c] for c in OPERATION_COUNTERS}
            operations["by_name"] = {
                name: {c: counts[c] for c in OPERATION_COUNTERS}
                for name, counts in self.by_name.items()
            }
            operations["by_error"] = dict(self.by_error)

            overall = self.timings.stats()
            return {
                "operations": operations,
                "inventory": {m: self.inventory[m] for m in INVENTORY_MOVEMENTS},
                "timings": {
                    "overall": {k: overall[k] for k in ("average_ms", "p95_ms")},
                    "by_stage": {
                        stage: {k: v for k, v in self.timings.stats(stage).items() if k != "sample_count"}
                        for stage in list(self.timings.stages)
                    },
                },
            }


def get_metrics() -> MetricsCollector:
    return MetricsCollector.instance()


def record_operation_started(operation: str):
    get_metrics().record_operation_started(operation)


def record_operation_completed(operation: str, duration_ms: float = None):
    get_metrics().record_operation_completed(operation, duration_ms)


def record_operation_failed(operation: str, error_code: str = None):
    get_metrics().record_operation_failed(operation, error_code)


def record_conflict_retry(operation: str, attempt: int):
    get_metrics().record_conflict_retry(operation, attempt)


def record_inventory_movement(movement: str, quantity: int):
    get_metrics().record_inventory_movement(movement, quantity)


def record_processing_time(stage: str, duration_ms: float):
    get_metrics().record_processing_time(stage, duration_ms)


@contextmanager
def track_operation(operation: str):
    """Count one run of ``operation`` and time it.

    Failures are counted under the exception's ``code`` (engine errors carry
    one) or its class name, then re-raised.
    """
    record_operation_started(operation)
    start = time.perf_counter()
    try:
        yield
    except Exception as e:
        record_operation_failed(operation, getattr(e, "code", type(e).__name__))
        raise
    record_operation_completed(operation, (time.perf_counter() - start) * 1000)
