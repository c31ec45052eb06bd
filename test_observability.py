"""
Observability Validation Test

This test validates the observability stack:
1. Metrics collection works (operation/conflict/inventory/timing metrics)
2. Structured logging with correlation IDs works
3. Engine operations report themselves through both
4. Settings are read from the environment

Pass criteria: From one engine log line you can tell which operation, batch
and order it belongs to, and the metrics summary agrees with what ran.
"""

import json
import logging
from datetime import datetime

import pytest


# Test imports - these should all import successfully
def test_observability_imports():
    """Verify all observability modules import correctly."""
    from core.observability import (
        MetricsCollector, get_metrics,
        record_operation_started, record_operation_completed, record_operation_failed,
        record_conflict_retry, record_inventory_movement, record_processing_time,
        track_operation,
        get_logger, configure_logging, CorrelationContext, with_correlation,
    )
    assert MetricsCollector is not None
    assert get_metrics is not None
    assert CorrelationContext is not None
    assert track_operation is not None


class ListHandler(logging.Handler):
    """Collects formatted records."""

    def __init__(self, formatter):
        super().__init__(level=logging.DEBUG)
        self.setFormatter(formatter)
        self.lines = []

    def emit(self, record):
        self.lines.append(self.format(record))


class TestMetricsCollector:
    """Test the metrics collection system."""

    def test_singleton_instance(self):
        """MetricsCollector returns same instance."""
        from core.observability.metrics import MetricsCollector
        m1 = MetricsCollector.instance()
        m2 = MetricsCollector.instance()
        assert m1 is m2

    def test_operation_metrics_tracking(self):
        """Track operation started/completed/failed counts."""
        from core.observability.metrics import MetricsCollector
        mc = MetricsCollector.instance()

        # Get baseline
        baseline = mc.get_summary()
        started_before = baseline["operations"]["started"]
        completed_before = baseline["operations"]["completed"]
        failed_before = baseline["operations"]["failed"]

        mc.record_operation_started("test_reserve")
        mc.record_operation_started("test_reserve")
        mc.record_operation_completed("test_reserve", duration_ms=4)
        mc.record_operation_failed("test_reserve", "INSUFFICIENT_INVENTORY")

        summary = mc.get_summary()
        assert summary["operations"]["started"] == started_before + 2
        assert summary["operations"]["completed"] == completed_before + 1
        assert summary["operations"]["failed"] == failed_before + 1
        assert summary["operations"]["by_name"]["test_reserve"]["started"] >= 2
        assert summary["operations"]["by_error"]["INSUFFICIENT_INVENTORY"] >= 1

    def test_conflict_retry_tracking(self):
        """Track retries after lost lock races."""
        from core.observability.metrics import MetricsCollector
        mc = MetricsCollector.instance()

        baseline = mc.get_summary()["operations"]["conflict_retries"]
        mc.record_conflict_retry("test_process", attempt=1)

        summary = mc.get_summary()
        assert summary["operations"]["conflict_retries"] == baseline + 1
        assert summary["operations"]["by_name"]["test_process"]["conflict_retries"] >= 1

    def test_timing_percentile_calculation(self):
        """Calculate p95 timing correctly."""
        from core.observability.metrics import MetricsCollector
        mc = MetricsCollector.instance()

        # Add 100 samples: 1-100ms to a unique stage
        test_stage = f"test_stage_{datetime.now().timestamp()}"
        for i in range(1, 101):
            mc.record_processing_time(test_stage, i)

        stats = mc.get_timing_stats(test_stage)

        # Average should be ~50.5
        assert 49 <= stats["average_ms"] <= 52
        # P95 should be ~95
        assert 93 <= stats["p95_ms"] <= 97
        assert stats["sample_count"] == 100

    def test_track_operation(self):
        """track_operation counts success, and failure by error code."""
        from core.errors import InvalidInput
        from core.observability.metrics import get_metrics, track_operation

        mc = get_metrics()
        name = f"test_op_{datetime.now().timestamp()}"

        with track_operation(name):
            pass
        with pytest.raises(InvalidInput):
            with track_operation(name):
                raise InvalidInput("bad")

        by_name = mc.get_summary()["operations"]["by_name"][name]
        assert by_name == {"started": 2, "completed": 1, "failed": 1, "conflict_retries": 0}
        assert mc.get_timing_stats(f"operation.{name}")["sample_count"] <= 1

    def test_engine_operations_are_counted(self, ledger, live_batch):
        """Ledger operations and inventory movements reach the collector."""
        from core.errors import InsufficientInventory
        from core.observability.metrics import get_metrics

        mc = get_metrics()
        before = mc.get_summary()

        ledger.reserve("lb-1", "live", 15)
        with pytest.raises(InsufficientInventory):
            ledger.reserve("lb-1", "live", 500)

        after = mc.get_summary()
        reserve_before = before["operations"]["by_name"].get("reserve", {"completed": 0, "failed": 0})
        assert after["operations"]["by_name"]["reserve"]["completed"] == reserve_before["completed"] + 1
        assert after["operations"]["by_name"]["reserve"]["failed"] == reserve_before["failed"] + 1
        assert after["inventory"]["reserved"] == before["inventory"]["reserved"] + 15

    def test_reset(self):
        """A fresh collector starts from zero."""
        from core.observability.metrics import MetricsCollector

        mc = MetricsCollector()
        mc.record_inventory_movement("processed", 60)
        mc.reset()
        assert mc.get_summary()["inventory"]["processed"] == 0


class TestCorrelatedLogging:
    """Test structured logging with correlation IDs."""

    def test_correlation_context_creation(self):
        """Create correlation context with all fields."""
        from core.observability.logging import CorrelationContext

        ctx = CorrelationContext(
            operation="commit_order",
            batch_id="lb-1",
            order_id="o-1",
            actor="clerk",
            request_id="req-9",
        )

        assert ctx.operation == "commit_order"
        assert ctx.batch_id == "lb-1"
        assert ctx.to_dict()["request_id"] == "req-9"
        assert "batch_id" not in CorrelationContext(order_id="o-2").to_dict()

    def test_context_var_isolation(self):
        """Nested contexts merge and unwind."""
        from core.observability.logging import get_correlation_context, with_correlation

        assert get_correlation_context().batch_id is None

        with with_correlation(request_id="req-1"):
            with with_correlation(operation="reserve", batch_id="lb-1"):
                inner_ctx = get_correlation_context()
                assert inner_ctx.batch_id == "lb-1"
                assert inner_ctx.request_id == "req-1"
            assert get_correlation_context().batch_id is None

        assert get_correlation_context().request_id is None

    def test_structured_formatter_json_output(self):
        """StructuredFormatter outputs valid JSON."""
        from core.observability.logging import StructuredFormatter, with_correlation

        formatter = StructuredFormatter()

        with with_correlation(operation="reserve", batch_id="lb-1"):
            record = logging.LogRecord(
                name="test",
                level=logging.INFO,
                pathname="test.py",
                lineno=10,
                msg="Test message",
                args=(),
                exc_info=None,
            )
            record.extra_fields = {"available": 80}

            output = formatter.format(record)
            data = json.loads(output)

            assert data["message"] == "Test message"
            assert data["operation"] == "reserve"
            assert data["batch_id"] == "lb-1"
            assert data["available"] == 80

    def test_human_readable_formatter(self):
        """Human format shows operation, batch and order."""
        from core.observability.logging import HumanReadableFormatter, with_correlation

        record = logging.LogRecord("inventory.ledger", logging.INFO, "x.py", 1, "Reserved", (), None)
        with with_correlation(operation="commit_order", batch_id="lb-1", order_id="o-1"):
            line = HumanReadableFormatter().format(record)

        assert "[commit_order/lb-1/order:o-1]: Reserved" in line

    def test_engine_logs_carry_context(self, ledger, live_batch):
        """A ledger log line names its operation and batch."""
        from core.observability.logging import StructuredFormatter

        handler = ListHandler(StructuredFormatter())
        engine_logger = logging.getLogger("inventory.ledger")
        engine_logger.addHandler(handler)
        try:
            ledger.reserve("lb-1", "live", 5)
        finally:
            engine_logger.removeHandler(handler)

        entries = [json.loads(line) for line in handler.lines]
        reserved = [e for e in entries if e["message"].startswith("Reserved 5")]
        assert reserved
        assert reserved[0]["operation"] == "reserve"
        assert reserved[0]["batch_id"] == "lb-1"
        assert reserved[0]["available"] == 95

    def test_exception_includes_traceback(self):
        """logger.exception attaches the active exception."""
        from core.observability.logging import StructuredFormatter, get_logger

        handler = ListHandler(StructuredFormatter())
        base = logging.getLogger("core.test_exceptions")
        base.addHandler(handler)
        try:
            logger = get_logger("core.test_exceptions")
            try:
                raise ValueError("boom")
            except ValueError:
                logger.exception("Something failed", extra_fields={"step": 2})
        finally:
            base.removeHandler(handler)

        data = json.loads(handler.lines[-1])
        assert data["level"] == "ERROR"
        assert data["step"] == 2
        assert "ValueError: boom" in data["exception"]


class TestSettings:
    """Settings come from the environment."""

    @pytest.fixture(autouse=True)
    def fresh_settings(self):
        from core.config import reset_settings
        reset_settings()
        yield
        reset_settings()

    def test_defaults(self, monkeypatch):
        """Unset variables fall back to defaults."""
        from core.config import get_settings

        for name in ("FLOCK_LOCK_TIMEOUT", "FLOCK_EXPIRY_MONTHS", "FLOCK_LOW_YIELD_THRESHOLD"):
            monkeypatch.delenv(name, raising=False)

        settings = get_settings()
        assert settings.lock_timeout_seconds == 2.0
        assert settings.expiry_months == 3
        assert str(settings.low_yield_threshold) == "95.0"
        assert get_settings() is settings

    def test_environment_overrides(self, monkeypatch):
        """Variables override defaults."""
        from core.config import get_settings

        monkeypatch.setenv("FLOCK_MAX_CONFLICT_RETRIES", "5")
        monkeypatch.setenv("FLOCK_EXPIRY_MONTHS", "2")
        monkeypatch.setenv("FLOCK_LOG_JSON", "true")

        settings = get_settings()
        assert settings.retry.max_retries == 5
        assert settings.expiry_months == 2
        assert settings.log_json is True

    def test_invalid_number(self, monkeypatch):
        """Malformed numbers fail loudly."""
        from core.config import get_settings

        monkeypatch.setenv("FLOCK_LOCK_TIMEOUT", "soon")
        with pytest.raises(ValueError):
            get_settings()

    def test_retry_backoff(self):
        """Delays grow exponentially up to the cap."""
        from core.config import RetryConfig

        config = RetryConfig(base_delay=0.1, max_delay=0.3)
        assert config.get_delay(0) == pytest.approx(0.1)
        assert config.get_delay(1) == pytest.approx(0.2)
        assert config.get_delay(5) == pytest.approx(0.3)
