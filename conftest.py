"""Shared fixtures: an isolated ledger, graph, processing service and order book per test."""

from decimal import Decimal

import pytest

from core.audit import AuditLogger, InMemoryAuditBackend
from core.config import EngineSettings, RetryConfig
from inventory.ledger import InventoryLedger
from lineage.graph import BatchRelationshipGraph
from processing.transaction import ProcessingService
from reconciliation.engine import OrderReconciler


@pytest.fixture
def settings():
    """Fast retries so conflict tests finish quickly."""
    return EngineSettings(
        retry=RetryConfig(max_retries=2, base_delay=0.001, max_delay=0.01),
        lock_timeout_seconds=0.5,
    )


@pytest.fixture
def audit_backend():
    return InMemoryAuditBackend()


@pytest.fixture
def audit(audit_backend):
    return AuditLogger([audit_backend])


@pytest.fixture
def ledger(audit, settings):
    return InventoryLedger(audit=audit, settings=settings)


@pytest.fixture
def graph(ledger):
    return BatchRelationshipGraph(ledger)


@pytest.fixture
def processing(ledger, graph):
    return ProcessingService(ledger, graph)


@pytest.fixture
def reconciler(ledger):
    return OrderReconciler(ledger)


@pytest.fixture
def live_batch(ledger):
    """LB-001: 100 healthy birds, nothing sold or processed."""
    return ledger.add_live_batch({
        "id": "lb-1",
        "batch_id": "LB-001",
        "initial_count": 100,
        "current_count": 100,
        "breed": "Broiler",
    })


@pytest.fixture
def dressed_batch(ledger):
    """DB-001: 40 whole birds plus neck and feet parts."""
    return ledger.add_dressed_batch({
        "id": "db-1",
        "batch_id": "DB-001",
        "initial_count": 40,
        "current_count": 40,
        "processing_quantity": 40,
        "average_weight": Decimal("2.5"),
        "parts_count": {"neck": 40, "Feet": 80},
        "parts_weight": {"neck": Decimal("4"), "Feet": Decimal("6")},
    })


@pytest.fixture
def order_data():
    """A valid count x size x price order against LB-001."""
    return {
        "customer": "Ada Farms",
        "date": "2024-05-01",
        "count": 10,
        "size": "2.5",
        "price": "500",
        "batch_id": "lb-1",
    }
