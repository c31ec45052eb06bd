"""
Batch Relationship Graph Tests

Edges from live to dressed batches: the quantity and single-parent rules,
violation reporting and yield calculation.
"""

from decimal import Decimal

import pytest


@pytest.fixture
def add_dressed(ledger):
    """Register a dressed batch with the given processing quantity."""
    def _add(batch_id, units):
        return ledger.add_dressed_batch({
            "id": batch_id,
            "batch_id": batch_id.upper(),
            "initial_count": units,
            "processing_quantity": units,
        })
    return _add


class TestRecordProcessing:
    """Appending edges."""

    def test_edge_is_queryable(self, graph, live_batch, add_dressed):
        """A recorded edge shows up from both ends."""
        from core.models.entities import RelationshipKind

        add_dressed("db-a", 50)
        edge = graph.record_processing("lb-1", "db-a", 50, "partial_processed_from")

        assert edge.kind == RelationshipKind.PARTIALLY_PROCESSED
        assert graph.lineage_of("db-a") == edge
        assert graph.outgoing("lb-1") == [edge]
        assert graph.descendants("lb-1") == ["db-a"]
        assert graph.processed_total("lb-1") == 50
        assert graph.lineage_of("unknown") is None

    def test_edges_sum_up_to_initial_count(self, graph, live_batch, add_dressed):
        """Several runs may together use the whole batch."""
        add_dressed("db-a", 60)
        add_dressed("db-b", 40)

        graph.record_processing("lb-1", "db-a", 60, "partial_processed_from")
        graph.record_processing("lb-1", "db-b", 40, "processed_from")

        assert graph.processed_total("lb-1") == 100
        assert len(graph.relationships()) == 2

    def test_exceeding_initial_count(self, graph, live_batch, add_dressed, audit_backend):
        """Going past the initial count raises and records a violation."""
        from core.errors import LineageViolation
        from core.models.refs import AuditSeverity

        add_dressed("db-a", 80)
        add_dressed("db-b", 30)
        graph.record_processing("lb-1", "db-a", 80, "partial_processed_from")

        with pytest.raises(LineageViolation) as exc_info:
            graph.record_processing("lb-1", "db-b", 30, "processed_from")

        assert exc_info.value.limit == 20
        assert exc_info.value.requested == 30
        assert graph.lineage_of("db-b") is None
        assert graph.processed_total("lb-1") == 80

        violations = audit_backend.query(event_type="LINEAGE_VIOLATION")
        assert len(violations) == 1
        assert violations[0].severity == AuditSeverity.ERROR
        assert violations[0].changed_fields == {}
        assert violations[0].details["source_batch_id"] == "lb-1"

    def test_single_inbound_edge(self, graph, ledger, live_batch, add_dressed):
        """A dressed batch has exactly one source."""
        from core.errors import LineageViolation

        ledger.add_live_batch({"id": "lb-2", "batch_id": "LB-002", "initial_count": 50, "current_count": 50})
        add_dressed("db-a", 20)
        graph.record_processing("lb-1", "db-a", 20, "partial_processed_from")

        with pytest.raises(LineageViolation):
            graph.record_processing("lb-2", "db-a", 10, "partial_processed_from")
        assert graph.lineage_of("db-a").source_batch_id == "lb-1"

    def test_unknown_batches_and_kinds(self, graph, live_batch, add_dressed):
        """Both ends must exist and the kind must be known."""
        from core.errors import BatchNotFound, InvalidInput

        add_dressed("db-a", 20)
        with pytest.raises(BatchNotFound):
            graph.record_processing("lb-1", "db-missing", 20, "processed_from")
        with pytest.raises(BatchNotFound):
            graph.record_processing("lb-missing", "db-a", 20, "processed_from")
        with pytest.raises(InvalidInput):
            graph.record_processing("lb-1", "db-a", 20, "smoked_from")
        with pytest.raises(InvalidInput):
            graph.record_processing("lb-1", "db-a", 0, "processed_from")

    def test_edge_audited(self, graph, live_batch, add_dressed, audit_backend):
        """Recorded edges leave a LINEAGE_RECORDED entry."""
        add_dressed("db-a", 20)
        edge = graph.record_processing("lb-1", "db-a", 20, "partial_processed_from", actor="plant")

        event = audit_backend.query(event_type="LINEAGE_RECORDED")[0]
        assert event.entity_id == edge.id
        assert event.actor == "plant"
        assert event.changed_fields["quantity"] == {"old": None, "new": 20}


class TestLoadRelationship:
    """Edges supplied by collaborators go through the same checks."""

    def test_load_from_dict(self, graph, live_batch, add_dressed):
        """Dict records are parsed and appended with their id."""
        add_dressed("db-a", 30)
        edge = graph.load_relationship({
            "id": "rel-1",
            "source_batch_id": "lb-1",
            "target_batch_id": "db-a",
            "kind": "processed_from",
            "quantity": "30",
        })

        assert edge.id == "rel-1"
        assert edge.quantity == 30
        assert graph.lineage_of("db-a").id == "rel-1"

    def test_load_invalid(self, graph, live_batch, add_dressed):
        """Malformed and rule-breaking records are rejected."""
        from core.errors import InvalidInput, LineageViolation

        add_dressed("db-a", 30)
        with pytest.raises(InvalidInput):
            graph.load_relationship({"source_batch_id": "lb-1", "target_batch_id": "db-a", "kind": "x"})
        with pytest.raises(LineageViolation):
            graph.load_relationship({
                "source_batch_id": "lb-1", "target_batch_id": "db-a",
                "kind": "processed_from", "quantity": 101,
            })


class TestYieldRate:
    """Dressed units per processed bird."""

    def test_normal_yield(self, graph, live_batch, add_dressed):
        """96% is above the default 95% threshold."""
        add_dressed("db-a", 48)
        graph.record_processing("lb-1", "db-a", 50, "partial_processed_from")

        report = graph.yield_rate("db-a")
        assert report.rate == Decimal("96.00")
        assert report.birds_processed == 50
        assert report.dressed_units == 48
        assert report.anomaly is None

    def test_low_yield(self, graph, live_batch, add_dressed):
        """Below the threshold yields a low_yield anomaly."""
        from core.models.anomalies import AnomalyKind

        add_dressed("db-a", 45)
        graph.record_processing("lb-1", "db-a", 50, "partial_processed_from")

        report = graph.yield_rate("db-a")
        assert report.rate == Decimal("90.00")
        assert report.anomaly.kind == AnomalyKind.LOW_YIELD

    def test_yield_above_hundred(self, graph, live_batch, add_dressed):
        """More units than birds is out of range, reported not clamped."""
        from core.models.anomalies import AnomalyKind

        add_dressed("db-a", 55)
        graph.record_processing("lb-1", "db-a", 50, "partial_processed_from")

        report = graph.yield_rate("db-a")
        assert report.rate == Decimal("110.00")
        assert report.anomaly.kind == AnomalyKind.YIELD_OUT_OF_RANGE

    def test_no_lineage(self, graph, add_dressed):
        """A dressed batch with no source has no yield."""
        from core.errors import InvalidInput

        add_dressed("db-a", 10)
        with pytest.raises(InvalidInput):
            graph.yield_rate("db-a")
