"""
Inventory Ledger Tests

Covers availability rules per inventory type, reserve/release symmetry,
ceilings, mortality, status changes, expiry and the audit trail a
committed change leaves behind.
"""

from datetime import date
from decimal import Decimal

import pytest


class TestAvailability:
    """available_quantity fallbacks for each inventory type."""

    def test_live_uses_current_count(self, ledger, live_batch):
        """Live availability is current_count."""
        assert ledger.available_quantity("lb-1", "live") == 100

    def test_dressed_falls_back_to_processing_quantity(self, ledger):
        """With no current_count, processing_quantity is used."""
        ledger.add_dressed_batch({
            "id": "db-2", "batch_id": "DB-002", "initial_count": 50, "processing_quantity": 40,
        })
        assert ledger.available_quantity("db-2", "dressed") == 40

    def test_dressed_falls_back_to_initial_count(self, ledger):
        """With neither field set, initial_count is used."""
        ledger.add_dressed_batch({"id": "db-3", "batch_id": "DB-003", "initial_count": 30})
        assert ledger.available_quantity("db-3", "dressed") == 30

    def test_explicit_zero_means_sold_out(self, ledger):
        """current_count of 0 is a real value, not a missing one."""
        ledger.add_dressed_batch({
            "id": "db-4", "batch_id": "DB-004", "initial_count": 30,
            "current_count": 0, "processing_quantity": 30,
        })
        assert ledger.available_quantity("db-4", "dressed") == 0

    def test_parts_availability(self, ledger, dressed_batch):
        """Parts are looked up by normalized name; absent parts are 0."""
        assert ledger.available_quantity("db-1", "parts", part_type="Neck") == 40
        assert ledger.available_quantity("db-1", "parts", part_type="feet") == 80
        assert ledger.available_quantity("db-1", "parts", part_type="gizzard") == 0

    def test_parts_without_part_type_rejected(self, ledger, dressed_batch):
        """A parts lookup must name the part."""
        from core.errors import InvalidInput

        with pytest.raises(InvalidInput):
            ledger.available_quantity("db-1", "parts")

    def test_unknown_batch(self, ledger):
        """Unknown ids raise BatchNotFound, a kind of InvalidInput."""
        from core.errors import BatchNotFound, InvalidInput

        with pytest.raises(BatchNotFound) as exc_info:
            ledger.available_quantity("nope", "live")
        assert isinstance(exc_info.value, InvalidInput)
        assert exc_info.value.batch_id == "nope"


class TestReserveRelease:
    """Reservations move counts and release restores them."""

    def test_reserve_reduces_availability(self, ledger, live_batch):
        """Reserving 20 of 100 leaves 80 and records the sale."""
        remaining = ledger.reserve("lb-1", "live", 20)

        assert remaining == 80
        batch = ledger.get_live_batch("lb-1")
        assert batch.current_count == 80
        assert batch.sold_count == 20
        assert batch.mortality == 0
        assert batch.version == live_batch.version + 1

    def test_reserve_more_than_available(self, ledger, live_batch):
        """Over-reserving fails with the available and required amounts."""
        from core.errors import InsufficientInventory

        with pytest.raises(InsufficientInventory) as exc_info:
            ledger.reserve("lb-1", "live", 120)

        error = exc_info.value
        assert error.available == 100
        assert error.requested == 120
        assert "Insufficient chickens in batch LB-001" in error.message
        assert "Available: 100, Required: 120" in error.message
        assert ledger.available_quantity("lb-1") == 100

    @pytest.mark.parametrize("quantity", [0, -5, 2.5, True, "10"])
    def test_invalid_quantities(self, ledger, live_batch, quantity):
        """Only positive whole numbers are accepted."""
        from core.errors import InvalidInput

        with pytest.raises(InvalidInput):
            ledger.reserve("lb-1", "live", quantity)

    def test_release_restores_reservation(self, ledger, live_batch):
        """reserve(q) then release(q) returns to the starting state."""
        ledger.reserve("lb-1", "live", 30)
        restored = ledger.release("lb-1", "live", 30)

        batch = ledger.get_live_batch("lb-1")
        assert restored == 100
        assert batch.current_count == 100
        assert batch.sold_count == 0

    def test_release_above_capacity_rejected(self, ledger, live_batch):
        """A live batch never holds more than it started with."""
        from core.errors import InvalidInput

        with pytest.raises(InvalidInput):
            ledger.release("lb-1", "live", 1)

    def test_dressed_whole_reserve_release(self, ledger, dressed_batch):
        """Whole dressed birds deplete current_count only."""
        assert ledger.reserve("db-1", "dressed", 15) == 25
        batch = ledger.get_dressed_batch("db-1")
        assert batch.current_count == 25
        assert batch.parts_count["neck"] == 40

        assert ledger.release("db-1", "dressed", 15) == 40

    def test_dressed_release_capped_at_initial(self, ledger, dressed_batch):
        """Whole birds cannot be released past initial_count."""
        from core.errors import InvalidInput

        with pytest.raises(InvalidInput):
            ledger.release("db-1", "dressed", 5)

    def test_parts_reserve_and_ceiling(self, ledger, dressed_batch):
        """Parts deplete independently and return up to the recorded count."""
        from core.errors import InsufficientInventory, InvalidInput
        from core.models.entities import InventorySource

        neck = InventorySource.dressed_part("neck")
        assert ledger.reserve("db-1", neck, 10) == 30
        assert ledger.get_dressed_batch("db-1").current_count == 40

        with pytest.raises(InsufficientInventory) as exc_info:
            ledger.reserve("db-1", InventorySource.dressed_part("gizzard"), 1)
        assert "Insufficient gizzard" in exc_info.value.message

        assert ledger.release("db-1", neck, 10) == 40
        with pytest.raises(InvalidInput):
            ledger.release("db-1", neck, 1)

    def test_parts_by_name(self, ledger, dressed_batch):
        """reserve and release accept a part name like available_quantity does."""
        from core.errors import InvalidInput

        assert ledger.reserve("db-1", "parts", 20, part_type="Feet") == 60
        assert ledger.available_quantity("db-1", "parts", "feet") == 60
        assert ledger.release("db-1", "parts", 20, part_type="feet") == 80

        with pytest.raises(InvalidInput):
            ledger.reserve("db-1", "parts", 1)
        assert ledger.available_quantity("db-1", "parts", "feet") == 80

    def test_failed_transaction_stages_nothing(self, ledger, live_batch):
        """An exception inside a transaction leaves the ledger untouched."""
        from core.models.entities import InventorySource

        with pytest.raises(RuntimeError):
            with ledger.transaction(["lb-1"]) as tx:
                tx.reserve("lb-1", InventorySource.live(), 40)
                raise RuntimeError("abort")

        assert ledger.available_quantity("lb-1") == 100


class TestRegistration:
    """Adding batch records supplied by collaborators."""

    def test_inconsistent_live_batch_rejected(self, ledger):
        """current_count above initial_count is invalid."""
        from core.errors import InvalidInput

        with pytest.raises(InvalidInput) as exc_info:
            ledger.add_live_batch({
                "id": "lb-x", "batch_id": "LB-X", "initial_count": 10, "current_count": 12,
            })
        assert exc_info.value.errors

    def test_duplicate_id_rejected(self, ledger, live_batch):
        """Batch ids are unique across the ledger."""
        from core.errors import InvalidInput

        with pytest.raises(InvalidInput):
            ledger.add_live_batch({
                "id": "lb-1", "batch_id": "LB-009", "initial_count": 5, "current_count": 5,
            })

    def test_generated_id_and_lookup_by_code(self, ledger):
        """Records without an id get one; codes are searchable."""
        batch = ledger.add_live_batch({"batch_id": "LB-777", "initial_count": 5, "current_count": 5})

        assert batch.id
        assert ledger.find_by_code("LB-777").id == batch.id
        assert ledger.find_by_code("LB-000") is None

    def test_initial_parts_default_to_parts(self, dressed_batch):
        """initial_parts_count mirrors parts_count when not supplied."""
        assert dressed_batch.initial_parts_count == {"neck": 40, "feet": 80}


class TestLiveBatchEvents:
    """Mortality and status changes."""

    def test_record_mortality(self, ledger, live_batch):
        """Deaths reduce current_count and show up as mortality."""
        batch = ledger.record_mortality("lb-1", 5, reason="heat stress")

        assert batch.current_count == 95
        assert batch.mortality == 5

    def test_mortality_beyond_current(self, ledger, live_batch):
        """More deaths than birds is rejected."""
        from core.errors import InsufficientInventory

        with pytest.raises(InsufficientInventory):
            ledger.record_mortality("lb-1", 101)

    def test_release_after_mortality(self, ledger, live_batch):
        """Releasing a reservation after deaths restores only the reserved birds."""
        ledger.reserve("lb-1", "live", 10)
        ledger.record_mortality("lb-1", 5)

        assert ledger.release("lb-1", "live", 10) == 95

    def test_live_status(self, ledger, live_batch):
        """Known statuses are applied, unknown ones rejected."""
        from core.errors import InvalidInput
        from core.models.entities import LiveBatchStatus

        assert ledger.update_live_status("lb-1", "sick").status == LiveBatchStatus.SICK
        with pytest.raises(InvalidInput):
            ledger.update_live_status("lb-1", "zombie")

    def test_dressed_status(self, ledger, dressed_batch):
        """Dressed batches move between storage states."""
        from core.models.entities import DressedBatchStatus

        batch = ledger.update_dressed_status("db-1", "damaged")
        assert batch.status == DressedBatchStatus.DAMAGED


class TestExpiry:
    """Expiry date arithmetic and the expiry sweep."""

    def test_add_months_clamps(self):
        """Month arithmetic clamps to the last day of the month."""
        from inventory.expiry import add_months

        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2024, 11, 15), 3) == date(2025, 2, 15)

    def test_default_expiry(self):
        """Dressed product expires three months after processing."""
        from inventory.expiry import default_expiry_date

        assert default_expiry_date(date(2024, 1, 15)) == date(2024, 4, 15)

    def test_expiring_soon(self, dressed_batch):
        """Batches expiring within the window are flagged, expired ones are not."""
        from inventory.expiry import is_expired, is_expiring_soon

        batch = dressed_batch.model_copy(update={"expiry_date": date(2024, 3, 10)})

        assert is_expiring_soon(batch, date(2024, 3, 5))
        assert not is_expiring_soon(batch, date(2024, 2, 1))
        assert is_expired(batch, date(2024, 3, 11))
        assert not is_expired(batch, date(2024, 3, 10))

    def test_expire_dressed_batches(self, ledger, audit_backend):
        """Only in-storage batches past expiry are marked expired, once."""
        from core.models.entities import DressedBatchStatus

        ledger.add_dressed_batch({
            "id": "db-old", "batch_id": "DB-OLD", "initial_count": 10, "expiry_date": "2024-01-01",
        })
        ledger.add_dressed_batch({
            "id": "db-new", "batch_id": "DB-NEW", "initial_count": 10, "expiry_date": "2024-06-01",
        })

        assert ledger.expire_dressed_batches(date(2024, 2, 1)) == ["db-old"]
        assert ledger.get_dressed_batch("db-old").status == DressedBatchStatus.EXPIRED
        assert ledger.get_dressed_batch("db-new").status == DressedBatchStatus.IN_STORAGE
        assert ledger.expire_dressed_batches(date(2024, 2, 1)) == []
        assert len(audit_backend.query(event_type="BATCH_EXPIRED")) == 1


    def test_ledger_expiring_soon(self, ledger):
        """The ledger lists in-storage batches inside the configured window."""
        ledger.add_dressed_batch({
            "id": "db-a", "batch_id": "DB-A", "initial_count": 5, "expiry_date": "2024-03-04",
        })
        ledger.add_dressed_batch({
            "id": "db-b", "batch_id": "DB-B", "initial_count": 5, "expiry_date": "2024-04-01",
        })
        ledger.add_dressed_batch({
            "id": "db-c", "batch_id": "DB-C", "initial_count": 5, "expiry_date": "2024-03-03",
            "status": "sold",
        })

        assert [b.id for b in ledger.expiring_soon(date(2024, 3, 1))] == ["db-a"]


class TestLedgerAudit:
    """Committed changes leave field-level change records."""

    def test_reserve_audited_with_changed_fields(self, ledger, live_batch, audit_backend):
        """The record names the batch and the old/new counts."""
        ledger.reserve("lb-1", "live", 20, actor="clerk")

        events = audit_backend.query(event_type="INVENTORY_RESERVED")
        assert len(events) == 1
        event = events[0]
        assert event.entity_type == "live_batch"
        assert event.entity_id == "lb-1"
        assert event.actor == "clerk"
        assert event.changed_fields["current_count"] == {"old": 100, "new": 80}
        assert event.changed_fields["sold_count"] == {"old": 0, "new": 20}
        assert "version" not in event.changed_fields
        assert event.details["quantity"] == 20

    def test_failed_reserve_not_audited(self, ledger, live_batch, audit_backend):
        """Nothing is recorded for a change that did not happen."""
        from core.errors import InsufficientInventory

        with pytest.raises(InsufficientInventory):
            ledger.reserve("lb-1", "live", 500)
        assert audit_backend.query(event_type="INVENTORY_RESERVED") == []

    def test_mortality_audited_as_warning(self, ledger, live_batch, audit_backend):
        """Mortality records carry WARN severity and the reason."""
        from core.models.refs import AuditSeverity

        ledger.record_mortality("lb-1", 3, reason="disease")

        event = audit_backend.query(event_type="MORTALITY_RECORDED")[0]
        assert event.severity == AuditSeverity.WARN
        assert event.details["reason"] == "disease"

    def test_registration_audited(self, ledger, live_batch, audit_backend):
        """Registering a batch is recorded with its initial values."""
        event = audit_backend.query(event_type="BATCH_REGISTERED", entity_id="lb-1")[0]
        assert event.changed_fields["initial_count"] == {"old": None, "new": 100}

    def test_average_weight_decimal_in_history(self, ledger, audit_backend):
        """Decimal values are stored as text in change records."""
        ledger.add_live_batch({
            "id": "lb-w", "batch_id": "LB-W", "initial_count": 5, "current_count": 5,
            "average_weight": Decimal("2.25"),
        })
        event = audit_backend.query(entity_id="lb-w")[0]
        assert event.changed_fields["average_weight"]["new"] == "2.25"
