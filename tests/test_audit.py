"""
Test suite for audit module

Tests hash-chained audit trail, tamper detection, integrity verification
and rollback behaviour of audit events written inside a unit of work.
"""

import pytest
import threading
from datetime import datetime, timezone, date
from decimal import Decimal

from loan_servicing.storage import InMemoryStorage
from loan_servicing.audit import AuditTrail, AuditEvent, AuditEventType
from loan_servicing.loans import LoanStatus


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def test_metadata_serialization(self):
        """Decimals, dates and enums become JSON-safe values"""
        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.PAYMENT_ALLOCATED,
            entity_type="loan",
            entity_id="LOAN001",
            sequence=1,
            previous_hash="",
            current_hash="",
            metadata={
                "amount": Decimal("1500.00"),
                "payment_date": date(2024, 2, 10),
                "status": LoanStatus.ACTIVE,
                "nested": {"splits": [Decimal("1.10"), Decimal("2.20")]}
            }
        )

        assert event.metadata["amount"] == "1500.00"
        assert event.metadata["payment_date"] == "2024-02-10"
        assert event.metadata["status"] == "active"
        assert event.metadata["nested"]["splits"] == ["1.10", "2.20"]

    def test_hash_verification(self):
        """Changing any hashed field invalidates the hash"""
        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id="AUDIT002",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.LOAN_CLASSIFIED,
            entity_type="loan",
            entity_id="LOAN001",
            sequence=1,
            previous_hash="",
            current_hash="",
            description="classified"
        )
        event.current_hash = event.calculate_hash()
        assert event.verify_hash()
        assert len(event.current_hash) == 64

        event.description = "tampered"
        assert not event.verify_hash()


class TestAuditTrail:
    """Test AuditTrail functionality"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)

    def test_log_multiple_events_chain(self):
        """Each event links to the hash of its predecessor"""
        first = self.audit_trail.log_event(
            AuditEventType.LOAN_DISBURSED, "loan", "LOAN001", "disbursed"
        )
        second = self.audit_trail.log_event(
            AuditEventType.PAYMENT_ALLOCATED, "loan", "LOAN001", "paid",
            metadata={"amount": Decimal("10.00")}, actor="teller1"
        )

        assert first.sequence == 1
        assert first.previous_hash == ""
        assert second.sequence == 2
        assert second.previous_hash == first.current_hash
        assert second.actor == "teller1"

    def test_get_events_for_entity(self):
        self.audit_trail.log_event(AuditEventType.LOAN_DISBURSED, "loan", "LOAN001")
        self.audit_trail.log_event(AuditEventType.LOAN_DISBURSED, "loan", "LOAN002")
        self.audit_trail.log_event(AuditEventType.LOAN_CLASSIFIED, "loan", "LOAN001")

        events = self.audit_trail.get_events_for_entity("loan", "LOAN001")
        assert [e.event_type for e in events] == [
            AuditEventType.LOAN_DISBURSED, AuditEventType.LOAN_CLASSIFIED
        ]
        assert len(self.audit_trail.get_events_for_entity("loan", "LOAN001", limit=1)) == 1

    def test_get_events_by_type(self):
        self.audit_trail.log_event(AuditEventType.LOAN_DISBURSED, "loan", "LOAN001")
        self.audit_trail.log_event(AuditEventType.LOAN_CLASSIFIED, "loan", "LOAN001")

        events = self.audit_trail.get_events_by_type(AuditEventType.LOAN_CLASSIFIED)
        assert len(events) == 1
        assert self.audit_trail.count_events() == 2

    def test_verify_integrity_valid_chain(self):
        for number in range(5):
            self.audit_trail.log_event(AuditEventType.PAYMENT_ALLOCATED, "loan", f"LOAN{number}")

        result = self.audit_trail.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 5
        assert result["hash_errors"] == []
        assert result["chain_breaks"] == []

    def test_verify_integrity_empty_trail(self):
        result = self.audit_trail.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 0

    def test_verify_integrity_detects_hash_tampering(self):
        """Editing a stored event is caught by hash re-derivation"""
        event = self.audit_trail.log_event(
            AuditEventType.PAYMENT_ALLOCATED, "loan", "LOAN001",
            metadata={"amount": "100.00"}
        )
        stored = self.storage.load("audit_events", event.id)
        stored["metadata"]["amount"] = "1.00"
        self.storage.save("audit_events", event.id, stored)

        result = self.audit_trail.verify_integrity()
        assert not result["valid"]
        assert result["hash_errors"][0]["event_id"] == event.id

    def test_verify_integrity_detects_chain_break(self):
        """Deleting an event breaks the link of its successor"""
        self.audit_trail.log_event(AuditEventType.LOAN_DISBURSED, "loan", "LOAN001")
        middle = self.audit_trail.log_event(AuditEventType.LOAN_CLASSIFIED, "loan", "LOAN001")
        self.audit_trail.log_event(AuditEventType.PAYMENT_ALLOCATED, "loan", "LOAN001")

        self.storage.delete("audit_events", middle.id)

        result = self.audit_trail.verify_integrity()
        assert not result["valid"]
        assert len(result["chain_breaks"]) == 1

    def test_rolled_back_event_leaves_no_trace(self):
        """An event logged in a failed unit of work disappears with it"""
        self.audit_trail.log_event(AuditEventType.LOAN_DISBURSED, "loan", "LOAN001")

        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.audit_trail.log_event(AuditEventType.PAYMENT_ALLOCATED, "loan", "LOAN001")
                raise RuntimeError("allocation failed")

        assert self.audit_trail.count_events() == 1
        follow_up = self.audit_trail.log_event(AuditEventType.LOAN_CLASSIFIED, "loan", "LOAN001")
        assert follow_up.sequence == 2
        assert self.audit_trail.verify_integrity()["valid"]

    def test_concurrent_event_logging(self):
        """Concurrent writers still produce one unbroken chain"""
        def worker(worker_id):
            for number in range(10):
                self.audit_trail.log_event(
                    AuditEventType.PAYMENT_ALLOCATED, "loan", f"LOAN{worker_id}_{number}"
                )

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        result = self.audit_trail.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 50

    def test_injected_clock(self):
        fixed = datetime(2024, 2, 10, 9, 0, tzinfo=timezone.utc)
        trail = AuditTrail(InMemoryStorage(), clock=lambda: fixed)
        event = trail.log_event(AuditEventType.LOAN_DISBURSED, "loan", "LOAN001")
        assert event.created_at == fixed
