"""
Test suite for audit module

Tests the hash-chained audit trail, tamper detection and integrity
verification across committed and rolled back transactions.
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from loan_health.storage import InMemoryStorage
from loan_health.audit import AuditTrail, AuditEvent, AuditEventType
from loan_health.loans import LoanStatus


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def test_metadata_serialization(self):
        """Test that metadata is converted to JSON-safe values"""
        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            sequence=1,
            event_type=AuditEventType.HEALTH_CHANGED,
            entity_type="loan",
            entity_id="LOAN001",
            previous_hash="",
            current_hash="",
            metadata={
                "amount": Decimal('12.50'),
                "at": now,
                "status": LoanStatus.LATE,
                "sequences": (1, 2)
            }
        )

        assert event.metadata["amount"] == "12.50"
        assert event.metadata["at"] == now.isoformat()
        assert event.metadata["status"] == "late"
        assert event.metadata["sequences"] == [1, 2]

    def test_hash_verification(self):
        """Test that any field change invalidates the hash"""
        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id="AUDIT002",
            created_at=now,
            updated_at=now,
            sequence=1,
            event_type=AuditEventType.LOAN_REGISTERED,
            entity_type="loan",
            entity_id="LOAN001",
            previous_hash="",
            current_hash="",
            metadata={"principal": "USD 1,200.00"}
        )
        event.current_hash = event.calculate_hash()
        assert event.verify_hash()

        event.entity_id = "LOAN002"
        assert not event.verify_hash()

    def test_dict_round_trip(self):
        """Test storage serialization keeps the hash valid"""
        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id="AUDIT003",
            created_at=now,
            updated_at=now,
            sequence=4,
            event_type=AuditEventType.REFINANCE_EXECUTED,
            entity_type="loan",
            entity_id="LOAN001",
            previous_hash="abc",
            current_hash="",
            metadata={"new_term": 24}
        )
        event.current_hash = event.calculate_hash()

        restored = AuditEvent.from_dict(event.to_dict())
        assert restored.event_type == AuditEventType.REFINANCE_EXECUTED
        assert restored.sequence == 4
        assert restored.verify_hash()


class TestAuditTrail:
    """Test AuditTrail chaining and queries"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)

    def test_events_are_chained(self):
        """Test each event links to the hash of the previous one"""
        first = self.audit_trail.log_event(AuditEventType.LOAN_REGISTERED, "loan", "L1", {"term_months": 12})
        second = self.audit_trail.log_event(AuditEventType.REPAYMENT_APPLIED, "loan", "L1", {"amount": "100.00"})

        assert first.sequence == 1
        assert first.previous_hash == ""
        assert second.sequence == 2
        assert second.previous_hash == first.current_hash

        result = self.audit_trail.verify_integrity()
        assert result['valid']
        assert result['total_events'] == 2

    def test_entity_and_type_queries(self):
        """Test filtering events by entity and by type"""
        self.audit_trail.log_event(AuditEventType.LOAN_REGISTERED, "loan", "L1")
        self.audit_trail.log_event(AuditEventType.LOAN_REGISTERED, "loan", "L2")
        self.audit_trail.log_event(AuditEventType.HEALTH_CHANGED, "loan", "L1", {"new_status": "late"})

        l1_events = self.audit_trail.get_events_for_entity("loan", "L1")
        assert [e.event_type for e in l1_events] == [
            AuditEventType.LOAN_REGISTERED, AuditEventType.HEALTH_CHANGED
        ]
        assert len(self.audit_trail.get_events_for_entity("loan", "L1", limit=1)) == 1
        assert len(self.audit_trail.get_events_by_type(AuditEventType.LOAN_REGISTERED)) == 2
        assert self.audit_trail.count_events() == 3

    def test_tamper_detection(self):
        """Test that editing a stored event is detected"""
        event = self.audit_trail.log_event(AuditEventType.REPAYMENT_APPLIED, "loan", "L1", {"amount": "100.00"})
        self.audit_trail.log_event(AuditEventType.REPAYMENT_APPLIED, "loan", "L1", {"amount": "50.00"})

        stored = self.storage.load("audit_events", event.id)
        stored["metadata"]["amount"] = "1000.00"
        self.storage.save("audit_events", event.id, stored)

        result = self.audit_trail.verify_integrity()
        assert not result['valid']
        assert result['hash_errors'][0]['event_id'] == event.id

    def test_chain_survives_rollback(self):
        """Test that events logged in a rolled back block leave the chain intact"""
        self.audit_trail.log_event(AuditEventType.LOAN_REGISTERED, "loan", "L1")

        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.audit_trail.log_event(AuditEventType.HEALTH_CHANGED, "loan", "L1")
                raise RuntimeError("abort")

        after = self.audit_trail.log_event(AuditEventType.HEALTH_CHANGED, "loan", "L1")
        assert after.sequence == 2

        result = self.audit_trail.verify_integrity()
        assert result['valid']
        assert result['total_events'] == 2
