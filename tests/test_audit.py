"""
Test suite for audit module

Tests the hash-chained audit trail, tamper detection and rollback of audit
writes together with the business change they describe.
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from deposit_engine.audit import AuditEvent, AuditEventType, AuditTrail
from deposit_engine.clock import DeterministicClock
from deposit_engine.storage import InMemoryStorage


class TestAuditTrail:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.clock = DeterministicClock(datetime(2024, 10, 1, tzinfo=timezone.utc))
        self.audit = AuditTrail(self.storage, self.clock)

    def test_events_are_chained(self):
        first = self.audit.log_event(AuditEventType.PARTY_REGISTERED, "party", "M1", actor="clerk")
        second = self.audit.log_event(AuditEventType.ACCOUNT_OPENED, "account", "A1",
                                      metadata={'amount': Decimal("10.00")})

        assert first.previous_hash == ""
        assert second.previous_hash == first.current_hash
        assert second.sequence > first.sequence
        # Decimal metadata is stored as a string so the hash is reproducible
        assert second.metadata == {'amount': "10.00"}
        assert self.audit.verify_integrity()['valid']

    def test_same_instant_events_keep_sequence_order(self):
        for i in range(5):
            self.audit.log_event(AuditEventType.DEPOSIT_POSTED, "account", f"A{i}")

        result = self.audit.verify_integrity()
        assert result['valid']
        assert result['total_events'] == 5

    def test_tampering_detected(self):
        event = self.audit.log_event(AuditEventType.DEPOSIT_POSTED, "account", "A1",
                                     metadata={'amount': "10.00"})
        self.audit.log_event(AuditEventType.WITHDRAWAL_POSTED, "account", "A1")

        stored = self.storage.load("audit_events", event.id)
        stored['metadata']['amount'] = "1000000.00"
        self.storage.save("audit_events", event.id, stored)

        result = self.audit.verify_integrity()
        assert not result['valid']
        assert result['hash_errors'][0]['event_id'] == event.id

    def test_audit_write_rolls_back_with_business_change(self):
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.audit.log_event(AuditEventType.DEPOSIT_POSTED, "account", "A1")
                raise RuntimeError("posting failed")

        assert self.audit.count_events() == 0
        self.audit.log_event(AuditEventType.DEPOSIT_POSTED, "account", "A1")
        assert self.audit.verify_integrity()['valid']

    def test_queries(self):
        self.audit.log_event(AuditEventType.FD_OPENED, "account", "FD1")
        self.audit.log_event(AuditEventType.FD_MATURED, "account", "FD1")
        self.audit.log_event(AuditEventType.FD_OPENED, "account", "FD2")

        assert len(self.audit.get_events_for_entity("account", "FD1")) == 2
        assert len(self.audit.get_events_by_type(AuditEventType.FD_OPENED)) == 2

    def test_disabled_trail_logs_nothing(self):
        audit = AuditTrail(self.storage, self.clock, enabled=False)
        assert audit.log_event(AuditEventType.PARTY_REGISTERED, "party", "M1") is None
        assert audit.count_events() == 0

    def test_event_round_trips_through_storage(self):
        event = self.audit.log_event(AuditEventType.INTEREST_BATCH_POSTED, "interest_batch", "B1",
                                     metadata={'quarter_key': "2024Q1"})
        loaded = AuditEvent.from_dict(self.storage.load("audit_events", event.id))
        assert loaded.verify_hash()
        assert loaded.event_type == AuditEventType.INTEREST_BATCH_POSTED
