"""
Test suite for the ledger and balance reconstruction

The minimum balance of a window is rebuilt from entries only; the stored
balance_after of an entry must never influence it.
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
import uuid

from deposit_engine.ledger import (
    EntryKind, LedgerEntry, LedgerReconstructor, LedgerStore,
    interest_reversal_narration, quarterly_interest_narration
)
from deposit_engine.storage import InMemoryStorage


START = datetime(2024, 7, 1, 0, 0, 0, tzinfo=timezone.utc)
END = datetime(2024, 9, 30, 23, 59, 59, tzinfo=timezone.utc)


class TestLedgerReconstructor:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.ledger = LedgerStore(self.storage)
        self.reconstructor = LedgerReconstructor(self.ledger)

    def post(self, kind, amount, when, account_id="A1", balance_after="999999.99", batch_id=None,
             narration="test"):
        return self.ledger.append(LedgerEntry(
            id=str(uuid.uuid4()),
            created_at=when,
            updated_at=when,
            account_id=account_id,
            party_id="M1",
            product_code="SAV",
            kind=kind,
            amount=Decimal(amount),
            narration=narration,
            effective_at=when,
            actor="test",
            balance_after=Decimal(balance_after),
            batch_id=batch_id,
        ))

    def test_steady_balance_carried_into_window(self):
        self.post(EntryKind.DEPOSIT, "10000.00", START - timedelta(days=30))
        assert self.reconstructor.min_balance_in_window("A1", START, END) == Decimal("10000.00")

    def test_dip_inside_window(self):
        self.post(EntryKind.DEPOSIT, "10000.00", START - timedelta(days=30))
        self.post(EntryKind.WITHDRAWAL, "4000.00", START + timedelta(days=31))
        self.post(EntryKind.DEPOSIT, "4000.00", START + timedelta(days=62))
        assert self.reconstructor.min_balance_in_window("A1", START, END) == Decimal("6000.00")

    def test_opening_balance_seeds_minimum(self):
        # Everything arrives inside the window, so the minimum is the zero opening balance
        self.post(EntryKind.DEPOSIT, "500.00", START + timedelta(days=5))
        assert self.reconstructor.min_balance_in_window("A1", START, END) == Decimal("0.00")

    def test_entries_after_window_ignored(self):
        self.post(EntryKind.DEPOSIT, "100.00", START - timedelta(days=1))
        self.post(EntryKind.WITHDRAWAL, "100.00", END + timedelta(seconds=1))
        assert self.reconstructor.min_balance_in_window("A1", START, END) == Decimal("100.00")

    def test_negative_minimum_clamped(self):
        self.post(EntryKind.DEPOSIT, "50.00", START - timedelta(days=1))
        self.post(EntryKind.INTEREST_REVERSAL, "80.00", START + timedelta(days=1))
        assert self.reconstructor.min_balance_in_window("A1", START, END) == Decimal("0.00")

    def test_no_entries(self):
        assert self.reconstructor.min_balance_in_window("A1", START, END) == Decimal("0.00")

    def test_same_instant_entries_follow_insertion_order(self):
        when = START + timedelta(days=10)
        self.post(EntryKind.DEPOSIT, "100.00", START - timedelta(days=1))
        self.post(EntryKind.WITHDRAWAL, "100.00", when)
        self.post(EntryKind.DEPOSIT, "100.00", when)
        assert self.reconstructor.min_balance_in_window("A1", START, END) == Decimal("0.00")

    def test_balance_as_of(self):
        self.post(EntryKind.DEPOSIT, "100.00", START)
        self.post(EntryKind.INTEREST_CREDIT, "3.00", END)
        self.post(EntryKind.INTEREST_REVERSAL, "3.00", END + timedelta(days=1))
        assert self.reconstructor.balance_as_of("A1", END) == Decimal("103.00")
        assert self.reconstructor.balance_as_of("A1", END + timedelta(days=2)) == Decimal("100.00")


class TestLedgerStore:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.ledger = LedgerStore(self.storage)

    def entry(self, kind=EntryKind.INTEREST_CREDIT, amount="3.00", when=END, batch_id=None,
              narration=None):
        return LedgerEntry(
            id=str(uuid.uuid4()), created_at=when, updated_at=when,
            account_id="A1", party_id="M1", product_code="SAV",
            kind=kind, amount=Decimal(amount),
            narration=narration or quarterly_interest_narration("2024Q1"),
            effective_at=when, actor="test", balance_after=Decimal("0"), batch_id=batch_id,
        )

    def test_negative_amount_rejected(self):
        with pytest.raises(ValueError):
            self.ledger.append(self.entry(amount="-1.00"))

    def test_query_bounds_are_inclusive(self):
        self.ledger.append(self.entry(kind=EntryKind.DEPOSIT, when=START))
        self.ledger.append(self.entry(kind=EntryKind.DEPOSIT, when=END))
        assert len(self.ledger.query_for_account("A1", start=START, end=END)) == 2
        assert len(self.ledger.query_for_account("A1", kind=EntryKind.WITHDRAWAL)) == 0

    def test_batch_and_legacy_queries(self):
        self.ledger.append(self.entry(batch_id="B1"))
        self.ledger.append(self.entry())
        self.ledger.append(self.entry(when=END - timedelta(days=1)))

        assert len(self.ledger.query_for_batch("B1")) == 1
        legacy = self.ledger.query_legacy_batch_credits("SAV", "2024Q1", END)
        assert len(legacy) == 1
        assert legacy[0].batch_id is None

    def test_narrations(self):
        assert quarterly_interest_narration("2024Q1") == "Quarterly interest 2024Q1"
        assert interest_reversal_narration("2024Q1") == "Reversal of quarterly interest 2024Q1"
