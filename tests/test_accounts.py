"""
Test suite for parties and ordinary deposit accounts
"""

import pytest
from decimal import Decimal

from deposit_engine.accounts import AccountStatus
from deposit_engine.audit import AuditEventType
from deposit_engine.errors import (
    NotFoundError, StateConflictError, ValidationError,
    CONCURRENT_UPDATE, DUPLICATE_ACCOUNT, INELIGIBLE_PRODUCT, INSUFFICIENT_FUNDS,
    MINIMUM_BALANCE_BREACH, NONZERO_BALANCE
)
from deposit_engine.ledger import EntryKind
from deposit_engine.parties import PartyStatus, PartyType
from deposit_engine.products import DepositCategory, InterestMethod


class TestParties:

    def test_register_and_list_active(self, catalog):
        catalog.parties.set_status("M2", PartyStatus.INACTIVE)
        assert [p.party_id for p in catalog.parties.list_active()] == ["M1", "N1"]

    def test_duplicate_party(self, catalog):
        with pytest.raises(StateConflictError):
            catalog.register_party("M1", PartyType.MEMBER, "Someone Else")

    def test_blank_party_id(self, engine):
        with pytest.raises(ValidationError):
            engine.register_party("  ", PartyType.MEMBER, "Nobody")


class TestAccountOpening:

    def test_open_with_initial_deposit(self, catalog):
        account = catalog.open_account("M1", "SAV", initial_deposit=Decimal("1500.00"), actor="clerk")

        assert account.principal_balance == Decimal("1500.00")
        assert account.opened_at == catalog.clock.now()
        entries = catalog.list_transactions("M1", "SAV")
        assert [(e.kind, e.amount, e.narration) for e in entries] == [
            (EntryKind.DEPOSIT, Decimal("1500.00"), "Initial deposit")
        ]
        assert catalog.totals.get_totals("SAV") == (Decimal("1500.00"), Decimal("0.00"))

    def test_one_account_per_party_and_product(self, catalog):
        catalog.open_account("M1", "SAV")
        with pytest.raises(StateConflictError) as exc_info:
            catalog.open_account("M1", "SAV")
        assert exc_info.value.reason == DUPLICATE_ACCOUNT

    def test_members_cannot_open_non_member_products(self, catalog):
        with pytest.raises(StateConflictError) as exc_info:
            catalog.open_account("M1", "NMS")
        assert exc_info.value.reason == INELIGIBLE_PRODUCT

    def test_non_members_cannot_open_member_products(self, catalog):
        with pytest.raises(StateConflictError):
            catalog.open_account("N1", "SAV")
        assert catalog.open_account("N1", "NMS").category == DepositCategory.NON_MEMBER_DEPOSITS

    def test_inactive_party_cannot_open(self, catalog):
        catalog.parties.set_status("M1", PartyStatus.INACTIVE)
        with pytest.raises(StateConflictError):
            catalog.open_account("M1", "SAV")

    def test_unknown_party(self, catalog):
        with pytest.raises(NotFoundError):
            catalog.open_account("ZZ", "SAV")


class TestDepositsAndWithdrawals:

    @pytest.fixture(autouse=True)
    def _account(self, catalog):
        catalog.register_product(
            "MIN", "Savings with minimum", DepositCategory.MEMBER_DEPOSITS,
            interest_method=InterestMethod.NONE, minimum_balance=Decimal("100.00")
        )
        catalog.open_account("M1", "SAV", initial_deposit=Decimal("500.00"))
        catalog.open_account("M1", "MIN", initial_deposit=Decimal("500.00"))
        self.engine = catalog

    def test_deposit_and_withdraw(self):
        self.engine.deposit("M1", "SAV", Decimal("250.255"))
        entry = self.engine.withdraw("M1", "SAV", Decimal("50.00"), narration="ATM")

        assert entry.balance_after == Decimal("700.26")
        assert entry.narration == "ATM"
        assert self.engine.get_account("M1", "SAV").principal_balance == Decimal("700.26")
        assert self.engine.totals.get_totals("SAV")[0] == Decimal("700.26")

    def test_insufficient_funds(self):
        with pytest.raises(StateConflictError) as exc_info:
            self.engine.withdraw("M1", "SAV", Decimal("500.01"))
        assert exc_info.value.reason == INSUFFICIENT_FUNDS
        assert self.engine.get_account("M1", "SAV").principal_balance == Decimal("500.00")
        assert len(self.engine.list_transactions("M1", "SAV")) == 1

    def test_minimum_balance(self):
        self.engine.withdraw("M1", "MIN", Decimal("400.00"))
        with pytest.raises(StateConflictError) as exc_info:
            self.engine.withdraw("M1", "MIN", Decimal("0.01"))
        assert exc_info.value.reason == MINIMUM_BALANCE_BREACH

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5.00"), Decimal("0.004")])
    def test_non_positive_amount(self, amount):
        with pytest.raises(ValidationError):
            self.engine.deposit("M1", "SAV", amount)

    def test_inactive_account_rejects_postings(self):
        self.engine.change_account_status("M1", "SAV", AccountStatus.INACTIVE)
        with pytest.raises(StateConflictError):
            self.engine.deposit("M1", "SAV", Decimal("1.00"))

    def test_close_requires_zero_balance(self):
        with pytest.raises(StateConflictError) as exc_info:
            self.engine.change_account_status("M1", "SAV", AccountStatus.CLOSED)
        assert exc_info.value.reason == NONZERO_BALANCE

        self.engine.withdraw("M1", "SAV", Decimal("500.00"))
        account = self.engine.change_account_status("M1", "SAV", AccountStatus.CLOSED)
        assert account.status == AccountStatus.CLOSED
        assert self.engine.audit_trail.get_events_by_type(AuditEventType.ACCOUNT_CLOSED)

    def test_filter_transactions_by_kind(self):
        self.engine.withdraw("M1", "SAV", Decimal("10.00"))
        withdrawals = self.engine.list_transactions("M1", "SAV", kind=EntryKind.WITHDRAWAL)
        assert [e.amount for e in withdrawals] == [Decimal("10.00")]

    def test_reconcile(self):
        self.engine.deposit("M1", "SAV", Decimal("20.00"))
        result = self.engine.reconcile_account("M1", "SAV")
        assert result['in_balance']
        assert result['ledger_balance'] == Decimal("520.00")


class TestOptimisticConcurrency:

    def test_stale_version_is_retried(self, catalog):
        account = catalog.open_account("M1", "SAV", initial_deposit=Decimal("100.00"))
        store = catalog.accounts
        calls = []

        def mutate(fresh):
            calls.append(fresh.version)
            if len(calls) == 1:
                # Another writer sneaks in between our read and our write
                other = store.get_by_id(account.id)
                other.principal_balance = Decimal("150.00")
                assert store.update(other)
            fresh.principal_balance += Decimal("1.00")

        updated = store.modify(account.id, mutate)

        assert calls[1] == calls[0] + 1
        assert updated.principal_balance == Decimal("151.00")

    def test_gives_up_after_retries(self, catalog):
        account = catalog.open_account("M1", "SAV")
        store = catalog.accounts

        def always_conflict(fresh):
            other = store.get_by_id(account.id)
            assert store.update(other)

        with pytest.raises(StateConflictError) as exc_info:
            store.modify(account.id, always_conflict)
        assert exc_info.value.reason == CONCURRENT_UPDATE
