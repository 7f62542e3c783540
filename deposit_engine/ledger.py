"""
Ledger Module

Append-only record of every balance-affecting event on a deposit account,
and reconstruction of historical balances from that record.

Entry amounts are never negative; the sign is implied by the entry kind.
Entries are ordered by effective time, ties broken by insertion sequence.
The stored balance_after value is informational only and is never used to
reconstruct balances.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .clock import parse_datetime
from .money import ZERO, round2, to_decimal
from .storage import StorageInterface, StorageRecord


class EntryKind(Enum):
    """Kinds of ledger entries"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    INTEREST_CREDIT = "interest_credit"
    ADJUSTMENT = "adjustment"
    INTEREST_REVERSAL = "interest_reversal"

    @property
    def is_credit(self) -> bool:
        return self in CREDIT_KINDS

    def signed(self, amount: Decimal) -> Decimal:
        """Amount with the sign this kind applies to a balance"""
        return amount if self.is_credit else -amount


CREDIT_KINDS = frozenset({EntryKind.DEPOSIT, EntryKind.INTEREST_CREDIT, EntryKind.ADJUSTMENT})


def quarterly_interest_narration(quarter_key: str) -> str:
    return f"Quarterly interest {quarter_key}"


def interest_reversal_narration(quarter_key: str) -> str:
    return f"Reversal of quarterly interest {quarter_key}"


@dataclass
class LedgerEntry(StorageRecord):
    """Immutable ledger entry"""
    account_id: str
    party_id: str
    product_code: str
    kind: EntryKind
    amount: Decimal
    narration: str
    effective_at: datetime
    actor: str
    balance_after: Decimal
    sequence: int = 0
    batch_id: Optional[str] = None

    @property
    def signed_amount(self) -> Decimal:
        return self.kind.signed(self.amount)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerEntry':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            account_id=data['account_id'],
            party_id=data['party_id'],
            product_code=data['product_code'],
            kind=EntryKind(data['kind']),
            amount=to_decimal(data['amount']),
            narration=data.get('narration', ''),
            effective_at=parse_datetime(data['effective_at']),
            actor=data.get('actor', 'system'),
            balance_after=to_decimal(data.get('balance_after', '0')),
            sequence=data.get('sequence', 0),
            batch_id=data.get('batch_id'),
        )


def _ordered(entries: List[LedgerEntry]) -> List[LedgerEntry]:
    return sorted(entries, key=lambda e: (e.effective_at, e.sequence))


class LedgerStore:
    """Append-only storage of ledger entries"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "ledger_entries"

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Persist a new entry, assigning its insertion sequence"""
        if entry.amount < 0:
            raise ValueError("Ledger entry amounts must not be negative")
        entry.sequence = self.storage.next_sequence(self.table_name)
        self.storage.insert(self.table_name, entry.id, entry.to_dict())
        return entry

    def query_for_account(
        self,
        account_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        kind: Optional[EntryKind] = None
    ) -> List[LedgerEntry]:
        """
        Entries of one account, optionally bounded and filtered by kind

        Both bounds are inclusive. Results are ordered by (effective_at, sequence).
        """
        filters: Dict[str, Any] = {'account_id': account_id}
        if kind is not None:
            filters['kind'] = kind.value
        entries = [LedgerEntry.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        if start is not None:
            entries = [e for e in entries if e.effective_at >= start]
        if end is not None:
            entries = [e for e in entries if e.effective_at <= end]
        return _ordered(entries)

    def query_for_batch(self, batch_id: str, kind: Optional[EntryKind] = None) -> List[LedgerEntry]:
        filters: Dict[str, Any] = {'batch_id': batch_id}
        if kind is not None:
            filters['kind'] = kind.value
        return _ordered([LedgerEntry.from_dict(data) for data in self.storage.find(self.table_name, filters)])

    def query_legacy_batch_credits(self, product_code: str, quarter_key: str,
                                   period_end: datetime) -> List[LedgerEntry]:
        """
        Interest credits written before entries carried a batch id

        Matched on product, kind, effective time equal to the quarter end and
        the quarterly interest narration.
        """
        filters = {
            'product_code': product_code,
            'kind': EntryKind.INTEREST_CREDIT.value,
            'narration': quarterly_interest_narration(quarter_key),
        }
        entries = [LedgerEntry.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        return _ordered([e for e in entries if e.batch_id is None and e.effective_at == period_end])

    def query_quarter_reversals(self, product_code: str, quarter_key: str) -> List[LedgerEntry]:
        filters = {
            'product_code': product_code,
            'kind': EntryKind.INTEREST_REVERSAL.value,
            'narration': interest_reversal_narration(quarter_key),
        }
        return _ordered([LedgerEntry.from_dict(data) for data in self.storage.find(self.table_name, filters)])


class LedgerReconstructor:
    """Rebuilds balances by replaying ledger entries from zero"""

    def __init__(self, ledger: LedgerStore):
        self.ledger = ledger

    def balance_as_of(self, account_id: str, as_of: datetime) -> Decimal:
        """Balance including every entry effective at or before as_of"""
        running = ZERO
        for entry in self.ledger.query_for_account(account_id, end=as_of):
            running += entry.signed_amount
        return round2(running)

    def min_balance_in_window(self, account_id: str, start: datetime, end: datetime) -> Decimal:
        """
        Lowest balance reached during [start, end]

        The balance carried into the window counts as the first candidate.
        Negative results are clamped to zero.
        """
        running = ZERO
        minimum: Optional[Decimal] = None

        for entry in self.ledger.query_for_account(account_id, end=end):
            if entry.effective_at < start:
                running += entry.signed_amount
                continue
            if minimum is None:
                # Opening balance at start seeds the minimum
                minimum = running
            running += entry.signed_amount
            minimum = min(minimum, running)

        if minimum is None:
            # No activity inside the window: the carried-in balance held throughout
            minimum = running

        return round2(max(minimum, ZERO))
