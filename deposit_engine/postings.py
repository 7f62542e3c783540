"""
Posting Primitives Module

The single path through which money moves: change the cached account
balance, append the ledger entry and update the product totals, all inside
one atomic unit.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple
import uuid

from .accounts import Account, AccountStore
from .clock import Clock
from .errors import StateConflictError, ValidationError, INSUFFICIENT_FUNDS, MINIMUM_BALANCE_BREACH
from .ledger import EntryKind, LedgerEntry, LedgerStore
from .money import ZERO, round2
from .storage import StorageInterface
from .totals import TotalsAggregator


class PostingService:
    """Credits and debits shared by account operations, interest batches and fixed deposits"""

    def __init__(self, storage: StorageInterface, accounts: AccountStore, ledger: LedgerStore,
                 totals: TotalsAggregator, clock: Clock):
        self.storage = storage
        self.accounts = accounts
        self.ledger = ledger
        self.totals = totals
        self.clock = clock

    def credit(
        self,
        account_id: str,
        amount: Decimal,
        narration: str,
        actor: str,
        kind: EntryKind = EntryKind.DEPOSIT,
        effective_at: Optional[datetime] = None,
        batch_id: Optional[str] = None
    ) -> Tuple[Account, LedgerEntry]:
        if not kind.is_credit:
            raise ValueError(f"{kind.value} is not a credit kind")
        return self._post(account_id, amount, narration, actor, kind, effective_at, batch_id)

    def debit(
        self,
        account_id: str,
        amount: Decimal,
        narration: str,
        actor: str,
        kind: EntryKind = EntryKind.WITHDRAWAL,
        effective_at: Optional[datetime] = None,
        batch_id: Optional[str] = None,
        minimum_balance: Optional[Decimal] = None,
        allow_negative: bool = False
    ) -> Tuple[Account, LedgerEntry]:
        """
        Take money out of an account

        Raises:
            StateConflictError: If the balance would go negative (unless
                allow_negative) or below minimum_balance
        """
        if kind.is_credit:
            raise ValueError(f"{kind.value} is not a debit kind")
        return self._post(account_id, amount, narration, actor, kind, effective_at, batch_id,
                          minimum_balance=minimum_balance, allow_negative=allow_negative)

    def _post(
        self,
        account_id: str,
        amount: Decimal,
        narration: str,
        actor: str,
        kind: EntryKind,
        effective_at: Optional[datetime],
        batch_id: Optional[str],
        minimum_balance: Optional[Decimal] = None,
        allow_negative: bool = False
    ) -> Tuple[Account, LedgerEntry]:
        amount = round2(amount)
        if amount <= 0:
            raise ValidationError("Amount must be positive", details={'amount': str(amount)})

        signed = kind.signed(amount)

        def apply(account: Account) -> None:
            resulting = round2(account.principal_balance + signed)
            if signed < 0 and not allow_negative:
                if resulting < ZERO:
                    raise StateConflictError(
                        "Insufficient funds",
                        reason=INSUFFICIENT_FUNDS,
                        details={'account_id': account.id, 'balance': str(account.principal_balance),
                                 'amount': str(amount)}
                    )
                if minimum_balance is not None and resulting < minimum_balance:
                    raise StateConflictError(
                        f"Withdrawal would breach minimum balance of {round2(minimum_balance)}",
                        reason=MINIMUM_BALANCE_BREACH,
                        details={'account_id': account.id, 'minimum_balance': str(round2(minimum_balance))}
                    )
            account.principal_balance = resulting

        with self.storage.atomic():
            account = self.accounts.modify(account_id, apply)
            now = self.clock.now()
            entry = LedgerEntry(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                account_id=account.id,
                party_id=account.party_id,
                product_code=account.product_code,
                kind=kind,
                amount=amount,
                narration=narration,
                effective_at=effective_at or now,
                actor=actor,
                balance_after=account.principal_balance,
                batch_id=batch_id,
            )
            self.ledger.append(entry)

            interest_delta = ZERO
            if kind == EntryKind.INTEREST_CREDIT:
                interest_delta = amount
            elif kind == EntryKind.INTEREST_REVERSAL:
                interest_delta = -amount
            self.totals.apply_delta(account.product_code, signed, interest_delta)

        return account, entry
