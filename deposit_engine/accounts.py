"""
Account Management Module

Deposit accounts, one per (party, product). The stored principal balance is
a cache kept in step with the ledger on every mutation; writes go through a
version compare-and-swap so concurrent updates are never lost.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING
import uuid

from .audit import AuditTrail, AuditEventType
from .clock import Clock, parse_datetime
from .errors import (
    NotFoundError, StateConflictError, ValidationError,
    CONCURRENT_UPDATE, DUPLICATE_ACCOUNT, INACTIVE_ACCOUNT, INELIGIBLE_PRODUCT, NONZERO_BALANCE
)
from .ledger import EntryKind, LedgerEntry, LedgerStore
from .logging_config import get_logger, log_action
from .money import ZERO, coerce_decimal, round2
from .parties import PartyStore
from .products import DepositCategory, ProductStore
from .storage import StorageInterface, StorageRecord, UniqueConstraintViolation

if TYPE_CHECKING:
    from .postings import PostingService


logger = get_logger("deposit_engine.accounts")


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "active"
    INACTIVE = "inactive"
    CLOSED = "closed"


@dataclass
class Account(StorageRecord):
    """
    Deposit account owned by a party under one product

    Fixed-deposit accounts also carry a maturity time, the product code of
    the account that receives payouts and the locked term snapshot under
    attributes["fd"].
    """
    party_id: str
    product_code: str
    category: DepositCategory
    status: AccountStatus = AccountStatus.ACTIVE
    principal_balance: Decimal = ZERO
    opened_at: Optional[datetime] = None
    maturity_at: Optional[datetime] = None
    linked_payout_product_code: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            party_id=data['party_id'],
            product_code=data['product_code'],
            category=DepositCategory(data['category']),
            status=AccountStatus(data.get('status', AccountStatus.ACTIVE.value)),
            principal_balance=coerce_decimal(data.get('principal_balance'), ZERO),
            opened_at=parse_datetime(data.get('opened_at')),
            maturity_at=parse_datetime(data.get('maturity_at')),
            linked_payout_product_code=data.get('linked_payout_product_code'),
            attributes=data.get('attributes') or {},
            version=data.get('version', 0),
        )


class AccountStore:
    """Persistence of accounts with optimistic concurrency"""

    def __init__(self, storage: StorageInterface, clock: Clock, max_retries: int = 3):
        self.storage = storage
        self.clock = clock
        self.max_retries = max_retries
        self.table_name = "accounts"
        self.storage.add_unique_constraint(
            self.table_name, "ux_accounts_party_product", ["party_id", "product_code"]
        )

    def get(self, party_id: str, product_code: str) -> Optional[Account]:
        found = self.storage.find(self.table_name, {'party_id': party_id, 'product_code': product_code})
        return Account.from_dict(found[0]) if found else None

    def require(self, party_id: str, product_code: str) -> Account:
        account = self.get(party_id, product_code)
        if account is None:
            raise NotFoundError("Account", f"{party_id}/{product_code}")
        return account

    def get_by_id(self, account_id: str) -> Optional[Account]:
        data = self.storage.load(self.table_name, account_id)
        return Account.from_dict(data) if data else None

    def create(self, account: Account) -> Account:
        try:
            self.storage.insert(self.table_name, account.id, account.to_dict())
        except UniqueConstraintViolation as e:
            raise StateConflictError(
                f"Account already exists for {account.party_id}/{account.product_code}",
                reason=DUPLICATE_ACCOUNT,
                details={'party_id': account.party_id, 'product_code': account.product_code}
            ) from e
        return account

    def update(self, account: Account) -> bool:
        """
        Write the account if nobody changed it since it was read

        Returns:
            False when the stored version moved on; the caller should re-read
        """
        account.updated_at = self.clock.now()
        written = self.storage.compare_and_swap(
            self.table_name, account.id, account.version, account.to_dict()
        )
        if written:
            account.version += 1
        return written

    def modify(self, account_id: str, mutate: Callable[[Account], None]) -> Account:
        """
        Read-modify-write an account, retrying on version conflicts

        mutate is called with a freshly read account on every attempt and may
        raise to abort the change.
        """
        for _ in range(self.max_retries + 1):
            account = self.get_by_id(account_id)
            if account is None:
                raise NotFoundError("Account", account_id)
            mutate(account)
            if self.update(account):
                return account
            logger.debug(f"Version conflict on account {account_id}, retrying")

        raise StateConflictError(
            f"Account {account_id} is being modified concurrently",
            reason=CONCURRENT_UPDATE,
            details={'account_id': account_id, 'attempts': self.max_retries + 1}
        )

    def set_status(self, account_id: str, status: AccountStatus) -> Account:
        def apply(account: Account) -> None:
            account.status = status
        return self.modify(account_id, apply)

    def list_for_party(self, party_id: str) -> List[Account]:
        return [Account.from_dict(data) for data in self.storage.find(self.table_name, {'party_id': party_id})]


def require_active_account(account: Account) -> Account:
    if not account.is_active:
        raise StateConflictError(
            f"Account {account.party_id}/{account.product_code} is not active",
            reason=INACTIVE_ACCOUNT,
            details={'account_id': account.id, 'status': account.status.value}
        )
    return account


class AccountService:
    """
    Opening, deposits, withdrawals and status changes on ordinary deposit accounts
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountStore,
        parties: PartyStore,
        products: ProductStore,
        ledger: LedgerStore,
        postings: 'PostingService',
        audit_trail: AuditTrail,
        clock: Clock
    ):
        self.storage = storage
        self.accounts = accounts
        self.parties = parties
        self.products = products
        self.ledger = ledger
        self.postings = postings
        self.audit_trail = audit_trail
        self.clock = clock

    def open_account(
        self,
        party_id: str,
        product_code: str,
        initial_deposit: Decimal = ZERO,
        actor: str = "system"
    ) -> Account:
        """
        Open an account for a party under a product

        Members may only open member-deposit products and non-members only
        non-member-deposit products. A positive initial deposit is credited
        right away.
        """
        initial_deposit = round2(initial_deposit)
        if initial_deposit < 0:
            raise ValidationError("Initial deposit cannot be negative")

        with self.storage.atomic():
            party = self.parties.require_active(party_id)
            product = self.products.require_active(product_code)

            expected = DepositCategory.MEMBER_DEPOSITS if party.is_member else DepositCategory.NON_MEMBER_DEPOSITS
            if product.category != expected:
                raise StateConflictError(
                    f"{party.party_type.value} parties can only open {expected.value} products",
                    reason=INELIGIBLE_PRODUCT,
                    details={'party_type': party.party_type.value, 'category': product.category.value}
                )

            now = self.clock.now()
            account = Account(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                party_id=party_id,
                product_code=product_code,
                category=product.category,
                opened_at=now,
            )
            self.accounts.create(account)

            self.audit_trail.log_event(
                AuditEventType.ACCOUNT_OPENED,
                entity_type="account",
                entity_id=account.id,
                metadata={'party_id': party_id, 'product_code': product_code},
                actor=actor
            )

            if initial_deposit > 0:
                account, _ = self.postings.credit(account.id, initial_deposit, "Initial deposit", actor)

        log_action(
            logger, "info", f"Opened account {party_id}/{product_code}",
            actor=actor, action="open_account", resource=account.id
        )
        return account

    def _require_transactable(self, party_id: str, product_code: str) -> Account:
        account = self.accounts.require(party_id, product_code)
        self.parties.require_active(account.party_id)
        require_active_account(account)
        self.products.require_active(account.product_code)
        return account

    def deposit(self, party_id: str, product_code: str, amount: Decimal,
                narration: Optional[str] = None, actor: str = "system") -> LedgerEntry:
        with self.storage.atomic():
            account = self._require_transactable(party_id, product_code)
            _, entry = self.postings.credit(account.id, amount, narration or "Deposit", actor)
            self.audit_trail.log_event(
                AuditEventType.DEPOSIT_POSTED,
                entity_type="account",
                entity_id=account.id,
                metadata={'amount': entry.amount, 'balance_after': entry.balance_after},
                actor=actor
            )
        return entry

    def withdraw(self, party_id: str, product_code: str, amount: Decimal,
                 narration: Optional[str] = None, actor: str = "system") -> LedgerEntry:
        """Withdraw funds; the balance may not drop below zero or the product minimum"""
        with self.storage.atomic():
            account = self._require_transactable(party_id, product_code)
            product = self.products.require(account.product_code)
            _, entry = self.postings.debit(
                account.id, amount, narration or "Withdrawal", actor,
                minimum_balance=product.minimum_balance
            )
            self.audit_trail.log_event(
                AuditEventType.WITHDRAWAL_POSTED,
                entity_type="account",
                entity_id=account.id,
                metadata={'amount': entry.amount, 'balance_after': entry.balance_after},
                actor=actor
            )
        return entry

    def change_status(self, party_id: str, product_code: str, status: AccountStatus,
                      actor: str = "system") -> Account:
        """Change account status; closing requires a zero balance"""
        def apply(account: Account) -> None:
            if status == AccountStatus.CLOSED and account.principal_balance != ZERO:
                raise StateConflictError(
                    "Cannot close account with non-zero balance",
                    reason=NONZERO_BALANCE,
                    details={'account_id': account.id, 'balance': str(account.principal_balance)}
                )
            account.status = status

        with self.storage.atomic():
            account = self.accounts.require(party_id, product_code)
            account = self.accounts.modify(account.id, apply)
            event_type = (AuditEventType.ACCOUNT_CLOSED if status == AccountStatus.CLOSED
                          else AuditEventType.ACCOUNT_STATUS_CHANGED)
            self.audit_trail.log_event(
                event_type,
                entity_type="account",
                entity_id=account.id,
                metadata={'status': status.value},
                actor=actor
            )
        return account

    def get_account(self, party_id: str, product_code: str) -> Account:
        return self.accounts.require(party_id, product_code)

    def list_transactions(
        self,
        party_id: str,
        product_code: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        kind: Optional[EntryKind] = None
    ) -> List[LedgerEntry]:
        account = self.accounts.require(party_id, product_code)
        return self.ledger.query_for_account(account.id, start=start, end=end, kind=kind)
