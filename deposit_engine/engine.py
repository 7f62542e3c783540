"""
Deposit Engine

Wires storage, stores and engines together and exposes the operations the
API and scripts call.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .accounts import Account, AccountService, AccountStatus, AccountStore
from .audit import AuditTrail
from .batches import BatchStore, InterestBatch
from .clock import Clock, SystemClock
from .config import EngineConfig, get_config
from .errors import NotFoundError
from .fixed_deposits import (
    FixedDepositEngine, MaturityAction, MaturityPreview, MaturityResult,
    PrematureCloseResult, PrematurePreview, RenewalMode
)
from .interest import BatchPoster, BatchReverser, InterestPreview, InterestPreviewEngine
from .ledger import EntryKind, LedgerEntry, LedgerReconstructor, LedgerStore
from .logging_config import get_logger, log_action
from .money import ZERO, round2
from .parties import Party, PartyStore, PartyType
from .postings import PostingService
from .products import DepositCategory, InterestMethod, Product, ProductRateResolver, ProductStore
from .quarters import QuarterResolver
from .storage import StorageInterface, create_storage
from .totals import TotalsAggregator


logger = get_logger("deposit_engine.engine")


class DepositEngine:
    """Deposit system with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[EngineConfig] = None, clock: Optional[Clock] = None):
        self.config = config or get_config()
        self.clock = clock or SystemClock()
        self.storage = storage or create_storage(self.config.database_url)

        self.audit_trail = AuditTrail(self.storage, self.clock, enabled=self.config.enable_audit_logging)

        # Stores
        self.parties = PartyStore(self.storage, self.audit_trail, self.clock)
        self.products = ProductStore(self.storage, self.audit_trail, self.clock)
        self.accounts = AccountStore(self.storage, self.clock, max_retries=self.config.balance_update_retries)
        self.ledger = LedgerStore(self.storage)
        self.batches = BatchStore(self.storage)

        # Shared services
        self.reconstructor = LedgerReconstructor(self.ledger)
        self.quarters = QuarterResolver(self.clock)
        self.totals = TotalsAggregator(self.storage, self.audit_trail)
        self.postings = PostingService(self.storage, self.accounts, self.ledger, self.totals, self.clock)
        self.rate_resolver = ProductRateResolver(self.products, self.audit_trail, self.config)

        # Engines
        self.account_service = AccountService(
            self.storage, self.accounts, self.parties, self.products,
            self.ledger, self.postings, self.audit_trail, self.clock
        )
        self.interest_preview = InterestPreviewEngine(
            self.parties, self.accounts, self.products, self.reconstructor,
            self.quarters, allow_join_quarter=self.config.allow_join_quarter
        )
        self.batch_poster = BatchPoster(
            self.storage, self.interest_preview, self.accounts, self.batches,
            self.postings, self.audit_trail, self.clock
        )
        self.batch_reverser = BatchReverser(
            self.storage, self.quarters, self.accounts, self.batches,
            self.ledger, self.postings, self.audit_trail, self.clock
        )
        self.fixed_deposits = FixedDepositEngine(
            self.storage, self.parties, self.products, self.accounts, self.ledger,
            self.postings, self.rate_resolver, self.audit_trail, self.clock
        )

    # Parties and products

    def register_party(self, party_id: str, party_type: PartyType, name: str,
                       address: str = "", actor: str = "system") -> Party:
        return self.parties.register(party_id, party_type, name, address=address, actor=actor)

    def get_party(self, party_id: str) -> Party:
        return self.parties.require(party_id)

    def register_product(
        self,
        code: str,
        name: str,
        category: DepositCategory,
        interest_method: InterestMethod = InterestMethod.NONE,
        annual_rate: Optional[Decimal] = None,
        minimum_balance: Decimal = ZERO,
        attributes: Optional[Dict[str, Any]] = None,
        actor: str = "system"
    ) -> Product:
        return self.products.register(
            code, name, category, interest_method=interest_method, annual_rate=annual_rate,
            minimum_balance=minimum_balance, attributes=attributes, actor=actor
        )

    def get_product(self, code: str) -> Product:
        return self.products.require(code)

    def list_products(self) -> List[Product]:
        return self.products.list_all()

    # Accounts

    def open_account(self, party_id: str, product_code: str,
                     initial_deposit: Decimal = ZERO, actor: str = "system") -> Account:
        return self.account_service.open_account(party_id, product_code, initial_deposit, actor=actor)

    def get_account(self, party_id: str, product_code: str) -> Account:
        return self.account_service.get_account(party_id, product_code)

    def deposit(self, party_id: str, product_code: str, amount: Decimal,
                narration: Optional[str] = None, actor: str = "system") -> LedgerEntry:
        return self.account_service.deposit(party_id, product_code, amount, narration, actor)

    def withdraw(self, party_id: str, product_code: str, amount: Decimal,
                 narration: Optional[str] = None, actor: str = "system") -> LedgerEntry:
        return self.account_service.withdraw(party_id, product_code, amount, narration, actor)

    def change_account_status(self, party_id: str, product_code: str,
                              status: AccountStatus, actor: str = "system") -> Account:
        return self.account_service.change_status(party_id, product_code, status, actor)

    def list_transactions(self, party_id: str, product_code: str,
                          start: Optional[datetime] = None, end: Optional[datetime] = None,
                          kind: Optional[EntryKind] = None) -> List[LedgerEntry]:
        return self.account_service.list_transactions(party_id, product_code, start, end, kind)

    # Quarterly interest

    def preview_interest(self, product_code: str, quarter_key: str) -> InterestPreview:
        return self.interest_preview.preview(product_code, quarter_key)

    def run_interest(self, product_code: str, quarter_key: str, actor: str = "system") -> InterestBatch:
        return self.batch_poster.run(product_code, quarter_key, actor)

    def reverse_batch(self, product_code: str, quarter_key: str, actor: str = "system") -> InterestBatch:
        return self.batch_reverser.reverse(product_code, quarter_key, actor)

    def list_batches(self, product_code: Optional[str] = None) -> List[InterestBatch]:
        return self.batches.list(product_code)

    def get_batch(self, batch_id: str) -> InterestBatch:
        batch = self.batches.get_by_id(batch_id)
        if batch is None:
            raise NotFoundError("InterestBatch", batch_id)
        return batch

    # Fixed deposits

    def open_fd(self, party_id: str, product_code: str, principal: Decimal,
                payout_product_code: str, tenor_days: Optional[int] = None,
                actor: str = "system") -> Account:
        return self.fixed_deposits.open(
            party_id, product_code, principal, payout_product_code, tenor_days=tenor_days, actor=actor
        )

    def get_fd(self, party_id: str, product_code: str) -> Account:
        return self.fixed_deposits.get_fd(party_id, product_code)

    def premature_close_fd(self, party_id: str, product_code: str, payout_product_code: str,
                           actor: str = "system") -> PrematureCloseResult:
        return self.fixed_deposits.premature_close(party_id, product_code, payout_product_code, actor)

    def mature_or_renew_fd(
        self,
        party_id: str,
        product_code: str,
        payout_product_code: str,
        action: MaturityAction = MaturityAction.WITHDRAW,
        tenor_days: Optional[int] = None,
        renewal_mode: Optional[RenewalMode] = None,
        actor: str = "system"
    ) -> MaturityResult:
        return self.fixed_deposits.mature_or_renew(
            party_id, product_code, payout_product_code, action=action,
            tenor_days=tenor_days, renewal_mode=renewal_mode, actor=actor
        )

    def preview_fd_maturity(self, party_id: str, product_code: str) -> MaturityPreview:
        return self.fixed_deposits.preview_maturity(party_id, product_code)

    def preview_fd_premature(self, party_id: str, product_code: str,
                             as_of: Optional[datetime] = None) -> PrematurePreview:
        return self.fixed_deposits.preview_premature(party_id, product_code, as_of)

    # Integrity

    def reconcile_account(self, party_id: str, product_code: str) -> Dict[str, Any]:
        """
        Compare an account's cached balance against a replay of its ledger

        Returns:
            Dict with the stored and ledger balances and whether they agree
        """
        account = self.accounts.require(party_id, product_code)
        ledger_balance = self.reconstructor.balance_as_of(account.id, self.clock.now())
        stored = round2(account.principal_balance)
        result = {
            'account_id': account.id,
            'stored_balance': stored,
            'ledger_balance': ledger_balance,
            'difference': round2(stored - ledger_balance),
            'in_balance': stored == ledger_balance,
        }
        if not result['in_balance']:
            log_action(
                logger, "warning", f"Balance drift on account {party_id}/{product_code}",
                action="reconcile_account", resource=account.id,
                details={'stored': str(stored), 'ledger': str(ledger_balance)}
            )
        return result

    def verify_audit_integrity(self) -> Dict[str, Any]:
        return self.audit_trail.verify_integrity()

    def close(self) -> None:
        self.storage.close()
