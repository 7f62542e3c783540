"""
Quarterly Interest Module

Computes interest on the lowest balance each account held during a fiscal
quarter and posts it as one idempotent batch per (product, quarter). A posted
batch can be reversed, after which the quarter may be posted again.

interest = round2(minimum balance in quarter x annual rate / 4)
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List
import uuid

from .accounts import AccountStatus, AccountStore
from .audit import AuditTrail, AuditEventType
from .batches import BatchStore, InterestBatch
from .clock import Clock
from .errors import (
    ConfigurationError, NotFoundError, StateConflictError,
    BATCH_ALREADY_POSTED, BATCH_ALREADY_REVERSED
)
from .ledger import (
    EntryKind, LedgerEntry, LedgerReconstructor, LedgerStore,
    interest_reversal_narration, quarterly_interest_narration
)
from .logging_config import get_logger, log_action
from .money import ZERO, round2
from .parties import PartyStore
from .postings import PostingService
from .products import InterestMethod, ProductStore
from .quarters import QuarterResolver
from .storage import StorageInterface, UniqueConstraintViolation


logger = get_logger("deposit_engine.interest")

QUARTERS_PER_YEAR = Decimal(4)


@dataclass
class InterestPreviewItem:
    """Interest one account would receive for the quarter"""
    party_id: str
    product_code: str
    account_id: str
    min_balance: Decimal
    interest: Decimal


@dataclass
class InterestPreview:
    product_code: str
    quarter_key: str
    period_start: datetime
    period_end: datetime
    items: List[InterestPreviewItem] = field(default_factory=list)

    @property
    def account_count(self) -> int:
        return len(self.items)

    @property
    def total_interest(self) -> Decimal:
        return round2(sum((item.interest for item in self.items), ZERO))


def quarterly_interest(min_balance: Decimal, annual_rate: Decimal) -> Decimal:
    return round2(min_balance * annual_rate / QUARTERS_PER_YEAR)


class InterestPreviewEngine:
    """Read-only computation of a quarter's interest for one product"""

    def __init__(
        self,
        parties: PartyStore,
        accounts: AccountStore,
        products: ProductStore,
        reconstructor: LedgerReconstructor,
        quarters: QuarterResolver,
        allow_join_quarter: bool = False
    ):
        self.parties = parties
        self.accounts = accounts
        self.products = products
        self.reconstructor = reconstructor
        self.quarters = quarters
        self.allow_join_quarter = allow_join_quarter

    def preview(self, product_code: str, quarter_key: str) -> InterestPreview:
        """
        Interest each eligible account would earn for a finished quarter

        Accounts are visited party by party in store order. Accounts opened
        after the quarter started are left out unless joining mid-quarter is
        allowed. Accounts whose minimum balance or interest is not positive
        are left out.

        Raises:
            ValidationError: Malformed quarter key
            StateConflictError: Quarter not ended or product inactive
            NotFoundError: Unknown product
            ConfigurationError: Product not set up for quarterly interest
        """
        start, end = self.quarters.resolve(quarter_key)
        self.quarters.ensure_ended(quarter_key, end)

        product = self.products.require_active(product_code)
        if product.interest_method != InterestMethod.QUARTERLY_MIN_BALANCE:
            raise ConfigurationError(
                f"Product {product_code} is not configured for quarterly interest",
                details={'product_code': product_code, 'interest_method': product.interest_method.value}
            )
        if product.annual_rate is None or product.annual_rate <= 0:
            raise ConfigurationError(
                f"Annual interest rate is missing or invalid for product {product_code}",
                details={'product_code': product_code, 'annual_rate': str(product.annual_rate)}
            )

        result = InterestPreview(product_code, quarter_key, start, end)

        for party in self.parties.list_active():
            for account in self.accounts.list_for_party(party.party_id):
                if account.product_code != product_code or account.status != AccountStatus.ACTIVE:
                    continue
                if not self.allow_join_quarter and account.opened_at is not None and account.opened_at > start:
                    continue

                min_balance = self.reconstructor.min_balance_in_window(account.id, start, end)
                if min_balance <= 0:
                    continue

                interest = quarterly_interest(min_balance, product.annual_rate)
                if interest <= 0:
                    continue

                result.items.append(InterestPreviewItem(
                    party_id=account.party_id,
                    product_code=product_code,
                    account_id=account.id,
                    min_balance=min_balance,
                    interest=interest,
                ))

        return result


def _already_posted(product_code: str, quarter_key: str, batch_id: str = None) -> StateConflictError:
    return StateConflictError(
        f"Interest already posted for {product_code} in {quarter_key}. Reverse it first to re-post.",
        reason=BATCH_ALREADY_POSTED,
        details={'product_code': product_code, 'quarter_key': quarter_key, 'batch_id': batch_id}
    )


class BatchPoster:
    """Posts a quarter's interest as a single batch"""

    def __init__(
        self,
        storage: StorageInterface,
        preview_engine: InterestPreviewEngine,
        accounts: AccountStore,
        batches: BatchStore,
        postings: PostingService,
        audit_trail: AuditTrail,
        clock: Clock
    ):
        self.storage = storage
        self.preview_engine = preview_engine
        self.accounts = accounts
        self.batches = batches
        self.postings = postings
        self.audit_trail = audit_trail
        self.clock = clock

    def run(self, product_code: str, quarter_key: str, actor: str = "system") -> InterestBatch:
        """
        Credit the quarter's interest to every eligible account

        Everything happens in one atomic unit. Accounts that disappeared or
        stopped being active after the preview are skipped and counted; the
        rest of the batch still posts.

        Raises:
            StateConflictError: A non-reversed batch already exists, including
                one committed concurrently by another poster
        """
        with self.storage.atomic():
            active = self.batches.get_active(product_code, quarter_key)
            if active is not None:
                raise _already_posted(product_code, quarter_key, active.id)

            preview = self.preview_engine.preview(product_code, quarter_key)
            batch_id = str(uuid.uuid4())
            narration = quarterly_interest_narration(quarter_key)

            posted = 0
            skipped = 0
            total = ZERO
            for item in preview.items:
                account = self.accounts.get_by_id(item.account_id)
                if account is None or account.status != AccountStatus.ACTIVE:
                    skipped += 1
                    continue

                self.postings.credit(
                    account.id, item.interest, narration, actor,
                    kind=EntryKind.INTEREST_CREDIT,
                    effective_at=preview.period_end,
                    batch_id=batch_id
                )
                posted += 1
                total += item.interest

            now = self.clock.now()
            batch = InterestBatch(
                id=batch_id,
                created_at=now,
                updated_at=now,
                product_code=product_code,
                quarter_key=quarter_key,
                period_start=preview.period_start,
                period_end=preview.period_end,
                posted_at=now,
                account_count=posted,
                total_interest=round2(total),
                actor=actor,
                skipped_count=skipped,
            )
            try:
                self.batches.create(batch)
            except UniqueConstraintViolation as e:
                raise _already_posted(product_code, quarter_key) from e

            self.audit_trail.log_event(
                AuditEventType.INTEREST_BATCH_POSTED,
                entity_type="interest_batch",
                entity_id=batch.id,
                metadata={
                    'product_code': product_code,
                    'quarter_key': quarter_key,
                    'account_count': posted,
                    'total_interest': batch.total_interest,
                    'skipped_count': skipped,
                },
                actor=actor
            )

        if skipped:
            log_action(
                logger, "warning",
                f"Skipped {skipped} account(s) no longer eligible while posting {product_code} {quarter_key}",
                actor=actor, action="run_interest", resource=batch.id,
                details={'skipped_count': skipped}
            )
        log_action(
            logger, "info",
            f"Posted interest batch for {product_code} {quarter_key}",
            actor=actor, action="run_interest", resource=batch.id,
            details={'account_count': posted, 'total_interest': str(batch.total_interest)}
        )
        return batch


class BatchReverser:
    """Undoes a posted interest batch"""

    def __init__(
        self,
        storage: StorageInterface,
        quarters: QuarterResolver,
        accounts: AccountStore,
        batches: BatchStore,
        ledger: LedgerStore,
        postings: PostingService,
        audit_trail: AuditTrail,
        clock: Clock
    ):
        self.storage = storage
        self.quarters = quarters
        self.accounts = accounts
        self.batches = batches
        self.ledger = ledger
        self.postings = postings
        self.audit_trail = audit_trail
        self.clock = clock

    def reverse(self, product_code: str, quarter_key: str, actor: str = "system") -> InterestBatch:
        """
        Reverse the most recent batch for (product, quarter)

        Every interest credit of the batch is debited back with an
        interest_reversal entry effective now, the product totals are reduced
        and the batch is marked reversed. All of it commits or none of it does.

        Raises:
            ValidationError: Malformed quarter key
            NotFoundError: No batch was ever posted for (product, quarter)
            StateConflictError: The most recent batch is already reversed
        """
        self.quarters.resolve(quarter_key)

        with self.storage.atomic():
            batch = self.batches.get_latest(product_code, quarter_key)
            if batch is None:
                raise NotFoundError(
                    "InterestBatch", f"{product_code}/{quarter_key}",
                    message=f"No posted batch found for {product_code} in {quarter_key}"
                )
            if batch.reversed:
                raise StateConflictError(
                    f"Interest batch for {product_code} in {quarter_key} is already reversed",
                    reason=BATCH_ALREADY_REVERSED,
                    details={'batch_id': batch.id}
                )

            credits = self.ledger.query_for_batch(batch.id, kind=EntryKind.INTEREST_CREDIT)
            if not credits:
                credits = self._unreversed_legacy_credits(product_code, quarter_key, batch.period_end)

            narration = interest_reversal_narration(quarter_key)
            now = self.clock.now()
            reversed_count = 0
            reversed_total = ZERO
            for credit in credits:
                if self.accounts.get_by_id(credit.account_id) is None:
                    log_action(
                        logger, "warning",
                        f"Account {credit.account_id} vanished; interest credit {credit.id} not reversed",
                        actor=actor, action="reverse_interest", resource=batch.id
                    )
                    continue

                # Funds may have been withdrawn since posting; the reversal still applies
                self.postings.debit(
                    credit.account_id, credit.amount, narration, actor,
                    kind=EntryKind.INTEREST_REVERSAL,
                    effective_at=now,
                    batch_id=batch.id,
                    allow_negative=True
                )
                reversed_count += 1
                reversed_total += credit.amount

            batch = self.batches.mark_reversed(batch.id, now, actor)

            self.audit_trail.log_event(
                AuditEventType.INTEREST_BATCH_REVERSED,
                entity_type="interest_batch",
                entity_id=batch.id,
                metadata={
                    'product_code': product_code,
                    'quarter_key': quarter_key,
                    'reversed_entries': reversed_count,
                    'reversed_total': round2(reversed_total),
                },
                actor=actor
            )

        log_action(
            logger, "info",
            f"Reversed interest batch for {product_code} {quarter_key}",
            actor=actor, action="reverse_interest", resource=batch.id,
            details={'reversed_entries': reversed_count, 'reversed_total': str(round2(reversed_total))}
        )
        return batch

    def _unreversed_legacy_credits(self, product_code: str, quarter_key: str,
                                   period_end: datetime) -> List[LedgerEntry]:
        """
        Legacy credits (no batch id) not yet taken back by an earlier reversal

        A reversal consumed legacy credits when its batch had no credits of
        its own. Each such reversal entry cancels one legacy credit on the
        same account.
        """
        consumed: Dict[str, int] = {}
        own_credits: Dict[str, bool] = {}
        for reversal in self.ledger.query_quarter_reversals(product_code, quarter_key):
            if reversal.batch_id is None:
                continue
            if reversal.batch_id not in own_credits:
                own_credits[reversal.batch_id] = bool(
                    self.ledger.query_for_batch(reversal.batch_id, kind=EntryKind.INTEREST_CREDIT)
                )
            if not own_credits[reversal.batch_id]:
                consumed[reversal.account_id] = consumed.get(reversal.account_id, 0) + 1

        remaining = []
        for credit in self.ledger.query_legacy_batch_credits(product_code, quarter_key, period_end):
            if consumed.get(credit.account_id, 0) > 0:
                consumed[credit.account_id] -= 1
                continue
            remaining.append(credit)
        return remaining
