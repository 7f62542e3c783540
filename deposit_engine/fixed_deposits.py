"""
Fixed Deposit Module

Term deposits held by members. Each FD account locks its terms at open or
renewal in a TermSnapshot stored under attributes["fd"]; interest is simple
interest computed from that snapshot.

    maturity interest  = round2(principal x annual_rate x tenor_days / 365)
    premature interest = round2(principal x premature_rate x elapsed_days / 365)
                         when elapsed_days >= threshold_months x 30, else 0

Elapsed time is always floored to whole days. Payouts go to an ordinary
member savings account of the same party.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
import uuid

from .accounts import Account, AccountStatus, AccountStore, require_active_account
from .audit import AuditTrail, AuditEventType
from .clock import Clock, ensure_utc
from .errors import (
    ConfigurationError, NotFoundError, StateConflictError, ValidationError,
    DUPLICATE_ACCOUNT, FD_NOT_MATURED, INELIGIBLE_PARTY, INELIGIBLE_PRODUCT, INVALID_PAYOUT_ACCOUNT
)
from .ledger import EntryKind, LedgerStore
from .logging_config import get_logger, log_action
from .money import ZERO, coerce_decimal, coerce_int, round2, to_decimal
from .parties import PartyStore
from .postings import PostingService
from .products import (
    DepositCategory, FixedDepositProductConfig, InterestMethod, Product,
    ProductRateResolver, ProductStore
)
from .storage import StorageInterface


logger = get_logger("deposit_engine.fixed_deposits")

DAYS_PER_YEAR = Decimal(365)
DAYS_PER_MONTH = 30
SNAPSHOT_KEY = "fd"
PREMATURE_TERMS = ("premature_threshold_months", "premature_annual_rate")

# Interest methods a payout destination may use
PAYOUT_INTEREST_METHODS = (InterestMethod.QUARTERLY_MIN_BALANCE, InterestMethod.NONE)


class RenewalMode(Enum):
    """What happens to maturity interest when an FD is renewed"""
    PRINCIPAL_ONLY = "principal_only"                     # interest paid out
    PRINCIPAL_PLUS_INTEREST = "principal_plus_interest"   # interest compounded into the new term


class MaturityAction(Enum):
    WITHDRAW = "withdraw"
    RENEW = "renew"


@dataclass
class TermSnapshot:
    """Terms locked on an FD at open or renewal"""
    tenor_days: int
    annual_rate: Decimal
    premature_threshold_months: int
    premature_annual_rate: Decimal
    open_principal: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tenor_days': self.tenor_days,
            'annual_rate': str(self.annual_rate),
            'premature_threshold_months': self.premature_threshold_months,
            'premature_annual_rate': str(self.premature_annual_rate),
            'open_principal': str(round2(self.open_principal)),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any],
                  defaults: Optional[FixedDepositProductConfig] = None) -> 'TermSnapshot':
        """Missing premature terms fall back to the product configuration when given"""
        threshold_months = defaults.premature_threshold_months if defaults else 0
        premature_rate = defaults.premature_annual_rate if defaults else ZERO
        return cls(
            tenor_days=coerce_int(data.get('tenor_days'), 0),
            annual_rate=coerce_decimal(data.get('annual_rate'), ZERO),
            premature_threshold_months=coerce_int(data.get('premature_threshold_months'), threshold_months),
            premature_annual_rate=coerce_decimal(data.get('premature_annual_rate'), premature_rate),
            open_principal=coerce_decimal(data.get('open_principal'), ZERO),
        )


def elapsed_whole_days(opened_at: datetime, as_of: datetime) -> int:
    """Whole days between two instants, floored and never negative"""
    return max(0, (ensure_utc(as_of) - ensure_utc(opened_at)).days)


def maturity_interest(principal: Decimal, tenor_days: int, annual_rate: Decimal) -> Decimal:
    if principal <= 0 or tenor_days <= 0 or annual_rate <= 0:
        return ZERO
    return round2(principal * annual_rate * Decimal(tenor_days) / DAYS_PER_YEAR)


def premature_interest(principal: Decimal, elapsed_days: int, threshold_months: int,
                       premature_rate: Decimal) -> Decimal:
    """Interest on early closure; zero below the holding threshold, inclusive at it"""
    if principal <= 0 or premature_rate <= 0:
        return ZERO
    if elapsed_days < threshold_months * DAYS_PER_MONTH:
        return ZERO
    return round2(principal * premature_rate * Decimal(elapsed_days) / DAYS_PER_YEAR)


@dataclass
class MaturityPreview:
    party_id: str
    product_code: str
    principal: Decimal
    tenor_days: int
    annual_rate: Decimal
    interest: Decimal
    payout: Decimal
    opened_at: Optional[datetime]
    maturity_at: Optional[datetime]


@dataclass
class PrematurePreview:
    party_id: str
    product_code: str
    principal: Decimal
    threshold_months: int
    premature_annual_rate: Decimal
    elapsed_days: int
    eligible: bool
    interest: Decimal
    payout: Decimal
    opened_at: Optional[datetime]
    as_of: datetime


@dataclass
class PrematureCloseResult:
    account: Account
    elapsed_days: int
    interest: Decimal
    payout: Decimal


@dataclass
class MaturityResult:
    """Outcome of a mature-or-renew call; renewal fields are None on withdraw"""
    account: Account
    action: MaturityAction
    principal: Decimal
    interest: Decimal
    payout: Decimal
    renewal_mode: Optional[RenewalMode] = None
    new_tenor_days: Optional[int] = None
    new_annual_rate: Optional[Decimal] = None
    new_open_principal: Optional[Decimal] = None
    maturity_at: Optional[datetime] = None


class FixedDepositEngine:
    """
    Open, premature close, mature-or-renew and previews of fixed deposits

    Every state transition runs inside one storage atomic unit so a failure
    halfway through leaves no money moved.
    """

    def __init__(
        self,
        storage: StorageInterface,
        parties: PartyStore,
        products: ProductStore,
        accounts: AccountStore,
        ledger: LedgerStore,
        postings: PostingService,
        resolver: ProductRateResolver,
        audit_trail: AuditTrail,
        clock: Clock
    ):
        self.storage = storage
        self.parties = parties
        self.products = products
        self.accounts = accounts
        self.ledger = ledger
        self.postings = postings
        self.resolver = resolver
        self.audit_trail = audit_trail
        self.clock = clock

    # Open

    def open(
        self,
        party_id: str,
        product_code: str,
        principal: Decimal,
        payout_product_code: str,
        tenor_days: Optional[int] = None,
        actor: str = "system"
    ) -> Account:
        """
        Open a fixed deposit and move the principal into it

        Args:
            party_id: Member opening the FD
            product_code: FD product
            principal: Amount deposited for the term
            payout_product_code: Savings product of the same party that
                receives payouts; validated now even though nothing moves yet
            tenor_days: Requested tenor; the product default when omitted
            actor: Who opened the FD

        Raises:
            ValidationError: Non-positive principal or tenor
            StateConflictError: Ineligible party or product, an FD already
                exists for (party, product) or the payout account is unusable
            ConfigurationError: No positive rate can be resolved
        """
        principal = round2(to_decimal(principal))
        if principal <= 0:
            raise ValidationError("FD principal must be positive", details={'principal': str(principal)})
        if tenor_days is not None and tenor_days <= 0:
            raise ValidationError("Tenor days must be positive", details={'tenor_days': tenor_days})

        with self.storage.atomic():
            party = self.parties.require_active(party_id)
            product = self.products.require_active(product_code)
            if not party.is_member:
                raise StateConflictError(
                    "Only members can open fixed deposits",
                    reason=INELIGIBLE_PARTY,
                    details={'party_id': party_id, 'party_type': party.party_type.value}
                )
            if product.category != DepositCategory.MEMBER_DEPOSITS:
                raise StateConflictError(
                    f"Fixed deposit product {product_code} must be in the member deposits category",
                    reason=INELIGIBLE_PRODUCT,
                    details={'product_code': product_code, 'category': product.category.value}
                )
            if self.accounts.get(party_id, product_code) is not None:
                raise StateConflictError(
                    f"Fixed deposit already exists for {party_id}/{product_code}",
                    reason=DUPLICATE_ACCOUNT,
                    details={'party_id': party_id, 'product_code': product_code}
                )

            config = self.resolver.ensure_configured(product, actor)
            tenor, rate = self.resolver.resolve(config, tenor_days)

            now = self.clock.now()
            snapshot = TermSnapshot(
                tenor_days=tenor,
                annual_rate=rate,
                premature_threshold_months=config.premature_threshold_months,
                premature_annual_rate=config.premature_annual_rate,
                open_principal=principal,
            )
            account = Account(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                party_id=party_id,
                product_code=product_code,
                category=product.category,
                opened_at=now,
                maturity_at=now + timedelta(days=tenor),
                linked_payout_product_code=payout_product_code,
                attributes={SNAPSHOT_KEY: snapshot.to_dict()},
            )
            self.accounts.create(account)

            account, _ = self.postings.credit(account.id, principal, "FD open principal deposit", actor)

            # Nothing is paid out yet, but the payout path has to work
            self._payout_destination(party_id, payout_product_code)

            self.audit_trail.log_event(
                AuditEventType.FD_OPENED,
                entity_type="account",
                entity_id=account.id,
                metadata={
                    'party_id': party_id,
                    'product_code': product_code,
                    'principal': principal,
                    'tenor_days': tenor,
                    'annual_rate': rate,
                    'maturity_at': account.maturity_at,
                    'payout_product_code': payout_product_code,
                },
                actor=actor
            )

        log_action(
            logger, "info", f"Opened fixed deposit {party_id}/{product_code}",
            actor=actor, action="open_fd", resource=account.id,
            details={'principal': str(principal), 'tenor_days': tenor, 'annual_rate': str(rate)}
        )
        return account

    def get_fd(self, party_id: str, product_code: str) -> Account:
        return self.accounts.require(party_id, product_code)

    # Premature close

    def premature_close(self, party_id: str, product_code: str, payout_product_code: str,
                        actor: str = "system") -> PrematureCloseResult:
        """
        Close an FD before maturity at the premature rate

        Interest, when earned, is credited to the FD first so the ledger shows
        it; then principal and interest are debited out, the payout account is
        credited with the sum and the FD is closed.
        """
        with self.storage.atomic():
            self.parties.require_active(party_id)
            fd = self._require_active_fd(party_id, product_code)
            snapshot = self._snapshot_for(fd, actor)
            fd = self.accounts.require(party_id, product_code)

            principal = fd.principal_balance
            days = elapsed_whole_days(fd.opened_at, self.clock.now())
            interest = premature_interest(
                principal, days, snapshot.premature_threshold_months, snapshot.premature_annual_rate
            )

            destination = self._payout_destination(party_id, payout_product_code)

            if interest > 0:
                self.postings.credit(
                    fd.id, interest,
                    f"FD premature interest ({days}d at {snapshot.premature_annual_rate:.2%})",
                    actor, kind=EntryKind.INTEREST_CREDIT
                )

            payout = round2(principal + interest)
            if principal > 0:
                self.postings.debit(fd.id, principal, "FD premature principal payout", actor)
            if interest > 0:
                self.postings.debit(fd.id, interest, "FD premature interest payout", actor)
            if payout > 0:
                self.postings.credit(destination.id, payout, "FD premature payout", actor)

            fd = self.accounts.set_status(fd.id, AccountStatus.CLOSED)

            self.audit_trail.log_event(
                AuditEventType.FD_PREMATURE_CLOSED,
                entity_type="account",
                entity_id=fd.id,
                metadata={
                    'elapsed_days': days,
                    'interest': interest,
                    'payout': payout,
                    'payout_account_id': destination.id,
                },
                actor=actor
            )

        log_action(
            logger, "info", f"Prematurely closed fixed deposit {party_id}/{product_code}",
            actor=actor, action="premature_close_fd", resource=fd.id,
            details={'elapsed_days': days, 'interest': str(interest), 'payout': str(payout)}
        )
        return PrematureCloseResult(account=fd, elapsed_days=days, interest=interest, payout=payout)

    # Maturity

    def mature_or_renew(
        self,
        party_id: str,
        product_code: str,
        payout_product_code: str,
        action: MaturityAction = MaturityAction.WITHDRAW,
        tenor_days: Optional[int] = None,
        renewal_mode: Optional[RenewalMode] = None,
        actor: str = "system"
    ) -> MaturityResult:
        """
        Settle a matured FD by paying it out or rolling it into a new term

        Maturity interest always uses the locked snapshot's full tenor and
        rate, not the time actually elapsed.

        Raises:
            StateConflictError: The FD has not matured yet
            ValidationError: Renewal without a positive tenor or a mode
            ConfigurationError: The snapshot tenor or rate is not positive
        """
        if action == MaturityAction.RENEW:
            if tenor_days is None or tenor_days <= 0:
                raise ValidationError("For renewal, tenor days is required and must be positive",
                                      details={'tenor_days': tenor_days})
            if renewal_mode is None:
                raise ValidationError("For renewal, a renewal mode is required",
                                      details={'allowed': [mode.value for mode in RenewalMode]})

        with self.storage.atomic():
            self.parties.require_active(party_id)
            product = self.products.require_active(product_code)
            fd = self._require_active_fd(party_id, product_code)
            snapshot = self._snapshot_for(fd, actor)
            fd = self.accounts.require(party_id, product_code)

            now = self.clock.now()
            if fd.maturity_at is None or now < fd.maturity_at:
                raise StateConflictError(
                    "FD has not yet matured. Use premature close if required.",
                    reason=FD_NOT_MATURED,
                    details={'maturity_at': fd.maturity_at.isoformat() if fd.maturity_at else None}
                )
            self._check_snapshot(fd, snapshot)

            principal = fd.principal_balance
            interest = maturity_interest(principal, snapshot.tenor_days, snapshot.annual_rate)
            destination = self._payout_destination(party_id, payout_product_code)

            if action == MaturityAction.WITHDRAW:
                result = self._withdraw(fd, destination, principal, interest, snapshot, actor)
            else:
                result = self._renew(fd, product, destination, principal, interest, snapshot,
                                     tenor_days, renewal_mode, actor)

        log_action(
            logger, "info", f"Fixed deposit {party_id}/{product_code} settled at maturity ({action.value})",
            actor=actor, action="mature_or_renew_fd", resource=result.account.id,
            details={'interest': str(result.interest), 'payout': str(result.payout)}
        )
        return result

    def _credit_maturity_interest(self, fd: Account, interest: Decimal, narration: str, actor: str) -> None:
        if interest > 0:
            self.postings.credit(fd.id, interest, narration, actor, kind=EntryKind.INTEREST_CREDIT)

    def _withdraw(self, fd: Account, destination: Account, principal: Decimal, interest: Decimal,
                  snapshot: TermSnapshot, actor: str) -> MaturityResult:
        self._credit_maturity_interest(fd, interest, f"FD maturity interest ({snapshot.tenor_days}d)", actor)

        payout = round2(principal + interest)
        if principal > 0:
            self.postings.debit(fd.id, principal, "FD maturity principal payout", actor)
        if interest > 0:
            self.postings.debit(fd.id, interest, "FD maturity interest payout", actor)
        if payout > 0:
            self.postings.credit(destination.id, payout, f"FD maturity payout from {fd.product_code}", actor)

        fd = self.accounts.set_status(fd.id, AccountStatus.CLOSED)

        self.audit_trail.log_event(
            AuditEventType.FD_MATURED,
            entity_type="account",
            entity_id=fd.id,
            metadata={'principal': principal, 'interest': interest, 'payout': payout,
                      'payout_account_id': destination.id},
            actor=actor
        )
        return MaturityResult(
            account=fd, action=MaturityAction.WITHDRAW,
            principal=principal, interest=interest, payout=payout
        )

    def _renew(self, fd: Account, product: Product, destination: Account, principal: Decimal,
               interest: Decimal, snapshot: TermSnapshot, tenor_days: int,
               renewal_mode: RenewalMode, actor: str) -> MaturityResult:
        self._credit_maturity_interest(
            fd, interest, f"FD maturity interest ({snapshot.tenor_days}d) credited on renewal", actor
        )

        paid_out = ZERO
        if renewal_mode == RenewalMode.PRINCIPAL_ONLY and interest > 0:
            self.postings.debit(fd.id, interest, "FD renewal: interest paid out to savings", actor)
            self.postings.credit(destination.id, interest,
                                 f"FD renewal interest payout from {fd.product_code}", actor)
            paid_out = interest

        config = self.resolver.ensure_configured(product, actor)
        new_tenor, new_rate = self.resolver.resolve(config, tenor_days)

        now = self.clock.now()
        state = {}

        def reset_term(account: Account) -> None:
            new_snapshot = TermSnapshot(
                tenor_days=new_tenor,
                annual_rate=new_rate,
                premature_threshold_months=snapshot.premature_threshold_months or config.premature_threshold_months,
                premature_annual_rate=snapshot.premature_annual_rate or config.premature_annual_rate,
                open_principal=account.principal_balance,
            )
            account.opened_at = now
            account.maturity_at = now + timedelta(days=new_tenor)
            account.attributes = dict(account.attributes or {})
            account.attributes[SNAPSHOT_KEY] = new_snapshot.to_dict()
            state['snapshot'] = new_snapshot

        fd = self.accounts.modify(fd.id, reset_term)
        new_snapshot = state['snapshot']

        self.audit_trail.log_event(
            AuditEventType.FD_RENEWED,
            entity_type="account",
            entity_id=fd.id,
            metadata={
                'renewal_mode': renewal_mode.value,
                'interest': interest,
                'interest_paid_out': paid_out,
                'new_tenor_days': new_tenor,
                'new_annual_rate': new_rate,
                'new_open_principal': new_snapshot.open_principal,
                'maturity_at': fd.maturity_at,
            },
            actor=actor
        )
        return MaturityResult(
            account=fd, action=MaturityAction.RENEW,
            principal=principal, interest=interest, payout=paid_out,
            renewal_mode=renewal_mode,
            new_tenor_days=new_tenor,
            new_annual_rate=new_rate,
            new_open_principal=new_snapshot.open_principal,
            maturity_at=fd.maturity_at,
        )

    # Previews

    def preview_maturity(self, party_id: str, product_code: str) -> MaturityPreview:
        """
        What mature_or_renew would credit if the FD stays as it is

        Moves no money, but missing locked terms are rebuilt and persisted
        first, as every FD operation does.
        """
        fd = self._require_active_fd(party_id, product_code)
        snapshot = self._snapshot_for(fd)
        fd = self.accounts.require(party_id, product_code)
        self._check_snapshot(fd, snapshot)

        principal = fd.principal_balance
        interest = maturity_interest(principal, snapshot.tenor_days, snapshot.annual_rate)
        return MaturityPreview(
            party_id=party_id,
            product_code=product_code,
            principal=principal,
            tenor_days=snapshot.tenor_days,
            annual_rate=snapshot.annual_rate,
            interest=interest,
            payout=round2(principal + interest),
            opened_at=fd.opened_at,
            maturity_at=fd.maturity_at,
        )

    def preview_premature(self, party_id: str, product_code: str,
                          as_of: Optional[datetime] = None) -> PrematurePreview:
        """
        What premature_close would pay if run at as_of (default now)

        Like preview_maturity, this persists rebuilt terms when they are missing.
        """
        fd = self._require_active_fd(party_id, product_code)
        snapshot = self._snapshot_for(fd)
        fd = self.accounts.require(party_id, product_code)

        as_of = ensure_utc(as_of) if as_of is not None else self.clock.now()
        principal = fd.principal_balance
        days = elapsed_whole_days(fd.opened_at, as_of)
        interest = premature_interest(
            principal, days, snapshot.premature_threshold_months, snapshot.premature_annual_rate
        )
        return PrematurePreview(
            party_id=party_id,
            product_code=product_code,
            principal=principal,
            threshold_months=snapshot.premature_threshold_months,
            premature_annual_rate=snapshot.premature_annual_rate,
            elapsed_days=days,
            eligible=interest > 0,
            interest=interest,
            payout=round2(principal + interest),
            opened_at=fd.opened_at,
            as_of=as_of,
        )

    # Helpers

    def _require_active_fd(self, party_id: str, product_code: str) -> Account:
        return require_active_account(self.accounts.require(party_id, product_code))

    @staticmethod
    def _check_snapshot(fd: Account, snapshot: TermSnapshot) -> None:
        if snapshot.tenor_days <= 0 or snapshot.annual_rate <= 0:
            raise ConfigurationError(
                "FD snapshot tenor/rate is invalid",
                details={'account_id': fd.id, 'snapshot': snapshot.to_dict()}
            )

    def _payout_destination(self, party_id: str, payout_product_code: str) -> Account:
        """
        Savings account of the same party that receives FD payouts

        It must be active, in the member deposits category and use a
        savings-like interest method.
        """
        destination = self.accounts.get(party_id, payout_product_code)
        if destination is None:
            raise NotFoundError(
                "Account", f"{party_id}/{payout_product_code}",
                message="Destination savings account not found"
            )
        if not destination.is_active:
            raise StateConflictError(
                "Destination savings account is not active",
                reason=INVALID_PAYOUT_ACCOUNT,
                details={'account_id': destination.id, 'status': destination.status.value}
            )
        product = self.products.require(destination.product_code)
        if product.category != DepositCategory.MEMBER_DEPOSITS:
            raise StateConflictError(
                "Destination must be a member deposit account",
                reason=INVALID_PAYOUT_ACCOUNT,
                details={'product_code': product.code, 'category': product.category.value}
            )
        if product.interest_method not in PAYOUT_INTEREST_METHODS:
            raise StateConflictError(
                "Destination must be a savings-like product",
                reason=INVALID_PAYOUT_ACCOUNT,
                details={'product_code': product.code, 'interest_method': product.interest_method.value}
            )
        return destination

    def _snapshot_for(self, fd: Account, actor: str = "system") -> TermSnapshot:
        """
        Locked terms of an FD, rebuilding and persisting them if missing

        A rebuild infers the open time from the account, else its earliest
        ledger entry, else now; the tenor from the maturity date, else the
        product default; and re-resolves the rate from the product.
        A stored snapshot without premature terms takes them from the product.
        """
        stored = (fd.attributes or {}).get(SNAPSHOT_KEY)
        if isinstance(stored, dict) and all(stored.get(key) is not None for key in PREMATURE_TERMS):
            return TermSnapshot.from_dict(stored)

        product = self.products.require(fd.product_code)
        config: FixedDepositProductConfig = self.resolver.ensure_configured(product, actor)
        if isinstance(stored, dict):
            return TermSnapshot.from_dict(stored, defaults=config)

        opened_at = fd.opened_at
        if opened_at is None:
            entries = self.ledger.query_for_account(fd.id)
            opened_at = entries[0].effective_at if entries else self.clock.now()

        maturity_at = fd.maturity_at
        if maturity_at is not None:
            tenor_days = max(1, (maturity_at - opened_at).days)
        else:
            tenor_days = config.default_tenor_days
            maturity_at = opened_at + timedelta(days=tenor_days)

        resolved_tenor, rate = self.resolver.resolve(config, tenor_days)
        snapshot = TermSnapshot(
            tenor_days=resolved_tenor,
            annual_rate=rate,
            premature_threshold_months=config.premature_threshold_months,
            premature_annual_rate=config.premature_annual_rate,
            open_principal=fd.principal_balance,
        )

        def persist(account: Account) -> None:
            account.opened_at = opened_at
            account.maturity_at = maturity_at
            account.attributes = dict(account.attributes or {})
            account.attributes[SNAPSHOT_KEY] = snapshot.to_dict()

        with self.storage.atomic():
            self.accounts.modify(fd.id, persist)
            self.audit_trail.log_event(
                AuditEventType.FD_TERMS_REBUILT,
                entity_type="account",
                entity_id=fd.id,
                metadata={'snapshot': snapshot.to_dict(), 'opened_at': opened_at, 'maturity_at': maturity_at},
                actor=actor
            )

        log_action(
            logger, "warning", f"Rebuilt missing FD terms for account {fd.id}",
            actor=actor, action="rebuild_fd_terms", resource=fd.id,
            details=snapshot.to_dict()
        )
        return snapshot
