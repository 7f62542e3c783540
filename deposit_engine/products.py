"""
Product Catalog Module

Deposit product definitions and fixed-deposit rate resolution.

Fixed-deposit terms live in a product's free-form attributes document. They
are parsed once into a typed FixedDepositProductConfig; when the stored
document is missing a field or holds something unusable, the configured
defaults are written back to the product so the repair happens only once.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .audit import AuditTrail, AuditEventType
from .clock import Clock, parse_datetime
from .config import EngineConfig
from .errors import (
    ConfigurationError, NotFoundError, StateConflictError, ValidationError,
    DUPLICATE_PRODUCT, INACTIVE_PRODUCT
)
from .logging_config import get_logger, log_action
from .money import ZERO, coerce_decimal, round2, to_decimal
from .storage import StorageInterface, StorageRecord, UniqueConstraintViolation


logger = get_logger("deposit_engine.products")


class DepositCategory(Enum):
    """Which kind of party a product is offered to"""
    MEMBER_DEPOSITS = "member_deposits"
    NON_MEMBER_DEPOSITS = "non_member_deposits"


class InterestMethod(Enum):
    """How interest is earned on a product"""
    NONE = "none"
    QUARTERLY_MIN_BALANCE = "quarterly_min_balance"  # lowest balance in the quarter, credited at quarter end
    FD_MATURITY = "fd_maturity"                      # fixed deposit, simple interest at maturity
    DIVIDEND_LIKE = "dividend_like"                  # shares; no interest


# Attribute keys of the fixed-deposit configuration document
RATE_TABLE = "rate_table"
DEFAULT_TENOR_DAYS = "default_tenor_days"
PREMATURE_THRESHOLD_MONTHS = "premature_threshold_months"
PREMATURE_ANNUAL_RATE = "premature_annual_rate"


@dataclass(frozen=True)
class RateTier:
    """Annual rate offered for one tenor"""
    tenor_days: int
    rate: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {'tenor_days': self.tenor_days, 'rate': str(self.rate)}


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or value is None:
        return False
    if isinstance(value, (int, float, Decimal)):
        return True
    return coerce_decimal(value, None) is not None


def _parse_rate_table(raw: Any) -> Optional[List[RateTier]]:
    """Parse a stored rate table; None when it is missing or malformed"""
    if not isinstance(raw, list) or not raw:
        return None
    tiers = []
    for row in raw:
        if not isinstance(row, dict):
            return None
        tenor = row.get('tenor_days')
        rate = row.get('rate')
        if not _is_number(tenor) or not _is_number(rate):
            return None
        tiers.append(RateTier(int(coerce_decimal(tenor, ZERO)), coerce_decimal(rate, ZERO)))
    return tiers


@dataclass
class FixedDepositProductConfig:
    """Typed fixed-deposit terms of a product"""
    rate_table: List[RateTier]
    default_tenor_days: int
    premature_threshold_months: int
    premature_annual_rate: Decimal

    @classmethod
    def parse(cls, attributes: Optional[Dict[str, Any]],
              defaults: EngineConfig) -> Tuple['FixedDepositProductConfig', List[str]]:
        """
        Build the typed config from a raw attributes document

        Returns:
            The config and the list of attribute keys that had to be defaulted
        """
        attributes = attributes if isinstance(attributes, dict) else {}
        repaired = []

        rate_table = _parse_rate_table(attributes.get(RATE_TABLE))
        if rate_table is None:
            rate_table = [RateTier(t, r) for t, r in defaults.fd_default_rate_table.items()]
            repaired.append(RATE_TABLE)

        raw_tenor = attributes.get(DEFAULT_TENOR_DAYS)
        if _is_number(raw_tenor):
            default_tenor_days = int(coerce_decimal(raw_tenor, ZERO))
        else:
            default_tenor_days = defaults.fd_default_tenor_days
            repaired.append(DEFAULT_TENOR_DAYS)

        raw_months = attributes.get(PREMATURE_THRESHOLD_MONTHS)
        if _is_number(raw_months):
            threshold_months = int(coerce_decimal(raw_months, ZERO))
        else:
            threshold_months = defaults.fd_premature_threshold_months
            repaired.append(PREMATURE_THRESHOLD_MONTHS)

        raw_rate = attributes.get(PREMATURE_ANNUAL_RATE)
        if _is_number(raw_rate):
            premature_rate = coerce_decimal(raw_rate, ZERO)
        else:
            premature_rate = defaults.fd_premature_annual_rate
            repaired.append(PREMATURE_ANNUAL_RATE)

        config = cls(
            rate_table=rate_table,
            default_tenor_days=default_tenor_days,
            premature_threshold_months=threshold_months,
            premature_annual_rate=premature_rate,
        )
        return config, repaired

    def to_attributes(self) -> Dict[str, Any]:
        return {
            RATE_TABLE: [tier.to_dict() for tier in self.rate_table],
            DEFAULT_TENOR_DAYS: self.default_tenor_days,
            PREMATURE_THRESHOLD_MONTHS: self.premature_threshold_months,
            PREMATURE_ANNUAL_RATE: str(self.premature_annual_rate),
        }


@dataclass
class Product(StorageRecord):
    """
    Deposit product; id is the immutable product code

    Running totals are maintained by TotalsAggregator through atomic storage
    increments and are never written back by ProductStore.update().
    """
    name: str
    category: DepositCategory
    interest_method: InterestMethod = InterestMethod.NONE
    annual_rate: Optional[Decimal] = None
    minimum_balance: Decimal = ZERO
    is_active: bool = True
    attributes: Dict[str, Any] = field(default_factory=dict)
    total_balance: Decimal = ZERO
    total_interest_paid: Decimal = ZERO

    @property
    def code(self) -> str:
        return self.id

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Product':
        annual_rate = data.get('annual_rate')
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            name=data.get('name', ''),
            category=DepositCategory(data['category']),
            interest_method=InterestMethod(data.get('interest_method', InterestMethod.NONE.value)),
            annual_rate=coerce_decimal(annual_rate, None) if annual_rate is not None else None,
            minimum_balance=coerce_decimal(data.get('minimum_balance'), ZERO),
            is_active=bool(data.get('is_active', True)),
            attributes=data.get('attributes') or {},
            # Legacy documents may hold non-numeric totals; show them as zero
            total_balance=coerce_decimal(data.get('total_balance'), ZERO),
            total_interest_paid=coerce_decimal(data.get('total_interest_paid'), ZERO),
        )


TOTAL_FIELDS = ('total_balance', 'total_interest_paid')


class ProductStore:
    """Persistence and registration of deposit products"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail, clock: Clock):
        self.storage = storage
        self.audit_trail = audit_trail
        self.clock = clock
        self.table_name = "products"

    def get(self, code: str) -> Optional[Product]:
        data = self.storage.load(self.table_name, code)
        return Product.from_dict(data) if data else None

    def require(self, code: str) -> Product:
        product = self.get(code)
        if product is None:
            raise NotFoundError("Product", code)
        return product

    def require_active(self, code: str) -> Product:
        product = self.require(code)
        if not product.is_active:
            raise StateConflictError(
                f"Product {code} is inactive",
                reason=INACTIVE_PRODUCT,
                details={'product_code': code}
            )
        return product

    def create(self, product: Product) -> Product:
        try:
            self.storage.insert(self.table_name, product.id, product.to_dict())
        except UniqueConstraintViolation as e:
            raise StateConflictError(
                f"Product {product.id} already exists",
                reason=DUPLICATE_PRODUCT,
                details={'product_code': product.id}
            ) from e
        return product

    def update(self, code: str, product: Product) -> Product:
        """Replace a product definition, leaving its running totals untouched"""
        with self.storage.atomic():
            current = self.storage.load(self.table_name, code)
            if current is None:
                raise NotFoundError("Product", code)
            product.updated_at = self.clock.now()
            document = product.to_dict()
            for name in TOTAL_FIELDS:
                if name in current:
                    document[name] = current[name]
                else:
                    document.pop(name, None)
            self.storage.save(self.table_name, code, document)
        return product

    def set_active(self, code: str, is_active: bool) -> Product:
        product = self.require(code)
        product.is_active = is_active
        return self.update(code, product)

    def list_all(self) -> List[Product]:
        return [Product.from_dict(data) for data in self.storage.load_all(self.table_name)]

    def register(
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
        """
        Register a new product in the catalog

        Args:
            code: Unique, immutable product code (e.g. "A1", "FD6M")
            name: Display name
            category: Member or non-member deposits
            interest_method: How interest is earned
            annual_rate: Annual rate as a fraction (0.12 for 12%)
            minimum_balance: Balance a withdrawal may not go below
            attributes: Product-specific document (fixed-deposit rate table etc.)
            actor: Who registered the product

        Returns:
            Created Product
        """
        if not code or not code.strip():
            raise ValidationError("Product code is required")
        rate = to_decimal(annual_rate) if annual_rate is not None else None
        if rate is not None and rate < 0:
            raise ValidationError("Annual rate cannot be negative", details={'annual_rate': str(rate)})
        minimum = round2(minimum_balance)
        if minimum < 0:
            raise ValidationError("Minimum balance cannot be negative")

        now = self.clock.now()
        product = Product(
            id=code.strip(),
            created_at=now,
            updated_at=now,
            name=name,
            category=category,
            interest_method=interest_method,
            annual_rate=rate,
            minimum_balance=minimum,
            attributes=dict(attributes or {}),
        )
        with self.storage.atomic():
            self.create(product)
            self.audit_trail.log_event(
                AuditEventType.PRODUCT_REGISTERED,
                entity_type="product",
                entity_id=product.id,
                metadata={
                    'category': category.value,
                    'interest_method': interest_method.value,
                    'annual_rate': rate,
                },
                actor=actor
            )
        return product


class ProductRateResolver:
    """Resolves fixed-deposit tenor and rate from a product's configuration"""

    def __init__(self, products: ProductStore, audit_trail: AuditTrail, defaults: EngineConfig):
        self.products = products
        self.audit_trail = audit_trail
        self.defaults = defaults

    def ensure_configured(self, product: Product, actor: str = "system") -> FixedDepositProductConfig:
        """
        Return the product's typed FD config, repairing the stored document if needed

        Every missing or malformed field is replaced with its configured
        default and the product is written back, so a given gap is repaired
        at most once.
        """
        config, repaired = FixedDepositProductConfig.parse(product.attributes, self.defaults)
        if not repaired:
            return config

        normalized = config.to_attributes()
        attributes = dict(product.attributes) if isinstance(product.attributes, dict) else {}
        for key in repaired:
            attributes[key] = normalized[key]
        product.attributes = attributes
        self.products.update(product.code, product)

        log_action(
            logger, "warning",
            f"Repaired fixed-deposit configuration of product {product.code}",
            actor=actor, action="repair_product_config", resource=product.code,
            details={'repaired': repaired}
        )
        self.audit_trail.log_event(
            AuditEventType.PRODUCT_CONFIG_REPAIRED,
            entity_type="product",
            entity_id=product.code,
            metadata={'repaired': repaired, 'attributes': {k: attributes[k] for k in repaired}},
            actor=actor
        )
        return config

    def resolve(self, config: FixedDepositProductConfig,
                preferred_tenor_days: Optional[int] = None) -> Tuple[int, Decimal]:
        """
        Pick the tenor and annual rate for a term

        An exact tenor match wins (the preferred tenor, or the product default
        when none is given). Otherwise the first tier of the table is used.

        Raises:
            ConfigurationError: If no tier yields a positive rate
        """
        tenor = preferred_tenor_days if preferred_tenor_days is not None else config.default_tenor_days

        for tier in config.rate_table:
            if tier.tenor_days == tenor and tier.rate > 0:
                return tier.tenor_days, tier.rate

        if config.rate_table:
            first = config.rate_table[0]
            if first.rate > 0 and first.tenor_days > 0:
                return first.tenor_days, first.rate

        raise ConfigurationError(
            "Could not resolve a positive fixed-deposit rate from the rate table",
            details={
                'requested_tenor_days': tenor,
                'rate_table': [tier.to_dict() for tier in config.rate_table],
            }
        )
