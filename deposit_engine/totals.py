"""
Product Totals Module

Per-product running sums of balances held and interest paid, maintained by
atomic storage increments.
"""

from decimal import Decimal
from typing import Tuple

from .audit import AuditTrail, AuditEventType
from .errors import NotFoundError
from .logging_config import get_logger, log_action
from .money import ZERO, coerce_decimal, round2
from .storage import IncompatibleValueError, StorageError, StorageInterface


logger = get_logger("deposit_engine.totals")

BALANCE_FIELD = "total_balance"
INTEREST_FIELD = "total_interest_paid"


class TotalsAggregator:
    """Keeps a product's total_balance and total_interest_paid in step with postings"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 table_name: str = "products"):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = table_name

    def apply_delta(self, product_code: str, balance_delta: Decimal,
                    interest_delta: Decimal) -> Tuple[Decimal, Decimal]:
        """
        Atomically add deltas to both totals of a product

        Legacy records whose totals are not stored as numbers are reset to
        zero and the increment is retried once. No other failure is retried.

        Returns:
            The new (total_balance, total_interest_paid)
        """
        try:
            return self._increment(product_code, balance_delta, interest_delta)
        except IncompatibleValueError as e:
            self._reset(product_code, e)
            return self._increment(product_code, balance_delta, interest_delta)

    def get_totals(self, product_code: str) -> Tuple[Decimal, Decimal]:
        record = self.storage.load(self.table_name, product_code)
        if record is None:
            raise NotFoundError("Product", product_code)
        return (
            round2(coerce_decimal(record.get(BALANCE_FIELD), ZERO)),
            round2(coerce_decimal(record.get(INTEREST_FIELD), ZERO)),
        )

    def _increment(self, product_code: str, balance_delta: Decimal,
                   interest_delta: Decimal) -> Tuple[Decimal, Decimal]:
        deltas = {
            BALANCE_FIELD: round2(balance_delta),
            INTEREST_FIELD: round2(interest_delta),
        }
        try:
            record = self.storage.increment(self.table_name, product_code, deltas)
        except IncompatibleValueError:
            raise
        except StorageError as e:
            raise NotFoundError("Product", product_code) from e
        return round2(record[BALANCE_FIELD]), round2(record[INTEREST_FIELD])

    def _reset(self, product_code: str, cause: IncompatibleValueError) -> None:
        with self.storage.atomic():
            record = self.storage.load(self.table_name, product_code)
            if record is None:
                raise NotFoundError("Product", product_code)
            previous = {BALANCE_FIELD: record.get(BALANCE_FIELD), INTEREST_FIELD: record.get(INTEREST_FIELD)}
            record[BALANCE_FIELD] = str(ZERO)
            record[INTEREST_FIELD] = str(ZERO)
            self.storage.save(self.table_name, product_code, record)
            self.audit_trail.log_event(
                AuditEventType.PRODUCT_TOTALS_RESET,
                entity_type="product",
                entity_id=product_code,
                metadata={'previous': {k: repr(v) for k, v in previous.items()}, 'field': cause.field}
            )

        log_action(
            logger, "warning",
            f"Reset non-numeric totals of product {product_code}",
            action="reset_totals", resource=product_code,
            details={'field': cause.field, 'value': repr(cause.value)}
        )
