"""
Interest Batch Module

One record per quarterly interest posting for a product. A storage-level
partial unique constraint allows at most one non-reversed batch per
(product, quarter); reversed batches stay on record for audit.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .clock import parse_datetime
from .errors import NotFoundError
from .money import to_decimal
from .storage import StorageInterface, StorageRecord


ACTIVE_BATCH_CONSTRAINT = "ux_interest_active_product_quarter"


@dataclass
class InterestBatch(StorageRecord):
    """A posted quarterly interest run"""
    product_code: str
    quarter_key: str
    period_start: datetime
    period_end: datetime
    posted_at: datetime
    account_count: int
    total_interest: Decimal
    actor: str
    reversed: bool = False
    reversed_at: Optional[datetime] = None
    reversed_by: Optional[str] = None
    skipped_count: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InterestBatch':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            product_code=data['product_code'],
            quarter_key=data['quarter_key'],
            period_start=parse_datetime(data['period_start']),
            period_end=parse_datetime(data['period_end']),
            posted_at=parse_datetime(data['posted_at']),
            account_count=data.get('account_count', 0),
            total_interest=to_decimal(data.get('total_interest', '0.00')),
            actor=data.get('actor', 'system'),
            reversed=bool(data.get('reversed', False)),
            reversed_at=parse_datetime(data.get('reversed_at')),
            reversed_by=data.get('reversed_by'),
            skipped_count=data.get('skipped_count', 0),
        )


class BatchStore:
    """Persistence of interest batches"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "interest_batches"
        self.storage.add_unique_constraint(
            self.table_name, ACTIVE_BATCH_CONSTRAINT,
            ["product_code", "quarter_key"], where={'reversed': False}
        )

    def _find(self, **filters) -> List[InterestBatch]:
        return [InterestBatch.from_dict(data) for data in self.storage.find(self.table_name, filters)]

    def get_active(self, product_code: str, quarter_key: str) -> Optional[InterestBatch]:
        """The non-reversed batch for (product, quarter), if any"""
        found = self._find(product_code=product_code, quarter_key=quarter_key, reversed=False)
        return found[0] if found else None

    def get_latest(self, product_code: str, quarter_key: str) -> Optional[InterestBatch]:
        """Most recently posted batch for (product, quarter), reversed or not"""
        found = self._find(product_code=product_code, quarter_key=quarter_key)
        if not found:
            return None
        # Stable sort keeps insertion order among batches posted at the same instant
        return sorted(found, key=lambda b: b.posted_at)[-1]

    def create(self, batch: InterestBatch) -> InterestBatch:
        """Insert a batch; raises UniqueConstraintViolation if an active one exists"""
        self.storage.insert(self.table_name, batch.id, batch.to_dict())
        return batch

    def mark_reversed(self, batch_id: str, when: datetime, actor: str) -> InterestBatch:
        batch = self.get_by_id(batch_id)
        if batch is None:
            raise NotFoundError("InterestBatch", batch_id)
        batch.reversed = True
        batch.reversed_at = when
        batch.reversed_by = actor
        batch.updated_at = when
        self.storage.save(self.table_name, batch.id, batch.to_dict())
        return batch

    def get_by_id(self, batch_id: str) -> Optional[InterestBatch]:
        data = self.storage.load(self.table_name, batch_id)
        return InterestBatch.from_dict(data) if data else None

    def list(self, product_code: Optional[str] = None) -> List[InterestBatch]:
        """Batches newest first, optionally for one product"""
        filters = {'product_code': product_code} if product_code else {}
        batches = self._find(**filters)
        batches.reverse()
        return sorted(batches, key=lambda b: b.posted_at, reverse=True)
