"""
Party Module

Members and non-members who own deposit accounts. The party id doubles as the
customer-facing account number for every product the party holds.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .audit import AuditTrail, AuditEventType
from .clock import Clock, parse_datetime
from .errors import (
    NotFoundError, StateConflictError, ValidationError,
    DUPLICATE_PARTY, INACTIVE_PARTY
)
from .storage import StorageInterface, StorageRecord, UniqueConstraintViolation


class PartyType(Enum):
    """Whether the party is a cooperative member"""
    MEMBER = "member"
    NON_MEMBER = "non_member"


class PartyStatus(Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


@dataclass
class Party(StorageRecord):
    """Account holder; id is the party id"""
    party_type: PartyType
    name: str
    status: PartyStatus = PartyStatus.ACTIVE
    address: str = ""

    @property
    def party_id(self) -> str:
        return self.id

    @property
    def is_active(self) -> bool:
        return self.status == PartyStatus.ACTIVE

    @property
    def is_member(self) -> bool:
        return self.party_type == PartyType.MEMBER

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Party':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            party_type=PartyType(data['party_type']),
            name=data.get('name', ''),
            status=PartyStatus(data.get('status', PartyStatus.ACTIVE.value)),
            address=data.get('address', ''),
        )


class PartyStore:
    """Persistence and registration of parties"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail, clock: Clock):
        self.storage = storage
        self.audit_trail = audit_trail
        self.clock = clock
        self.table_name = "parties"

    def get(self, party_id: str) -> Optional[Party]:
        data = self.storage.load(self.table_name, party_id)
        return Party.from_dict(data) if data else None

    def require(self, party_id: str) -> Party:
        party = self.get(party_id)
        if party is None:
            raise NotFoundError("Party", party_id)
        return party

    def require_active(self, party_id: str) -> Party:
        party = self.require(party_id)
        if not party.is_active:
            raise StateConflictError(
                f"Party {party_id} is inactive",
                reason=INACTIVE_PARTY,
                details={'party_id': party_id}
            )
        return party

    def create(self, party: Party) -> Party:
        try:
            self.storage.insert(self.table_name, party.id, party.to_dict())
        except UniqueConstraintViolation as e:
            raise StateConflictError(
                f"Party {party.id} already exists",
                reason=DUPLICATE_PARTY,
                details={'party_id': party.id}
            ) from e
        return party

    def register(self, party_id: str, party_type: PartyType, name: str,
                 address: str = "", actor: str = "system") -> Party:
        """Register a new party"""
        if not party_id or not party_id.strip():
            raise ValidationError("Party id is required")

        now = self.clock.now()
        party = Party(
            id=party_id.strip(),
            created_at=now,
            updated_at=now,
            party_type=party_type,
            name=name,
            address=address,
        )
        with self.storage.atomic():
            self.create(party)
            self.audit_trail.log_event(
                AuditEventType.PARTY_REGISTERED,
                entity_type="party",
                entity_id=party.id,
                metadata={'party_type': party_type.value, 'name': name},
                actor=actor
            )
        return party

    def set_status(self, party_id: str, status: PartyStatus) -> Party:
        party = self.require(party_id)
        party.status = status
        party.updated_at = self.clock.now()
        self.storage.save(self.table_name, party.id, party.to_dict())
        return party

    def list_active(self) -> List[Party]:
        """Active parties in registration order"""
        return [
            Party.from_dict(data)
            for data in self.storage.find(self.table_name, {'status': PartyStatus.ACTIVE.value})
        ]
