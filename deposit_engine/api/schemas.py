"""
Pydantic schemas for API requests and responses

Money always travels as a decimal string ("1250.50"), never as a JSON number.
"""

from dataclasses import asdict, is_dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..accounts import AccountStatus
from ..errors import ValidationError
from ..fixed_deposits import MaturityAction, RenewalMode
from ..money import to_decimal
from ..parties import PartyType
from ..products import DepositCategory, InterestMethod
from ..storage import to_jsonable


def parse_amount(value: Optional[str], field: str = "amount") -> Optional[Decimal]:
    """Decimal from a request string; bad input is a validation error"""
    if value is None:
        return None
    try:
        return to_decimal(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid {field}: {value!r}", details={'field': field}) from e


def serialize(value: Any) -> Any:
    """JSON-safe form of a record, result dataclass or list of them"""
    if isinstance(value, list):
        return [serialize(item) for item in value]
    if hasattr(value, 'to_dict'):
        return value.to_dict()
    if is_dataclass(value):
        return to_jsonable(asdict(value))
    return to_jsonable(value)


# Parties and products

class RegisterPartyRequest(BaseModel):
    party_id: str = Field(..., min_length=1)
    party_type: PartyType
    name: str
    address: str = ""


class RegisterProductRequest(BaseModel):
    code: str = Field(..., min_length=1)
    name: str
    category: DepositCategory
    interest_method: InterestMethod = InterestMethod.NONE
    annual_rate: Optional[str] = Field(None, description="Annual rate as a decimal string, 0.12 for 12%")
    minimum_balance: str = Field("0.00", description="Decimal amount as string")
    attributes: Dict[str, Any] = Field(default_factory=dict)


# Accounts

class OpenAccountRequest(BaseModel):
    party_id: str
    product_code: str
    initial_deposit: str = Field("0.00", description="Decimal amount as string")


class AmountRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    narration: Optional[str] = None


class ChangeStatusRequest(BaseModel):
    status: AccountStatus


# Quarterly interest

class InterestRunRequest(BaseModel):
    product_code: str
    quarter_key: str = Field(..., description="Fiscal quarter, e.g. 2025Q1")


class InterestPreviewItemModel(BaseModel):
    party_id: str
    product_code: str
    account_id: str
    min_balance: str
    interest: str


class InterestPreviewResponse(BaseModel):
    product_code: str
    quarter_key: str
    period_start: str
    period_end: str
    account_count: int
    total_interest: str
    items: List[InterestPreviewItemModel]


# Fixed deposits

class OpenFixedDepositRequest(BaseModel):
    party_id: str
    product_code: str
    principal: str = Field(..., description="Decimal amount as string")
    payout_product_code: str = Field(..., description="Savings product receiving payouts")
    tenor_days: Optional[int] = None


class PrematureCloseRequest(BaseModel):
    party_id: str
    product_code: str
    payout_product_code: str


class MatureOrRenewRequest(BaseModel):
    party_id: str
    product_code: str
    payout_product_code: str
    action: MaturityAction = MaturityAction.WITHDRAW
    tenor_days: Optional[int] = None
    renewal_mode: Optional[RenewalMode] = None
