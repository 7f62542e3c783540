"""
Party, product and deposit account endpoints
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from .dependencies import get_actor, get_engine
from .schemas import (
    AmountRequest, ChangeStatusRequest, OpenAccountRequest, RegisterPartyRequest,
    RegisterProductRequest, parse_amount, serialize
)
from ..engine import DepositEngine
from ..ledger import EntryKind


parties_router = APIRouter()
products_router = APIRouter()
router = APIRouter()


@parties_router.post("", status_code=201)
async def register_party(
    request: RegisterPartyRequest,
    engine: DepositEngine = Depends(get_engine),
    actor: str = Depends(get_actor)
) -> Dict[str, Any]:
    party = engine.register_party(
        request.party_id, request.party_type, request.name, address=request.address, actor=actor
    )
    return {"party_id": party.party_id, "message": "Party registered successfully"}


@parties_router.get("/{party_id}")
async def get_party(party_id: str, engine: DepositEngine = Depends(get_engine)) -> Dict[str, Any]:
    return serialize(engine.get_party(party_id))


@products_router.post("", status_code=201)
async def register_product(
    request: RegisterProductRequest,
    engine: DepositEngine = Depends(get_engine),
    actor: str = Depends(get_actor)
) -> Dict[str, Any]:
    product = engine.register_product(
        code=request.code,
        name=request.name,
        category=request.category,
        interest_method=request.interest_method,
        annual_rate=parse_amount(request.annual_rate, "annual_rate"),
        minimum_balance=parse_amount(request.minimum_balance, "minimum_balance"),
        attributes=request.attributes,
        actor=actor
    )
    return {"product_code": product.code, "message": "Product registered successfully"}


@products_router.get("")
async def list_products(engine: DepositEngine = Depends(get_engine)) -> Dict[str, Any]:
    products = engine.list_products()
    return {"products": serialize(products), "count": len(products)}


@products_router.get("/{code}")
async def get_product(code: str, engine: DepositEngine = Depends(get_engine)) -> Dict[str, Any]:
    return serialize(engine.get_product(code))


@router.post("", status_code=201)
async def open_account(
    request: OpenAccountRequest,
    engine: DepositEngine = Depends(get_engine),
    actor: str = Depends(get_actor)
) -> Dict[str, Any]:
    """Open a deposit account"""
    account = engine.open_account(
        request.party_id, request.product_code,
        initial_deposit=parse_amount(request.initial_deposit, "initial_deposit"),
        actor=actor
    )
    return {
        "account_id": account.id,
        "balance": str(account.principal_balance),
        "message": "Account opened successfully"
    }


@router.get("/{party_id}/{product_code}")
async def get_account(party_id: str, product_code: str,
                      engine: DepositEngine = Depends(get_engine)) -> Dict[str, Any]:
    return serialize(engine.get_account(party_id, product_code))


@router.post("/{party_id}/{product_code}/deposit")
async def deposit(
    party_id: str,
    product_code: str,
    request: AmountRequest,
    engine: DepositEngine = Depends(get_engine),
    actor: str = Depends(get_actor)
) -> Dict[str, Any]:
    entry = engine.deposit(
        party_id, product_code, parse_amount(request.amount), narration=request.narration, actor=actor
    )
    return {"entry": serialize(entry), "balance": str(entry.balance_after)}


@router.post("/{party_id}/{product_code}/withdraw")
async def withdraw(
    party_id: str,
    product_code: str,
    request: AmountRequest,
    engine: DepositEngine = Depends(get_engine),
    actor: str = Depends(get_actor)
) -> Dict[str, Any]:
    entry = engine.withdraw(
        party_id, product_code, parse_amount(request.amount), narration=request.narration, actor=actor
    )
    return {"entry": serialize(entry), "balance": str(entry.balance_after)}


@router.post("/{party_id}/{product_code}/status")
async def change_status(
    party_id: str,
    product_code: str,
    request: ChangeStatusRequest,
    engine: DepositEngine = Depends(get_engine),
    actor: str = Depends(get_actor)
) -> Dict[str, Any]:
    account = engine.change_account_status(party_id, product_code, request.status, actor=actor)
    return {"account_id": account.id, "status": account.status.value}


@router.get("/{party_id}/{product_code}/transactions")
async def list_transactions(
    party_id: str,
    product_code: str,
    kind: Optional[EntryKind] = Query(None),
    engine: DepositEngine = Depends(get_engine)
) -> Dict[str, Any]:
    entries = engine.list_transactions(party_id, product_code, kind=kind)
    return {"transactions": serialize(entries), "count": len(entries)}


@router.get("/{party_id}/{product_code}/reconcile")
async def reconcile(party_id: str, product_code: str,
                    engine: DepositEngine = Depends(get_engine)) -> Dict[str, Any]:
    """Stored balance against a full ledger replay"""
    return serialize(engine.reconcile_account(party_id, product_code))
