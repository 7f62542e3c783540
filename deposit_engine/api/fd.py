"""
Fixed deposit endpoints
"""

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from .dependencies import get_actor, get_engine
from .schemas import (
    MatureOrRenewRequest, OpenFixedDepositRequest, PrematureCloseRequest,
    parse_amount, serialize
)
from ..engine import DepositEngine
from ..fixed_deposits import SNAPSHOT_KEY


router = APIRouter()


def _fd_view(account) -> Dict[str, Any]:
    data = serialize(account)
    data["terms"] = (account.attributes or {}).get(SNAPSHOT_KEY)
    return data


@router.post("/open", status_code=201)
async def open_fd(
    request: OpenFixedDepositRequest,
    engine: DepositEngine = Depends(get_engine),
    actor: str = Depends(get_actor)
) -> Dict[str, Any]:
    """Open a fixed deposit"""
    account = engine.open_fd(
        party_id=request.party_id,
        product_code=request.product_code,
        principal=parse_amount(request.principal, "principal"),
        payout_product_code=request.payout_product_code,
        tenor_days=request.tenor_days,
        actor=actor
    )
    terms = account.attributes[SNAPSHOT_KEY]
    return {
        "account_id": account.id,
        "party_id": account.party_id,
        "product_code": account.product_code,
        "principal": str(account.principal_balance),
        "tenor_days": terms["tenor_days"],
        "annual_rate": terms["annual_rate"],
        "maturity_at": account.maturity_at.isoformat(),
        "message": "FD opened"
    }


@router.get("/preview/maturity")
async def preview_maturity(
    party_id: str = Query(...),
    product_code: str = Query(...),
    engine: DepositEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """Interest and payout the FD would produce at maturity"""
    return serialize(engine.preview_fd_maturity(party_id, product_code))


@router.get("/preview/premature")
async def preview_premature(
    party_id: str = Query(...),
    product_code: str = Query(...),
    as_of: Optional[datetime] = Query(None, description="Evaluation time, default now"),
    engine: DepositEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """Interest and payout if the FD were closed early at as_of"""
    return serialize(engine.preview_fd_premature(party_id, product_code, as_of))


@router.post("/close/premature")
async def premature_close(
    request: PrematureCloseRequest,
    engine: DepositEngine = Depends(get_engine),
    actor: str = Depends(get_actor)
) -> Dict[str, Any]:
    result = engine.premature_close_fd(
        request.party_id, request.product_code, request.payout_product_code, actor=actor
    )
    return {
        "account_id": result.account.id,
        "elapsed_days": result.elapsed_days,
        "interest": str(result.interest),
        "payout": str(result.payout),
        "message": "FD prematurely closed"
    }


@router.post("/mature-or-renew")
async def mature_or_renew(
    request: MatureOrRenewRequest,
    engine: DepositEngine = Depends(get_engine),
    actor: str = Depends(get_actor)
) -> Dict[str, Any]:
    """Pay out a matured FD or roll it into a new term"""
    result = engine.mature_or_renew_fd(
        request.party_id, request.product_code, request.payout_product_code,
        action=request.action,
        tenor_days=request.tenor_days,
        renewal_mode=request.renewal_mode,
        actor=actor
    )
    data = serialize(result)
    data["account"] = _fd_view(result.account)
    return data


@router.get("/{party_id}/{product_code}")
async def get_fd(party_id: str, product_code: str,
                 engine: DepositEngine = Depends(get_engine)) -> Dict[str, Any]:
    return _fd_view(engine.get_fd(party_id, product_code))
