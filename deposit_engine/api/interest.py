"""
Quarterly interest endpoints
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from .dependencies import get_actor, get_engine
from .schemas import (
    InterestPreviewItemModel, InterestPreviewResponse, InterestRunRequest, serialize
)
from ..engine import DepositEngine


router = APIRouter()


@router.get("/preview", response_model=InterestPreviewResponse)
async def preview_interest(
    product_code: str = Query(...),
    quarter_key: str = Query(..., description="Fiscal quarter, e.g. 2025Q1"),
    engine: DepositEngine = Depends(get_engine)
):
    """Interest each eligible account would receive; nothing is posted"""
    preview = engine.preview_interest(product_code, quarter_key)
    return InterestPreviewResponse(
        product_code=preview.product_code,
        quarter_key=preview.quarter_key,
        period_start=preview.period_start.isoformat(),
        period_end=preview.period_end.isoformat(),
        account_count=preview.account_count,
        total_interest=str(preview.total_interest),
        items=[
            InterestPreviewItemModel(
                party_id=item.party_id,
                product_code=item.product_code,
                account_id=item.account_id,
                min_balance=str(item.min_balance),
                interest=str(item.interest),
            )
            for item in preview.items
        ],
    )


@router.post("/run", status_code=201)
async def run_interest(
    request: InterestRunRequest,
    engine: DepositEngine = Depends(get_engine),
    actor: str = Depends(get_actor)
) -> Dict[str, Any]:
    """Post a quarter's interest as one batch"""
    batch = engine.run_interest(request.product_code, request.quarter_key, actor=actor)
    return {
        "batch": serialize(batch),
        "message": "Interest posted successfully"
    }


@router.get("/batches")
async def list_batches(
    product_code: Optional[str] = Query(None),
    engine: DepositEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """Posted batches, newest first"""
    batches = engine.list_batches(product_code)
    return {"batches": serialize(batches), "count": len(batches)}


@router.get("/batches/{batch_id}")
async def get_batch(batch_id: str, engine: DepositEngine = Depends(get_engine)) -> Dict[str, Any]:
    return serialize(engine.get_batch(batch_id))


@router.post("/reverse")
async def reverse_batch(
    request: InterestRunRequest,
    engine: DepositEngine = Depends(get_engine),
    actor: str = Depends(get_actor)
) -> Dict[str, Any]:
    """Reverse the latest batch for a product and quarter"""
    batch = engine.reverse_batch(request.product_code, request.quarter_key, actor=actor)
    return {
        "batch": serialize(batch),
        "message": "Interest batch reversed"
    }
