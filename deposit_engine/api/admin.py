"""
Admin endpoints (audit verification, product totals)
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from .dependencies import get_engine
from ..engine import DepositEngine


router = APIRouter()


@router.get("/audit/verify")
async def verify_audit(engine: DepositEngine = Depends(get_engine)) -> Dict[str, Any]:
    """Check the audit hash chain"""
    return engine.verify_audit_integrity()


@router.get("/products/{code}/totals")
async def product_totals(code: str, engine: DepositEngine = Depends(get_engine)) -> Dict[str, Any]:
    total_balance, total_interest_paid = engine.totals.get_totals(code)
    return {
        "product_code": code,
        "total_balance": str(total_balance),
        "total_interest_paid": str(total_interest_paid),
    }
