"""プロモーションコードAPI (検証・試算・統計)"""
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from storefront.core.database import get_db
from storefront.core.rate_limit import limiter, PROMO_VALIDATE_RATE_LIMIT
from storefront.routers.deps import require_login
from storefront.schemas.promo_code import ValidatePromoCodeRequest, ApplyPromoCodeRequest
from storefront.services import promo_code_service

router = APIRouter(prefix="/api/promo-codes", tags=["promo-codes"])


@router.post("/validate")
@limiter.limit(PROMO_VALIDATE_RATE_LIMIT)
async def validate_promo_code(
    request: Request,
    data: ValidatePromoCodeRequest,
    db: Session = Depends(get_db),
    _=Depends(require_login),
):
    v = promo_code_service.validate_promo_code(db, data.code, data.user_id)
    return {
        "success": True,
        "validation": {
            "is_valid": v.is_valid,
            "discount_percent": v.discount_percent,
            "message": v.message,
        },
    }


@router.post("/apply")
async def apply_promo_code(
    data: ApplyPromoCodeRequest,
    db: Session = Depends(get_db),
    _=Depends(require_login),
):
    """割引額の試算"""
    result = promo_code_service.apply_promo_code(db, data.code, data.user_id, data.order_amount)
    return {
        "success": result["success"],
        "data": {
            "original_amount": float(result["original_amount"]),
            "discount_amount": float(result["discount_amount"]),
            "final_amount": float(result["final_amount"]),
            "discount_percent": result["discount_percent"],
            "message": result["message"],
        },
    }


@router.get("/stats")
async def get_promo_code_stats(
    code: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
    _=Depends(require_login),
):
    stats = promo_code_service.get_promo_code_stats(db, code)
    stats["total_discount_given"] = float(stats["total_discount_given"])
    return {"success": True, "stats": stats}
