"""プロモーションコード使用履歴API (業務DBの台帳から参照)"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from storefront.core.database import get_db
from storefront.routers.deps import require_login
from storefront.services import promo_usage_service

router = APIRouter(prefix="/api/promo-code-usage", tags=["promo-code-usage"])


def _to_response(result: dict) -> dict:
    return {
        "success": True,
        "history": [promo_usage_service.serialize_usage(u) for u in result["history"]],
        "total": result["total"],
        "page": result["page"],
        "pages": result["pages"],
    }


@router.get("/promo/{code}")
async def get_promo_code_history(
    code: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    _=Depends(require_login),
):
    """コード別の使用履歴"""
    return _to_response(promo_usage_service.get_promo_code_history(db, code, page, limit))


@router.get("/user/{user_id}")
async def get_user_promo_code_history(
    user_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    _=Depends(require_login),
):
    """ユーザー別の使用履歴"""
    return _to_response(promo_usage_service.get_user_promo_code_history(db, user_id, page, limit))
