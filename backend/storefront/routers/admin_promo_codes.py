"""管理画面: プロモーションコード管理"""
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from storefront.core.database import get_db
from storefront.routers.deps import require_admin
from storefront.schemas.promo_code import PromoCodeCreate
from storefront.services import promo_code_service

router = APIRouter(prefix="/api/admin/promo-codes", tags=["admin-promo-codes"])


def _to_naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """タイムゾーン付きはUTCに変換してから保存 (DBはnaive UTC)"""
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


@router.get("")
async def list_promo_codes(db: Session = Depends(get_db), _=Depends(require_admin)):
    """プロモーションコード一覧"""
    return [promo_code_service.serialize_promo_code(p) for p in promo_code_service.list_promo_codes(db)]


@router.post("")
async def create_promo_code(
    data: PromoCodeCreate,
    db: Session = Depends(get_db),
    _=Depends(require_admin),
):
    """プロモーションコード作成"""
    promo = promo_code_service.create_promo_code(
        db,
        code=data.code,
        discount_percent=data.discount_percent,
        max_usage=data.max_usage,
        max_usage_per_user=data.max_usage_per_user,
        valid_from=_to_naive_utc(data.valid_from),
        valid_until=_to_naive_utc(data.valid_until),
    )
    return promo_code_service.serialize_promo_code(promo)


@router.put("/{code}/deactivate")
async def deactivate_promo_code(
    code: str,
    db: Session = Depends(get_db),
    _=Depends(require_admin),
):
    """プロモーションコード無効化"""
    promo = promo_code_service.deactivate_promo_code(db, code)
    return {"success": True, "code": promo.code, "status": promo.status}
