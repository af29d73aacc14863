"""プロモーションコード使用台帳

1注文につき1件のみ記録する (order_id ユニーク)。
同じ order_id で再実行された場合は既存レコードを返し、二重計上しない。
"""
import math
from decimal import Decimal
from typing import Optional

from sqlalchemy import func as sa_func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.core.exceptions import PromoCodeNotAvailable, PromoLimitExceeded
from storefront.core.logging import get_logger
from storefront.models.promo_usage import PromoUsage
from storefront.services import promo_code_service

logger = get_logger(__name__)


def count_user_usage(db: Session, promo_code_id: int, user_id: int) -> int:
    """ユーザーのコード使用回数 (台帳ベース)"""
    return db.query(sa_func.count(PromoUsage.id)).filter(
        PromoUsage.promo_code_id == promo_code_id,
        PromoUsage.user_id == user_id,
    ).scalar() or 0


def get_usage_by_order(db: Session, order_id: int) -> Optional[PromoUsage]:
    return db.query(PromoUsage).filter(PromoUsage.order_id == order_id).first()


def is_promo_code_used_for_order(db: Session, order_id: int, promo_code: Optional[str] = None) -> bool:
    """注文にプロモーションコードが使用済みか"""
    q = db.query(sa_func.count(PromoUsage.id)).filter(PromoUsage.order_id == order_id)
    if promo_code:
        q = q.filter(PromoUsage.promo_code == promo_code_service.normalize_code(promo_code))
    return (q.scalar() or 0) > 0


def record_usage(
    db: Session,
    promo_code_id: int,
    promo_code: str,
    user_id: int,
    order_id: int,
    order_amount,
    discount_amount,
    final_amount,
    discount_percent: int,
    mirror=None,
) -> PromoUsage:
    """
    使用記録を追加 (order_id で冪等)。

    新規作成時のみ分析ミラーへ使用イベントを送る。
    ミラーの失敗は記録して握りつぶす (業務データの整合性には影響しない)。
    """
    existing = get_usage_by_order(db, order_id)
    if existing:
        logger.info(f"使用記録は既に存在: order_id={order_id}, usage_id={existing.id}")
        return existing

    usage = PromoUsage(
        promo_code_id=promo_code_id,
        promo_code=promo_code_service.normalize_code(promo_code),
        user_id=user_id,
        order_id=order_id,
        order_amount=Decimal(str(order_amount)),
        discount_amount=Decimal(str(discount_amount)),
        final_amount=Decimal(str(final_amount)),
        discount_percent=discount_percent,
    )
    db.add(usage)
    try:
        db.commit()
    except IntegrityError:
        # 同一注文の並行記録: 先に書き込まれた方を正とする
        db.rollback()
        existing = get_usage_by_order(db, order_id)
        if existing:
            return existing
        raise
    db.refresh(usage)
    logger.info(f"使用記録作成: usage_id={usage.id}, order_id={order_id}, code={usage.promo_code}")

    if mirror is not None:
        try:
            mirror.record_promo_usage(usage)
        except Exception as e:
            logger.error(f"使用記録の分析ミラー同期失敗: usage_id={usage.id} - {e}")

    return usage


def apply_promo_code_with_limit(db: Session, code: str, user_id: int, order_amount):
    """
    ユーザー上限の事前チェック後にコードを消費する。

    - 台帳件数 >= max_usage_per_user → PromoLimitExceeded
    - redeem 失敗 → PromoCodeNotAvailable (ユーザー上限なら PromoLimitExceeded)
    """
    promo = promo_code_service.get_promo_code(db, code)

    if count_user_usage(db, promo.id, user_id) >= promo.max_usage_per_user:
        raise PromoLimitExceeded(promo_code_service.USER_LIMIT_MESSAGE)

    # 事前チェックの読み取りトランザクションを閉じてから条件付きUPDATEへ
    db.commit()

    result = promo_code_service.redeem(db, code, user_id, order_amount)
    if not result.success:
        if result.user_limit_exceeded:
            raise PromoLimitExceeded(result.message)
        raise PromoCodeNotAvailable(result.message)
    return result


def _paginate(q, page: int, limit: int) -> dict:
    total = q.count()
    history = (
        q.order_by(PromoUsage.used_at.desc(), PromoUsage.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "history": history,
        "total": total,
        "page": page,
        "pages": math.ceil(total / limit) if limit else 0,
    }


def get_promo_code_history(db: Session, promo_code: str, page: int = 1, limit: int = 10) -> dict:
    """コード別の使用履歴 (新しい順)"""
    q = db.query(PromoUsage).filter(PromoUsage.promo_code == promo_code_service.normalize_code(promo_code))
    return _paginate(q, page, limit)


def get_user_promo_code_history(db: Session, user_id: int, page: int = 1, limit: int = 10) -> dict:
    """ユーザー別の使用履歴 (新しい順)"""
    q = db.query(PromoUsage).filter(PromoUsage.user_id == user_id)
    return _paginate(q, page, limit)


def serialize_usage(u: PromoUsage) -> dict:
    return {
        "id": u.id,
        "promo_code_id": u.promo_code_id,
        "promo_code": u.promo_code,
        "user_id": u.user_id,
        "order_id": u.order_id,
        "order_amount": float(u.order_amount),
        "discount_amount": float(u.discount_amount),
        "final_amount": float(u.final_amount),
        "discount_percent": u.discount_percent,
        "used_at": u.used_at.isoformat() if u.used_at else None,
    }
