"""注文処理ビジネスロジック

process_order が1ジョブ分の処理本体。キュー経由 (worker/tasks.py) と
同期作成 (create_order_direct) のどちらも同じ関数を通る。

    1. ユーザー上限の事前チェック (台帳件数)
    2. コード消費 (条件付きUPDATE)
    3. final_amount = amount - discount_amount
    4. 注文INSERT
    5. 使用台帳に記録 (order_id で冪等)
    6. 分析ミラー同期 (失敗は握りつぶして1回だけ再試行)
    7. 注文を返す
"""
import math
import secrets
import time
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from sqlalchemy import case, func as sa_func
from sqlalchemy.orm import Session

from storefront.core.exceptions import UserNotFound, ValidationError
from storefront.core.logging import get_logger
from storefront.models.order import Order
from storefront.models.promo_code import PromoCode
from storefront.services import promo_code_service, promo_usage_service, user_service

logger = get_logger(__name__)

ProgressCallback = Callable[[int], None]

# orders.amount (DECIMAL(14,2)) に収まる上限
MAX_AMOUNT = Decimal(10) ** 12


def generate_request_id(prefix: str = "order") -> str:
    """リクエストID: <prefix>_<ミリ秒>_<ランダム9文字>"""
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"


def validate_amount(amount) -> Decimal:
    try:
        value = promo_code_service.to_decimal(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError("Amount must be a number")
    if not value.is_finite() or value <= 0:
        raise ValidationError("Amount must be greater than 0")
    if value >= MAX_AMOUNT:
        raise ValidationError(f"Amount must be less than {MAX_AMOUNT}")
    if value != value.quantize(promo_code_service.CENT):
        raise ValidationError("Amount must have at most 2 decimal places")
    return value.quantize(promo_code_service.CENT)


def _report(progress: Optional[ProgressCallback], value: int) -> None:
    if progress is not None:
        progress(value)


def _record_ledger(db: Session, order: Order, discount_percent: int, mirror) -> None:
    promo_usage_service.record_usage(
        db,
        promo_code_id=order.promo_code_id,
        promo_code=order.promo_code,
        user_id=order.user_id,
        order_id=order.id,
        order_amount=order.amount,
        discount_amount=order.discount_amount,
        final_amount=order.final_amount,
        discount_percent=discount_percent,
        mirror=mirror,
    )


def process_order(
    db: Session,
    user_id: int,
    amount,
    promo_code: Optional[str] = None,
    request_id: Optional[str] = None,
    mirror=None,
    progress: Optional[ProgressCallback] = None,
) -> Order:
    """注文処理本体 (1回分の試行)。手順1〜5の失敗は例外で中断する"""
    amount = validate_amount(amount)
    logger.info(f"注文処理開始: request_id={request_id}, user_id={user_id}")

    # 同じrequest_idの注文が既にある = 前回試行が台帳記録前に中断
    if request_id:
        existing = db.query(Order).filter(Order.request_id == request_id).first()
        if existing:
            logger.info(f"注文作成済み: request_id={request_id}, order_id={existing.id}")
            discount_percent = 0
            if existing.promo_code_id:
                promo = db.get(PromoCode, existing.promo_code_id)
                discount_percent = promo.discount_percent if promo else 0
                _record_ledger(db, existing, discount_percent, mirror)
            # 分析ミラーは order_id 単位で反映済みならスキップされる
            if mirror is not None:
                mirror.sync_order(db, existing, discount_percent)
            _report(progress, 100)
            return existing

    discount_amount = Decimal(0)
    promo_code_id = None
    promo_code_used = None
    discount_percent = 0

    if promo_code:
        result = promo_usage_service.apply_promo_code_with_limit(db, promo_code, user_id, amount)
        discount_amount = result.discount_amount
        promo_code_id = result.promo_code_id
        promo_code_used = promo_code_service.normalize_code(promo_code)
        discount_percent = result.discount_percent
    _report(progress, 30)

    order = Order(
        user_id=user_id,
        amount=amount,
        discount_amount=discount_amount,
        final_amount=amount - discount_amount,
        status="completed",
        promo_code_id=promo_code_id,
        promo_code=promo_code_used,
        request_id=request_id,
    )
    db.add(order)
    db.commit()
    db.refresh(order)
    _report(progress, 60)

    if promo_code_id:
        _record_ledger(db, order, discount_percent, mirror)
    _report(progress, 80)

    if mirror is not None:
        mirror.sync_order(db, order, discount_percent)
    _report(progress, 100)

    logger.info(f"注文処理完了: request_id={request_id}, order_id={order.id}")
    return order


def create_order_direct(
    db: Session,
    user_id: int,
    amount,
    promo_code: Optional[str] = None,
    mirror=None,
) -> Order:
    """キューを使わずに注文を作成 (エラーは呼び出し元へそのまま送出)"""
    validate_amount(amount)
    request_id = generate_request_id("direct")
    logger.info(f"同期注文: request_id={request_id}, user_id={user_id}")
    return process_order(db, user_id, amount, promo_code, request_id=request_id, mirror=mirror)


def get_order_by_id(db: Session, order_id: int) -> Optional[Order]:
    return db.query(Order).filter(Order.id == order_id).first()


def _paginate(db: Session, q, page: int, limit: int) -> dict:
    total = q.count()
    orders = (
        q.order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    users = user_service.find_many(db, [o.user_id for o in orders])
    return {
        "orders": [serialize_order(o, users.get(o.user_id)) for o in orders],
        "total": total,
        "page": page,
        "pages": math.ceil(total / limit) if limit else 0,
    }


def get_user_orders(db: Session, user_id: int, page: int = 1, limit: int = 10) -> dict:
    """ユーザーの注文一覧 (新しい順)"""
    return _paginate(db, db.query(Order).filter(Order.user_id == user_id), page, limit)


def get_all_orders(
    db: Session,
    page: int = 1,
    limit: int = 20,
    user_id: Optional[int] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> dict:
    """全注文一覧 (管理者用)"""
    q = db.query(Order)
    if user_id:
        q = q.filter(Order.user_id == user_id)
    if start_date:
        q = q.filter(Order.created_at >= start_date)
    if end_date:
        q = q.filter(Order.created_at <= end_date)
    return _paginate(db, q, page, limit)


def get_user_stats(db: Session, user_id: int) -> dict:
    """ユーザーの注文統計"""
    if user_service.find_by_id(db, user_id) is None:
        raise UserNotFound(f"User {user_id} not found")

    row = db.query(
        sa_func.count(Order.id),
        sa_func.coalesce(sa_func.sum(Order.amount), 0),
        sa_func.coalesce(sa_func.sum(Order.discount_amount), 0),
        sa_func.coalesce(sa_func.sum(Order.final_amount), 0),
        sa_func.coalesce(sa_func.sum(case((Order.promo_code_id.isnot(None), 1), else_=0)), 0),
    ).filter(Order.user_id == user_id).one()

    total_orders, total_amount, total_discount, total_final, promo_usage = row
    return {
        "total_orders": total_orders,
        "total_amount": float(total_amount),
        "total_discount": float(total_discount),
        "avg_order_amount": round(float(total_final) / total_orders) if total_orders else 0,
        "promo_code_usage": int(promo_usage),
    }


def serialize_order(order: Order, user=None) -> dict:
    data = {
        "id": order.id,
        "user_id": order.user_id,
        "amount": float(order.amount),
        "discount_amount": float(order.discount_amount or 0),
        "final_amount": float(order.final_amount),
        "status": order.status,
        "promo_code_id": order.promo_code_id,
        "promo_code": order.promo_code,
        "request_id": order.request_id,
        "created_at": order.created_at.isoformat() if order.created_at else None,
    }
    if user is not None:
        data["user"] = {"email": user.email, "name": user.name}
    return data
