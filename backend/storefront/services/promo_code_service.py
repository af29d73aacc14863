"""プロモーションコード管理・原子的な使用処理

used_count の上限は redeem() の条件付きUPDATEのみで保証する。
事前チェック (validate_promo_code) はUI向けの目安であり、実際の使用判定には使わない。
"""
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import update, or_, func as sa_func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.core.exceptions import PromoCodeNotFound, ValidationError
from storefront.core.logging import get_logger
from storefront.models.promo_code import PromoCode, PromoCodeUser, PROMO_CODE_STATUSES
from storefront.models.promo_usage import PromoUsage

logger = get_logger(__name__)

DEFAULT_PROMO_CODE = "SUMMER2024"

NOT_AVAILABLE_MESSAGE = "Promo code not available or limit reached"
USER_LIMIT_MESSAGE = "You have reached your usage limit for this promo code"
EXPIRED_MESSAGE = "Promo code has expired"
NOT_YET_VALID_MESSAGE = "Promo code is not yet valid"
LIMIT_REACHED_MESSAGE = "Promo code usage limit reached"

CENT = Decimal("0.01")


@dataclass
class RedemptionResult:
    success: bool
    discount_amount: Decimal
    final_amount: Decimal
    discount_percent: int
    message: Optional[str] = None
    promo_code_id: Optional[int] = None
    user_limit_exceeded: bool = False


@dataclass
class ValidationResult:
    is_valid: bool
    discount_percent: int
    message: Optional[str] = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def to_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def calculate_discount(order_amount, discount_percent: int) -> Decimal:
    """割引額 = 注文額 × 割引率 / 100 (この層では丸めない)"""
    return to_decimal(order_amount) * Decimal(discount_percent) / Decimal(100)


def to_cents(value) -> Decimal:
    """金額を1セント単位に丸める (四捨五入)。保存する割引額は必ずこれを通す"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def get_promo_code(db: Session, code: str) -> PromoCode:
    """コードで取得。存在しなければ PromoCodeNotFound"""
    promo = db.query(PromoCode).filter(PromoCode.code == normalize_code(code)).first()
    if not promo:
        raise PromoCodeNotFound(f"Promo code {code} not found")
    return promo


def list_promo_codes(db: Session) -> list[PromoCode]:
    """プロモーションコード一覧 (新しい順)"""
    return db.query(PromoCode).order_by(PromoCode.created_at.desc(), PromoCode.id.desc()).all()


def create_promo_code(
    db: Session,
    discount_percent: int,
    max_usage: int,
    max_usage_per_user: int,
    code: Optional[str] = None,
    valid_from: Optional[datetime] = None,
    valid_until: Optional[datetime] = None,
    status: str = "active",
) -> PromoCode:
    """プロモーションコード作成 (管理者用)"""
    code = normalize_code(code) if code else secrets.token_hex(4).upper()
    if not 4 <= len(code) <= 50:
        raise ValidationError("Promo code must be between 4 and 50 characters")
    if not 1 <= discount_percent <= 100:
        raise ValidationError("discountPercent must be between 1 and 100")
    if max_usage < 1 or max_usage_per_user < 1:
        raise ValidationError("maxUsage and maxUsagePerUser must be at least 1")
    if status not in PROMO_CODE_STATUSES:
        raise ValidationError(f"Invalid status: {status}")
    if valid_from and valid_until and valid_until <= valid_from:
        raise ValidationError("validUntil must be after validFrom")

    if db.query(PromoCode.id).filter(PromoCode.code == code).first():
        raise ValidationError(f"Promo code {code} already exists")

    promo = PromoCode(
        code=code,
        discount_percent=discount_percent,
        max_usage=max_usage,
        max_usage_per_user=max_usage_per_user,
        valid_from=valid_from,
        valid_until=valid_until,
        status=status,
        used_count=0,
        total_discount_given=0,
    )
    db.add(promo)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValidationError(f"Promo code {code} already exists")
    db.refresh(promo)
    logger.info(f"プロモーションコード作成: code={code}, discount={discount_percent}%")
    return promo


def ensure_default_promo_code(db: Session) -> Optional[PromoCode]:
    """初期プロモーションコード (SUMMER2024) を作成。既存なら何もしない"""
    if db.query(PromoCode.id).filter(PromoCode.code == DEFAULT_PROMO_CODE).first():
        return None
    now = utcnow()
    return create_promo_code(
        db,
        code=DEFAULT_PROMO_CODE,
        discount_percent=20,
        max_usage=100,
        max_usage_per_user=10,
        valid_from=now,
        valid_until=now + timedelta(days=30),
    )


def deactivate_promo_code(db: Session, code: str) -> PromoCode:
    """プロモーションコード無効化"""
    promo = get_promo_code(db, code)
    promo.status = "inactive"
    db.commit()
    logger.info(f"プロモーションコード無効化: code={promo.code}")
    return promo


def _mark_as_expired(db: Session, promo_code_id: int) -> None:
    """期限切れに遷移 (active → expired のみ、一方向)"""
    db.execute(
        update(PromoCode)
        .where(PromoCode.id == promo_code_id, PromoCode.status == "active")
        .values(status="expired")
    )
    db.commit()
    logger.info(f"プロモーションコード期限切れ: promo_code_id={promo_code_id}")


def _count_user_usages(db: Session, promo_code_id: int, user_id: int) -> int:
    return db.query(sa_func.count(PromoUsage.id)).filter(
        PromoUsage.promo_code_id == promo_code_id,
        PromoUsage.user_id == user_id,
    ).scalar() or 0


def validate_promo_code(db: Session, code: str, user_id: int) -> ValidationResult:
    """
    読み取り専用の事前チェック。

    順序: 存在 → ステータス → 開始日 → 終了日 (超過時は expired に遷移)
          → 全体上限 → ユーザー上限 (台帳の件数)
    """
    try:
        promo = get_promo_code(db, code)
    except PromoCodeNotFound as e:
        return ValidationResult(is_valid=False, discount_percent=0, message=e.message)

    if promo.status != "active":
        return ValidationResult(False, 0, f"Promo code is {promo.status}")

    now = utcnow()
    if promo.valid_from and now < promo.valid_from:
        return ValidationResult(False, 0, NOT_YET_VALID_MESSAGE)

    if promo.valid_until and now > promo.valid_until:
        _mark_as_expired(db, promo.id)
        return ValidationResult(False, 0, EXPIRED_MESSAGE)

    if promo.used_count >= promo.max_usage:
        return ValidationResult(False, 0, LIMIT_REACHED_MESSAGE)

    if _count_user_usages(db, promo.id, user_id) >= promo.max_usage_per_user:
        return ValidationResult(False, 0, USER_LIMIT_MESSAGE)

    return ValidationResult(is_valid=True, discount_percent=promo.discount_percent)


def apply_promo_code(db: Session, code: str, user_id: int, order_amount) -> dict:
    """割引額の試算 (使用回数は消費しない)"""
    amount = to_decimal(order_amount)
    validation = validate_promo_code(db, code, user_id)
    if not validation.is_valid:
        return {
            "success": False,
            "original_amount": amount,
            "discount_amount": Decimal(0),
            "final_amount": amount,
            "discount_percent": 0,
            "message": validation.message,
        }

    discount = to_cents(calculate_discount(amount, validation.discount_percent))
    return {
        "success": True,
        "original_amount": amount,
        "discount_amount": discount,
        "final_amount": amount - discount,
        "discount_percent": validation.discount_percent,
        "message": None,
    }


def _increment_user_counter(db: Session, promo_code_id: int, user_id: int, limit: int) -> bool:
    """コード×ユーザーのカウンタを条件付きで+1。上限到達ならFalse"""
    stmt = (
        update(PromoCodeUser)
        .where(
            PromoCodeUser.promo_code_id == promo_code_id,
            PromoCodeUser.user_id == user_id,
            PromoCodeUser.used_count < limit,
        )
        .values(used_count=PromoCodeUser.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    if db.execute(stmt).rowcount:
        return True

    exists = db.query(PromoCodeUser.id).filter(
        PromoCodeUser.promo_code_id == promo_code_id,
        PromoCodeUser.user_id == user_id,
    ).first()
    if exists or limit < 1:
        return False

    try:
        with db.begin_nested():
            db.add(PromoCodeUser(promo_code_id=promo_code_id, user_id=user_id, used_count=1))
        return True
    except IntegrityError:
        # 同一ユーザーの同時初回使用: 挿入済みの行に対して再判定
        return db.execute(stmt).rowcount > 0


def _unavailable_reason(db: Session, code: str) -> str:
    """条件付きUPDATEが失敗した理由を特定してメッセージを返す"""
    promo = db.query(PromoCode).filter(PromoCode.code == code).first()
    if not promo:
        return f"Promo code {code} not found"
    if promo.status != "active":
        return f"Promo code is {promo.status}"
    now = utcnow()
    if promo.valid_from and now < promo.valid_from:
        return NOT_YET_VALID_MESSAGE
    if promo.valid_until and now > promo.valid_until:
        _mark_as_expired(db, promo.id)
        return EXPIRED_MESSAGE
    if promo.used_count >= promo.max_usage:
        return LIMIT_REACHED_MESSAGE
    return NOT_AVAILABLE_MESSAGE


def redeem(db: Session, code: str, user_id: int, order_amount,
           max_per_user: Optional[int] = None) -> RedemptionResult:
    """
    プロモーションコードを1回分消費する。

    1つのトランザクション内で:
    1. used_count < max_usage かつ active・有効期間内 の場合のみ used_count+1
       (読み取りを挟まない条件付きUPDATE、同時実行でも上限を超えない)
    2. コード×ユーザーのカウンタを max_usage_per_user 未満の場合のみ+1
       失敗したら全体をロールバック (max_per_user 指定時はその値を上限とする)
    3. total_discount_given に割引額を加算
    """
    code_upper = normalize_code(code)
    amount = to_decimal(order_amount)
    now = utcnow()

    try:
        result = db.execute(
            update(PromoCode)
            .where(
                PromoCode.code == code_upper,
                PromoCode.status == "active",
                PromoCode.used_count < PromoCode.max_usage,
                or_(PromoCode.valid_from.is_(None), PromoCode.valid_from <= now),
                or_(PromoCode.valid_until.is_(None), PromoCode.valid_until >= now),
            )
            .values(used_count=PromoCode.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.rollback()
            message = _unavailable_reason(db, code_upper)
            logger.info(f"プロモーションコード使用不可: code={code_upper}, user_id={user_id}, reason={message}")
            return RedemptionResult(False, Decimal(0), amount, 0, message=message)

        promo = (
            db.query(PromoCode)
            .filter(PromoCode.code == code_upper)
            .populate_existing()
            .one()
        )

        per_user_limit = max_per_user if max_per_user is not None else promo.max_usage_per_user
        if not _increment_user_counter(db, promo.id, user_id, per_user_limit):
            db.rollback()
            logger.info(f"ユーザー使用上限到達: code={code_upper}, user_id={user_id}")
            return RedemptionResult(
                False, Decimal(0), amount, 0,
                message=USER_LIMIT_MESSAGE,
                promo_code_id=promo.id,
                user_limit_exceeded=True,
            )

        discount = to_cents(calculate_discount(amount, promo.discount_percent))
        db.execute(
            update(PromoCode)
            .where(PromoCode.id == promo.id)
            .values(total_discount_given=PromoCode.total_discount_given + discount)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"プロモーションコード使用: code={code_upper}, user_id={user_id}, discount={discount}")
    return RedemptionResult(
        success=True,
        discount_amount=discount,
        final_amount=amount - discount,
        discount_percent=promo.discount_percent,
        promo_code_id=promo.id,
    )


def get_promo_code_stats(db: Session, code: str) -> dict:
    """プロモーションコード統計"""
    promo = get_promo_code(db, code)
    db.refresh(promo)
    unique_users = db.query(sa_func.count(PromoCodeUser.id)).filter(
        PromoCodeUser.promo_code_id == promo.id
    ).scalar() or 0
    return {
        "code": promo.code,
        "discount_percent": promo.discount_percent,
        "used_count": promo.used_count,
        "total_discount_given": promo.total_discount_given,
        "unique_users": unique_users,
        "usage_limit": promo.max_usage,
        "remaining_uses": promo.max_usage - promo.used_count,
    }


def serialize_promo_code(p: PromoCode) -> dict:
    return {
        "id": p.id,
        "code": p.code,
        "discount_percent": p.discount_percent,
        "max_usage": p.max_usage,
        "max_usage_per_user": p.max_usage_per_user,
        "valid_from": p.valid_from.isoformat() if p.valid_from else None,
        "valid_until": p.valid_until.isoformat() if p.valid_until else None,
        "status": p.status,
        "used_count": p.used_count,
        "total_discount_given": float(p.total_discount_given or 0),
        "created_at": p.created_at.isoformat() if p.created_at else None,
    }
