from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, ForeignKey, UniqueConstraint, Index,
)
from storefront.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PromoUsage(Base):
    """プロモーションコード使用台帳 (1注文につき1件、追記のみ)"""
    __tablename__ = "promo_usages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    promo_code_id = Column(Integer, ForeignKey("promo_codes.id"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, unique=True)
    order_amount = Column(Numeric(14, 2), nullable=False)
    discount_amount = Column(Numeric(14, 2), nullable=False)
    final_amount = Column(Numeric(14, 2), nullable=False)
    discount_percent = Column(Integer, nullable=False)
    promo_code = Column(String(50), nullable=False, index=True)
    used_at = Column(DateTime, nullable=False, default=_utcnow, index=True)

    __table_args__ = (
        UniqueConstraint("promo_code_id", "user_id", "order_id", name="uq_promo_usage_code_user_order"),
        Index("ix_promo_usages_user_code", "user_id", "promo_code_id"),
    )
