from decimal import ROUND_HALF_UP, Decimal
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Enum as SAEnum, ForeignKey, Index, event, func,
)
from storefront.core.database import Base

ORDER_STATUSES = ("pending", "payed", "completed", "cancelled", "refunded")


def _cents(value) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    amount = Column(Numeric(14, 2), nullable=False)
    promo_code_id = Column(Integer, ForeignKey("promo_codes.id", ondelete="SET NULL"), nullable=True, index=True)
    discount_amount = Column(Numeric(14, 2), nullable=False, default=0)
    final_amount = Column(Numeric(14, 2), nullable=False, default=0, comment="amount - discount_amount")
    status = Column(
        SAEnum(*ORDER_STATUSES, name="order_status"),
        nullable=False,
        default="completed",
        index=True,
    )
    promo_code = Column(String(50), nullable=True)
    request_id = Column(String(64), unique=True, nullable=True, comment="キュージョブID")
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_orders_user_created", "user_id", "created_at"),
        Index("ix_orders_status_created", "status", "created_at"),
        Index("ix_orders_promo_created", "promo_code_id", "created_at"),
    )


@event.listens_for(Order, "before_insert")
@event.listens_for(Order, "before_update")
def _recompute_final_amount(mapper, connection, target):
    """amount / discount_amount から final_amount を再計算"""
    amount = _cents(target.amount)
    discount = _cents(target.discount_amount or 0)
    target.amount = amount
    target.discount_amount = discount
    target.final_amount = amount - discount
