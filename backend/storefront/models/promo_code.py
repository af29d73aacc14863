from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Enum as SAEnum, ForeignKey,
    UniqueConstraint, Index, func,
)
from sqlalchemy.orm import relationship
from storefront.core.database import Base

PROMO_CODE_STATUSES = ("active", "inactive", "expired")


class PromoCode(Base):
    """
    プロモーションコード定義

    used_count / total_discount_given / 利用ユーザー (PromoCodeUser) は
    promo_code_service.redeem の条件付きUPDATEでのみ更新する。
    status:
        active   = 利用可能
        inactive = 管理者が停止
        expired  = 有効期限切れ (検証時に遅延遷移、戻らない)
    """
    __tablename__ = "promo_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(50), unique=True, nullable=False, comment="大文字に正規化")
    discount_percent = Column(Integer, nullable=False, comment="割引率 (1〜100)")
    max_usage = Column(Integer, nullable=False, default=100, comment="全体の使用上限")
    max_usage_per_user = Column(Integer, nullable=False, default=1, comment="ユーザー毎の使用上限")
    valid_from = Column(DateTime, nullable=True)
    valid_until = Column(DateTime, nullable=True)
    status = Column(
        SAEnum(*PROMO_CODE_STATUSES, name="promo_code_status"),
        nullable=False,
        default="active",
        index=True,
    )
    used_count = Column(Integer, nullable=False, default=0)
    total_discount_given = Column(Numeric(14, 2), nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    users = relationship("PromoCodeUser", back_populates="promo_code", lazy="selectin")

    __table_args__ = (
        Index("ix_promo_codes_status_valid_until", "status", "valid_until"),
    )

    @property
    def used_by(self) -> set[int]:
        """使用済みユーザーIDの集合"""
        return {u.user_id for u in self.users}


class PromoCodeUser(Base):
    """コード×ユーザー毎の使用回数カウンタ (ユーザー上限の原子的判定用)"""
    __tablename__ = "promo_code_users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    promo_code_id = Column(Integer, ForeignKey("promo_codes.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, nullable=False, index=True)
    used_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    promo_code = relationship("PromoCode", back_populates="users")

    __table_args__ = (
        UniqueConstraint("promo_code_id", "user_id", name="uq_promo_code_user"),
    )
