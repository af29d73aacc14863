"""分析ミラー用テーブル (AnalyticsBase: 業務DBとは別スキーマ)"""
from sqlalchemy import Column, Integer, String, Numeric, Date, DateTime, SmallInteger, func
from storefront.core.database import AnalyticsBase


class UserStats(AnalyticsBase):
    __tablename__ = "user_stats"

    user_id = Column(Integer, primary_key=True, autoincrement=False)
    email = Column(String(255), nullable=False)
    name = Column(String(200), nullable=False)
    total_orders = Column(Integer, nullable=False, default=0)
    total_amount = Column(Numeric(14, 2), nullable=False, default=0)
    total_discount = Column(Numeric(14, 2), nullable=False, default=0)
    promo_codes_used = Column(Integer, nullable=False, default=0)
    first_order_date = Column(DateTime, nullable=False)
    last_order_date = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    @property
    def avg_order_amount(self):
        return self.total_amount / self.total_orders if self.total_orders else 0


class PromoCodeStats(AnalyticsBase):
    __tablename__ = "promo_code_stats"

    promo_code = Column(String(50), primary_key=True)
    discount_percent = Column(SmallInteger, nullable=False)
    total_uses = Column(Integer, nullable=False, default=0)
    total_discount_given = Column(Numeric(14, 2), nullable=False, default=0)
    total_revenue = Column(Numeric(14, 2), nullable=False, default=0)
    unique_users = Column(Integer, nullable=False, default=0)
    first_use_date = Column(DateTime, nullable=False)
    last_use_date = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    @property
    def avg_discount_per_order(self):
        return self.total_discount_given / self.total_uses if self.total_uses else 0


class PromoCodeUsageHistory(AnalyticsBase):
    """使用イベント (不変)"""
    __tablename__ = "promo_code_usage_history"

    usage_id = Column(String(100), primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    promo_code = Column(String(50), nullable=False, index=True)
    order_id = Column(Integer, nullable=False, index=True)
    order_amount = Column(Numeric(14, 2), nullable=False)
    discount_amount = Column(Numeric(14, 2), nullable=False)
    final_amount = Column(Numeric(14, 2), nullable=False)
    usage_date = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())


class OrderAnalytics(AnalyticsBase):
    """注文イベント (不変)"""
    __tablename__ = "order_analytics"

    order_id = Column(Integer, primary_key=True, autoincrement=False)
    user_id = Column(Integer, nullable=False, index=True)
    order_date = Column(Date, nullable=False, index=True)
    hour = Column(SmallInteger, nullable=False)
    day_of_week = Column(SmallInteger, nullable=False)
    month = Column(SmallInteger, nullable=False)
    order_amount = Column(Numeric(14, 2), nullable=False)
    discount_amount = Column(Numeric(14, 2), nullable=False)
    final_amount = Column(Numeric(14, 2), nullable=False)
    has_promo_code = Column(SmallInteger, nullable=False, default=0)
    promo_code = Column(String(50), nullable=False, default="")
    created_at = Column(DateTime, nullable=False, server_default=func.now())
