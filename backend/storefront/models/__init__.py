# 全モデルをインポート (Alembic autogenerate用)
from storefront.models.user import User
from storefront.models.promo_code import PromoCode, PromoCodeUser
from storefront.models.order import Order
from storefront.models.promo_usage import PromoUsage
from storefront.models.analytics import UserStats, PromoCodeStats, PromoCodeUsageHistory, OrderAnalytics

__all__ = [
    "User",
    "PromoCode",
    "PromoCodeUser",
    "Order",
    "PromoUsage",
    "UserStats",
    "PromoCodeStats",
    "PromoCodeUsageHistory",
    "OrderAnalytics",
]
