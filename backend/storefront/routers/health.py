from fastapi import APIRouter
from storefront.core.database import check_db_connection, analytics_engine
from storefront.core.redis import check_redis_connection

router = APIRouter()


@router.get("/health")
@router.get("/api/health")
async def health_check():
    """ヘルスチェックエンドポイント"""
    db_ok = check_db_connection()
    analytics_ok = check_db_connection(analytics_engine)
    redis_ok = await check_redis_connection()

    # 分析ミラーの停止は注文処理に影響しないため degraded 扱い
    status = "ok" if (db_ok and analytics_ok and redis_ok) else "degraded"

    return {
        "status": status,
        "db": "connected" if db_ok else "disconnected",
        "analytics_db": "connected" if analytics_ok else "disconnected",
        "redis": "connected" if redis_ok else "disconnected",
    }
