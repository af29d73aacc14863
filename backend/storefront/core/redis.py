import redis.asyncio as aioredis
import redis as sync_redis
from storefront.core.config import settings

# リクエストID予約キー (同じ request_id のジョブは1回だけ投入する)
REQUEST_KEY_PREFIX = "order_request:"

# 非同期Redis (FastAPI: セッション参照用)
redis_pool = aioredis.ConnectionPool.from_url(
    settings.REDIS_URL,
    max_connections=20,
    decode_responses=True,
)


async def get_redis() -> aioredis.Redis:
    """FastAPI依存関数: 非同期Redisクライアント取得"""
    return aioredis.Redis(connection_pool=redis_pool)


def create_sync_redis(url: str = None) -> sync_redis.Redis:
    """同期Redisクライアント生成 (注文キュー/Worker用)

    RQはジョブをpickleで保存するため decode_responses は無効にする。
    """
    return sync_redis.Redis.from_url(url or settings.REDIS_URL)


def reserve_request_id(conn: sync_redis.Redis, request_id: str, ttl: int) -> bool:
    """request_id を予約。既に予約済みなら False"""
    return bool(conn.set(f"{REQUEST_KEY_PREFIX}{request_id}", "1", nx=True, ex=ttl))


def release_request_id(conn: sync_redis.Redis, request_id: str) -> None:
    conn.delete(f"{REQUEST_KEY_PREFIX}{request_id}")


async def check_redis_connection() -> bool:
    """Redis接続チェック"""
    try:
        r = await get_redis()
        await r.ping()
        return True
    except Exception:
        return False
