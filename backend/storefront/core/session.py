"""Redisセッション参照

セッションの発行はログイン基盤側で行い、ここでは Cookie の session_id から
Redis ハッシュ (user_id, role, ...) を読むだけ。
"""
import time
from typing import Optional

import redis.asyncio as aioredis

from storefront.core.config import settings

SESSION_PREFIX = "session:"
SESSION_TTL = settings.SESSION_TIMEOUT_MINUTES * 60  # 秒
SESSION_COOKIE = "session_id"


async def get_session(r: aioredis.Redis, session_id: str) -> Optional[dict]:
    """セッションを取得し、アイドルタイムアウトを延長する"""
    if not session_id:
        return None
    key = f"{SESSION_PREFIX}{session_id}"
    data = await r.hgetall(key)
    if not data:
        return None
    async with r.pipeline(transaction=True) as pipe:
        pipe.expire(key, SESSION_TTL)
        pipe.hset(key, "last_accessed", str(int(time.time())))
        await pipe.execute()
    return data


def session_user_id(session_data: Optional[dict]) -> Optional[int]:
    """セッションの user_id。壊れた値は未ログイン扱い"""
    if not session_data:
        return None
    try:
        user_id = int(session_data.get("user_id") or 0)
    except (TypeError, ValueError):
        return None
    return user_id or None
