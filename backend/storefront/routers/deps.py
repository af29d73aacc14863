"""共通依存関数: 認証・ロール制御・キュー/分析ミラー取得"""
from typing import Optional
from fastapi import Request, HTTPException, Depends
from sqlalchemy.orm import Session

from storefront.core.database import get_db
from storefront.core.redis import get_redis
from storefront.core.session import SESSION_COOKIE, get_session, session_user_id
from storefront.models.user import User
from storefront.services import user_service
from storefront.services.analytics_service import AnalyticsMirror
from storefront.worker.queue import OrderQueue


async def get_current_user(
    request: Request,
    db: Session = Depends(get_db),
    r=Depends(get_redis),
) -> Optional[User]:
    """Cookie → Redis → DB でユーザー取得。未ログインならNone"""
    session_data = await get_session(r, request.cookies.get(SESSION_COOKIE))
    user_id = session_user_id(session_data)
    if user_id is None:
        return None
    return user_service.find_active(db, user_id)


async def require_login(
    user: Optional[User] = Depends(get_current_user),
) -> User:
    """ログイン必須。未ログインなら401"""
    if user is None:
        raise HTTPException(status_code=401, detail="User not authenticated")
    return user


async def require_admin(
    user: User = Depends(require_login),
) -> User:
    """管理者権限必須。adminでなければ403"""
    if user.role != "admin":
        raise HTTPException(status_code=403, detail="Admin privileges required")
    return user


def get_order_queue(request: Request) -> OrderQueue:
    """lifespan で接続した注文キュー"""
    return request.app.state.order_queue


def get_analytics_mirror(request: Request) -> AnalyticsMirror:
    return request.app.state.analytics_mirror
