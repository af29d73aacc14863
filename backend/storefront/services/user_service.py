"""ユーザーディレクトリ (注文・分析ミラーから参照)"""
from typing import Optional
from sqlalchemy.orm import Session

from storefront.models.user import User


def find_by_id(db: Session, user_id: int) -> Optional[User]:
    """IDでユーザー取得。存在しなければNone"""
    return db.query(User).filter(User.id == user_id).first()


def find_active(db: Session, user_id: int) -> Optional[User]:
    """ログイン可能なユーザーのみ"""
    return db.query(User).filter(User.id == user_id, User.status == "active").first()


def find_many(db: Session, user_ids) -> dict[int, User]:
    """ID一覧からユーザーをまとめて取得 (user_id → User)"""
    ids = {uid for uid in user_ids if uid is not None}
    if not ids:
        return {}
    return {u.id: u for u in db.query(User).filter(User.id.in_(ids)).all()}
