from sqlalchemy import Column, Integer, String, DateTime, Enum as SAEnum, func
from storefront.core.database import Base


class User(Base):
    """ユーザー (注文・コード使用の主体。作成・認証は別サービス)"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(200), nullable=False)
    phone = Column(String(50), nullable=True, index=True)
    role = Column(SAEnum("user", "admin", name="user_role"), nullable=False, default="user")
    status = Column(
        SAEnum("active", "inactive", "pending", name="user_status"),
        nullable=False,
        default="active",
        index=True,
    )
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
