"""
テスト共通設定

業務DB・分析DBともに SQLite インメモリ (StaticPool) を使う。
storefront.* の import より先に環境変数を設定すること。
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ANALYTICS_DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("SEED_DEFAULT_PROMO_CODE", "false")
os.environ.setdefault("DEBUG", "false")

from datetime import timedelta  # noqa: E402
from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from storefront.core.database import Base, AnalyticsBase  # noqa: E402
from storefront.models.user import User  # noqa: E402
from storefront.services import promo_code_service  # noqa: E402
from storefront.services.analytics_service import AnalyticsMirror  # noqa: E402


def _memory_engine():
    return create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


@pytest.fixture
def engine():
    engine = _memory_engine()
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def analytics_engine():
    engine = _memory_engine()
    AnalyticsBase.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def analytics_session_factory(analytics_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=analytics_engine)


@pytest.fixture
def retry_scheduler():
    return MagicMock()


@pytest.fixture
def mirror(analytics_session_factory, retry_scheduler):
    return AnalyticsMirror(
        session_factory=analytics_session_factory,
        retry_scheduler=retry_scheduler,
        retry_delay=5,
    )


def _create_user(db, email, name, role="user"):
    user = User(email=email, name=name, role=role, status="active")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def user(db):
    return _create_user(db, "u1@example.com", "User One")


@pytest.fixture
def other_user(db):
    return _create_user(db, "u2@example.com", "User Two")


@pytest.fixture
def admin_user(db):
    return _create_user(db, "admin@example.com", "Admin", role="admin")


@pytest.fixture
def promo(db):
    """SUMMER2024: 20%オフ、全体100回、1人10回"""
    now = promo_code_service.utcnow()
    return promo_code_service.create_promo_code(
        db,
        code="SUMMER2024",
        discount_percent=20,
        max_usage=100,
        max_usage_per_user=10,
        valid_from=now - timedelta(days=1),
        valid_until=now + timedelta(days=30),
    )
