"""プロモーションコード管理・原子的な使用処理のテスト"""
import threading
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from storefront.core.database import Base
from storefront.core.exceptions import PromoCodeNotFound, ValidationError
from storefront.models.promo_code import PromoCode, PromoCodeUser
from storefront.services import promo_code_service
from storefront.services.promo_code_service import (
    EXPIRED_MESSAGE,
    LIMIT_REACHED_MESSAGE,
    NOT_YET_VALID_MESSAGE,
    USER_LIMIT_MESSAGE,
)


def _make_code(db, code="LIMITED", max_usage=1, max_usage_per_user=1, discount_percent=10, **kwargs):
    return promo_code_service.create_promo_code(
        db,
        code=code,
        discount_percent=discount_percent,
        max_usage=max_usage,
        max_usage_per_user=max_usage_per_user,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# 作成・取得
# ---------------------------------------------------------------------------

def test_create_promo_code_normalizes_code(db):
    promo = _make_code(db, code="  spring25 ")
    assert promo.code == "SPRING25"
    assert promo.status == "active"
    assert promo.used_count == 0
    assert promo.used_by == set()


def test_create_promo_code_generates_code_when_missing(db):
    promo = promo_code_service.create_promo_code(db, discount_percent=5, max_usage=10, max_usage_per_user=1)
    assert len(promo.code) == 8
    assert promo.code == promo.code.upper()


def test_create_promo_code_rejects_duplicate(db, promo):
    with pytest.raises(ValidationError, match="already exists"):
        _make_code(db, code="summer2024")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"code": "ABC"},
        {"discount_percent": 0},
        {"discount_percent": 101},
        {"max_usage": 0},
        {"max_usage_per_user": 0},
    ],
)
def test_create_promo_code_rejects_invalid_values(db, kwargs):
    params = {"code": "VALID1", "discount_percent": 10, "max_usage": 5, "max_usage_per_user": 1}
    params.update(kwargs)
    with pytest.raises(ValidationError):
        promo_code_service.create_promo_code(db, **params)


def test_create_promo_code_rejects_inverted_period(db):
    now = promo_code_service.utcnow()
    with pytest.raises(ValidationError, match="validUntil"):
        _make_code(db, valid_from=now, valid_until=now - timedelta(days=1))


def test_get_promo_code_is_case_insensitive(db, promo):
    assert promo_code_service.get_promo_code(db, "summer2024").id == promo.id


def test_get_promo_code_not_found(db):
    with pytest.raises(PromoCodeNotFound, match="Promo code NOPE not found"):
        promo_code_service.get_promo_code(db, "NOPE")


def test_ensure_default_promo_code_is_idempotent(db):
    created = promo_code_service.ensure_default_promo_code(db)
    assert created.code == "SUMMER2024"
    assert created.discount_percent == 20
    assert created.max_usage == 100
    assert created.max_usage_per_user == 10
    assert promo_code_service.ensure_default_promo_code(db) is None
    assert db.query(PromoCode).count() == 1


def test_deactivate_promo_code(db, promo, user):
    promo_code_service.deactivate_promo_code(db, "SUMMER2024")
    result = promo_code_service.validate_promo_code(db, "SUMMER2024", user.id)
    assert not result.is_valid
    assert result.message == "Promo code is inactive"


# ---------------------------------------------------------------------------
# 検証・試算
# ---------------------------------------------------------------------------

def test_apply_promo_code_calculates_discount(db, promo, user):
    """1000 → 割引200、支払800"""
    result = promo_code_service.apply_promo_code(db, "SUMMER2024", user.id, 1000)
    assert result["success"] is True
    assert result["discount_amount"] == Decimal("200")
    assert result["final_amount"] == Decimal("800")
    assert result["discount_percent"] == 20

    db.refresh(promo)
    assert promo.used_count == 0


def test_calculate_discount_does_not_round():
    assert promo_code_service.calculate_discount(Decimal("99.99"), 15) == Decimal("14.9985")


def test_redeem_and_preview_round_discount_to_cents(db, user, promo):
    preview = promo_code_service.apply_promo_code(db, "SUMMER2024", user.id, Decimal("0.99"))
    assert preview["discount_amount"] == Decimal("0.20")
    assert preview["final_amount"] == Decimal("0.79")

    result = promo_code_service.redeem(db, "SUMMER2024", user.id, Decimal("0.99"))
    assert result.discount_amount == Decimal("0.20")
    assert result.final_amount == Decimal("0.79")

    db.refresh(promo)
    assert promo.total_discount_given == Decimal("0.20")


def test_validate_unknown_code(db, user):
    result = promo_code_service.validate_promo_code(db, "UNKNOWN", user.id)
    assert not result.is_valid
    assert result.message == "Promo code UNKNOWN not found"


def test_validate_not_yet_valid(db, user):
    now = promo_code_service.utcnow()
    _make_code(db, code="FUTURE1", valid_from=now + timedelta(days=1))
    result = promo_code_service.validate_promo_code(db, "FUTURE1", user.id)
    assert result.message == NOT_YET_VALID_MESSAGE


def test_validate_marks_expired_code(db, user):
    now = promo_code_service.utcnow()
    promo = _make_code(db, code="OLDCODE", valid_from=now - timedelta(days=10),
                       valid_until=now - timedelta(days=1))

    result = promo_code_service.validate_promo_code(db, "OLDCODE", user.id)
    assert not result.is_valid
    assert result.message == EXPIRED_MESSAGE

    db.refresh(promo)
    assert promo.status == "expired"

    # 一度 expired になったら戻らない
    again = promo_code_service.validate_promo_code(db, "OLDCODE", user.id)
    assert again.message == "Promo code is expired"


def test_validate_global_limit_reached(db, user, other_user):
    _make_code(db, code="ONCEONLY", max_usage=1)
    assert promo_code_service.redeem(db, "ONCEONLY", other_user.id, 100).success
    result = promo_code_service.validate_promo_code(db, "ONCEONLY", user.id)
    assert result.message == LIMIT_REACHED_MESSAGE


# ---------------------------------------------------------------------------
# redeem
# ---------------------------------------------------------------------------

def test_redeem_increments_counters(db, promo, user):
    result = promo_code_service.redeem(db, "summer2024", user.id, 1000)
    assert result.success
    assert result.discount_amount == Decimal("200")
    assert result.final_amount == Decimal("800")
    assert result.promo_code_id == promo.id

    db.refresh(promo)
    assert promo.used_count == 1
    assert promo.total_discount_given == Decimal("200")
    assert promo.used_by == {user.id}


def test_redeem_fails_when_global_limit_reached(db, user, other_user):
    promo = _make_code(db, code="LASTONE", max_usage=1)
    assert promo_code_service.redeem(db, "LASTONE", user.id, 100).success

    result = promo_code_service.redeem(db, "LASTONE", other_user.id, 100)
    assert not result.success
    assert result.message == LIMIT_REACHED_MESSAGE
    assert result.discount_amount == Decimal(0)
    assert result.final_amount == Decimal(100)

    db.refresh(promo)
    assert promo.used_count == 1


def test_redeem_fails_for_expired_code(db, user):
    now = promo_code_service.utcnow()
    promo = _make_code(db, code="GONE01", valid_until=now - timedelta(minutes=1))
    result = promo_code_service.redeem(db, "GONE01", user.id, 100)
    assert not result.success
    assert result.message == EXPIRED_MESSAGE
    db.refresh(promo)
    assert promo.status == "expired"
    assert promo.used_count == 0


def test_redeem_per_user_limit_rolls_back_global_counter(db, user):
    promo = _make_code(db, code="PERUSER", max_usage=10, max_usage_per_user=2)
    assert promo_code_service.redeem(db, "PERUSER", user.id, 100).success
    assert promo_code_service.redeem(db, "PERUSER", user.id, 100).success

    result = promo_code_service.redeem(db, "PERUSER", user.id, 100)
    assert not result.success
    assert result.user_limit_exceeded
    assert result.message == USER_LIMIT_MESSAGE

    db.refresh(promo)
    assert promo.used_count == 2
    assert promo.total_discount_given == Decimal("20")


def test_redeem_max_per_user_override(db, user):
    _make_code(db, code="OVERRIDE", max_usage=10, max_usage_per_user=5)
    assert promo_code_service.redeem(db, "OVERRIDE", user.id, 100, max_per_user=1).success
    result = promo_code_service.redeem(db, "OVERRIDE", user.id, 100, max_per_user=1)
    assert result.user_limit_exceeded


def test_get_promo_code_stats(db, promo, user, other_user):
    promo_code_service.redeem(db, "SUMMER2024", user.id, 1000)
    promo_code_service.redeem(db, "SUMMER2024", user.id, 500)
    promo_code_service.redeem(db, "SUMMER2024", other_user.id, 250)

    stats = promo_code_service.get_promo_code_stats(db, "SUMMER2024")
    assert stats["used_count"] == 3
    assert stats["unique_users"] == 2
    assert stats["usage_limit"] == 100
    assert stats["remaining_uses"] == 97
    assert Decimal(str(stats["total_discount_given"])) == Decimal("350")


# ---------------------------------------------------------------------------
# 同時実行
# ---------------------------------------------------------------------------

@pytest.fixture
def file_session_factory(tmp_path):
    """スレッド間で共有するファイルDB"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'concurrency.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


def _race(session_factory, code, user_ids):
    results, errors = [], []
    barrier = threading.Barrier(len(user_ids))

    def worker(uid):
        session = session_factory()
        try:
            barrier.wait()
            results.append(promo_code_service.redeem(session, code, uid, 100))
        except Exception as e:
            errors.append(e)
        finally:
            session.close()

    threads = [threading.Thread(target=worker, args=(uid,)) for uid in user_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results, errors


def test_concurrent_redeem_never_exceeds_global_limit(file_session_factory):
    with file_session_factory() as session:
        _make_code(session, code="RACE01", max_usage=3, max_usage_per_user=1)

    results, errors = _race(file_session_factory, "RACE01", list(range(1, 11)))

    assert errors == []
    assert sum(1 for r in results if r.success) == 3
    with file_session_factory() as session:
        promo = session.query(PromoCode).filter(PromoCode.code == "RACE01").one()
        assert promo.used_count == 3


def test_concurrent_redeem_never_exceeds_per_user_limit(file_session_factory):
    with file_session_factory() as session:
        _make_code(session, code="RACE02", max_usage=100, max_usage_per_user=2)

    results, errors = _race(file_session_factory, "RACE02", [7] * 8)

    assert errors == []
    assert sum(1 for r in results if r.success) == 2
    with file_session_factory() as session:
        promo = session.query(PromoCode).filter(PromoCode.code == "RACE02").one()
        counter = session.query(PromoCodeUser).filter(PromoCodeUser.promo_code_id == promo.id).one()
        assert promo.used_count == 2
        assert counter.used_count == 2
