"""HTTP API のテスト (TestClient + 依存関数の差し替え)"""
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from storefront.core.database import get_db
from storefront.core.exceptions import JobNotFound
from storefront.main import app
from storefront.routers.deps import get_current_user


@pytest.fixture
def order_queue():
    return MagicMock()


@pytest.fixture
def client_for(db, mirror, order_queue):
    """ログインユーザーを指定してクライアントを作る"""
    def override_db():
        yield db

    def make(current_user):
        app.dependency_overrides[get_db] = override_db
        app.dependency_overrides[get_current_user] = lambda: current_user
        app.state.order_queue = order_queue
        app.state.analytics_mirror = mirror
        return TestClient(app)

    yield make
    app.dependency_overrides.clear()


@pytest.fixture
def client(client_for, user):
    return client_for(user)


def test_requires_login(client_for):
    res = client_for(None).post("/api/orders/create", json={"amount": 1000})
    assert res.status_code == 401


def test_create_order_enqueues_job(client, user, order_queue):
    order_queue.enqueue_order.return_value = {"job_id": "order_1_abc", "status": "queued", "duplicate": False}

    res = client.post("/api/orders/create", json={"amount": 1000, "promo_code": "SUMMER2024"})

    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["job_id"] == "order_1_abc"
    assert body["queue_status"] == "processing"
    order_queue.enqueue_order.assert_called_once_with(user.id, Decimal("1000"), "SUMMER2024", None)


def test_create_order_blank_promo_code_is_ignored(client, user, order_queue):
    order_queue.enqueue_order.return_value = {"job_id": "x", "status": "queued", "duplicate": False}
    client.post("/api/orders/create", json={"amount": 10, "promo_code": "  "})
    assert order_queue.enqueue_order.call_args.args[2] is None


def test_direct_order(client, promo):
    res = client.post("/api/orders/direct", json={"amount": 1000, "promo_code": "SUMMER2024"})
    assert res.status_code == 200
    order = res.json()["order"]
    assert order["discount_amount"] == 200.0
    assert order["final_amount"] == 800.0


def test_direct_order_invalid_amount(client):
    res = client.post("/api/orders/direct", json={"amount": 0})
    assert res.status_code == 400
    assert res.json() == {"detail": "Amount must be greater than 0"}


def test_direct_order_user_limit(client, db, promo):
    promo.max_usage_per_user = 1
    db.commit()
    assert client.post("/api/orders/direct", json={"amount": 100, "promo_code": "SUMMER2024"}).status_code == 200

    res = client.post("/api/orders/direct", json={"amount": 100, "promo_code": "SUMMER2024"})
    assert res.status_code == 400
    assert res.json()["detail"] == "You have reached your usage limit for this promo code"


def test_job_status(client, order_queue):
    order_queue.get_job_status.return_value = {"status": "active", "result": None, "error": None, "progress": 30}
    res = client.get("/api/orders/status/order_1_abc")
    assert res.status_code == 200
    assert res.json()["status"] == "active"
    assert res.json()["progress"] == 30


def test_job_status_not_found(client, order_queue):
    order_queue.get_job_status.side_effect = JobNotFound("Job gone not found")
    res = client.get("/api/orders/status/gone")
    assert res.status_code == 404
    assert res.json()["detail"] == "Job gone not found"


def test_user_orders_and_stats(client, user):
    client.post("/api/orders/direct", json={"amount": 400})
    client.post("/api/orders/direct", json={"amount": 600})

    orders = client.get(f"/api/orders/user/{user.id}").json()
    assert orders["total"] == 2

    stats = client.get(f"/api/orders/stats/{user.id}").json()
    assert stats["stats"]["total_orders"] == 2
    assert stats["stats"]["avg_order_amount"] == 500


def test_all_orders_requires_admin(client_for, user, admin_user):
    assert client_for(user).get("/api/orders/all").status_code == 403
    res = client_for(admin_user).get("/api/orders/all")
    assert res.status_code == 200
    assert res.json()["total"] == 0


def test_apply_promo_preview(client, promo, db):
    res = client.post("/api/orders/apply-promo", json={"order_amount": 1000, "promo_code": "SUMMER2024"})
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["discount_amount"] == 200.0
    assert data["final_amount"] == 800.0

    db.refresh(promo)
    assert promo.used_count == 0


def test_apply_promo_unknown_code(client):
    res = client.post("/api/orders/apply-promo", json={"order_amount": 1000, "promo_code": "NOPE"})
    assert res.status_code == 400
    assert res.json()["detail"] == "Promo code NOPE not found"


def test_generate_test_orders(client, user, order_queue):
    order_queue.create_test_orders.return_value = 3
    res = client.post("/api/orders/generate-test", json={"count": 3})
    assert res.json()["message"] == "Generated 3 test orders"
    order_queue.create_test_orders.assert_called_once_with(user.id, 3)


def test_validate_promo_code(client, user, promo):
    res = client.post("/api/promo-codes/validate", json={"code": "summer2024", "user_id": user.id})
    assert res.json()["validation"] == {"is_valid": True, "discount_percent": 20, "message": None}


def test_apply_promo_code_endpoint(client, user, promo):
    res = client.post("/api/promo-codes/apply", json={"code": "SUMMER2024", "user_id": user.id, "order_amount": 50})
    body = res.json()
    assert body["success"] is True
    assert body["data"]["final_amount"] == 40.0


def test_promo_code_stats_endpoint(client, user, promo):
    client.post("/api/orders/direct", json={"amount": 1000, "promo_code": "SUMMER2024"})
    stats = client.get("/api/promo-codes/stats", params={"code": "SUMMER2024"}).json()["stats"]
    assert stats["used_count"] == 1
    assert stats["unique_users"] == 1
    assert stats["remaining_uses"] == 99


def test_promo_code_stats_unknown(client):
    assert client.get("/api/promo-codes/stats", params={"code": "NOPE"}).status_code == 404


def test_usage_history_endpoints(client, user, promo):
    client.post("/api/orders/direct", json={"amount": 1000, "promo_code": "SUMMER2024"})
    client.post("/api/orders/direct", json={"amount": 500})

    by_code = client.get("/api/promo-code-usage/promo/SUMMER2024").json()
    assert by_code["total"] == 1
    assert by_code["history"][0]["discount_amount"] == 200.0

    by_user = client.get(f"/api/promo-code-usage/user/{user.id}").json()
    assert by_user["total"] == 1


def test_admin_promo_code_lifecycle(client_for, user, admin_user):
    admin = client_for(admin_user)
    res = admin.post("/api/admin/promo-codes", json={
        "code": "winter25", "discount_percent": 15, "max_usage": 50, "max_usage_per_user": 2,
    })
    assert res.status_code == 200
    assert res.json()["code"] == "WINTER25"

    dup = admin.post("/api/admin/promo-codes", json={"code": "WINTER25", "discount_percent": 15})
    assert dup.status_code == 400

    assert [p["code"] for p in admin.get("/api/admin/promo-codes").json()] == ["WINTER25"]

    res = admin.put("/api/admin/promo-codes/winter25/deactivate")
    assert res.json()["status"] == "inactive"

    assert client_for(user).get("/api/admin/promo-codes").status_code == 403


def test_admin_create_promo_code_validation(client_for, admin_user):
    res = client_for(admin_user).post("/api/admin/promo-codes", json={"code": "BAD1", "discount_percent": 0})
    assert res.status_code == 422


def test_health(client):
    with patch("storefront.routers.health.check_redis_connection", AsyncMock(return_value=True)):
        body = client.get("/health").json()
    assert body == {"status": "ok", "db": "connected", "analytics_db": "connected", "redis": "connected"}


def test_health_degraded_without_redis(client):
    with patch("storefront.routers.health.check_redis_connection", AsyncMock(return_value=False)):
        body = client.get("/health").json()
    assert body["status"] == "degraded"
    assert body["redis"] == "disconnected"
