"""注文API"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from storefront.core.database import get_db
from storefront.core.exceptions import PromoCodeNotAvailable
from storefront.core.rate_limit import limiter, ORDER_CREATE_RATE_LIMIT, TEST_ORDER_RATE_LIMIT
from storefront.models.user import User
from storefront.routers.deps import require_login, require_admin, get_order_queue, get_analytics_mirror
from storefront.schemas.order import CreateOrderRequest, ApplyPromoRequest, GenerateTestOrdersRequest
from storefront.services import order_service, promo_code_service
from storefront.services.analytics_service import AnalyticsMirror
from storefront.worker.queue import OrderQueue

router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.post("/create")
@limiter.limit(ORDER_CREATE_RATE_LIMIT)
async def create_order(
    request: Request,
    data: CreateOrderRequest,
    user: User = Depends(require_login),
    order_queue: OrderQueue = Depends(get_order_queue),
):
    """注文をキューに投入 (処理は Worker で非同期)"""
    result = order_queue.enqueue_order(user.id, data.amount, data.promo_code, data.request_id)
    return {
        "success": True,
        "message": "Order queued for processing",
        "job_id": result["job_id"],
        "status": result["status"],
        "queue_status": "processing",
    }


@router.post("/direct")
async def create_order_direct(
    data: CreateOrderRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_login),
    mirror: AnalyticsMirror = Depends(get_analytics_mirror),
):
    """キューを通さずに注文を作成"""
    order = order_service.create_order_direct(db, user.id, data.amount, data.promo_code, mirror=mirror)
    return {"success": True, "order": order_service.serialize_order(order)}


@router.get("/status/{job_id}")
async def get_job_status(
    job_id: str,
    _=Depends(require_login),
    order_queue: OrderQueue = Depends(get_order_queue),
):
    """ジョブ状態"""
    return {"success": True, "job_id": job_id, **order_queue.get_job_status(job_id)}


@router.get("/user/{user_id}")
async def get_user_orders(
    user_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    _=Depends(require_login),
):
    return order_service.get_user_orders(db, user_id, page, limit)


@router.get("/stats/{user_id}")
async def get_user_stats(
    user_id: int,
    db: Session = Depends(get_db),
    _=Depends(require_login),
):
    return {"success": True, "user_id": user_id, "stats": order_service.get_user_stats(db, user_id)}


@router.get("/all")
async def get_all_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user_id: Optional[int] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
    _=Depends(require_admin),
):
    """全注文一覧 (管理者用)"""
    return order_service.get_all_orders(db, page, limit, user_id, start_date, end_date)


@router.post("/apply-promo")
async def apply_promo(
    data: ApplyPromoRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_login),
):
    """割引額の試算 (コードは消費しない)"""
    result = promo_code_service.apply_promo_code(db, data.promo_code, user.id, data.order_amount)
    if not result["success"]:
        raise PromoCodeNotAvailable(result["message"])
    return {
        "success": True,
        "message": "Promo code applied successfully",
        "data": {
            "original_amount": float(result["original_amount"]),
            "discount_amount": float(result["discount_amount"]),
            "final_amount": float(result["final_amount"]),
            "discount_percent": result["discount_percent"],
            "promo_code": data.promo_code,
        },
    }


@router.post("/generate-test")
@limiter.limit(TEST_ORDER_RATE_LIMIT)
async def generate_test_orders(
    request: Request,
    data: GenerateTestOrdersRequest,
    user: User = Depends(require_login),
    order_queue: OrderQueue = Depends(get_order_queue),
):
    """テスト注文をまとめて投入"""
    created = order_queue.create_test_orders(user.id, data.count)
    return {"success": True, "message": f"Generated {created} test orders"}
