"""RQジョブ本体

Worker プロセスから文字列パス (storefront.worker.tasks.xxx) で呼ばれる。
例外を送出すると RQ が Retry 設定に従って再実行する。
"""
import logging
from typing import Optional

from rq import get_current_job
from rq.job import Job

from storefront.core.database import SessionLocal
from storefront.core.logging import get_logger, log_event
from storefront.services import order_service
from storefront.services.analytics_service import AnalyticsMirror
from storefront.worker.queue import OrderQueue

logger = get_logger(__name__)


def _build_mirror(job: Optional[Job]) -> AnalyticsMirror:
    """ジョブ実行中なら同じRedis接続で分析再試行キューを使う"""
    if job is None:
        return AnalyticsMirror()
    order_queue = OrderQueue(connection=job.connection).connect()
    return AnalyticsMirror(retry_scheduler=order_queue.schedule_analytics_retry)


def _save_meta(job: Optional[Job], **values) -> None:
    if job is None:
        return
    job.meta.update(values)
    job.save_meta()


def process_order_job(user_id: int, amount: str, promo_code: Optional[str] = None,
                      request_id: Optional[str] = None) -> dict:
    """注文ジョブ: 1回の試行で process_order を実行"""
    job = get_current_job()
    attempt = (job.meta.get("attempt", 0) + 1) if job else 1
    _save_meta(job, attempt=attempt, progress=0)
    logger.info(f"注文ジョブ開始: request_id={request_id}, attempt={attempt}")

    mirror = _build_mirror(job)
    db = SessionLocal()
    try:
        order = order_service.process_order(
            db,
            user_id=user_id,
            amount=amount,
            promo_code=promo_code,
            request_id=request_id,
            mirror=mirror,
            progress=lambda value: _save_meta(job, progress=value),
        )
        return order_service.serialize_order(order)
    except Exception as e:
        db.rollback()
        reason = getattr(e, "message", None) or str(e)
        log_event(logger, "注文ジョブ失敗", level=logging.ERROR,
                  request_id=request_id, attempt=attempt, reason=reason)
        _save_meta(job, failed_reason=reason)
        raise
    finally:
        db.close()


def retry_analytics_sync(payload: dict) -> bool:
    """分析同期の再試行ジョブ (1回限り、失敗は破棄)"""
    db = SessionLocal()
    try:
        return AnalyticsMirror().retry_sync(db, payload)
    finally:
        db.close()
