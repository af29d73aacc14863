"""注文キュー (Redis + RQ)

1注文リクエスト = 1ジョブ。job_id には request_id を使い、
同じ request_id の再投入は Redis の予約キーで重複排除する。

ジョブ設定:
- 最大3回試行 (初回 + リトライ2回)、待機は 1秒 → 2秒 と倍増
- 完了ジョブは即削除 (result_ttl=0)
- 失敗ジョブは調査用に保持 (failure_ttl)
"""
import random
from datetime import timedelta
from typing import Optional

from redis import Redis
from rq import Queue, Retry
from rq.exceptions import NoSuchJobError
from rq.job import Job, JobStatus

from storefront.core.config import settings
from storefront.core.exceptions import JobNotFound
from storefront.core.logging import get_logger, log_event
from storefront.core.redis import create_sync_redis, reserve_request_id, release_request_id
from storefront.services import order_service

logger = get_logger(__name__)

PROCESS_ORDER_FUNC = "storefront.worker.tasks.process_order_job"
RETRY_ANALYTICS_FUNC = "storefront.worker.tasks.retry_analytics_sync"

# RQのジョブ状態 → API上の状態
JOB_STATUS_MAP = {
    JobStatus.QUEUED: "queued",
    JobStatus.DEFERRED: "queued",
    JobStatus.SCHEDULED: "queued",  # リトライ待機中
    JobStatus.STARTED: "active",
    JobStatus.FINISHED: "completed",
    JobStatus.FAILED: "failed",
    JobStatus.STOPPED: "failed",
    JobStatus.CANCELED: "failed",
}

TEST_AMOUNTS = [1000, 2500, 500, 3000, 1500, 800, 2200, 1700, 900, 1200]
TEST_PROMO_CODES = ["SUMMER2024", None, "SUMMER2024", None, None]


def backoff_intervals(attempts: int, base: int) -> list[int]:
    """指数バックオフの待機秒数 (base, base*2, base*4, ...)"""
    return [base * (2 ** i) for i in range(max(attempts - 1, 0))]


class OrderQueue:
    """注文キューとの接続を保持する。connect() / close() で明示的に開閉する"""

    def __init__(self, redis_url: Optional[str] = None, connection: Optional[Redis] = None):
        self.redis_url = redis_url
        self.connection = connection
        self.queue: Optional[Queue] = None
        self.analytics_queue: Optional[Queue] = None

    def connect(self) -> "OrderQueue":
        if self.connection is None:
            self.connection = create_sync_redis(self.redis_url)
        self.queue = Queue(settings.ORDER_QUEUE_NAME, connection=self.connection)
        self.analytics_queue = Queue(settings.ANALYTICS_QUEUE_NAME, connection=self.connection)
        logger.info(f"注文キュー接続: queue={settings.ORDER_QUEUE_NAME}")
        return self

    def close(self) -> None:
        if self.connection is not None:
            self.connection.close()
            logger.info("注文キュー切断")

    def enqueue_order(
        self,
        user_id: int,
        amount,
        promo_code: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> dict:
        """注文ジョブを投入。同じ request_id は1回しか投入しない"""
        value = order_service.validate_amount(amount)
        request_id = request_id or order_service.generate_request_id()

        if not reserve_request_id(self.connection, request_id, settings.ORDER_REQUEST_DEDUP_TTL):
            logger.info(f"重複リクエストのため投入スキップ: request_id={request_id}")
            return {"job_id": request_id, "status": "queued", "duplicate": True}

        try:
            job = self.queue.enqueue(
                PROCESS_ORDER_FUNC,
                kwargs={
                    "user_id": user_id,
                    "amount": str(value),
                    "promo_code": promo_code,
                    "request_id": request_id,
                },
                job_id=request_id,
                retry=Retry(
                    max=settings.ORDER_JOB_ATTEMPTS - 1,
                    interval=backoff_intervals(settings.ORDER_JOB_ATTEMPTS, settings.ORDER_JOB_BACKOFF_SECONDS),
                ),
                result_ttl=0,
                failure_ttl=settings.ORDER_JOB_FAILURE_TTL,
                description=f"process-order {request_id}",
            )
        except Exception:
            # 投入できなかった場合は予約を解除して再送を受け付ける
            release_request_id(self.connection, request_id)
            raise
        log_event(logger, "注文をキューに投入", request_id=request_id, user_id=user_id, promo_code=promo_code)
        return {"job_id": job.id, "status": "queued", "duplicate": False}

    def get_job_status(self, job_id: str) -> dict:
        """ジョブ状態 {status, result, error, progress}"""
        try:
            job = Job.fetch(job_id, connection=self.connection)
        except NoSuchJobError:
            raise JobNotFound(f"Job {job_id} not found")

        status = job.get_status()
        if status is None:
            raise JobNotFound(f"Job {job_id} not found")
        state = JOB_STATUS_MAP.get(status, str(status))

        error = job.meta.get("failed_reason")
        if state == "failed" and not error and job.exc_info:
            error = job.exc_info.strip().splitlines()[-1]

        return {
            "status": state,
            "result": job.return_value() if state == "completed" else None,
            "error": error,
            "progress": job.meta.get("progress", 0),
        }

    def schedule_analytics_retry(self, payload: dict, delay: int) -> Job:
        """分析同期の再試行を1回だけ予約"""
        return self.analytics_queue.enqueue_in(
            timedelta(seconds=delay),
            RETRY_ANALYTICS_FUNC,
            kwargs={"payload": payload},
            result_ttl=0,
            failure_ttl=settings.ORDER_JOB_FAILURE_TTL,
            description=f"retry-analytics-sync order_id={payload['order_id']}",
        )

    def create_test_orders(self, user_id: int, count: int = 5) -> int:
        """テスト用の注文ジョブをまとめて投入"""
        created = 0
        for _ in range(count):
            try:
                self.enqueue_order(
                    user_id,
                    random.choice(TEST_AMOUNTS),
                    random.choice(TEST_PROMO_CODES),
                )
                created += 1
            except Exception as e:
                logger.error(f"テスト注文の投入失敗: user_id={user_id} - {e}")
        logger.info(f"テスト注文投入: user_id={user_id}, created={created}/{count}")
        return created

    def clean(self) -> None:
        """待機中・予約済みのジョブを破棄 (起動時の掃除用)"""
        for q in (self.queue, self.analytics_queue):
            removed = q.empty()
            scheduled = q.scheduled_job_registry
            for job_id in scheduled.get_job_ids():
                scheduled.remove(job_id, delete_job=True)
            logger.info(f"キュー掃除: queue={q.name}, removed={removed}")

    def get_queue_stats(self) -> dict:
        """キュー毎の件数"""
        stats = {}
        for q in (self.queue, self.analytics_queue):
            stats[q.name] = {
                "pending": len(q),
                "scheduled": q.scheduled_job_registry.count,
                "started": q.started_job_registry.count,
                "failed": q.failed_job_registry.count,
            }
        return stats
