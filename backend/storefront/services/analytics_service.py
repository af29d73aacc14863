"""分析ミラー同期

業務DBへの書き込みが確定した後に、集計用DBへ注文イベントと集計値を反映する。
ここでの失敗は注文処理に伝播させない。失敗時は分析キューに1回だけ再試行を登録し、
再試行も失敗した場合はログを残して破棄する。
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import update, func as sa_func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from storefront.core.config import settings
from storefront.core.database import AnalyticsBase, AnalyticsSessionLocal
from storefront.core.exceptions import SyncFailure
from storefront.core.logging import get_logger
from storefront.models.analytics import UserStats, PromoCodeStats, PromoCodeUsageHistory, OrderAnalytics
from storefront.models.order import Order
from storefront.models.promo_usage import PromoUsage
from storefront.services import user_service

logger = get_logger(__name__)

RetryScheduler = Callable[[dict, int], object]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def build_sync_payload(order: Order, discount_percent: int = 0) -> dict:
    """再試行ジョブに渡す同期データ (pickle可能なプリミティブのみ)"""
    ordered_at = order.created_at or _utcnow()
    return {
        "order_id": order.id,
        "user_id": order.user_id,
        "order_amount": str(order.amount),
        "discount_amount": str(order.discount_amount or 0),
        "final_amount": str(order.final_amount),
        "promo_code": order.promo_code,
        "discount_percent": discount_percent or 0,
        "ordered_at": ordered_at.isoformat(),
    }


class AnalyticsMirror:
    def __init__(
        self,
        session_factory: sessionmaker = AnalyticsSessionLocal,
        retry_scheduler: Optional[RetryScheduler] = None,
        retry_delay: int = settings.ANALYTICS_RETRY_DELAY_SECONDS,
    ):
        self.session_factory = session_factory
        self.retry_scheduler = retry_scheduler
        self.retry_delay = retry_delay

    def create_tables(self) -> None:
        """分析用テーブルを作成 (存在すればスキップ)"""
        with self.session_factory() as session:
            AnalyticsBase.metadata.create_all(bind=session.get_bind())
        logger.info("分析用テーブル確認完了")

    # ------------------------------------------------------------------
    # 同期エントリポイント
    # ------------------------------------------------------------------

    def sync_order(self, db: Session, order: Order, discount_percent: int = 0) -> bool:
        """
        注文を分析ミラーへ反映。例外は送出しない。

        - ユーザーが見つからない → 警告ログのみ (再試行しない)
        - 同期失敗 → 分析キューに1回だけ再試行を登録
        """
        payload = build_sync_payload(order, discount_percent)
        try:
            user = user_service.find_by_id(db, order.user_id)
            if not user:
                logger.warning(f"分析同期スキップ: ユーザーが見つかりません user_id={order.user_id}")
                return False
            self.update_stats_after_order(payload, email=user.email, name=user.name)
            return True
        except Exception as e:
            logger.error(f"分析同期失敗: order_id={order.id} - {e}")
            self._schedule_retry(payload)
            return False

    def retry_sync(self, db: Session, payload: dict) -> bool:
        """再試行 (1回限り)。失敗したらログを残して破棄"""
        try:
            user = user_service.find_by_id(db, payload["user_id"])
            if not user:
                logger.warning(f"分析同期再試行スキップ: ユーザーが見つかりません user_id={payload['user_id']}")
                return False
            self.update_stats_after_order(payload, email=user.email, name=user.name)
            logger.info(f"分析同期再試行成功: order_id={payload['order_id']}")
            return True
        except Exception as e:
            logger.error(f"分析同期再試行も失敗 (破棄): order_id={payload['order_id']} - {e}")
            return False

    def _schedule_retry(self, payload: dict) -> None:
        if self.retry_scheduler is None:
            logger.warning(f"分析同期の再試行先が未設定: order_id={payload['order_id']}")
            return
        try:
            self.retry_scheduler(payload, self.retry_delay)
            logger.info(f"分析同期再試行を登録: order_id={payload['order_id']}, delay={self.retry_delay}s")
        except Exception as e:
            logger.error(f"分析同期再試行の登録失敗: order_id={payload['order_id']} - {e}")

    # ------------------------------------------------------------------
    # 書き込み
    # ------------------------------------------------------------------

    def record_promo_usage(self, usage: PromoUsage) -> None:
        """使用イベントを追記 (order_id 単位で1件)"""
        with self.session_factory() as session:
            try:
                self._append_usage_history(
                    session,
                    order_id=usage.order_id,
                    user_id=usage.user_id,
                    promo_code=usage.promo_code,
                    order_amount=usage.order_amount,
                    discount_amount=usage.discount_amount,
                    final_amount=usage.final_amount,
                    usage_date=usage.used_at or _utcnow(),
                )
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise SyncFailure(f"使用イベント書き込み失敗: {e}") from e

    def update_stats_after_order(self, payload: dict, email: str, name: str) -> None:
        """
        注文イベント追記 + ユーザー/コード集計の加算を1トランザクションで行う。

        order_analytics に同じ order_id が既にあれば反映済みとして何もしない。
        """
        order_id = payload["order_id"]
        user_id = payload["user_id"]
        promo_code = payload.get("promo_code") or None
        order_amount = Decimal(payload["order_amount"])
        discount_amount = Decimal(payload["discount_amount"])
        final_amount = Decimal(payload["final_amount"])
        ordered_at = datetime.fromisoformat(payload["ordered_at"])

        with self.session_factory() as session:
            try:
                if session.get(OrderAnalytics, order_id):
                    logger.info(f"分析同期済み: order_id={order_id}")
                    return

                if promo_code:
                    self._append_usage_history(
                        session,
                        order_id=order_id,
                        user_id=user_id,
                        promo_code=promo_code,
                        order_amount=order_amount,
                        discount_amount=discount_amount,
                        final_amount=final_amount,
                        usage_date=ordered_at,
                    )

                session.add(OrderAnalytics(
                    order_id=order_id,
                    user_id=user_id,
                    order_date=ordered_at.date(),
                    hour=ordered_at.hour,
                    day_of_week=ordered_at.isoweekday() % 7,  # 0=日曜
                    month=ordered_at.month,
                    order_amount=order_amount,
                    discount_amount=discount_amount,
                    final_amount=final_amount,
                    has_promo_code=1 if promo_code else 0,
                    promo_code=promo_code or "",
                ))
                session.flush()

                self._upsert_user_stats(
                    session, user_id, email, name,
                    order_amount, discount_amount, 1 if promo_code else 0, ordered_at,
                )
                if promo_code:
                    self._upsert_promo_code_stats(
                        session, promo_code, int(payload.get("discount_percent") or 0), user_id,
                        discount_amount, final_amount, ordered_at,
                    )
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise SyncFailure(f"分析集計の更新失敗: order_id={order_id} - {e}") from e

    def _append_usage_history(self, session: Session, order_id: int, user_id: int, promo_code: str,
                              order_amount, discount_amount, final_amount, usage_date: datetime) -> None:
        usage_id = f"order_{order_id}"
        if session.get(PromoCodeUsageHistory, usage_id):
            return
        session.add(PromoCodeUsageHistory(
            usage_id=usage_id,
            user_id=user_id,
            promo_code=promo_code,
            order_id=order_id,
            order_amount=order_amount,
            discount_amount=discount_amount,
            final_amount=final_amount,
            usage_date=usage_date,
        ))
        session.flush()

    def _upsert_user_stats(self, session: Session, user_id: int, email: str, name: str,
                           order_amount: Decimal, discount_amount: Decimal, promo_used: int,
                           ordered_at: datetime) -> None:
        """ユーザー集計を原子的に加算。行がなければ作成"""
        stmt = (
            update(UserStats)
            .where(UserStats.user_id == user_id)
            .values(
                email=email,
                name=name,
                total_orders=UserStats.total_orders + 1,
                total_amount=UserStats.total_amount + order_amount,
                total_discount=UserStats.total_discount + discount_amount,
                promo_codes_used=UserStats.promo_codes_used + promo_used,
                last_order_date=ordered_at,
            )
            .execution_options(synchronize_session=False)
        )
        if session.execute(stmt).rowcount:
            return
        try:
            with session.begin_nested():
                session.add(UserStats(
                    user_id=user_id,
                    email=email,
                    name=name,
                    total_orders=1,
                    total_amount=order_amount,
                    total_discount=discount_amount,
                    promo_codes_used=promo_used,
                    first_order_date=ordered_at,
                    last_order_date=ordered_at,
                ))
        except IntegrityError:
            # 並行して初回行が作られた場合は加算で反映
            session.execute(stmt)

    def _upsert_promo_code_stats(self, session: Session, promo_code: str, discount_percent: int,
                                 user_id: int, discount_amount: Decimal, final_amount: Decimal,
                                 used_at: datetime) -> None:
        """コード集計を原子的に加算。行がなければ作成"""
        user_uses = session.query(sa_func.count(PromoCodeUsageHistory.usage_id)).filter(
            PromoCodeUsageHistory.promo_code == promo_code,
            PromoCodeUsageHistory.user_id == user_id,
        ).scalar() or 0
        new_user = 1 if user_uses <= 1 else 0

        stmt = (
            update(PromoCodeStats)
            .where(PromoCodeStats.promo_code == promo_code)
            .values(
                discount_percent=discount_percent,
                total_uses=PromoCodeStats.total_uses + 1,
                total_discount_given=PromoCodeStats.total_discount_given + discount_amount,
                total_revenue=PromoCodeStats.total_revenue + final_amount,
                unique_users=PromoCodeStats.unique_users + new_user,
                last_use_date=used_at,
            )
            .execution_options(synchronize_session=False)
        )
        if session.execute(stmt).rowcount:
            return
        try:
            with session.begin_nested():
                session.add(PromoCodeStats(
                    promo_code=promo_code,
                    discount_percent=discount_percent,
                    total_uses=1,
                    total_discount_given=discount_amount,
                    total_revenue=final_amount,
                    unique_users=1,
                    first_use_date=used_at,
                    last_use_date=used_at,
                ))
        except IntegrityError:
            session.execute(stmt)
