"""Worker エントリポイント: python -m storefront.worker で起動

注文キューと分析再試行キューを1プロセスで処理する。
停止シグナル (SIGTERM/SIGINT) は RQ Worker が受けて、実行中ジョブの完了後に終了する。
"""
import argparse
import os

from rq import Worker

from storefront.core.config import settings
from storefront.core.logging import setup_logging, get_logger
from storefront.core.redis import create_sync_redis
from storefront.services.analytics_service import AnalyticsMirror
from storefront.worker.queue import OrderQueue

logger = get_logger("worker")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="storefront.worker", description="注文キューWorker")
    parser.add_argument("--clean", action="store_true", help="起動前に待機中ジョブを破棄")
    parser.add_argument("--burst", action="store_true", help="キューが空になったら終了")
    parser.add_argument("--stats", action="store_true", help="キュー件数を表示して終了")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    setup_logging(debug=settings.DEBUG)

    connection = create_sync_redis()
    order_queue = OrderQueue(connection=connection).connect()

    if args.stats:
        for name, counts in order_queue.get_queue_stats().items():
            logger.info(f"キュー状況: queue={name}, {counts}")
        return

    if args.clean:
        order_queue.clean()

    AnalyticsMirror().create_tables()

    worker = Worker(
        [order_queue.queue, order_queue.analytics_queue],
        connection=connection,
        name=f"storefront-worker-{os.getpid()}",
    )
    logger.info("Worker起動")
    worker.work(with_scheduler=True, burst=args.burst)
    logger.info("Worker終了")


if __name__ == "__main__":
    main()
