import logging
import sys
import json
from datetime import datetime, timezone

from rq import get_current_job


def _current_job_id():
    """RQジョブ実行中ならジョブID (= request_id)"""
    job = get_current_job()
    return job.id if job is not None else None


class JSONFormatter(logging.Formatter):
    """構造化JSONログフォーマッター

    Worker 内のログには job_id を付与し、注文リクエスト単位で追えるようにする。
    """

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        job_id = _current_job_id()
        if job_id:
            log_entry["job_id"] = job_id
        if hasattr(record, "extra_data"):
            log_entry["data"] = record.extra_data
        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = self.formatException(record.exc_info)
        # Decimal / datetime は文字列化
        return json.dumps(log_entry, ensure_ascii=False, default=str)


def setup_logging(debug: bool = False):
    """ロギング設定を初期化 (API・Worker 共通)"""
    level = logging.DEBUG if debug else logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    # RQ は自前のハンドラを持つため root に一本化する
    for name in ("rq.worker", "rq.scheduler", "rq.queue"):
        rq_logger = logging.getLogger(name)
        rq_logger.handlers.clear()
        rq_logger.propagate = True
        rq_logger.setLevel(logging.INFO)


def get_logger(name: str) -> logging.Logger:
    """名前付きロガーを取得"""
    return logging.getLogger(name)


def log_event(logger: logging.Logger, message: str, level: int = logging.INFO, **data) -> None:
    """構造化データ付きでログ出力 (JSONの data に入る)"""
    logger.log(level, message, extra={"extra_data": data})
