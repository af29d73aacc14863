"""業務エラー定義

ルーターは OrderServiceError をそのまま送出し、main.py のハンドラが
status_code と message から JSON レスポンスを組み立てる。
"""


class OrderServiceError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(OrderServiceError):
    """入力値の形式・範囲エラー (リトライしない)"""


class PromoCodeNotAvailable(OrderServiceError):
    """無効・期限切れ・上限到達のプロモーションコード"""


class PromoLimitExceeded(OrderServiceError):
    """ユーザー毎の使用上限に到達"""


class NotFound(OrderServiceError):
    status_code = 404


class PromoCodeNotFound(NotFound):
    pass


class UserNotFound(NotFound):
    pass


class JobNotFound(NotFound):
    pass


class SyncFailure(OrderServiceError):
    """分析ミラーへの書き込み失敗 (呼び出し元には伝播させない)"""

    status_code = 500

