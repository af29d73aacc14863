from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from storefront.core.config import settings
from storefront.core.database import SessionLocal
from storefront.core.exceptions import OrderServiceError
from storefront.core.logging import setup_logging, get_logger
from storefront.core.rate_limit import limiter, rate_limit_exceeded_handler
from storefront.routers import health, orders, promo_codes, promo_code_usage, admin_promo_codes
from storefront.services import promo_code_service
from storefront.services.analytics_service import AnalyticsMirror
from storefront.worker.queue import OrderQueue

logger = get_logger(__name__)


def seed_default_promo_code() -> None:
    """初期プロモーションコード投入 (失敗しても起動は続行)"""
    db = SessionLocal()
    try:
        promo = promo_code_service.ensure_default_promo_code(db)
        if promo:
            logger.info(f"初期プロモーションコード作成: code={promo.code}")
    except Exception as e:
        db.rollback()
        logger.error(f"初期プロモーションコード作成失敗: {e}")
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """アプリケーションライフサイクル管理"""
    setup_logging(debug=settings.DEBUG)
    logger.info("アプリケーション起動")

    order_queue = OrderQueue(settings.REDIS_URL).connect()
    app.state.order_queue = order_queue
    app.state.analytics_mirror = AnalyticsMirror(retry_scheduler=order_queue.schedule_analytics_retry)

    try:
        app.state.analytics_mirror.create_tables()
    except Exception as e:
        logger.error(f"分析用テーブル作成失敗: {e}")

    if settings.SEED_DEFAULT_PROMO_CODE:
        seed_default_promo_code()

    yield

    order_queue.close()
    logger.info("アプリケーション終了")


app = FastAPI(
    title=settings.SITE_NAME,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None,
)

# レート制限設定
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.exception_handler(OrderServiceError)
async def order_service_error_handler(request: Request, exc: OrderServiceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def _format_error(err: dict) -> str:
    loc = [str(p) for p in err.get("loc", []) if p != "body"]
    field = ".".join(loc)
    return f"{field}: {err.get('msg', 'invalid value')}" if field else err.get("msg", "invalid value")


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    messages = [_format_error(e) for e in exc.errors()]
    return JSONResponse(status_code=422, content={"detail": "; ".join(messages)})


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ルーター登録
app.include_router(health.router)
app.include_router(orders.router)
app.include_router(promo_codes.router)
app.include_router(promo_code_usage.router)
app.include_router(admin_promo_codes.router)
