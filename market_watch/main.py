"""
MarketWatch 行情信号服务
FastAPI 应用程序入口

启动方式:
    uvicorn market_watch.main:app --host 0.0.0.0 --port 8002
    python -m market_watch.main
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from market_watch import __version__, db
from market_watch.config import settings
from market_watch.errors import MarketWatchError, RateLimited
from market_watch.layers.acquisition import close_acquisition_layer
from market_watch.models.response import ApiResponse
from market_watch.routers import aggregates, health, market, signals

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── 生命周期管理 ──────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用启动/关闭生命周期钩子"""
    logger.info("=" * 60)
    logger.info(f"🚀 MarketWatch v{__version__} 启动中")
    logger.info(f"   MongoDB   : {settings.MONGODB_HOST}:{settings.MONGODB_PORT}")
    logger.info(f"   Redis     : {settings.REDIS_HOST}:{settings.REDIS_PORT}")
    logger.info("=" * 60)

    # 初始化数据库连接（失败不阻断启动，降级运行）
    mongo_ok = await db.init_mongodb()
    redis_ok = await db.init_redis()

    if mongo_ok and redis_ok:
        logger.info("✅ 所有数据库连接就绪")
    elif mongo_ok:
        logger.warning("⚠️ Redis 不可用，缓存降级为 MongoDB + 文件模式")
    elif redis_ok:
        logger.warning("⚠️ MongoDB 不可用，限流与聚合不可用，缓存降级为 Redis + 文件模式")
    else:
        logger.warning("⚠️ 数据库均不可用，降级为文件缓存模式")

    yield

    logger.info("🔄 行情信号服务正在关闭...")
    await close_acquisition_layer()
    await db.close_connections()
    logger.info("✅ 行情信号服务已关闭")


# ── 应用实例 ──────────────────────────────────────────────
app = FastAPI(
    title="MarketWatch 行情信号服务",
    description=(
        "带回退与缓存的行情数据获取，以及可解释的短期上涨概率：\n"
        "- 📊 实时行情 / 历史 K 线 / 可信来源新闻（多提供商有序回退）\n"
        "- 🗄️ 按新鲜度判定的多级缓存（Redis → MongoDB → 文件）\n"
        "- 🚦 按客户端与操作分桶的滑动窗口限流\n"
        "- 📈 UTC 日线聚合与 RSI14 / SMA50 / SMA200 / ATR14\n"
        "- 🎯 概率混合（技术面 / 情绪 / 动量 / 期权 / 机构资金）\n\n"
        "**分层架构**\n"
        "```\n"
        "Acquisition Layer  ← 有序提供商链，类型化失败\n"
        "Cache Layer        ← Redis / MongoDB / 文件三级缓存\n"
        "Processing Layer   ← K 线清洗、UTC 日线聚合\n"
        "Analysis Layer     ← 技术指标计算\n"
        "Signals            ← 概率与解释\n"
        "```"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)


# ── 请求计时中间件 ─────────────────────────────────────────
@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
    return response


# ── 全局异常处理 ──────────────────────────────────────────
@app.exception_handler(MarketWatchError)
async def market_watch_error_handler(request: Request, exc: MarketWatchError):
    body = ApiResponse.fail(
        error=exc.message,
        message=exc.__class__.__name__,
        stage=exc.stage,
        data=exc.details or None,
    )
    headers = {}
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(exc.retry_after)
    if exc.status_code >= 500:
        logger.warning(f"{request.url.path} 失败 [{exc.stage}] req_id={body.req_id}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(), headers=headers)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    body = ApiResponse.fail(error="内部服务错误", message=str(exc), stage="internal")
    logger.error(f"未处理的异常 req_id={body.req_id}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content=body.model_dump())


# ── 注册路由 ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(market.router)
app.include_router(signals.router)
app.include_router(aggregates.router)


# ── 根路由 ───────────────────────────────────────────────
@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "MarketWatch",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "market_watch.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
