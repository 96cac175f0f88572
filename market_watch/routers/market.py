"""
行情数据路由
GET /api/quote/{symbol}              - 实时行情
GET /api/history/{symbol}            - 历史 K 线（可选入库并重算日线）
GET /api/news/{symbol}               - 可信来源新闻
GET /api/news/{symbol}/sentiment     - 新闻标题即时情绪
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from market_watch.config import GLOBAL_TTL_MAX, settings
from market_watch.errors import StoreError
from market_watch.models.response import ApiResponse
from market_watch.routers.deps import rate_limit, symbol_path
from market_watch.services.aggregate_service import get_aggregate_service
from market_watch.services.market_service import get_market_service
from market_watch.symbols import validate_int

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["行情数据"])


@router.get("/quote/{symbol}", response_model=ApiResponse, dependencies=[Depends(rate_limit("quote"))])
async def get_quote(
    symbol: str = Depends(symbol_path),
    force: bool = Query(default=False, description="跳过缓存"),
):
    """获取实时行情（Yahoo → Stooq 回退）"""
    data = await get_market_service().fetch_quote(symbol, force=force)
    return ApiResponse.ok(data=data)


@router.get("/history/{symbol}", response_model=ApiResponse, dependencies=[Depends(rate_limit("history"))])
async def get_history(
    symbol: str = Depends(symbol_path),
    range: str = Query(default="6mo", description="5d / 1mo / 3mo / 6mo / 1y / 2y"),
    interval: str = Query(default="1d", description="1d / 1wk"),
    force: bool = Query(default=False),
    ttl: Optional[str] = Query(default=None, description="自定义缓存 TTL（秒）"),
    upsert: bool = Query(default=False, description="日线数据写入 prices 并重算聚合"),
):
    """获取历史 K 线"""
    ttl_seconds = validate_int(ttl, None, 1, GLOBAL_TTL_MAX)
    svc = get_market_service()
    data = await svc.fetch_history(symbol, range=range, interval=interval, force=force, ttl=ttl_seconds)

    if upsert and interval == "1d":
        try:
            data["upsert"] = await get_aggregate_service().ingest_bars(symbol, svc.bars_from_payload(data))
        except StoreError as exc:
            logger.warning(f"{symbol} K 线入库失败（结果仍然返回）: {exc.message}")
            data["upsert"] = {"stored": False, "error": exc.message}
    return ApiResponse.ok(data=data)


@router.get("/news/{symbol}", response_model=ApiResponse, dependencies=[Depends(rate_limit("news"))])
async def get_news(
    symbol: str = Depends(symbol_path),
    hours: Optional[str] = Query(default=None, description="回看小时数 1-240，默认 72"),
    limit: Optional[str] = Query(default=None, description="条数 5-50，默认 25"),
    ttl: Optional[str] = Query(default=None, description="自定义缓存 TTL（秒）"),
    force: bool = Query(default=False),
):
    """获取可信来源新闻"""
    h = validate_int(hours, 72, 1, 240)
    n = validate_int(limit, 25, 5, 50)
    ttl_seconds = validate_int(ttl, None, settings.NEWS_CACHE_TTL_MIN, settings.NEWS_CACHE_TTL_MAX)
    data = await get_market_service().fetch_news(symbol, hours=h, limit=n, ttl=ttl_seconds, force=force)
    return ApiResponse.ok(data=data)


@router.get(
    "/news/{symbol}/sentiment",
    response_model=ApiResponse,
    dependencies=[Depends(rate_limit("news_sentiment"))],
)
async def get_news_sentiment(
    symbol: str = Depends(symbol_path),
    hours: Optional[str] = Query(default=None, description="回看小时数 1-240，默认 72"),
):
    """基于最新新闻标题的即时情绪"""
    h = validate_int(hours, 72, 1, 240)
    data = await get_market_service().news_sentiment(symbol, hours=h)
    return ApiResponse.ok(data=data)
