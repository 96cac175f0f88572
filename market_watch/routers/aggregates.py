"""
聚合与数据写入路由
POST /api/daily_agg/{symbol}/recompute   - 从 prices 重算日线聚合
POST /api/sentiment/{symbol}/rollup      - 汇总入库新闻的情绪分
POST /api/sentiment/rollup               - 多代码批量情绪汇总（?symbols=AAPL,TSLA）
GET  /api/sentiment/{symbol}/latest      - 最新情绪分
POST /api/options                        - 写入期权汇总
POST /api/institutional                  - 写入机构资金流
POST /api/news_articles                  - 写入新闻全文
POST /api/prices                         - 批量写入原始 K 线并重算日线
POST /api/portfolio/{user_id}/holdings  - 写入 / 覆盖一条持仓
GET  /api/portfolio/{user_id}/holdings  - 列出持仓
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from market_watch.models.records import HoldingInput, InstitutionalFlow, NewsArticle, OptionsSummary, PriceBatch
from market_watch.models.response import ApiResponse
from market_watch.routers.deps import symbol_path
from market_watch.services.aggregate_service import DEFAULT_LOOKBACK_DAYS, get_aggregate_service
from market_watch.services.portfolio_service import get_portfolio_service
from market_watch.services.sentiment_service import get_sentiment_service
from market_watch.symbols import validate_int, validate_symbol, validate_symbols

router = APIRouter(prefix="/api", tags=["聚合与写入"])


@router.post("/daily_agg/{symbol}/recompute", response_model=ApiResponse)
async def recompute_daily_agg(
    symbol: str = Depends(symbol_path),
    lookback_days: Optional[str] = Query(default=None, description="回看自然日 30-1000，默认 400"),
):
    """按 UTC 日聚合 prices 中的 K 线并重算 RSI14 / SMA50 / SMA200 / ATR14"""
    days = validate_int(lookback_days, DEFAULT_LOOKBACK_DAYS, 30, 1000)
    summary = await get_aggregate_service().recompute_from_store(symbol, lookback_days=days)
    return ApiResponse.ok(data=summary, message=f"{symbol} 日线聚合已重算")


@router.post("/sentiment/rollup", response_model=ApiResponse)
async def rollup_sentiment_batch(
    symbols: Optional[str] = Query(default=None, description="逗号分隔的代码列表"),
    hours: Optional[str] = Query(default=None, description="回看小时数 1-240，默认 72"),
):
    """多代码批量情绪汇总"""
    items = validate_symbols(symbols)
    data = await get_sentiment_service().rollup_batch(items, validate_int(hours, 72, 1, 240))
    return ApiResponse.ok(data=data)


@router.post("/sentiment/{symbol}/rollup", response_model=ApiResponse)
async def rollup_sentiment(
    symbol: str = Depends(symbol_path),
    hours: Optional[str] = Query(default=None, description="回看小时数 1-240，默认 72"),
):
    data = await get_sentiment_service().rollup(symbol, validate_int(hours, 72, 1, 240))
    return ApiResponse.ok(data=data)


@router.get("/sentiment/{symbol}/latest", response_model=ApiResponse)
async def latest_sentiment(
    symbol: str = Depends(symbol_path),
    hours: Optional[str] = Query(default=None),
):
    row = await get_sentiment_service().latest(symbol, validate_int(hours, 72, 1, 240))
    if row is None:
        return ApiResponse.ok(data={"symbol": symbol, "found": False})
    return ApiResponse.ok(data={"found": True, **row.model_dump(mode="json")})


# ── 外部数据写入 ──────────────────────────────────────────

@router.post("/options", response_model=ApiResponse)
async def ingest_options(body: OptionsSummary):
    row = body.model_copy(update={"symbol": validate_symbol(body.symbol)})
    return ApiResponse.ok(data=await get_aggregate_service().ingest_options(row))


@router.post("/institutional", response_model=ApiResponse)
async def ingest_institutional(body: InstitutionalFlow):
    row = body.model_copy(update={"symbol": validate_symbol(body.symbol)})
    return ApiResponse.ok(data=await get_aggregate_service().ingest_institutional(row))


@router.post("/news_articles", response_model=ApiResponse)
async def ingest_news_article(body: NewsArticle):
    article = body.model_copy(update={"symbol": validate_symbol(body.symbol)})
    return ApiResponse.ok(data=await get_aggregate_service().ingest_article(article))


@router.post("/prices", response_model=ApiResponse)
async def ingest_prices(body: PriceBatch):
    """批量写入原始 K 线，按 (symbol, ts) upsert 后逐个代码重算日线"""
    data = await get_aggregate_service().ingest_price_batch(body.bars)
    return ApiResponse.ok(data=data, message=f"已写入 {data['count']} 根 K 线")


# ── 持仓 ─────────────────────────────────────────────────

@router.post("/portfolio/{user_id}/holdings", response_model=ApiResponse)
async def add_holding(user_id: str, body: HoldingInput):
    return ApiResponse.ok(data=await get_portfolio_service().add_holding(user_id, body))


@router.get("/portfolio/{user_id}/holdings", response_model=ApiResponse)
async def list_holdings(user_id: str):
    return ApiResponse.ok(data=await get_portfolio_service().list_holdings(user_id))
