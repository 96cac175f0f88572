"""
信号路由
GET /api/tech/{symbol}                   - 最新日线技术指标
GET /api/prob/{symbol}                   - 上涨概率（含期权 / 机构资金叠加）
GET /api/insight/{symbol}                - 综合洞察
GET /api/expected_return/{symbol}        - 基于对数收益的期望收益
GET /api/compare?symbols=A,B             - 多代码对比
GET /api/portfolio/{user_id}/insights    - 持仓洞察
GET /api/options/{symbol}/signal         - 期权倾向
GET /api/institutional/{symbol}/signal   - 机构资金倾向
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from market_watch.models.response import ApiResponse
from market_watch.routers.deps import rate_limit, symbol_path
from market_watch.services.signal_service import get_signal_service
from market_watch.symbols import validate_int, validate_symbols

router = APIRouter(prefix="/api", tags=["信号分析"])

_signals = [Depends(rate_limit("signals"))]


def _hours(raw: Optional[str]) -> int:
    return validate_int(raw, 72, 1, 240)


@router.get("/tech/{symbol}", response_model=ApiResponse, dependencies=_signals)
async def get_tech(symbol: str = Depends(symbol_path)):
    """最新一条日线聚合的技术指标"""
    return ApiResponse.ok(data=await get_signal_service().tech(symbol))


@router.get("/prob/{symbol}", response_model=ApiResponse, dependencies=_signals)
async def get_probability(
    symbol: str = Depends(symbol_path),
    horizon_days: Optional[str] = Query(default=None, description="预测天数 1-30，默认 5"),
    hours: Optional[str] = Query(default=None, description="情绪回看小时数 1-240，默认 72"),
):
    """
    短期上涨概率

    基础概率 0.50，按 RSI / 均线趋势 / 新闻情绪 / 7 日动量调整，
    再叠加期权与机构资金倾向，结果限制在 [0.05, 0.95]。
    """
    data = await get_signal_service().blend_probability(
        symbol, horizon_days=validate_int(horizon_days, 5, 1, 30), hours=_hours(hours)
    )
    return ApiResponse.ok(data=data)


@router.get("/insight/{symbol}", response_model=ApiResponse, dependencies=[Depends(rate_limit("insight"))])
async def get_insight(
    symbol: str = Depends(symbol_path),
    horizon_days: Optional[str] = Query(default=None),
    hours: Optional[str] = Query(default=None),
):
    data = await get_signal_service().insight(
        symbol, horizon_days=validate_int(horizon_days, 5, 1, 30), hours=_hours(hours)
    )
    return ApiResponse.ok(data=data)


@router.get("/expected_return/{symbol}", response_model=ApiResponse, dependencies=_signals)
async def get_expected_return(
    symbol: str = Depends(symbol_path),
    horizon_days: Optional[str] = Query(default=None, description="预测天数 1-30，默认 7"),
    lookback_days: Optional[str] = Query(default=None, description="回看交易日 20-250，默认 90"),
):
    """数据不足时返回 enough_data=false 与说明，而不是错误"""
    data = await get_signal_service().expected_return(
        symbol,
        horizon_days=validate_int(horizon_days, 7, 1, 30),
        lookback_days=validate_int(lookback_days, 90, 20, 250),
    )
    return ApiResponse.ok(data=data)


@router.get("/compare", response_model=ApiResponse, dependencies=[Depends(rate_limit("insight"))])
async def compare_symbols(
    symbols: Optional[str] = Query(default=None, description="逗号分隔，最多 25 个"),
    hours: Optional[str] = Query(default=None),
    horizon_days: Optional[str] = Query(default=None),
):
    """多代码按上涨概率排序"""
    items = validate_symbols(symbols)
    data = await get_signal_service().compare(
        items, hours=_hours(hours), horizon_days=validate_int(horizon_days, 5, 1, 30)
    )
    return ApiResponse.ok(data=data)


@router.get("/portfolio/{user_id}/insights", response_model=ApiResponse, dependencies=_signals)
async def get_portfolio_insights(
    user_id: str,
    hours: Optional[str] = Query(default=None),
):
    data = await get_signal_service().portfolio_insights(user_id, hours=_hours(hours))
    return ApiResponse.ok(data=data)


@router.get("/options/{symbol}/signal", response_model=ApiResponse, dependencies=_signals)
async def get_options_signal(
    symbol: str = Depends(symbol_path),
    fallback_days: Optional[str] = Query(default=None, description="回看自然日 1-60，默认 7"),
):
    data = await get_signal_service().options_signal(symbol, validate_int(fallback_days, 7, 1, 60))
    return ApiResponse.ok(data=data)


@router.get("/institutional/{symbol}/signal", response_model=ApiResponse, dependencies=_signals)
async def get_institutional_signal(
    symbol: str = Depends(symbol_path),
    fallback_days: Optional[str] = Query(default=None, description="回看自然日 1-60，默认 10"),
):
    data = await get_signal_service().institutional_signal(symbol, validate_int(fallback_days, 10, 1, 60))
    return ApiResponse.ok(data=data)
