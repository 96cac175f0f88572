"""
规范化记录类型
各数据提供商的原始载荷在边界处转换为以下类型，供缓存、指标与信号层共享
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Bar(BaseModel):
    """OHLCV K 线，由 (symbol, timestamp) 唯一标识"""

    model_config = ConfigDict(frozen=True)

    symbol: str
    timestamp: datetime
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    close: Optional[float] = None
    volume: Optional[float] = None


class Quote(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    price: Optional[float] = None
    time: Optional[datetime] = None
    currency: Optional[str] = None
    name: Optional[str] = None
    volume: Optional[float] = None


class NewsItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str = ""
    title: str = ""
    url: str
    published_at: Optional[str] = None
    sentiment: Optional[float] = None


class NewsArticle(BaseModel):
    """入库的新闻正文（情绪汇总的输入）"""

    symbol: str
    published_at: datetime
    source: Optional[str] = None
    title: str = ""
    url: Optional[str] = None
    content: str = ""


class DailyAggregate(BaseModel):
    """日线聚合 + 指标，按 (symbol, date) upsert"""

    symbol: str
    date: date
    high: float
    low: float
    close: float
    volume: float
    rsi14: Optional[float] = None
    sma50: Optional[float] = None
    sma200: Optional[float] = None
    atr14: Optional[float] = None
    # 预留字段，当前不计算
    macd: Optional[float] = None
    macd_signal: Optional[float] = None


class SentimentScore(BaseModel):
    symbol: str
    window_start: datetime
    window_end: datetime
    score: float
    n_articles: int = 0


class OptionsSummary(BaseModel):
    symbol: str
    date: date
    call_volume: Optional[float] = None
    put_volume: Optional[float] = None
    call_oi: Optional[float] = None
    put_oi: Optional[float] = None
    iv_rank: Optional[float] = None
    iv_percentile: Optional[float] = None


class InstitutionalFlow(BaseModel):
    symbol: str
    date: date
    buy_usd: Optional[float] = None
    sell_usd: Optional[float] = None
    net_usd_flow: Optional[float] = None
    block_trade_volume: Optional[float] = None
    block_trade_count: Optional[float] = None
    dark_volume: Optional[float] = None
    dark_share: Optional[float] = None
    source: Optional[str] = None


class Holding(BaseModel):
    user_id: str
    symbol: str
    shares: Optional[float] = None
    cost_basis: Optional[float] = None


class HoldingInput(BaseModel):
    """写入持仓的请求体，user_id 取自路径"""

    symbol: str
    shares: Optional[float] = None
    cost_basis: Optional[float] = None


class PriceBatch(BaseModel):
    """批量写入原始 K 线的请求体"""

    bars: List[Bar] = Field(default_factory=list)


class InstrumentMeta(BaseModel):
    symbol: str
    liquidity_score: Optional[float] = None
    beta_1y: Optional[float] = None


class Signal(BaseModel):
    """单个弱信号对概率的贡献（仅在请求内存在）"""

    name: str
    delta: float = 0.0
    rationale: str


class Tilt(BaseModel):
    """期权 / 机构资金倾向，tilt ∈ [-1, 1]"""

    tilt: float
    label: str
    as_of: Optional[date] = None
    metrics: Dict[str, Any] = Field(default_factory=dict)
    rationale: List[str] = Field(default_factory=list)
