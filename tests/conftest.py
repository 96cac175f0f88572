"""
测试公共夹具

  FakeRepository   – 与 MarketRepository 接口一致的内存实现
  MemoryBackend    – 内存缓存后端，可配置读写失败
  FixedClock       – 可手动推进的时钟
"""

import os
import sys
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

# 确保项目根目录在 sys.path
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from market_watch.errors import StoreError  # noqa: E402
from market_watch.models.records import (  # noqa: E402
    Bar,
    DailyAggregate,
    Holding,
    InstitutionalFlow,
    InstrumentMeta,
    NewsArticle,
    OptionsSummary,
    SentimentScore,
)

NOW = datetime(2024, 6, 3, 15, 0, tzinfo=timezone.utc)


class FixedClock:
    """返回固定时间，可通过 advance 推进"""

    def __init__(self, start: datetime = NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class SecondsClock:
    """TTLCache 使用的 epoch 秒时钟"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class MemoryBackend:
    def __init__(self, name: str = "memory", fail_read: bool = False, fail_write: bool = False):
        self.name = name
        self.entries: Dict[str, dict] = {}
        self.fail_read = fail_read
        self.fail_write = fail_write

    def available(self) -> bool:
        return True

    async def read(self, key: str) -> Optional[dict]:
        if self.fail_read:
            raise ConnectionError(f"{self.name} read down")
        return self.entries.get(key)

    async def write(self, key: str, entry: dict) -> None:
        if self.fail_write:
            raise ConnectionError(f"{self.name} write down")
        self.entries[key] = dict(entry)


class FakeRepository:
    """MarketRepository 的内存替身，语义与 MongoDB 查询保持一致"""

    def __init__(self):
        self.prices: Dict[tuple, Bar] = {}
        self.daily: Dict[tuple, DailyAggregate] = {}
        self.sentiment: List[SentimentScore] = []
        self.articles: List[NewsArticle] = []
        self.options: Dict[tuple, OptionsSummary] = {}
        self.institutional: Dict[tuple, InstitutionalFlow] = {}
        self.holdings: List[Holding] = []
        self.meta: Dict[str, InstrumentMeta] = {}
        self.rate_events: List[tuple] = []
        self.fail_daily_write = False
        self.fail_rate_count = False
        self.fail_rate_insert = False
        self.fail_holding_write = False
        self.fail_sentiment_symbols: set = set()

    # 原始 K 线
    async def upsert_bars(self, bars) -> int:
        n = 0
        for b in bars:
            self.prices[(b.symbol, b.timestamp)] = b
            n += 1
        return n

    async def list_bars(self, symbol: str, since: datetime) -> List[Bar]:
        rows = [b for (s, ts), b in self.prices.items() if s == symbol and ts >= since]
        return sorted(rows, key=lambda b: b.timestamp)

    # 日线聚合
    async def upsert_daily_aggregates(self, rows) -> int:
        if self.fail_daily_write:
            raise StoreError("daily_agg 写入失败: down")
        n = 0
        for r in rows:
            self.daily[(r.symbol, r.date)] = r
            n += 1
        return n

    async def latest_daily(self, symbol: str, limit: int = 1) -> List[DailyAggregate]:
        rows = [r for (s, _), r in self.daily.items() if s == symbol]
        return sorted(rows, key=lambda r: r.date, reverse=True)[:limit]

    # 情绪与新闻
    async def insert_sentiment(self, score: SentimentScore) -> None:
        if score.symbol in self.fail_sentiment_symbols:
            raise StoreError("sentiment_scores 写入失败: boom")
        self.sentiment.append(score)

    async def latest_sentiment(self, symbol, window_start, window_end) -> Optional[SentimentScore]:
        rows = [
            s for s in self.sentiment
            if s.symbol == symbol and s.window_start >= window_start and s.window_end <= window_end
        ]
        return max(rows, key=lambda s: s.window_end) if rows else None

    async def insert_news_article(self, article: NewsArticle) -> None:
        self.articles.append(article)

    async def list_news_articles(self, symbol, start, end) -> List[NewsArticle]:
        return [a for a in self.articles if a.symbol == symbol and start <= a.published_at <= end]

    # 期权 / 机构资金
    async def upsert_options(self, row: OptionsSummary) -> None:
        self.options[(row.symbol, row.date)] = row

    async def latest_options(self, symbol: str, since: date) -> Optional[OptionsSummary]:
        rows = [r for (s, d), r in self.options.items() if s == symbol and d >= since]
        return max(rows, key=lambda r: r.date) if rows else None

    async def upsert_institutional(self, row: InstitutionalFlow) -> None:
        self.institutional[(row.symbol, row.date)] = row

    async def latest_institutional(self, symbol: str, since: date) -> Optional[InstitutionalFlow]:
        rows = [r for (s, d), r in self.institutional.items() if s == symbol and d >= since]
        return max(rows, key=lambda r: r.date) if rows else None

    # 持仓与元数据
    async def upsert_holding(self, holding: Holding) -> None:
        if self.fail_holding_write:
            raise StoreError("user_portfolio 写入失败: boom")
        self.holdings = [
            h for h in self.holdings if (h.user_id, h.symbol) != (holding.user_id, holding.symbol)
        ] + [holding]

    async def list_holdings(self, user_id: str) -> List[Holding]:
        return sorted((h for h in self.holdings if h.user_id == user_id), key=lambda h: h.symbol)

    async def get_instrument_meta(self, symbol: str) -> Optional[InstrumentMeta]:
        return self.meta.get(symbol)

    # 限流事件
    async def count_rate_events(self, bucket, identity, since) -> int:
        if self.fail_rate_count:
            raise ConnectionError("rate_gate count down")
        return sum(1 for b, i, ts in self.rate_events if b == bucket and i == identity and ts >= since)

    async def insert_rate_event(self, bucket, identity, ts) -> None:
        if self.fail_rate_insert:
            raise ConnectionError("rate_gate insert down")
        self.rate_events.append((bucket, identity, ts))

    async def delete_rate_events_before(self, cutoff) -> int:
        before = len(self.rate_events)
        self.rate_events = [e for e in self.rate_events if e[2] >= cutoff]
        return before - len(self.rate_events)


# ─────────────────────────────────────────────────────────
# 辅助函数：生成示例 K 线
# ─────────────────────────────────────────────────────────

def daily_bars(symbol: str, n: int, start_close: float = 100.0, step: float = 0.005,
               start: date = date(2023, 6, 1)) -> List[Bar]:
    """n 根日线，收盘价按 (1 + step) 复利变化，时间戳为当日 20:00 UTC"""
    bars = []
    close = start_close
    for i in range(n):
        d = start + timedelta(days=i)
        ts = datetime(d.year, d.month, d.day, 20, 0, tzinfo=timezone.utc)
        bars.append(Bar(
            symbol=symbol, timestamp=ts,
            open=close, high=close * 1.01, low=close * 0.99, close=close, volume=1_000_000,
        ))
        close = close * (1 + step)
    return bars


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def repo():
    return FakeRepository()
