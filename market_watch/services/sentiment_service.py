"""
情绪汇总服务
对回看窗口内入库的新闻做词袋打分，追加写入 sentiment_scores
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from market_watch.config import settings
from market_watch.db import MarketRepository, get_repository
from market_watch.errors import StoreError
from market_watch.layers.signals import get_signal_blender
from market_watch.models.records import SentimentScore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class SentimentService:

    def __init__(
        self,
        repository_getter: Callable[[], MarketRepository] = get_repository,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._repo = repository_getter
        self._clock = clock
        self._blender = get_signal_blender()

    async def rollup(self, symbol: str, lookback_hours: int = None) -> Dict[str, Any]:
        hours = lookback_hours or settings.SENTIMENT_LOOKBACK_HOURS
        window_end = self._clock()
        return await self._rollup(self._repo(), symbol, hours, window_end)

    async def rollup_batch(self, symbols: List[str], lookback_hours: int = None) -> Dict[str, Any]:
        """
        多代码情绪汇总，共用同一个时间窗口

        单个代码写入失败只记入该代码的结果（stored=False, score=0），不影响其余代码。
        """
        hours = lookback_hours or settings.SENTIMENT_LOOKBACK_HOURS
        window_end = self._clock()
        repo = self._repo()
        results = []
        for symbol in symbols:
            try:
                row = await self._rollup(repo, symbol, hours, window_end)
            except StoreError as exc:
                logger.warning(f"{symbol} 情绪汇总写入失败: {exc.message}")
                row = {"symbol": symbol, "n_articles": 0, "score": 0.0, "stored": False, "error": exc.message}
            results.append(row)
        return {"window_hours": hours, "count": len(results), "results": results}

    async def _rollup(self, repo: MarketRepository, symbol: str, hours: int, window_end: datetime) -> Dict[str, Any]:
        window_start = window_end - timedelta(hours=hours)
        articles = await repo.list_news_articles(symbol, window_start, window_end)
        score = self._blender.keyword_sentiment(articles)
        row = SentimentScore(
            symbol=symbol,
            window_start=window_start,
            window_end=window_end,
            score=score,
            n_articles=len(articles),
        )
        await repo.insert_sentiment(row)
        logger.info(f"{symbol} 情绪汇总: {len(articles)} 篇文章, score={score:.4f}")
        return {
            "symbol": symbol,
            "window_hours": hours,
            "n_articles": len(articles),
            "score": score,
            "stored": True,
            "window_start": window_start.isoformat(),
            "window_end": window_end.isoformat(),
        }

    async def latest(self, symbol: str, hours: int = None) -> Optional[SentimentScore]:
        """回看窗口内最新的一条情绪分"""
        hours = hours or settings.SENTIMENT_LOOKBACK_HOURS
        now = self._clock()
        return await self._repo().latest_sentiment(symbol, now - timedelta(hours=hours), now)


# ── 模块级别单例 ──────────────────────────────────────────
_sentiment_service: Optional[SentimentService] = None


def get_sentiment_service() -> SentimentService:
    global _sentiment_service
    if _sentiment_service is None:
        _sentiment_service = SentimentService()
    return _sentiment_service
