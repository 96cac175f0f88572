"""
行情数据服务
整合数据获取、缓存两层，对外提供带新鲜度缓存的行情 / 历史 / 新闻访问接口

读流程：TTLCache.get → （未命中）ProviderChain.fetch → 规范化 → TTLCache.put
缓存写入失败不影响本次结果，只在 meta.cache_stored 中体现。
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from market_watch.config import CachePolicy, settings
from market_watch.errors import ChainExhausted, StoreError, ValidationError
from market_watch.layers.acquisition import (
    HISTORY_INTERVALS,
    HISTORY_RANGES,
    AcquisitionLayer,
    ChainResult,
    get_acquisition_layer,
)
from market_watch.layers.cache import TTLCache, get_cache, make_key
from market_watch.layers.signals import get_signal_blender
from market_watch.models.records import Bar, NewsItem

logger = logging.getLogger(__name__)


def _bar_row(bar: Bar) -> Dict[str, Any]:
    return {
        "t": bar.timestamp.astimezone(timezone.utc).isoformat(),
        "open": bar.open,
        "high": bar.high,
        "low": bar.low,
        "close": bar.close,
        "volume": bar.volume,
    }


def _row_bar(symbol: str, row: Dict[str, Any]) -> Bar:
    return Bar(
        symbol=symbol,
        timestamp=datetime.fromisoformat(row["t"]),
        open=row.get("open"), high=row.get("high"), low=row.get("low"),
        close=row.get("close"), volume=row.get("volume"),
    )


class MarketService:
    """行情数据业务服务"""

    def __init__(
        self,
        acquisition: AcquisitionLayer = None,
        cache: TTLCache = None,
        policy: CachePolicy = None,
    ):
        self._acq = acquisition or get_acquisition_layer()
        self._cache = cache or get_cache()
        self._policy = policy or settings.cache_policy()
        self._blender = get_signal_blender()

    async def _cached(self, key: str) -> Optional[Dict[str, Any]]:
        hit = await self._cache.get(key)
        if hit is None:
            return None
        payload = dict(hit.value)
        payload["meta"] = {**payload.get("meta", {}), "cached": True, "cache_backend": hit.backend}
        return payload

    async def _store(self, key: str, payload: Dict[str, Any], ttl: int) -> bool:
        try:
            await self._cache.put(key, payload, ttl)
            return True
        except StoreError as exc:
            logger.warning(f"缓存写入失败（结果仍然返回）: {key} {exc.message}")
            return False

    @staticmethod
    def _meta(result: Optional[ChainResult]) -> Dict[str, Any]:
        return {
            "cached": False,
            "failures": result.diagnostics() if result else [],
        }

    # ── 实时行情 ─────────────────────────────────────────

    async def fetch_quote(self, symbol: str, force: bool = False) -> Dict[str, Any]:
        key = make_key("quote", symbol=symbol)
        if not force:
            cached = await self._cached(key)
            if cached is not None:
                return cached

        result = await self._acq.fetch_quote(symbol)
        quote = result.records[0]
        payload = {
            **quote.model_dump(mode="json"),
            "provider": result.provider,
            "source": result.source,
            "meta": self._meta(result),
        }
        stored = await self._store(key, payload, self._policy.ttl_for("quote"))
        payload["meta"]["cache_stored"] = stored
        return payload

    # ── 历史 K 线 ─────────────────────────────────────────

    async def fetch_history(
        self,
        symbol: str,
        range: str = "6mo",
        interval: str = "1d",
        force: bool = False,
        ttl: int = None,
    ) -> Dict[str, Any]:
        """
        获取历史 K 线（带 TTL 缓存）

        Args:
            symbol: 规范化后的证券代码
            range: 5d / 1mo / 3mo / 6mo / 1y / 2y
            interval: 1d / 1wk
            force: 跳过缓存读取
            ttl: 自定义 TTL，按操作包络裁剪
        """
        if range not in HISTORY_RANGES:
            raise ValidationError("Bad range")
        if interval not in HISTORY_INTERVALS:
            raise ValidationError("Bad interval")

        key = make_key("history", symbol=symbol, range=range, interval=interval)
        if not force:
            cached = await self._cached(key)
            if cached is not None:
                return cached

        result = await self._acq.fetch_history(symbol, range, interval)
        rows = [_bar_row(b) for b in result.records]
        payload = {
            "symbol": symbol,
            "provider": result.provider,
            "source": result.source,
            "range": range,
            "interval": interval,
            "count": len(rows),
            "rows": rows,
            "meta": self._meta(result),
        }
        stored = await self._store(key, payload, self._policy.ttl_for(f"history_{interval}", ttl))
        payload["meta"]["cache_stored"] = stored
        return payload

    def bars_from_payload(self, payload: Dict[str, Any]) -> List[Bar]:
        return [_row_bar(payload["symbol"], row) for row in payload.get("rows", [])]

    # ── 新闻 ─────────────────────────────────────────────

    async def fetch_news(
        self,
        symbol: str,
        hours: int = 72,
        limit: int = 25,
        ttl: int = None,
        force: bool = False,
    ) -> Dict[str, Any]:
        """
        获取可信来源新闻（去重后截断到 limit）

        所有提供商都只是"无数据"时返回空列表而不是错误。
        """
        key = make_key("news", symbol=symbol, h=hours, n=limit)
        if not force:
            cached = await self._cached(key)
            if cached is not None:
                return cached

        try:
            result = await self._acq.fetch_news(symbol, hours, limit)
        except ChainExhausted as exc:
            if not exc.all_empty:
                raise
            logger.info(f"{symbol} 近 {hours} 小时无可信来源新闻")
            result = None
            articles: List[NewsItem] = []
            failures = exc.details.get("failures", [])
        else:
            articles = result.records
            failures = result.diagnostics()

        payload = {
            "symbol": symbol,
            "provider": result.provider if result else None,
            "source": result.source if result else None,
            "count": len(articles),
            "articles": [a.model_dump(mode="json") for a in articles],
            "meta": {"cached": False, "failures": failures},
        }
        stored = await self._store(key, payload, self._policy.ttl_for("news", ttl))
        payload["meta"]["cache_stored"] = stored
        return payload

    async def news_sentiment(self, symbol: str, hours: int = 72) -> Dict[str, Any]:
        """基于最新新闻标题的即时情绪（提供商分数优先）"""
        news = await self.fetch_news(symbol, hours=hours)
        items = [NewsItem(**a) for a in news["articles"]]
        return {"symbol": symbol, "hours": hours, **self._blender.headline_sentiment(items)}


# ── 模块级别单例 ──────────────────────────────────────────
_market_service: Optional[MarketService] = None


def get_market_service() -> MarketService:
    global _market_service
    if _market_service is None:
        _market_service = MarketService()
    return _market_service
