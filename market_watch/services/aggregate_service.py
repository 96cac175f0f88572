"""
日线聚合服务
原始 K 线入库 → UTC 日线聚合 → 指标计算 → 按 (symbol, date) upsert
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from market_watch.db import MarketRepository, get_repository
from market_watch.errors import StoreError, ValidationError
from market_watch.layers.analysis import compute_daily_aggregates
from market_watch.models.records import Bar, DailyAggregate, InstitutionalFlow, NewsArticle, OptionsSummary
from market_watch.symbols import validate_symbol

logger = logging.getLogger(__name__)

# 从 prices 重算时回看的自然日数（足够覆盖 SMA200）
DEFAULT_LOOKBACK_DAYS = 400


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class AggregateService:
    """日线聚合与数据写入服务"""

    def __init__(
        self,
        repository_getter: Callable[[], MarketRepository] = get_repository,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._repo = repository_getter
        self._clock = clock

    async def recompute_daily_aggregates(self, symbol: str, bars: Iterable[Bar]) -> Dict[str, Any]:
        """
        根据给定 K 线重算并写入日线聚合（幂等）

        写入失败不会丢弃计算结果，返回值中 stored=False 并附带错误信息。
        """
        rows = compute_daily_aggregates(symbol, bars)
        summary = self._summary(symbol, rows)
        if not rows:
            return summary
        try:
            summary["upserted"] = await self._repo().upsert_daily_aggregates(rows)
        except StoreError as exc:
            logger.warning(f"{symbol} 日线聚合写入失败: {exc.message}")
            summary["stored"] = False
            summary["error"] = exc.message
        return summary

    async def recompute_from_store(self, symbol: str, lookback_days: int = DEFAULT_LOOKBACK_DAYS) -> Dict[str, Any]:
        """从 prices 集合读取回看区间内的原始 K 线后重算"""
        since = self._clock() - timedelta(days=lookback_days)
        bars = await self._repo().list_bars(symbol, since)
        logger.info(f"{symbol} 从 prices 读取 {len(bars)} 根 K 线用于重算")
        return await self.recompute_daily_aggregates(symbol, bars)

    async def ingest_bars(self, symbol: str, bars: List[Bar]) -> Dict[str, Any]:
        """K 线入库后立即从存储重算日线"""
        inserted = await self._repo().upsert_bars(bars)
        summary = await self.recompute_from_store(symbol)
        summary["bars_upserted"] = inserted
        return summary

    async def ingest_price_batch(self, bars: List[Bar]) -> Dict[str, Any]:
        """
        多代码 K 线批量入库，按代码分组后逐个重算日线

        代码在分组前统一规范化，空批次报 ValidationError。
        """
        if not bars:
            raise ValidationError("Provide { bars: Bar[] }")
        groups: Dict[str, List[Bar]] = {}
        for bar in bars:
            symbol = validate_symbol(bar.symbol)
            groups.setdefault(symbol, []).append(bar.model_copy(update={"symbol": symbol}))

        results = {}
        for symbol, group in groups.items():
            results[symbol] = await self.ingest_bars(symbol, group)
        logger.info(f"K 线批量入库: {len(bars)} 根, 涉及 {len(groups)} 个代码")
        return {"count": len(bars), "symbols": results}

    @staticmethod
    def _summary(symbol: str, rows: List[DailyAggregate]) -> Dict[str, Any]:
        return {
            "symbol": symbol,
            "days": len(rows),
            "upserted": 0,
            "stored": True,
            "first_date": rows[0].date.isoformat() if rows else None,
            "last_date": rows[-1].date.isoformat() if rows else None,
            "latest": rows[-1].model_dump(mode="json") if rows else None,
        }

    # ── 其他数据写入 ──────────────────────────────────────

    async def ingest_options(self, row: OptionsSummary) -> Dict[str, Any]:
        await self._repo().upsert_options(row)
        return {"upserted": {"symbol": row.symbol, "date": row.date.isoformat()}}

    async def ingest_institutional(self, row: InstitutionalFlow) -> Dict[str, Any]:
        await self._repo().upsert_institutional(row)
        return {"upserted": {"symbol": row.symbol, "date": row.date.isoformat()}}

    async def ingest_article(self, article: NewsArticle) -> Dict[str, Any]:
        await self._repo().insert_news_article(article)
        return {"inserted": {"symbol": article.symbol, "published_at": article.published_at.isoformat()}}


# ── 模块级别单例 ──────────────────────────────────────────
_aggregate_service: Optional[AggregateService] = None


def get_aggregate_service() -> AggregateService:
    global _aggregate_service
    if _aggregate_service is None:
        _aggregate_service = AggregateService()
    return _aggregate_service
