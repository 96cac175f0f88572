"""
信号服务
读取日线聚合、情绪、期权、机构资金等子数据，交给 SignalBlender 计算概率、标签与解释

可选子数据（情绪 / 期权 / 机构资金 / 标的元数据）并发读取，任何一项失败只记录日志、按缺失处理，
不会影响其他子数据与主结果。
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from market_watch.config import settings
from market_watch.db import MarketRepository, get_repository
from market_watch.layers.signals import SignalBlender, get_signal_blender
from market_watch.models.records import DailyAggregate, InstitutionalFlow, OptionsSummary, Tilt

logger = logging.getLogger(__name__)

# 计算动量与 ATR 均值所需的最近日线行数
_CONTEXT_ROWS = 30


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass
class SymbolContext:
    """单个代码在一次请求内的信号输入"""

    symbol: str
    rows: List[DailyAggregate] = field(default_factory=list)
    sentiment: Optional[float] = None
    options: Optional[Tilt] = None
    institutional: Optional[Tilt] = None
    liquidity: Optional[float] = None
    beta: Optional[float] = None

    @property
    def latest(self) -> Optional[DailyAggregate]:
        return self.rows[0] if self.rows else None


class SignalService:
    """信号业务服务"""

    def __init__(
        self,
        repository_getter: Callable[[], MarketRepository] = get_repository,
        blender: SignalBlender = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._repo = repository_getter
        self._blender = blender or get_signal_blender()
        self._clock = clock

    # ── 子数据读取 ───────────────────────────────────────

    async def _sentiment(self, repo: MarketRepository, symbol: str, hours: int) -> Optional[float]:
        now = self._clock()
        row = await repo.latest_sentiment(symbol, now - timedelta(hours=hours), now)
        return row.score if row else None

    async def _options(self, repo: MarketRepository, symbol: str, fallback_days: int) -> Optional[Tilt]:
        since = (self._clock() - timedelta(days=fallback_days)).date()
        row = await repo.latest_options(symbol, since)
        return self._blender.options_tilt(row) if row else None

    async def _institutional(self, repo: MarketRepository, symbol: str, fallback_days: int) -> Optional[Tilt]:
        since = (self._clock() - timedelta(days=fallback_days)).date()
        row = await repo.latest_institutional(symbol, since)
        return self._blender.institutional_tilt(row) if row else None

    async def _load_context(
        self,
        symbol: str,
        hours: int,
        with_flows: bool = False,
        with_meta: bool = False,
    ) -> SymbolContext:
        repo = self._repo()
        rows = await repo.latest_daily(symbol, _CONTEXT_ROWS)

        names = ["sentiment"]
        calls = [self._sentiment(repo, symbol, hours)]
        if with_flows:
            names += ["options", "institutional"]
            calls += [
                self._options(repo, symbol, settings.OPTIONS_FALLBACK_DAYS),
                self._institutional(repo, symbol, settings.INSTITUTIONAL_FALLBACK_DAYS),
            ]
        if with_meta:
            names.append("meta")
            calls.append(repo.get_instrument_meta(symbol))

        results = await asyncio.gather(*calls, return_exceptions=True)
        ctx = SymbolContext(symbol=symbol, rows=rows)
        for name, value in zip(names, results):
            if isinstance(value, Exception):
                logger.warning(f"{symbol} 子数据 {name} 读取失败（按缺失处理）: {value}")
                continue
            if name == "meta":
                if value is not None:
                    ctx.liquidity = value.liquidity_score
                    ctx.beta = value.beta_1y
            else:
                setattr(ctx, name, value)
        return ctx

    def _evaluate(self, ctx: SymbolContext) -> Dict[str, Any]:
        """概率、动量、波动率等公共字段"""
        latest = ctx.latest
        momentum = self._blender.momentum_pct([r.close for r in ctx.rows[:7]])
        result = self._blender.base_probability(latest, ctx.sentiment, momentum)
        volatility, atr_avg = self._blender.volatility(
            latest.atr14 if latest else None, [r.atr14 for r in ctx.rows]
        )
        return {
            "result": result,
            "momentum": momentum,
            "volatility": volatility,
            "atr_avg": atr_avg,
        }

    @staticmethod
    def _technicals(latest: Optional[DailyAggregate]) -> Dict[str, Any]:
        return {
            "rsi": latest.rsi14 if latest else None,
            "sma50": latest.sma50 if latest else None,
            "sma200": latest.sma200 if latest else None,
        }

    @staticmethod
    def _pct(momentum: Optional[float]) -> Optional[float]:
        return round(momentum * 100, 2) if momentum is not None else None

    # ── 对外接口 ─────────────────────────────────────────

    async def tech(self, symbol: str) -> Dict[str, Any]:
        rows = await self._repo().latest_daily(symbol, 1)
        if not rows:
            return {"symbol": symbol, "computed": False, "note": "No daily_agg row found yet"}
        row = rows[0]
        return {
            "symbol": symbol,
            "computed": True,
            "date": row.date.isoformat(),
            "close": row.close,
            "rsi": row.rsi14,
            "macd": {"value": row.macd, "signal": row.macd_signal},
            "sma50": row.sma50,
            "sma200": row.sma200,
            "crossover": self._blender.crossover(row.sma50, row.sma200) or "none",
            "atr": row.atr14,
        }

    async def blend_probability(self, symbol: str, horizon_days: int = 5, hours: int = None) -> Dict[str, Any]:
        """
        上涨概率

        基础模型结果之外，若有期权 / 机构资金数据，则给出叠加后的 probability_blended。
        """
        hours = hours or settings.SENTIMENT_LOOKBACK_HOURS
        ctx = await self._load_context(symbol, hours, with_flows=True)
        ev = self._evaluate(ctx)
        result = ev["result"]
        options_tilt = ctx.options.tilt if ctx.options else None
        inst_tilt = ctx.institutional.tilt if ctx.institutional else None
        blended = self._blender.blend(result.probability_raw, options_tilt, inst_tilt)
        return {
            "symbol": symbol,
            "horizon_days": horizon_days,
            "window_hours": hours,
            "probability_up": result.probability_up,
            "probability_blended": round(blended, 2),
            "signals": {
                **self._technicals(ctx.latest),
                "sentiment": ctx.sentiment,
                "momentum_7bar_pct": self._pct(ev["momentum"]),
                "options_tilt": options_tilt,
                "institutional_tilt": inst_tilt,
            },
            "contributions": [s.model_dump() for s in result.signals],
            "rationale": result.rationale,
        }

    async def insight(self, symbol: str, horizon_days: int = 5, hours: int = None) -> Dict[str, Any]:
        """综合洞察：概率、动量标签、波动率、均线交叉、期望收益、操作提示与文字说明"""
        hours = hours or settings.SENTIMENT_LOOKBACK_HOURS
        ctx = await self._load_context(symbol, hours)
        ev = self._evaluate(ctx)
        result = ev["result"]
        latest = ctx.latest
        p = result.probability_up
        sma50 = latest.sma50 if latest else None
        sma200 = latest.sma200 if latest else None
        return {
            "symbol": symbol,
            "horizon_days": horizon_days,
            "sentiment": ctx.sentiment,
            "probability_up": p,
            "momentum": self._blender.momentum_label(ev["momentum"]),
            "momentum_7bar_pct": self._pct(ev["momentum"]),
            "volatility": ev["volatility"],
            "expected_return_pct": self._blender.expected_return_stub(p),
            "technicals": {
                **self._technicals(latest),
                "crossover": self._blender.crossover(sma50, sma200),
                "atr": latest.atr14 if latest else None,
                "atr_avg_30d": ev["atr_avg"],
            },
            "rationale": result.rationale,
            "action": self._blender.action_hint(p, sma50, sma200, ev["volatility"]),
            "analysis": self._blender.assessment_text(
                symbol, p, horizon_days, latest, ev["momentum"], ctx.sentiment, hours, ev["volatility"]
            ),
        }

    async def expected_return(self, symbol: str, horizon_days: int = 7, lookback_days: int = 90) -> Dict[str, Any]:
        rows = await self._repo().latest_daily(symbol, lookback_days + 1)
        closes = [r.close for r in reversed(rows)]
        estimate = self._blender.expected_return(closes, horizon_days, lookback_days)
        return {"symbol": symbol, **estimate.model_dump()}

    async def compare(self, symbols: List[str], hours: int = None, horizon_days: int = 5) -> Dict[str, Any]:
        """多个代码按上涨概率排序，并给出概率 / 动量 / 情绪最优者"""
        hours = hours or settings.SENTIMENT_LOOKBACK_HOURS
        contexts = await asyncio.gather(*[self._load_context(s, hours) for s in symbols])
        results = []
        for ctx in contexts:
            ev = self._evaluate(ctx)
            results.append({
                "symbol": ctx.symbol,
                "probability_up": ev["result"].probability_up,
                "momentum_7bar_pct": self._pct(ev["momentum"]),
                "volatility": ev["volatility"],
                "sentiment": ctx.sentiment,
                "signals": self._technicals(ctx.latest),
                "rationale": ev["result"].rationale,
            })

        results.sort(key=lambda r: r["probability_up"], reverse=True)
        by_momentum = sorted(
            results, key=lambda r: r["momentum_7bar_pct"] if r["momentum_7bar_pct"] is not None else -1e9,
            reverse=True,
        )
        by_sentiment = sorted(
            results, key=lambda r: r["sentiment"] if r["sentiment"] is not None else -1e9, reverse=True
        )
        return {
            "horizon_days": horizon_days,
            "window_hours": hours,
            "count": len(results),
            "summary": {
                "highest_probability": results[0]["symbol"] if results else None,
                "strongest_momentum": by_momentum[0]["symbol"] if by_momentum else None,
                "best_sentiment": by_sentiment[0]["symbol"] if by_sentiment else None,
            },
            "results": results,
        }

    async def portfolio_insights(self, user_id: str, hours: int = None) -> Dict[str, Any]:
        """用户持仓的概率、动量、波动率与风险标记"""
        hours = hours or settings.SENTIMENT_LOOKBACK_HOURS
        holdings = await self._repo().list_holdings(user_id)
        if not holdings:
            return {"user": user_id, "window_hours": hours, "count": 0, "results": []}

        by_symbol = {h.symbol.upper(): h for h in holdings}
        contexts = await asyncio.gather(
            *[self._load_context(s, hours, with_meta=True) for s in by_symbol]
        )
        results = []
        for ctx in contexts:
            ev = self._evaluate(ctx)
            holding = by_symbol[ctx.symbol]
            results.append({
                "symbol": ctx.symbol,
                "shares": holding.shares,
                "cost_basis": holding.cost_basis,
                "probability_up": ev["result"].probability_up,
                "momentum_7bar_pct": self._pct(ev["momentum"]),
                "sentiment": ctx.sentiment,
                "volatility": ev["volatility"],
                "liquidity_score": ctx.liquidity,
                "beta_1y": ctx.beta,
                "signals": self._technicals(ctx.latest),
                "risk_flags": self._blender.risk_flags(ev["volatility"], ctx.liquidity, ctx.beta),
                "rationale": ev["result"].rationale,
            })
        results.sort(key=lambda r: r["probability_up"], reverse=True)
        return {"user": user_id, "window_hours": hours, "count": len(results), "results": results}

    async def options_signal(self, symbol: str, fallback_days: int = None) -> Dict[str, Any]:
        days = fallback_days or settings.OPTIONS_FALLBACK_DAYS
        tilt = await self._options(self._repo(), symbol, days)
        if tilt is None:
            return {"symbol": symbol, "found": False, "note": "No options_summary row in range"}
        return {"symbol": symbol, "found": True, **tilt.model_dump(mode="json")}

    async def institutional_signal(self, symbol: str, fallback_days: int = None) -> Dict[str, Any]:
        days = fallback_days or settings.INSTITUTIONAL_FALLBACK_DAYS
        tilt = await self._institutional(self._repo(), symbol, days)
        if tilt is None:
            return {"symbol": symbol, "found": False, "note": "No institutional_flows row in range"}
        return {"symbol": symbol, "found": True, **tilt.model_dump(mode="json")}


# ── 模块级别单例 ──────────────────────────────────────────
_signal_service: Optional[SignalService] = None


def get_signal_service() -> SignalService:
    global _signal_service
    if _signal_service is None:
        _signal_service = SignalService()
    return _signal_service
