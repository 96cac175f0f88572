"""
信号层 – 可解释的上涨概率混合

基础模型：
  p = 0.50
  RSI      <30 → +0.10，>70 → -0.10
  趋势     SMA50 > SMA200 → +0.07，< → -0.07
  情绪     clamp(score × 0.30, ±0.08)
  动量     clamp(7 根涨跌幅 × 0.50, ±0.06)
  最终 p 限制在 [0.05, 0.95]
每个分支无论方向都会按固定顺序（RSI、趋势、情绪、动量）追加一条说明。

扩展：期权 / 机构资金倾向各以 0.05 的权重叠加；波动率标签；操作提示；
期望收益（对数收益均值与样本标准差）。缺少输入时只跳过并记录说明，不抛异常。
"""

import logging
import math
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from market_watch.models.records import (
    DailyAggregate,
    InstitutionalFlow,
    NewsArticle,
    NewsItem,
    OptionsSummary,
    Signal,
    Tilt,
)

logger = logging.getLogger(__name__)

PROB_BASE = 0.50
PROB_MIN = 0.05
PROB_MAX = 0.95

# 情绪汇总使用的词袋（按分词匹配）
ROLLUP_POSITIVE = {
    "beat", "beats", "surge", "up", "gain", "bull", "strong",
    "optimistic", "positive", "record", "grow", "growth",
}
ROLLUP_NEGATIVE = {
    "miss", "falls", "down", "drop", "bear", "weak",
    "pessimistic", "negative", "cut", "loss", "decline", "risk",
}

# 标题情绪使用的关键词（按子串匹配）
HEADLINE_POSITIVE = (
    "beat", "beats", "growth", "surge", "record", "upgrade",
    "raises", "profit", "outperform", "strong", "rally", "win",
)
HEADLINE_NEGATIVE = (
    "miss", "misses", "downgrade", "cuts", "cut", "falls", "fall",
    "drop", "plunge", "loss", "lawsuit", "weak", "recall", "probe",
)

_TOKEN_RE = re.compile(r"\W+")


def clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def _tilt_label(tilt: float) -> str:
    if tilt > 0.15:
        return "bullish"
    if tilt < -0.15:
        return "bearish"
    return "neutral"


# ── 结果模型 ─────────────────────────────────────────────

class ProbabilityResult(BaseModel):
    probability_up: float
    probability_raw: float
    signals: List[Signal] = Field(default_factory=list)
    rationale: List[str] = Field(default_factory=list)


class ExpectedReturn(BaseModel):
    """期望收益；enough_data 为 False 时表示"未知"，其余字段为空"""

    horizon_days: int
    lookback_days: int
    enough_data: bool
    note: Optional[str] = None
    expected_return_pct: Optional[float] = None
    conf_interval_68_pct: Optional[Dict[str, float]] = None
    confidence: Optional[float] = None
    drift_daily_mean: Optional[float] = None
    vol_daily_sigma: Optional[float] = None
    momentum_7bar_pct: Optional[float] = None
    rationale: List[str] = Field(default_factory=list)


class SignalBlender:
    """信号混合器：全部为纯计算，输入缺失时降级而不报错"""

    # ── 基础概率 ─────────────────────────────────────────

    def momentum_pct(self, closes_desc: Sequence[Optional[float]]) -> Optional[float]:
        """最近 7 根收盘（新 → 旧）的涨跌幅；不足 2 根或分母为 0 时返回 None"""
        window = list(closes_desc)[:7]
        if len(window) < 2:
            return None
        newest, oldest = window[0], window[-1]
        if newest is None or oldest is None or oldest == 0:
            return None
        return (newest - oldest) / oldest

    def base_probability(
        self,
        latest: Optional[DailyAggregate],
        sentiment: Optional[float] = None,
        momentum: Optional[float] = None,
    ) -> ProbabilityResult:
        p = PROB_BASE
        signals: List[Signal] = []

        rsi = latest.rsi14 if latest else None
        if rsi is None:
            signals.append(Signal(name="rsi", rationale="RSI missing"))
        elif rsi < 30:
            signals.append(Signal(name="rsi", delta=0.10, rationale="RSI oversold (<30)"))
        elif rsi > 70:
            signals.append(Signal(name="rsi", delta=-0.10, rationale="RSI overbought (>70)"))
        else:
            signals.append(Signal(name="rsi", rationale="RSI neutral"))

        sma50 = latest.sma50 if latest else None
        sma200 = latest.sma200 if latest else None
        if sma50 is None or sma200 is None:
            signals.append(Signal(name="trend", rationale="Trend MAs missing"))
        elif sma50 > sma200:
            signals.append(Signal(name="trend", delta=0.07, rationale="Uptrend (SMA50>SMA200)"))
        elif sma50 < sma200:
            signals.append(Signal(name="trend", delta=-0.07, rationale="Downtrend (SMA50<SMA200)"))
        else:
            signals.append(Signal(name="trend", rationale="Trend neutral"))

        if sentiment is None:
            signals.append(Signal(name="sentiment", rationale="No recent sentiment"))
        else:
            delta = clamp(sentiment * 0.30, -0.08, 0.08)
            signals.append(Signal(
                name="sentiment",
                delta=delta,
                rationale="Positive sentiment tilt" if delta >= 0 else "Negative sentiment tilt",
            ))

        if momentum is None:
            signals.append(Signal(name="momentum", rationale="Momentum unavailable (need ~7 daily rows)"))
        else:
            delta = clamp(momentum * 0.50, -0.06, 0.06)
            direction = "positive" if momentum >= 0 else "negative"
            signals.append(Signal(
                name="momentum",
                delta=delta,
                rationale=f"7-bar momentum {direction} ({momentum * 100:.1f}%)",
            ))

        for s in signals:
            p += s.delta
        p = clamp(p, PROB_MIN, PROB_MAX)
        return ProbabilityResult(
            probability_up=round(p, 2),
            probability_raw=p,
            signals=signals,
            rationale=[s.rationale for s in signals],
        )

    def blend(
        self,
        p: float,
        options_tilt: Optional[float] = None,
        institutional_tilt: Optional[float] = None,
    ) -> float:
        """叠加期权 / 机构资金倾向（各 0.05 权重），缺失项按 0 处理"""
        p = p + 0.05 * (options_tilt or 0.0) + 0.05 * (institutional_tilt or 0.0)
        return clamp(p, PROB_MIN, PROB_MAX)

    # ── 标签与提示 ───────────────────────────────────────

    def volatility(
        self, atr_now: Optional[float], atr_history: Iterable[Optional[float]]
    ) -> Tuple[Optional[str], Optional[float]]:
        """ATR 与近 30 日均值之比：>1.15 high，<0.85 low，否则 normal"""
        values = [float(v) for v in atr_history if v is not None]
        atr_avg = sum(values) / len(values) if values else None
        if atr_now is None or atr_avg is None:
            return None, atr_avg
        ratio = atr_now / (atr_avg or 1)
        if ratio > 1.15:
            return "high", atr_avg
        if ratio < 0.85:
            return "low", atr_avg
        return "normal", atr_avg

    def action_hint(
        self,
        probability: float,
        sma50: Optional[float],
        sma200: Optional[float],
        volatility: Optional[str],
    ) -> str:
        action = "hold"
        if probability >= 0.6 and sma50 is not None and sma200 is not None and sma50 > sma200:
            action = "consider_accumulating"
        if probability <= 0.45 or volatility == "high":
            action = "watchlist_caution"
        return action

    def crossover(self, sma50: Optional[float], sma200: Optional[float]) -> Optional[str]:
        if sma50 is None or sma200 is None:
            return None
        if sma50 > sma200:
            return "bullish"
        if sma50 < sma200:
            return "bearish"
        return "none"

    def momentum_label(self, momentum: Optional[float]) -> Optional[str]:
        if momentum is None:
            return None
        if abs(momentum) < 0.005:
            return "neutral"
        return "positive" if momentum > 0 else "negative"

    def risk_flags(
        self,
        volatility: Optional[str],
        liquidity: Optional[float],
        beta: Optional[float],
    ) -> List[str]:
        flags = []
        if volatility == "high":
            flags.append("High volatility")
        if liquidity is not None and liquidity < 0.3:
            flags.append("Low liquidity")
        if beta is not None and beta > 1.3:
            flags.append("High beta")
        return flags

    def expected_return_stub(self, probability: float) -> float:
        """围绕 0.50 的简单映射，最多 ±3%"""
        return round((probability - 0.5) * 6, 2)

    def assessment_text(
        self,
        symbol: str,
        probability: float,
        horizon_days: int,
        latest: Optional[DailyAggregate],
        momentum: Optional[float],
        sentiment: Optional[float],
        hours: int,
        volatility: Optional[str],
    ) -> str:
        parts = [f"{symbol}: {probability * 100:.0f}% short-term upside probability over ~{horizon_days} days."]
        if latest is not None and latest.rsi14 is not None:
            rsi = latest.rsi14
            zone = "oversold" if rsi < 30 else "overbought" if rsi > 70 else "neutral"
            parts.append(f"RSI {round(rsi)} ({zone})")
        cross = self.crossover(latest.sma50, latest.sma200) if latest is not None else None
        if cross is not None:
            trend, sign = {"bullish": ("bullish", ">"), "bearish": ("bearish", "<")}.get(cross, ("neutral", "="))
            parts.append(f"Trend {trend} (SMA50 {sign} SMA200)")
        if momentum is not None:
            parts.append(f"7-bar momentum {momentum * 100:.1f}%")
        if sentiment is not None:
            parts.append(f"News sentiment {'+' if sentiment >= 0 else ''}{sentiment:.3f} (last {hours}h)")
        if volatility:
            parts.append(f"Volatility: {volatility} (ATR vs 30-day avg)")
        return " • ".join(parts)

    # ── 期望收益 ─────────────────────────────────────────

    def expected_return(
        self, closes_asc: Sequence[Optional[float]], horizon_days: int, lookback_days: int
    ) -> ExpectedReturn:
        rows = list(closes_asc)
        base = dict(horizon_days=horizon_days, lookback_days=lookback_days)
        if len(rows) < 2:
            return ExpectedReturn(enough_data=False, note="Need at least 2 daily rows", **base)

        returns = []
        for c0, c1 in zip(rows[:-1], rows[1:]):
            if c0 is None or c1 is None or not math.isfinite(c0) or not math.isfinite(c1) or c0 <= 0:
                continue
            returns.append(math.log(c1 / c0))
        if len(returns) < 10:
            return ExpectedReturn(enough_data=False, note="Need ~10 returns; add more history.", **base)

        mean = sum(returns) / len(returns)
        variance = sum((r - mean) ** 2 for r in returns) / max(1, len(returns) - 1)
        sigma = math.sqrt(max(variance, 0.0))
        h = horizon_days
        expected_log = h * mean
        band = math.sqrt(h) * sigma

        momentum = None
        if len(rows) >= 8:
            c_new, c_old = rows[-1], rows[-8]
            if c_new is not None and c_old:
                momentum = round((c_new - c_old) / c_old * 100, 2)

        return ExpectedReturn(
            enough_data=True,
            expected_return_pct=round((math.exp(expected_log) - 1) * 100, 2),
            conf_interval_68_pct={
                "low": round((math.exp(expected_log - band) - 1) * 100, 2),
                "high": round((math.exp(expected_log + band) - 1) * 100, 2),
            },
            confidence=round(clamp(1 - band / 0.20, 0.0, 1.0), 2),
            drift_daily_mean=round(mean * 100, 3),
            vol_daily_sigma=round(sigma * 100, 3),
            momentum_7bar_pct=momentum,
            rationale=[
                "Drift/vol estimated from recent log-returns",
                "Interval is 68% (~1σ) in log space",
                "Short horizons only; not investment advice",
            ],
            **base,
        )

    # ── 期权 / 机构资金倾向 ─────────────────────────────

    def options_tilt(self, row: OptionsSummary) -> Tilt:
        """成交量与持仓量的认购/认沽比 + IV rank，权重 0.6 / 0.3 / 0.1"""
        cv = float(row.call_volume or 0)
        pv = float(row.put_volume or 0)
        coi = float(row.call_oi or 0)
        poi = float(row.put_oi or 0)
        ivr = row.iv_rank

        def ratio(calls: float, puts: float) -> float:
            if puts == 0:
                return math.inf if calls > 0 else 1.0
            return calls / puts

        vol_ratio = ratio(cv, pv)
        oi_ratio = ratio(coi, poi)
        r1 = clamp((vol_ratio - 1) * 0.5, -1, 1) if math.isfinite(vol_ratio) else 1.0
        r2 = clamp((oi_ratio - 1) * 0.5, -1, 1) if math.isfinite(oi_ratio) else 1.0
        r3 = clamp((0.5 - ivr) * 0.6, -1, 1) if ivr is not None else 0.0
        tilt = clamp(r1 * 0.6 + r2 * 0.3 + r3 * 0.1, -1, 1)

        def fmt(x: float) -> str:
            return f"{x:.2f}" if math.isfinite(x) else "∞"

        return Tilt(
            tilt=round(tilt, 2),
            label=_tilt_label(tilt),
            as_of=row.date,
            metrics={
                "call_volume": cv,
                "put_volume": pv,
                "call_oi": coi,
                "put_oi": poi,
                "iv_rank": ivr,
                "volume_call_put": round(vol_ratio, 2) if math.isfinite(vol_ratio) else None,
                "oi_call_put": round(oi_ratio, 2) if math.isfinite(oi_ratio) else None,
            },
            rationale=[
                f"Volume call/put ratio {fmt(vol_ratio)}",
                f"OI call/put ratio {fmt(oi_ratio)}",
                f"IV rank {ivr}" if ivr is not None else "IV rank unavailable",
            ],
        )

    def institutional_tilt(self, row: InstitutionalFlow) -> Tilt:
        """净流入、大宗成交量、暗池占比的阈值打分，限制在 [-1, 1]"""
        net = row.net_usd_flow
        if net is None and row.buy_usd is not None and row.sell_usd is not None:
            net = row.buy_usd - row.sell_usd
        block_vol = row.block_trade_volume
        dark_share = row.dark_share

        tilt = 0.0
        rationale = []

        if net is None:
            rationale.append("Net flow unavailable")
        elif net > 10_000_000:
            tilt += 0.30
            rationale.append(f"Strong net buying: ${round(net / 1e6)}M")
        elif net > 1_000_000:
            tilt += 0.15
            rationale.append(f"Net buying: ${round(net / 1e6)}M")
        elif net < -10_000_000:
            tilt -= 0.30
            rationale.append(f"Strong net selling: ${round(-net / 1e6)}M")
        elif net < -1_000_000:
            tilt -= 0.15
            rationale.append(f"Net selling: ${round(-net / 1e6)}M")
        else:
            rationale.append("Net flow ~flat")

        if block_vol is None:
            rationale.append("Block volume unavailable")
        elif block_vol > 2_000_000:
            tilt += 0.10
            rationale.append(f"Heavy block volume: {round(block_vol / 1e6)}M sh")
        elif block_vol > 500_000:
            tilt += 0.05
            rationale.append(f"Elevated block volume: {round(block_vol / 1e3)}k sh")
        else:
            rationale.append("Block volume modest")

        if dark_share is None:
            rationale.append("Dark share unavailable")
        elif dark_share >= 0.50:
            tilt -= 0.10
            rationale.append(f"High dark share: {dark_share * 100:.0f}%")
        elif dark_share >= 0.40:
            tilt -= 0.05
            rationale.append(f"Elevated dark share: {dark_share * 100:.0f}%")
        elif dark_share <= 0.20:
            tilt += 0.05
            rationale.append(f"Low dark share: {dark_share * 100:.0f}%")
        else:
            rationale.append(f"Dark share normal: {dark_share * 100:.0f}%")

        tilt = clamp(tilt, -1, 1)
        return Tilt(
            tilt=round(tilt, 2),
            label=_tilt_label(tilt),
            as_of=row.date,
            metrics={
                "net_usd_flow": net,
                "buy_usd": row.buy_usd,
                "sell_usd": row.sell_usd,
                "block_trade_volume": block_vol,
                "block_trade_count": row.block_trade_count,
                "dark_share": dark_share,
                "source": row.source,
            },
            rationale=rationale,
        )

    # ── 新闻情绪 ─────────────────────────────────────────

    def keyword_sentiment(self, articles: Sequence[NewsArticle]) -> float:
        """词袋得分 / 总词数（情绪汇总用）；无词时为 0"""
        score = 0
        tokens_total = 0
        for a in articles:
            text = f"{a.title or ''} {a.content or ''}".lower()
            tokens = [t for t in _TOKEN_RE.split(text) if t]
            tokens_total += len(tokens)
            for t in tokens:
                if t in ROLLUP_POSITIVE:
                    score += 1
                if t in ROLLUP_NEGATIVE:
                    score -= 1
        return score / tokens_total if tokens_total > 0 else 0.0

    def headline_score(self, title: str) -> int:
        s = (title or "").lower()
        return sum(1 for w in HEADLINE_POSITIVE if w in s) - sum(1 for w in HEADLINE_NEGATIVE if w in s)

    def headline_sentiment(self, items: Sequence[NewsItem]) -> Dict[str, Any]:
        """
        标题情绪：提供商给出分数时取平均，否则按关键词计数 / 文章数

        bucket：> 0.5 positive，< -0.5 negative，否则 neutral
        """
        if not items:
            return {"count": 0, "score": 0.0, "bucket": "neutral", "scored_by": None, "top_headlines": []}

        provider_scores = [i.sentiment for i in items if i.sentiment is not None and math.isfinite(i.sentiment)]
        if provider_scores:
            score = sum(provider_scores) / len(provider_scores)
            scored_by = "provider"
        else:
            score = sum(self.headline_score(i.title) for i in items) / max(len(items), 1)
            scored_by = "keywords"

        bucket = "positive" if score > 0.5 else "negative" if score < -0.5 else "neutral"
        return {
            "count": len(items),
            "score": round(score, 2),
            "bucket": bucket,
            "scored_by": scored_by,
            "top_headlines": [
                {"source": i.source, "title": i.title, "url": i.url, "published_at": i.published_at}
                for i in items[:5]
            ],
        }


# ── 模块级别单例 ──────────────────────────────────────────
_blender: Optional[SignalBlender] = None


def get_signal_blender() -> SignalBlender:
    global _blender
    if _blender is None:
        _blender = SignalBlender()
    return _blender
