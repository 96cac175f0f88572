"""
Layer 4 – 技术分析层
在日线聚合结果上计算 SMA50 / SMA200 / RSI14 / ATR14

规则（i 为按日期升序的下标）：
  SMA(w, i)  i+1 < w 时为 None，否则为 [i-w+1, i] 收盘价均值
  RSI14(i)   i < 14 时为 None；最近 14 个收盘差的涨幅和 / 跌幅和各除以 14，跌幅为 0 时取 100
  ATR14(i)   i < 14 时为 None；最近 14 根的真实波幅均值，前收盘取前一日收盘
MACD 字段保留但不计算（恒为 None）。
"""

import logging
from typing import Iterable, List, Optional

import numpy as np
import pandas as pd

from market_watch.layers.processing import get_processing_layer
from market_watch.models.records import Bar, DailyAggregate

logger = logging.getLogger(__name__)

RSI_PERIOD = 14
ATR_PERIOD = 14
SMA_WINDOWS = (50, 200)

# 滚动求和的浮点残差阈值，低于此值的平均跌幅视为 0
_ZERO_LOSS_EPS = 1e-12


def _to_list(series: pd.Series) -> List[Optional[float]]:
    """NaN → None，其余转为 float"""
    return [None if pd.isna(v) else float(v) for v in series]


def sma(closes: np.ndarray, window: int) -> List[Optional[float]]:
    close = pd.Series(closes, dtype=float)
    return _to_list(close.rolling(window=window, min_periods=window).mean())


def rsi(closes: np.ndarray, period: int = RSI_PERIOD) -> List[Optional[float]]:
    # delta[0] 为 NaN，因此首个完整窗口落在下标 period
    delta = pd.Series(closes, dtype=float).diff()
    gain = delta.clip(lower=0).rolling(window=period, min_periods=period).mean()
    loss = (-delta.clip(upper=0)).rolling(window=period, min_periods=period).mean()
    loss = loss.mask(loss.abs() < _ZERO_LOSS_EPS, 0.0)
    value = 100 - 100 / (1 + gain / loss.replace(0, np.nan))
    value = value.mask(loss == 0, 100.0)
    return _to_list(value)


def true_range(highs: np.ndarray, lows: np.ndarray, closes: np.ndarray) -> pd.Series:
    """真实波幅；首根没有前收盘，记为 NaN"""
    high = pd.Series(highs, dtype=float)
    low = pd.Series(lows, dtype=float)
    prev_close = pd.Series(closes, dtype=float).shift(1)
    tr = pd.concat([
        high - low,
        (high - prev_close).abs(),
        (low - prev_close).abs(),
    ], axis=1).max(axis=1)
    tr.iloc[:1] = np.nan
    return tr


def atr(highs: np.ndarray, lows: np.ndarray, closes: np.ndarray, period: int = ATR_PERIOD) -> List[Optional[float]]:
    tr = true_range(highs, lows, closes)
    return _to_list(tr.rolling(window=period, min_periods=period).mean())


class AnalysisLayer:
    """技术分析层：在处理层输出的日线 DataFrame 上计算指标"""

    def add_indicators(self, daily: pd.DataFrame) -> pd.DataFrame:
        """添加 rsi14 / sma50 / sma200 / atr14 列（缺失为 None）"""
        df = daily.copy()
        if df.empty:
            for col in ("rsi14", "sma50", "sma200", "atr14"):
                df[col] = pd.Series(dtype=object)
            return df

        closes = df["close"].to_numpy(dtype=float)
        highs = df["high"].to_numpy(dtype=float)
        lows = df["low"].to_numpy(dtype=float)

        df["rsi14"] = pd.Series(rsi(closes), index=df.index, dtype=object)
        for w in SMA_WINDOWS:
            df[f"sma{w}"] = pd.Series(sma(closes, w), index=df.index, dtype=object)
        df["atr14"] = pd.Series(atr(highs, lows, closes), index=df.index, dtype=object)
        return df

    def to_aggregates(self, symbol: str, df: pd.DataFrame) -> List[DailyAggregate]:
        return [
            DailyAggregate(
                symbol=symbol,
                date=row["date"],
                high=float(row["high"]),
                low=float(row["low"]),
                close=float(row["close"]),
                volume=float(row["volume"]),
                rsi14=row["rsi14"],
                sma50=row["sma50"],
                sma200=row["sma200"],
                atr14=row["atr14"],
            )
            for row in df.to_dict(orient="records")
        ]


def compute_daily_aggregates(symbol: str, bars: Iterable[Bar]) -> List[DailyAggregate]:
    """
    K 线 → 日线聚合 → 指标，纯函数、幂等

    同样的 Bar 输入总是得到相同的 DailyAggregate 输出；空输入返回空列表。
    """
    daily = get_processing_layer().aggregate_daily(bars)
    if daily.empty:
        return []
    analysis = get_analysis_layer()
    rows = analysis.to_aggregates(symbol, analysis.add_indicators(daily))
    logger.debug(f"{symbol} 指标计算完成: {len(rows)} 行")
    return rows


# ── 模块级别单例 ──────────────────────────────────────────
_analysis: Optional[AnalysisLayer] = None


def get_analysis_layer() -> AnalysisLayer:
    global _analysis
    if _analysis is None:
        _analysis = AnalysisLayer()
    return _analysis
