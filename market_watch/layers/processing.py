"""
Layer 3 – 数据处理层
原始 K 线清洗、排序，并按 UTC 自然日聚合为日线。
日内 K 线与提供商直接给出的日线都走同一条聚合路径。
"""

import logging
from typing import Iterable, Optional

import pandas as pd

from market_watch.models.records import Bar

logger = logging.getLogger(__name__)

_PRICE_COLS = ["open", "high", "low", "close", "volume"]
DAILY_COLUMNS = ["date", "high", "low", "close", "volume"]


def _running_low(lows: pd.Series) -> float:
    """
    当日最低价：按时间顺序折叠的滚动最小值。
    当前值为 0（尚未取到有效最低价）时直接取下一根的 low，否则取二者较小者。
    例如 [5, 0] → 0，[9, 0, 10.5] → 10.5，[0, 5] → 5。
    """
    low = 0.0
    for value in lows:
        value = float(value)
        low = value if low == 0 else min(low, value)
    return low


class ProcessingLayer:
    """数据处理层：K 线标准化 + 日线聚合"""

    def bars_to_frame(self, bars: Iterable[Bar]) -> pd.DataFrame:
        """
        将 Bar 序列标准化为 DataFrame

        标准列：ts（UTC）, open, high, low, close, volume；缺失数值按 0 处理，按时间升序。
        """
        records = [b.model_dump() for b in bars]
        if not records:
            return pd.DataFrame(columns=["ts"] + _PRICE_COLS)

        df = pd.DataFrame(records).rename(columns={"timestamp": "ts"})
        df["ts"] = pd.to_datetime(df["ts"], utc=True)
        for col in _PRICE_COLS:
            df[col] = pd.to_numeric(df[col], errors="coerce").fillna(0.0).astype(float)

        # 同一时间戳只保留最后一条
        df = df.drop_duplicates(subset=["ts"], keep="last")
        return df.sort_values("ts", kind="mergesort").reset_index(drop=True)

    def aggregate_daily(self, bars: Iterable[Bar]) -> pd.DataFrame:
        """
        按 UTC 日期聚合：
            high   = 当日最高
            low    = 按时间顺序的滚动最低（见 _running_low）
            close  = 当日按时间最后一根 K 线的收盘价
            volume = 当日成交量之和
        返回按日期升序的 DataFrame，空输入返回空表。
        """
        df = self.bars_to_frame(bars)
        if df.empty:
            return pd.DataFrame(columns=DAILY_COLUMNS)

        df["date"] = df["ts"].dt.date
        daily = (
            df.groupby("date", sort=True)
            .agg(
                high=("high", "max"),
                low=("low", _running_low),
                close=("close", lambda s: float(s.iloc[-1])),
                volume=("volume", "sum"),
            )
            .reset_index()
        )
        logger.debug(f"日线聚合: {len(df)} 根 K 线 → {len(daily)} 个交易日")
        return daily[DAILY_COLUMNS]


# ── 模块级别单例 ──────────────────────────────────────────
_processor: Optional[ProcessingLayer] = None


def get_processing_layer() -> ProcessingLayer:
    global _processor
    if _processor is None:
        _processor = ProcessingLayer()
    return _processor
