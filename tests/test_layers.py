"""
分层组件单元测试

覆盖范围：
  - 缓存层（指纹、新鲜度边界、后端降级）
  - 限流层（滑动窗口、失败放行、概率清理）
  - 数据处理层（UTC 日线聚合）
  - 技术分析层（SMA / RSI / ATR 的空值规则与数值范围）
"""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from market_watch.config import RateLimitRule
from market_watch.errors import RateLimited, StoreError
from market_watch.layers.analysis import atr, compute_daily_aggregates, rsi, sma
from market_watch.layers.cache import TTLCache, make_key
from market_watch.layers.processing import get_processing_layer
from market_watch.layers.rate_limit import RateLimiter, get_client_ip
from market_watch.layers.signals import get_signal_blender
from market_watch.models.records import Bar

from conftest import FakeRepository, FixedClock, MemoryBackend, SecondsClock, daily_bars


# ─────────────────────────────────────────────────────────
# 1. 缓存层
# ─────────────────────────────────────────────────────────

class TestCacheKeys:
    def test_key_format(self):
        key = make_key("history", symbol="AAPL", range="1y", interval="1d")
        assert key == "history:interval=1d:range=1y:symbol=AAPL"

    def test_key_independent_of_param_order(self):
        assert make_key("news", symbol="AAPL", h=72, n=25) == make_key("news", n=25, h=72, symbol="AAPL")

    def test_none_params_skipped(self):
        assert make_key("quote", symbol="AAPL", ttl=None) == "quote:symbol=AAPL"

    def test_long_key_hashed(self):
        key = make_key("news", symbol="A" * 300)
        assert key.startswith("news:")
        assert len(key) == len("news:") + 32


class TestTTLCache:
    @pytest.mark.asyncio
    async def test_fresh_until_expiry_boundary(self):
        clock = SecondsClock()
        cache = TTLCache(backends=[MemoryBackend()], clock=clock)
        await cache.put("k", {"v": 1}, ttl=10)

        clock.now += 9.5
        hit = await cache.get("k")
        assert hit is not None
        assert hit.value == {"v": 1}
        assert hit.backend == "memory"

        clock.now += 0.5
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_ttl_clamped_to_global_envelope(self):
        backend = MemoryBackend()
        cache = TTLCache(backends=[backend], clock=SecondsClock())
        await cache.put("k", 1, ttl=0)
        assert backend.entries["k"]["ttl_seconds"] == 1

    @pytest.mark.asyncio
    async def test_read_failure_falls_through(self):
        broken = MemoryBackend("redis", fail_read=True)
        healthy = MemoryBackend("mongodb")
        clock = SecondsClock()
        healthy.entries["k"] = {"value": "x", "stored_at": clock.now, "ttl_seconds": 60}
        hit = await TTLCache(backends=[broken, healthy], clock=clock).get("k")
        assert hit.backend == "mongodb"

    @pytest.mark.asyncio
    async def test_expired_entry_skipped_for_fresher_backend(self):
        clock = SecondsClock()
        first = MemoryBackend("redis")
        second = MemoryBackend("mongodb")
        first.entries["k"] = {"value": "old", "stored_at": clock.now - 100, "ttl_seconds": 10}
        second.entries["k"] = {"value": "new", "stored_at": clock.now, "ttl_seconds": 10}
        hit = await TTLCache(backends=[first, second], clock=clock).get("k")
        assert hit.value == "new"

    @pytest.mark.asyncio
    async def test_put_falls_back_to_next_backend(self):
        broken = MemoryBackend("redis", fail_write=True)
        healthy = MemoryBackend("file")
        name = await TTLCache(backends=[broken, healthy], clock=SecondsClock()).put("k", 1, 30)
        assert name == "file"
        assert "k" in healthy.entries

    @pytest.mark.asyncio
    async def test_put_all_backends_fail(self):
        cache = TTLCache(backends=[MemoryBackend(fail_write=True)], clock=SecondsClock())
        with pytest.raises(StoreError):
            await cache.put("k", 1, 30)


# ─────────────────────────────────────────────────────────
# 2. 限流层
# ─────────────────────────────────────────────────────────

class TestRateLimiter:
    def _limiter(self, repo, clock, rng=lambda: 1.0):
        return RateLimiter(repo, clock=clock, rng=rng, cleanup_probability=0.02, retention_hours=24)

    @pytest.mark.asyncio
    async def test_two_per_minute(self):
        repo, clock = FakeRepository(), FixedClock()
        limiter = self._limiter(repo, clock)

        first = await limiter.admit("quote", "1.2.3.4", 2, 60)
        assert first.allowed and first.remaining == 1
        clock.advance(seconds=1)
        assert (await limiter.admit("quote", "1.2.3.4", 2, 60)).allowed

        clock.advance(seconds=1)
        denied = await limiter.admit("quote", "1.2.3.4", 2, 60)
        assert denied.allowed is False
        assert denied.retry_after == 60
        # 拒绝不记录事件
        assert len(repo.rate_events) == 2

        clock.advance(seconds=59)
        assert (await limiter.admit("quote", "1.2.3.4", 2, 60)).allowed

    @pytest.mark.asyncio
    async def test_buckets_and_clients_are_independent(self):
        repo, clock = FakeRepository(), FixedClock()
        limiter = self._limiter(repo, clock)
        await limiter.admit("quote", "a", 1, 60)
        assert (await limiter.admit("quote", "b", 1, 60)).allowed
        assert (await limiter.admit("history", "a", 1, 60)).allowed
        assert not (await limiter.admit("quote", "a", 1, 60)).allowed

    @pytest.mark.asyncio
    async def test_require_raises(self):
        limiter = self._limiter(FakeRepository(), FixedClock())
        rule = RateLimitRule(bucket="quote", limit=1, window_seconds=60)
        await limiter.require(rule, "ip")
        with pytest.raises(RateLimited) as exc:
            await limiter.require(rule, "ip")
        assert exc.value.retry_after == 60
        assert exc.value.details["key"] == "quote"

    @pytest.mark.asyncio
    async def test_count_failure_fails_open(self):
        repo = FakeRepository()
        repo.fail_rate_count = True
        admission = await self._limiter(repo, FixedClock()).admit("quote", "ip", 1, 60)
        assert admission.allowed

    @pytest.mark.asyncio
    async def test_insert_failure_marks_unrecorded(self):
        repo = FakeRepository()
        repo.fail_rate_insert = True
        admission = await self._limiter(repo, FixedClock()).admit("quote", "ip", 1, 60)
        assert admission.allowed
        assert admission.recorded is False

    @pytest.mark.asyncio
    async def test_probabilistic_cleanup(self):
        repo, clock = FakeRepository(), FixedClock()
        repo.rate_events.append(("quote", "old", clock.now - timedelta(hours=25)))
        repo.rate_events.append(("quote", "recent", clock.now - timedelta(hours=1)))

        await self._limiter(repo, clock, rng=lambda: 0.5).admit("quote", "ip", 5, 60)
        assert len(repo.rate_events) == 3

        await self._limiter(repo, clock, rng=lambda: 0.0).admit("quote", "ip", 5, 60)
        assert [e[1] for e in repo.rate_events] == ["recent", "ip", "ip"]

    def test_client_ip(self):
        assert get_client_ip({"x-forwarded-for": "9.9.9.9, 10.0.0.1"}) == "9.9.9.9"
        assert get_client_ip({"x-real-ip": "8.8.8.8"}) == "8.8.8.8"
        assert get_client_ip({}) == "unknown"


# ─────────────────────────────────────────────────────────
# 3. 数据处理层
# ─────────────────────────────────────────────────────────

def _bar(ts: datetime, close: float, low: float = None, volume: float = 100) -> Bar:
    return Bar(symbol="AAPL", timestamp=ts, open=close, high=close + 1,
               low=close - 1 if low is None else low, close=close, volume=volume)


class TestProcessingLayer:
    def test_empty(self):
        assert get_processing_layer().aggregate_daily([]).empty

    def test_intraday_bars_aggregate_by_utc_day(self):
        d = datetime(2024, 5, 1, tzinfo=timezone.utc)
        bars = [
            _bar(d.replace(hour=15), close=11.0, low=0),
            _bar(d.replace(hour=14), close=10.0, low=9.0),
            _bar(d.replace(hour=19), close=12.0, low=10.5),
            _bar(d.replace(hour=23, minute=59) + timedelta(minutes=2), close=20.0),
        ]
        daily = get_processing_layer().aggregate_daily(bars)
        assert len(daily) == 2

        first = daily.iloc[0]
        assert first["high"] == 13.0
        # 9 → 0 → 0 时取下一根的 10.5
        assert first["low"] == 10.5
        assert first["close"] == 12.0
        assert first["volume"] == 300
        assert str(daily.iloc[1]["date"]) == "2024-05-02"

    @pytest.mark.parametrize("lows, expected", [
        ([5.0, 0.0], 0.0),
        ([0.0, 5.0], 5.0),
        ([9.0, 0.0, 10.5], 10.5),
        ([7.0, 6.0, 8.0], 6.0),
        ([0.0, 0.0], 0.0),
    ])
    def test_daily_low_running_min(self, lows, expected):
        """最低价按时间顺序折叠，0 之后取下一根的 low"""
        d = datetime(2024, 5, 1, tzinfo=timezone.utc)
        bars = [_bar(d.replace(hour=13 + i), close=10.0, low=low) for i, low in enumerate(lows)]
        daily = get_processing_layer().aggregate_daily(bars)
        assert daily.iloc[0]["low"] == expected

    def test_non_utc_timestamps_bucketed_in_utc(self):
        tz = timezone(timedelta(hours=-5))
        bars = [_bar(datetime(2024, 5, 1, 21, 0, tzinfo=tz), close=10.0)]
        daily = get_processing_layer().aggregate_daily(bars)
        assert str(daily.iloc[0]["date"]) == "2024-05-02"

    def test_missing_values_default_to_zero(self):
        bar = Bar(symbol="AAPL", timestamp=datetime(2024, 5, 1, tzinfo=timezone.utc), close=10.0)
        daily = get_processing_layer().aggregate_daily([bar])
        assert daily.iloc[0]["volume"] == 0
        assert daily.iloc[0]["low"] == 0


# ─────────────────────────────────────────────────────────
# 4. 技术分析层
# ─────────────────────────────────────────────────────────

class TestIndicators:
    def test_sma_null_rule(self):
        closes = np.arange(1, 61, dtype=float)
        out = sma(closes, 50)
        assert all(v is None for v in out[:49])
        assert out[49] == pytest.approx(25.5)
        assert out[59] == pytest.approx(35.5)

    def test_rsi_null_rule_and_range(self):
        closes = np.array([10 + (i % 3) - (i % 2) * 1.5 for i in range(40)], dtype=float)
        out = rsi(closes)
        assert all(v is None for v in out[:14])
        assert all(0 <= v <= 100 for v in out[14:])

    def test_rsi_all_gains_is_100(self):
        closes = np.arange(1, 20, dtype=float)
        assert rsi(closes)[14] == 100.0

    def test_rsi_known_value(self):
        # 7 涨 7 跌，幅度相同 → 50
        closes = np.array([10, 11] * 7 + [10], dtype=float)
        assert rsi(closes)[14] == pytest.approx(50.0)

    def test_atr_null_rule_and_non_negative(self):
        bars = daily_bars("AAPL", 30)
        closes = np.array([b.close for b in bars])
        highs = np.array([b.high for b in bars])
        lows = np.array([b.low for b in bars])
        out = atr(highs, lows, closes)
        assert all(v is None for v in out[:14])
        assert all(v >= 0 for v in out[14:])

    def test_atr_uses_previous_close(self):
        highs = np.full(16, 11.0)
        lows = np.full(16, 9.0)
        closes = np.full(16, 10.0)
        closes[14] = 20.0
        out = atr(highs, lows, closes)
        # 下标 15 的前收盘为 20：max(2, |11-20|, |9-20|) = 11，其余为 2
        assert out[14] == pytest.approx(2.0)
        assert out[15] == pytest.approx((13 * 2 + 11) / 14)

    def test_short_series_all_null(self):
        rows = compute_daily_aggregates("AAPL", daily_bars("AAPL", 10))
        assert len(rows) == 10
        assert all(r.rsi14 is None and r.sma50 is None and r.atr14 is None for r in rows)

    def test_empty_input(self):
        assert compute_daily_aggregates("AAPL", []) == []

    def test_idempotent(self):
        bars = daily_bars("AAPL", 220, step=0.003)
        assert compute_daily_aggregates("AAPL", bars) == compute_daily_aggregates("AAPL", list(reversed(bars)))

    def test_uptrend_scenario(self):
        """260 个交易日、每日 +0.5% 的上涨序列"""
        rows = compute_daily_aggregates("AAPL", daily_bars("AAPL", 260, step=0.005))
        latest = rows[-1]
        assert latest.sma50 > latest.sma200
        assert latest.rsi14 > 50
        assert latest.atr14 >= 0
        assert rows[199].sma200 is not None and rows[198].sma200 is None
        assert latest.macd is None and latest.macd_signal is None

        result = get_signal_blender().base_probability(latest)
        trend = next(s for s in result.signals if s.name == "trend")
        assert trend.delta == pytest.approx(0.07)
        assert trend.rationale == "Uptrend (SMA50>SMA200)"
