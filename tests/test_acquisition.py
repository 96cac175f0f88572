"""
数据获取层测试（httpx.MockTransport 模拟上游，不访问网络）

覆盖范围：
  - stooq 文本解析与代码拼写
  - 行情 / 历史提供商链的回退与失败收集
  - 新闻提供商：可信域名过滤、域名过滤被拒时的重试、去重
"""

from datetime import datetime, timezone

import httpx
import pytest

from market_watch.config import ProviderSettings
from market_watch.errors import ChainExhausted, HTTPStatusFailure, NoKey, ParseFailure, UpstreamTimeout
from market_watch.layers.acquisition import (
    AcquisitionLayer,
    canonical_url,
    dedupe_news,
    parse_stooq_csv,
    stooq_variants,
)
from market_watch.models.records import NewsItem

from conftest import FixedClock

STOOQ_LINE = "AAPL.US,2024-05-31,22:00:08,189.5,192.25,189.51,192.25,75158277"

STOOQ_HISTORY = (
    "Date;Open;High;Low;Close;Volume\n"
    "2024-05-29;189.6;192.2;189.5;190.3;53068016\n"
    "2024-05-30;190.7;192.1;190.1;191.3;49947941\n"
    "2024-05-31;191.4;192.5;189.2;N/D;0\n"
)


def _chart(timestamps, closes):
    return {
        "chart": {
            "result": [{
                "timestamp": timestamps,
                "indicators": {"quote": [{
                    "open": closes, "high": closes, "low": closes,
                    "close": closes, "volume": [100] * len(closes),
                }]},
            }],
            "error": None,
        }
    }


def _layer(handler, **config) -> AcquisitionLayer:
    cfg = ProviderSettings(trusted_domains=("reuters.com", "cnbc.com"), **config)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AcquisitionLayer(config=cfg, client=client, clock=FixedClock())


# ─────────────────────────────────────────────────────────
# 1. 工具函数
# ─────────────────────────────────────────────────────────

class TestStooqParsing:
    def test_headerless_single_line(self):
        rows = parse_stooq_csv(STOOQ_LINE)
        assert len(rows) == 1
        assert rows[0]["close"] == 192.25
        assert rows[0]["ts"] == datetime(2024, 5, 31, 22, 0, 8, tzinfo=timezone.utc)

    def test_semicolon_history_skips_nd(self):
        rows = parse_stooq_csv(STOOQ_HISTORY)
        assert [r["close"] for r in rows] == [190.3, 191.3]

    def test_empty_and_nd_quote(self):
        assert parse_stooq_csv("") == []
        assert parse_stooq_csv("AAPL.US,N/D,N/D,N/D,N/D,N/D,N/D,N/D") == []

    def test_variants(self):
        assert stooq_variants("AAPL") == ["aapl.us", "aapl"]
        assert stooq_variants("BRK.B") == ["brk-b.us", "brk-b"]


class TestNewsDedupe:
    def test_canonical_url(self):
        assert canonical_url("https://x.com/a?utm=1#top") == "https://x.com/a"

    def test_dedupe_keeps_first(self):
        items = [
            NewsItem(title="one", url="https://reuters.com/a?x=1"),
            NewsItem(title="two", url="https://reuters.com/a"),
            NewsItem(title="three", url="https://reuters.com/b"),
        ]
        assert [i.title for i in dedupe_news(items)] == ["one", "three"]


# ─────────────────────────────────────────────────────────
# 2. 行情 / 历史提供商链
# ─────────────────────────────────────────────────────────

class TestHistoryChain:
    @pytest.mark.asyncio
    async def test_failover_to_stooq(self):
        """yahoo 两个端点均 500，stooq 返回单行 CSV"""
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host.endswith("yahoo.com"):
                return httpx.Response(500, text="boom")
            return httpx.Response(200, text=STOOQ_LINE)

        layer = _layer(handler)
        result = await layer.fetch_history("AAPL", "6mo", "1d")
        await layer.close()

        assert result.provider == "stooq"
        assert result.source == "stooq:aapl.us"
        assert len(result.records) == 1
        assert result.records[0].close == 192.25
        assert len(result.failures) == 1
        failure = result.failures[0]
        assert isinstance(failure, HTTPStatusFailure)
        assert failure.provider == "yahoo" and failure.status == 500

    @pytest.mark.asyncio
    async def test_yahoo_second_host(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host.startswith("query1"):
                return httpx.Response(503)
            return httpx.Response(200, json=_chart([1717000000, 1717086400], [190.0, None]))

        layer = _layer(handler)
        result = await layer.fetch_history("AAPL")
        await layer.close()

        assert result.provider == "yahoo"
        assert result.source == "yahoo-q2"
        assert result.failures == []
        # close 为空的行被过滤
        assert [b.close for b in result.records] == [190.0]

    @pytest.mark.asyncio
    async def test_stooq_history_trims_to_range(self):
        lines = ["Date,Open,High,Low,Close,Volume"] + [
            f"2024-01-{d:02d},1,1,1,{d},10" for d in range(1, 29)
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host.endswith("yahoo.com"):
                return httpx.Response(404)
            return httpx.Response(200, text="\n".join(lines))

        layer = _layer(handler)
        result = await layer.fetch_history("AAPL", "5d", "1d")
        await layer.close()
        assert [b.close for b in result.records] == [24.0, 25.0, 26.0, 27.0, 28.0]

    @pytest.mark.asyncio
    async def test_all_providers_fail(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host.endswith("yahoo.com"):
                raise httpx.ReadTimeout("slow", request=request)
            return httpx.Response(500)

        layer = _layer(handler)
        with pytest.raises(ChainExhausted) as exc:
            await layer.fetch_history("AAPL")
        await layer.close()

        failures = exc.value.details["failures"]
        assert [f["provider"] for f in failures] == ["yahoo", "stooq"]
        assert failures[0]["kind"] == "timeout"
        assert isinstance(exc.value.failures[0], UpstreamTimeout)
        assert exc.value.status_code == 502
        assert exc.value.all_empty is False


    @pytest.mark.asyncio
    async def test_malformed_chart_falls_back_to_stooq(self):
        """yahoo 返回无法解析的收盘价时记为 ParseFailure，继续尝试 stooq"""
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host.endswith("yahoo.com"):
                return httpx.Response(200, json=_chart([1717000000], ["n/a"]))
            return httpx.Response(200, text=STOOQ_LINE)

        layer = _layer(handler)
        result = await layer.fetch_history("AAPL", "5d", "1d")
        await layer.close()

        assert result.provider == "stooq"
        assert result.records[0].close == 192.25
        assert isinstance(result.failures[0], ParseFailure)
        assert result.failures[0].provider == "yahoo"

    @pytest.mark.asyncio
    async def test_null_timestamp_is_parse_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host.endswith("yahoo.com"):
                return httpx.Response(200, json=_chart([None], [190.0]))
            return httpx.Response(500)

        layer = _layer(handler)
        with pytest.raises(ChainExhausted) as exc:
            await layer.fetch_history("AAPL")
        await layer.close()
        assert [f["kind"] for f in exc.value.details["failures"]] == ["parse_error", "http_error"]

    @pytest.mark.asyncio
    async def test_chart_payload_not_an_object(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host.endswith("yahoo.com"):
                return httpx.Response(200, json=["unexpected"])
            return httpx.Response(200, text=STOOQ_LINE)

        layer = _layer(handler)
        result = await layer.fetch_history("AAPL")
        await layer.close()
        assert result.provider == "stooq"
        assert result.failures[0].kind == "parse_error"


class TestQuoteChain:
    @pytest.mark.asyncio
    async def test_yahoo_quote(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["symbols"] == "MSFT"
            return httpx.Response(200, json={"quoteResponse": {"result": [{
                "regularMarketPrice": 420.5,
                "regularMarketTime": 1717185600,
                "currency": "USD",
                "shortName": "Microsoft",
                "regularMarketVolume": 1000,
            }]}})

        layer = _layer(handler)
        result = await layer.fetch_quote("MSFT")
        await layer.close()

        quote = result.records[0]
        assert result.source == "yahoo-q1"
        assert quote.price == 420.5
        assert quote.name == "Microsoft"

    @pytest.mark.asyncio
    async def test_malformed_quote_falls_back_to_stooq(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host.endswith("yahoo.com"):
                return httpx.Response(200, json={"quoteResponse": {"result": [
                    {"regularMarketPrice": "abc", "regularMarketTime": 1717185600},
                ]}})
            return httpx.Response(200, text=STOOQ_LINE)

        layer = _layer(handler)
        result = await layer.fetch_quote("AAPL")
        await layer.close()

        assert result.provider == "stooq"
        assert result.records[0].price == 192.25
        assert result.failures[0].kind == "parse_error"

    @pytest.mark.asyncio
    async def test_stooq_quote_second_variant(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host.endswith("yahoo.com"):
                return httpx.Response(200, json={"quoteResponse": {"result": []}})
            if request.url.params["s"] == "aapl.us":
                return httpx.Response(200, text="AAPL.US,N/D,N/D,N/D,N/D,N/D,N/D,N/D")
            return httpx.Response(200, text=STOOQ_LINE)

        layer = _layer(handler)
        result = await layer.fetch_quote("AAPL")
        await layer.close()

        assert result.provider == "stooq"
        assert result.source == "stooq:aapl"
        assert result.records[0].price == 192.25
        assert result.failures[0].kind == "empty_result"


# ─────────────────────────────────────────────────────────
# 3. 新闻提供商链
# ─────────────────────────────────────────────────────────

class TestNewsChain:
    @pytest.mark.asyncio
    async def test_marketaux_retries_without_domain_filter(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(dict(request.url.params))
            if "domains" in request.url.params:
                return httpx.Response(422, json={"error": "domains not allowed"})
            return httpx.Response(200, json={"data": [
                {"title": "Apple beats", "url": "https://www.reuters.com/a?x=1",
                 "source": "reuters.com", "published_at": "2024-06-03T10:00:00Z"},
                {"title": "Apple beats (dup)", "url": "https://www.reuters.com/a"},
                {"title": "Rumor", "url": "https://blog.example.com/x"},
                {"title": "Record", "url": "https://cnbc.com/b", "sentiment_score": 0.4},
            ]})

        layer = _layer(handler, marketaux_api_key="k")
        result = await layer.fetch_news("AAPL", hours=24, limit=10)
        await layer.close()

        assert len(calls) == 2
        assert result.provider == "marketaux"
        assert result.source == "marketaux-nofilter"
        assert [i.title for i in result.records] == ["Apple beats", "Record"]
        assert result.records[1].sentiment == 0.4

    @pytest.mark.asyncio
    async def test_malformed_article_falls_through(self):
        """marketaux 文章字段类型不符时记为 ParseFailure，由后续提供商接手"""
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "api.marketaux.com":
                return httpx.Response(200, json={"data": [
                    {"title": {"text": "Apple"}, "url": "https://reuters.com/a"},
                ]})
            return httpx.Response(200, json={"articles": [
                {"url": "https://www.reuters.com/b", "title": "Apple record"},
            ]})

        layer = _layer(handler, marketaux_api_key="k")
        result = await layer.fetch_news("AAPL")
        await layer.close()

        assert result.provider == "gdelt"
        assert [f.kind for f in result.failures] == ["parse_error", "no_key"]
        assert result.records[0].title == "Apple record"

    @pytest.mark.asyncio
    async def test_missing_keys_fall_through_to_gdelt(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.host == "api.gdeltproject.org"
            return httpx.Response(200, json={"articles": [
                {"url": "https://www.cnbc.com/x", "title": "Apple growth", "seendate": "20240603T100000Z"},
            ]})

        layer = _layer(handler)
        result = await layer.fetch_news("AAPL")
        await layer.close()

        assert result.provider == "gdelt"
        assert [type(f) for f in result.failures] == [NoKey, NoKey]
        assert result.records[0].source == "cnbc.com"

    @pytest.mark.asyncio
    async def test_untrusted_only_is_empty(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"articles": [{"url": "https://spam.example/x", "title": "x"}]})

        layer = _layer(handler)
        with pytest.raises(ChainExhausted) as exc:
            await layer.fetch_news("AAPL")
        await layer.close()
        assert exc.value.all_empty is True

    @pytest.mark.asyncio
    async def test_limit_applied_after_dedupe(self):
        articles = [{"url": f"https://reuters.com/{i % 3}", "title": str(i)} for i in range(9)]

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"articles": articles})

        layer = _layer(handler)
        result = await layer.fetch_news("AAPL", limit=2)
        await layer.close()
        assert [i.title for i in result.records] == ["0", "1"]
