"""
Layer 1 – 数据获取层
按优先级依次尝试各数据提供商，首个成功者胜出；所有提供商均失败时抛出 ChainExhausted，
其中携带每个提供商的失败详情。

  行情 / 历史：yahoo（query1 → query2 两个等价端点） → stooq（多种代码拼写）
  新闻：marketaux（需 key，可信域名过滤，被拒时去掉过滤重试一次） → newsapi（需 key） → gdelt（无 key）
"""

import csv
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from io import StringIO
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

import httpx
from pydantic import ValidationError

from market_watch.config import ProviderSettings, settings
from market_watch.errors import (
    ChainExhausted,
    EmptyResult,
    HTTPStatusFailure,
    NoKey,
    ParseFailure,
    UpstreamError,
    UpstreamTimeout,
)
from market_watch.models.records import Bar, NewsItem, Quote

logger = logging.getLogger(__name__)

_YAHOO_HOSTS = (("query1", "yahoo-q1"), ("query2", "yahoo-q2"))
_YAHOO_CHART_URL = "https://{host}.finance.yahoo.com/v8/finance/chart/{symbol}"
_YAHOO_QUOTE_URL = "https://{host}.finance.yahoo.com/v7/finance/quote"
_STOOQ_QUOTE_URL = "https://stooq.com/q/l/"
_STOOQ_HISTORY_URL = "https://stooq.com/q/d/l/"
_MARKETAUX_URL = "https://api.marketaux.com/v1/news/all"
_NEWSAPI_URL = "https://newsapi.org/v2/everything"
_GDELT_URL = "https://api.gdeltproject.org/api/v2/searchapi/search"

HISTORY_RANGES = ("5d", "1mo", "3mo", "6mo", "1y", "2y")
HISTORY_INTERVALS = ("1d", "1wk")

# stooq 返回全量历史，按区间保留末尾的交易日数量
_RANGE_TRADING_DAYS = {"5d": 5, "1mo": 22, "3mo": 66, "6mo": 130, "1y": 253, "2y": 505}

# stooq 单行行情（f=sd2t2ohlcv）无表头时的字段顺序
_STOOQ_LINE_FIELDS = ["Symbol", "Date", "Time", "Open", "High", "Low", "Close", "Volume"]

# 上游字段缺失或类型不符时构建记录可能抛出的异常，统一归为 ParseFailure
_PARSE_ERRORS = (ValidationError, ValueError, TypeError, AttributeError, KeyError, IndexError)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


# ── 请求与结果 ───────────────────────────────────────────

@dataclass(frozen=True)
class QuoteRequest:
    symbol: str


@dataclass(frozen=True)
class HistoryRequest:
    symbol: str
    range: str = "6mo"
    interval: str = "1d"


@dataclass(frozen=True)
class NewsRequest:
    symbol: str
    hours: int = 72
    limit: int = 25


@dataclass
class ChainResult:
    provider: str
    records: List[Any]
    source: str
    failures: List[UpstreamError] = field(default_factory=list)

    def diagnostics(self) -> List[Dict[str, Any]]:
        return [f.to_dict() for f in self.failures]


# ── 工具函数 ─────────────────────────────────────────────

def host_of(url: str) -> str:
    try:
        host = urlsplit(url).hostname or ""
    except ValueError:
        return ""
    return host[4:] if host.startswith("www.") else host


def canonical_url(url: str) -> str:
    """去掉查询串与片段，用于新闻去重"""
    return url.split("#", 1)[0].split("?", 1)[0]


def dedupe_news(items: Sequence[NewsItem]) -> List[NewsItem]:
    seen = set()
    out = []
    for item in items:
        key = canonical_url(item.url)
        if key in seen:
            continue
        seen.add(key)
        out.append(item)
    return out


def _safe_float(value: Any) -> Optional[float]:
    if value in (None, "", "N/D"):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_stooq_date(raw: str, time_raw: str = None) -> Optional[datetime]:
    raw = (raw or "").strip()
    for fmt in ("%Y-%m-%d", "%Y%m%d"):
        try:
            d = datetime.strptime(raw, fmt).replace(tzinfo=timezone.utc)
            break
        except ValueError:
            continue
    else:
        return None
    if time_raw:
        for fmt in ("%H:%M:%S", "%H%M%S"):
            try:
                t = datetime.strptime(time_raw.strip(), fmt)
                return d.replace(hour=t.hour, minute=t.minute, second=t.second)
            except ValueError:
                continue
    return d


def parse_stooq_csv(text: str) -> List[Dict[str, Any]]:
    """
    解析 stooq 的分隔文本，兼容两种形态：
      - 多行历史（Date;Open;High;Low;Close;Volume，分号或逗号分隔）
      - 单行行情（Symbol,Date,Time,Open,High,Low,Close,Volume，可无表头）
    Close 为 N/D 的行被跳过。
    """
    body = (text or "").strip()
    if not body:
        return []
    first = body.splitlines()[0]
    delimiter = ";" if ";" in first else ","
    if "date" in first.lower():
        reader = csv.DictReader(StringIO(body), delimiter=delimiter)
    else:
        reader = csv.DictReader(StringIO(body), fieldnames=_STOOQ_LINE_FIELDS, delimiter=delimiter)

    rows = []
    for row in reader:
        row = {str(k).strip().capitalize(): v for k, v in row.items() if k is not None}
        close = _safe_float(row.get("Close"))
        ts = _parse_stooq_date(row.get("Date"), row.get("Time"))
        if close is None or ts is None:
            continue
        rows.append({
            "ts": ts,
            "open": _safe_float(row.get("Open")),
            "high": _safe_float(row.get("High")),
            "low": _safe_float(row.get("Low")),
            "close": close,
            "volume": _safe_float(row.get("Volume")),
        })
    return rows


def stooq_variants(symbol: str) -> List[str]:
    """AAPL → [aapl.us, aapl]；BRK.B → [brk-b.us, brk-b]"""
    s = symbol.strip().lower().replace(".", "-")
    return [f"{s}.us", s]


# ── 提供商基类 ───────────────────────────────────────────

class Provider:
    """单个数据提供商：fetch 返回 (records, source) 或抛出 UpstreamError 子类"""

    name = "provider"

    def __init__(
        self,
        client: httpx.AsyncClient,
        config: ProviderSettings,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._client = client
        self._config = config
        self._clock = clock

    async def fetch(self, request) -> Tuple[List[Any], str]:
        raise NotImplementedError

    async def _get(self, url: str, params: Dict[str, Any] = None, headers: Dict[str, str] = None) -> httpx.Response:
        try:
            resp = await self._client.get(
                url, params=params, headers=headers, timeout=self._config.timeout_seconds
            )
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout(self.name, f"timeout after {self._config.timeout_seconds}s: {exc}")
        except httpx.HTTPError as exc:
            raise UpstreamError(self.name, f"transport error: {exc}")
        if resp.status_code >= 400:
            raise HTTPStatusFailure(self.name, resp.status_code, resp.text[:200] or "")
        return resp

    def _json(self, resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError as exc:
            raise ParseFailure(self.name, f"invalid json: {exc}")


# ── 行情 / 历史提供商 ────────────────────────────────────

class YahooHistoryProvider(Provider):
    name = "yahoo"

    async def fetch(self, request: HistoryRequest) -> Tuple[List[Bar], str]:
        headers = {"User-Agent": self._config.user_agent, "Accept": "application/json"}
        params = {
            "range": request.range,
            "interval": request.interval,
            "includePrePost": "false",
            "events": "div,splits",
        }
        last_error: UpstreamError = EmptyResult(self.name, "no result")
        for host, label in _YAHOO_HOSTS:
            url = _YAHOO_CHART_URL.format(host=host, symbol=request.symbol)
            try:
                payload = self._json(await self._get(url, params=params, headers=headers))
                bars = self._parse(request.symbol, payload)
            except UpstreamError as exc:
                logger.debug(f"yahoo {host} 历史数据失败: {exc.message}")
                last_error = exc
                continue
            except _PARSE_ERRORS as exc:
                logger.debug(f"yahoo {host} 历史数据格式异常: {exc}")
                last_error = ParseFailure(self.name, f"malformed chart: {exc}")
                continue
            return bars, label
        raise last_error

    def _parse(self, symbol: str, payload: Any) -> List[Bar]:
        result = ((payload or {}).get("chart") or {}).get("result") or []
        if not result:
            raise EmptyResult(self.name, "chart.result empty")
        res = result[0]
        timestamps = res.get("timestamp") or []
        quote = ((res.get("indicators") or {}).get("quote") or [{}])[0] or {}

        def col(name: str) -> List[Any]:
            values = quote.get(name) or []
            return list(values) + [None] * (len(timestamps) - len(values))

        opens, highs, lows, closes, volumes = (col(n) for n in ("open", "high", "low", "close", "volume"))
        bars = [
            Bar(
                symbol=symbol,
                timestamp=datetime.fromtimestamp(int(ts), tz=timezone.utc),
                open=opens[i], high=highs[i], low=lows[i], close=closes[i], volume=volumes[i],
            )
            for i, ts in enumerate(timestamps)
            if closes[i] is not None
        ]
        if not bars:
            raise EmptyResult(self.name, "no rows with close")
        return bars


class YahooQuoteProvider(Provider):
    name = "yahoo"

    async def fetch(self, request: QuoteRequest) -> Tuple[List[Quote], str]:
        headers = {"User-Agent": self._config.user_agent, "Accept": "application/json"}
        last_error: UpstreamError = EmptyResult(self.name, "no result")
        for host, label in _YAHOO_HOSTS:
            url = _YAHOO_QUOTE_URL.format(host=host)
            try:
                payload = self._json(await self._get(url, params={"symbols": request.symbol}, headers=headers))
                results = ((payload or {}).get("quoteResponse") or {}).get("result") or []
                if not results:
                    raise EmptyResult(self.name, "quoteResponse.result empty")
                quote = self._parse(request.symbol, results[0])
            except UpstreamError as exc:
                last_error = exc
                continue
            except _PARSE_ERRORS as exc:
                last_error = ParseFailure(self.name, f"unexpected quote shape: {exc}")
                continue
            return [quote], label
        raise last_error

    def _parse(self, symbol: str, q: Dict[str, Any]) -> Quote:
        market_time = q.get("regularMarketTime")
        return Quote(
            symbol=symbol,
            price=q.get("regularMarketPrice"),
            time=datetime.fromtimestamp(int(market_time), tz=timezone.utc) if market_time else None,
            currency=q.get("currency"),
            name=q.get("shortName") or q.get("longName") or symbol,
            volume=q.get("regularMarketVolume"),
        )


class _StooqProvider(Provider):
    name = "stooq"

    async def _try_variants(self, symbol: str, url: str, extra: Dict[str, str]):
        last_error: UpstreamError = EmptyResult(self.name, "no variant returned data")
        for variant in stooq_variants(symbol):
            try:
                resp = await self._get(url, params={"s": variant, **extra})
                rows = parse_stooq_csv(resp.text)
            except UpstreamError as exc:
                last_error = exc
                continue
            except csv.Error as exc:
                last_error = ParseFailure(self.name, f"csv error for {variant}: {exc}")
                continue
            if rows:
                return rows, variant
            last_error = EmptyResult(self.name, f"no data for {variant}")
        raise last_error


class StooqHistoryProvider(_StooqProvider):

    async def fetch(self, request: HistoryRequest) -> Tuple[List[Bar], str]:
        interval = "w" if request.interval == "1wk" else "d"
        rows, variant = await self._try_variants(request.symbol, _STOOQ_HISTORY_URL, {"i": interval})
        keep = _RANGE_TRADING_DAYS.get(request.range, 130)
        if interval == "w":
            keep = max(1, -(-keep // 5))
        bars = [
            Bar(symbol=request.symbol, timestamp=r["ts"], open=r["open"], high=r["high"],
                low=r["low"], close=r["close"], volume=r["volume"])
            for r in sorted(rows, key=lambda r: r["ts"])[-keep:]
        ]
        return bars, f"stooq:{variant}"


class StooqQuoteProvider(_StooqProvider):

    async def fetch(self, request: QuoteRequest) -> Tuple[List[Quote], str]:
        rows, variant = await self._try_variants(
            request.symbol, _STOOQ_QUOTE_URL, {"f": "sd2t2ohlcv", "h": "", "e": "csv"}
        )
        last = rows[-1]
        quote = Quote(
            symbol=request.symbol, price=last["close"], time=last["ts"],
            currency="USD", name=request.symbol, volume=last["volume"],
        )
        return [quote], f"stooq:{variant}"


# ── 新闻提供商 ───────────────────────────────────────────

class _NewsProvider(Provider):

    def _trusted(self, items: List[NewsItem]) -> List[NewsItem]:
        trusted = set(self._config.trusted_domains)
        kept = [i for i in items if i.url and host_of(i.url) in trusted]
        if not kept:
            raise EmptyResult(self.name, "no articles from trusted domains")
        return kept

    def _since(self, hours: int) -> datetime:
        return self._clock() - timedelta(hours=hours)


class MarketauxProvider(_NewsProvider):
    name = "marketaux"

    async def fetch(self, request: NewsRequest) -> Tuple[List[NewsItem], str]:
        key = self._config.marketaux_api_key
        if not key:
            raise NoKey(self.name, "MARKETAUX_API_KEY not configured")
        params = {
            "symbols": request.symbol,
            "published_after": self._since(request.hours).strftime("%Y-%m-%dT%H:%M:%S"),
            "language": "en",
            "filter_entities": "true",
            "limit": request.limit,
            "api_token": key,
        }
        source = self.name
        try:
            resp = await self._get(_MARKETAUX_URL, params={**params, "domains": ",".join(self._config.trusted_domains)})
        except HTTPStatusFailure as exc:
            if exc.status not in (400, 422):
                raise
            logger.info(f"marketaux 拒绝域名过滤（{exc.status}），去掉过滤重试一次")
            resp = await self._get(_MARKETAUX_URL, params=params)
            source = "marketaux-nofilter"

        data = self._json(resp)
        articles = data.get("data") if isinstance(data, dict) else None
        if not isinstance(articles, list):
            raise ParseFailure(self.name, "missing data[]")
        items = [
            NewsItem(
                source=a.get("source") or host_of(a.get("url") or ""),
                title=a.get("title") or "",
                url=a.get("url") or "",
                published_at=a.get("published_at") or a.get("published_utc"),
                sentiment=a.get("sentiment_score") if isinstance(a.get("sentiment_score"), (int, float)) else None,
            )
            for a in articles if isinstance(a, dict)
        ]
        return self._trusted(items), source


class NewsApiProvider(_NewsProvider):
    name = "newsapi"

    async def fetch(self, request: NewsRequest) -> Tuple[List[NewsItem], str]:
        key = self._config.newsapi_api_key
        if not key:
            raise NoKey(self.name, "NEWSAPI_API_KEY not configured")
        params = {
            "q": request.symbol,
            "from": self._since(request.hours).strftime("%Y-%m-%dT%H:%M:%S"),
            "language": "en",
            "sortBy": "publishedAt",
            "pageSize": request.limit,
            "domains": ",".join(self._config.trusted_domains),
        }
        data = self._json(await self._get(_NEWSAPI_URL, params=params, headers={"X-Api-Key": key}))
        articles = data.get("articles") if isinstance(data, dict) else None
        if not isinstance(articles, list):
            raise ParseFailure(self.name, "missing articles[]")
        items = []
        for a in articles:
            if not isinstance(a, dict):
                continue
            src = a.get("source")
            items.append(NewsItem(
                source=(src.get("name") if isinstance(src, dict) else src) or host_of(a.get("url") or ""),
                title=a.get("title") or "",
                url=a.get("url") or "",
                published_at=a.get("publishedAt"),
            ))
        return self._trusted(items), self.name


class GdeltProvider(_NewsProvider):
    name = "gdelt"

    async def fetch(self, request: NewsRequest) -> Tuple[List[NewsItem], str]:
        end = self._clock()
        params = {
            "query": request.symbol,
            "mode": "ArtList",
            "maxrecords": request.limit,
            "startdatetime": self._since(request.hours).strftime("%Y%m%d%H%M%S"),
            "enddatetime": end.strftime("%Y%m%d%H%M%S"),
            "format": "json",
        }
        data = self._json(await self._get(_GDELT_URL, params=params))
        if not isinstance(data, dict):
            raise ParseFailure(self.name, "unexpected payload")
        articles = data.get("articles") or data.get("artList") or []
        items = []
        for a in articles:
            if not isinstance(a, dict):
                continue
            url = a.get("url") or a.get("seurl") or ""
            items.append(NewsItem(
                source=host_of(url),
                title=a.get("title") or a.get("semtitle") or "",
                url=url,
                published_at=a.get("seendate") or a.get("date"),
            ))
        return self._trusted(items), self.name


# ── 提供商链 ─────────────────────────────────────────────

class ProviderChain:
    """有序的提供商列表，首个成功者胜出，失败逐个收集"""

    def __init__(self, resource: str, providers: Sequence[Provider]):
        self.resource = resource
        self._providers = list(providers)

    @property
    def provider_names(self) -> List[str]:
        return [p.name for p in self._providers]

    async def fetch(self, request) -> ChainResult:
        failures: List[UpstreamError] = []
        for provider in self._providers:
            try:
                records, source = await provider.fetch(request)
            except UpstreamError as exc:
                logger.warning(f"{self.resource} 获取失败（来源：{provider.name}）: {exc.kind} {exc.message}")
                failures.append(exc)
                continue
            except _PARSE_ERRORS as exc:
                logger.warning(f"{self.resource} 数据格式异常（来源：{provider.name}）: {exc}")
                failures.append(ParseFailure(provider.name, f"malformed payload: {exc}"))
                continue
            logger.info(
                f"{self.resource} 获取成功（来源：{provider.name} / {source}），共 {len(records)} 条"
            )
            return ChainResult(provider=provider.name, records=records, source=source, failures=failures)
        raise ChainExhausted(self.resource, failures)


class AcquisitionLayer:
    """数据获取层：持有共享的 httpx 客户端与三条提供商链"""

    def __init__(
        self,
        config: ProviderSettings = None,
        client: httpx.AsyncClient = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._config = config or settings.provider_settings()
        self._client = client or httpx.AsyncClient(
            timeout=self._config.timeout_seconds,
            headers={"User-Agent": self._config.user_agent},
            follow_redirects=True,
        )
        args = (self._client, self._config, clock)
        self.quote_chain = ProviderChain("quote", [YahooQuoteProvider(*args), StooqQuoteProvider(*args)])
        self.history_chain = ProviderChain("history", [YahooHistoryProvider(*args), StooqHistoryProvider(*args)])
        self.news_chain = ProviderChain(
            "news", [MarketauxProvider(*args), NewsApiProvider(*args), GdeltProvider(*args)]
        )

    async def fetch_quote(self, symbol: str) -> ChainResult:
        return await self.quote_chain.fetch(QuoteRequest(symbol))

    async def fetch_history(self, symbol: str, range: str = "6mo", interval: str = "1d") -> ChainResult:
        return await self.history_chain.fetch(HistoryRequest(symbol, range, interval))

    async def fetch_news(self, symbol: str, hours: int = 72, limit: int = 25) -> ChainResult:
        """新闻链结果统一去重并截断到 limit"""
        result = await self.news_chain.fetch(NewsRequest(symbol, hours, limit))
        result.records = dedupe_news(result.records)[:limit]
        return result

    async def close(self) -> None:
        await self._client.aclose()


# ── 模块级别单例 ──────────────────────────────────────────
_acq: Optional[AcquisitionLayer] = None


def get_acquisition_layer() -> AcquisitionLayer:
    global _acq
    if _acq is None:
        _acq = AcquisitionLayer()
    return _acq


async def close_acquisition_layer() -> None:
    global _acq
    if _acq is not None:
        await _acq.close()
        _acq = None
