"""
数据库连接管理模块
统一管理 MongoDB（异步）和 Redis（异步）连接，并通过 MarketRepository 封装集合访问
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, UpdateOne
from redis.asyncio import Redis, ConnectionPool

from market_watch.config import settings
from market_watch.errors import StoreError
from market_watch.models.records import (
    Bar,
    DailyAggregate,
    Holding,
    InstitutionalFlow,
    InstrumentMeta,
    NewsArticle,
    OptionsSummary,
    SentimentScore,
)

logger = logging.getLogger(__name__)

# ── 全局连接实例 ─────────────────────────────────────────
_mongo_client: Optional[AsyncIOMotorClient] = None
_mongo_db: Optional[AsyncIOMotorDatabase] = None
_redis_client: Optional[Redis] = None
_redis_pool: Optional[ConnectionPool] = None


async def init_mongodb() -> bool:
    """初始化 MongoDB 异步连接，返回是否成功"""
    global _mongo_client, _mongo_db
    if not settings.MONGODB_ENABLED:
        logger.info("MongoDB 未启用，跳过初始化")
        return False
    try:
        _mongo_client = AsyncIOMotorClient(
            settings.MONGO_URI,
            maxPoolSize=settings.MONGO_MAX_CONNECTIONS,
            minPoolSize=settings.MONGO_MIN_CONNECTIONS,
            serverSelectionTimeoutMS=settings.MONGO_SERVER_SELECTION_TIMEOUT_MS,
            connectTimeoutMS=settings.MONGO_CONNECT_TIMEOUT_MS,
            socketTimeoutMS=settings.MONGO_SOCKET_TIMEOUT_MS,
            tz_aware=True,
        )
        _mongo_db = _mongo_client[settings.MONGODB_DATABASE]
        await _mongo_client.admin.command("ping")
        await MarketRepository(_mongo_db).ensure_indexes()
        logger.info(f"✅ MongoDB 连接成功: {settings.MONGODB_HOST}:{settings.MONGODB_PORT}")
        return True
    except Exception as exc:
        logger.warning(f"⚠️ MongoDB 连接失败（服务将继续以降级模式运行）: {exc}")
        _mongo_client = None
        _mongo_db = None
        return False


async def init_redis() -> bool:
    """初始化 Redis 异步连接，返回是否成功"""
    global _redis_client, _redis_pool
    if not settings.REDIS_ENABLED:
        logger.info("Redis 未启用，跳过初始化")
        return False
    try:
        _redis_pool = ConnectionPool.from_url(
            settings.REDIS_URL,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=10,
        )
        _redis_client = Redis(connection_pool=_redis_pool)
        await _redis_client.ping()
        logger.info(f"✅ Redis 连接成功: {settings.REDIS_HOST}:{settings.REDIS_PORT}")
        return True
    except Exception as exc:
        logger.warning(f"⚠️ Redis 连接失败（服务将继续以降级模式运行）: {exc}")
        _redis_client = None
        _redis_pool = None
        return False


async def close_connections():
    """关闭所有数据库连接"""
    global _mongo_client, _mongo_db, _redis_client, _redis_pool
    if _mongo_client:
        _mongo_client.close()
        _mongo_client = None
        _mongo_db = None
        logger.info("MongoDB 连接已关闭")
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
    if _redis_pool:
        await _redis_pool.disconnect()
        _redis_pool = None
        logger.info("Redis 连接已关闭")


def get_mongo_db() -> Optional[AsyncIOMotorDatabase]:
    """获取 MongoDB 数据库实例（可能为 None）"""
    return _mongo_db


def get_redis() -> Optional[Redis]:
    """获取 Redis 客户端（可能为 None）"""
    return _redis_client


def get_repository() -> "MarketRepository":
    """获取仓储对象；MongoDB 不可用时抛出 StoreError"""
    if _mongo_db is None:
        raise StoreError("MongoDB 不可用")
    return MarketRepository(_mongo_db)


async def check_health() -> dict:
    """检查所有数据库连接健康状态"""
    result = {
        "mongodb": {"status": "disabled"},
        "redis": {"status": "disabled"},
    }
    if _mongo_client:
        try:
            await _mongo_client.admin.command("ping")
            result["mongodb"] = {"status": "healthy", "host": settings.MONGODB_HOST}
        except Exception as exc:
            result["mongodb"] = {"status": "unhealthy", "error": str(exc)}
    elif settings.MONGODB_ENABLED:
        result["mongodb"] = {"status": "disconnected"}

    if _redis_client:
        try:
            await _redis_client.ping()
            result["redis"] = {"status": "healthy", "host": settings.REDIS_HOST}
        except Exception as exc:
            result["redis"] = {"status": "unhealthy", "error": str(exc)}
    elif settings.REDIS_ENABLED:
        result["redis"] = {"status": "disconnected"}

    return result


# ── 集合访问 ─────────────────────────────────────────────

def _day(d: date) -> str:
    # BSON 不支持 date 类型，日期统一以 YYYY-MM-DD 字符串存储
    return d.isoformat()


def _strip_id(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc.pop("_id", None)
    return doc


class MarketRepository:
    """
    MongoDB 集合访问封装

    集合：prices / daily_agg / sentiment_scores / news_articles / options_summary /
    institutional_flows / user_portfolio / instrument_meta / rate_gate
    （live_cache 由缓存层直接访问）

    所有写操作都是单条 upsert 或 insert，不使用多步事务。
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self._db = db

    async def ensure_indexes(self) -> None:
        db = self._db
        await db["prices"].create_index([("symbol", ASCENDING), ("ts", ASCENDING)], unique=True)
        await db["daily_agg"].create_index([("symbol", ASCENDING), ("date", ASCENDING)], unique=True)
        await db["sentiment_scores"].create_index([("symbol", ASCENDING), ("window_end", DESCENDING)])
        await db["news_articles"].create_index([("symbol", ASCENDING), ("published_at", DESCENDING)])
        await db["options_summary"].create_index([("symbol", ASCENDING), ("date", ASCENDING)], unique=True)
        await db["institutional_flows"].create_index([("symbol", ASCENDING), ("date", ASCENDING)], unique=True)
        await db["user_portfolio"].create_index([("user_id", ASCENDING), ("symbol", ASCENDING)], unique=True)
        await db["instrument_meta"].create_index([("symbol", ASCENDING)], unique=True)
        await db["rate_gate"].create_index([("key", ASCENDING), ("ip", ASCENDING), ("ts", ASCENDING)])
        await db["live_cache"].create_index([("key", ASCENDING)], unique=True)

    # ── 原始 K 线 ─────────────────────────────────────────

    async def upsert_bars(self, bars: Iterable[Bar]) -> int:
        ops = [
            UpdateOne(
                {"symbol": b.symbol, "ts": b.timestamp},
                {"$set": {
                    "symbol": b.symbol, "ts": b.timestamp,
                    "open": b.open, "high": b.high, "low": b.low,
                    "close": b.close, "volume": b.volume,
                }},
                upsert=True,
            )
            for b in bars
        ]
        if not ops:
            return 0
        try:
            await self._db["prices"].bulk_write(ops, ordered=False)
        except Exception as exc:
            raise StoreError(f"prices 写入失败: {exc}")
        return len(ops)

    async def list_bars(self, symbol: str, since: datetime) -> List[Bar]:
        """按时间升序返回 since 之后的原始 K 线"""
        cursor = self._db["prices"].find(
            {"symbol": symbol, "ts": {"$gte": since}}
        ).sort("ts", ASCENDING)
        bars = []
        async for doc in cursor:
            bars.append(Bar(
                symbol=doc["symbol"], timestamp=doc["ts"],
                open=doc.get("open"), high=doc.get("high"), low=doc.get("low"),
                close=doc.get("close"), volume=doc.get("volume"),
            ))
        return bars

    # ── 日线聚合 ─────────────────────────────────────────

    async def upsert_daily_aggregates(self, rows: Iterable[DailyAggregate]) -> int:
        ops = []
        for row in rows:
            doc = row.model_dump()
            doc["date"] = _day(row.date)
            ops.append(UpdateOne({"symbol": row.symbol, "date": doc["date"]}, {"$set": doc}, upsert=True))
        if not ops:
            return 0
        try:
            await self._db["daily_agg"].bulk_write(ops, ordered=False)
        except Exception as exc:
            raise StoreError(f"daily_agg 写入失败: {exc}")
        return len(ops)

    async def latest_daily(self, symbol: str, limit: int = 1) -> List[DailyAggregate]:
        """按日期倒序返回最近 limit 行"""
        cursor = self._db["daily_agg"].find({"symbol": symbol}).sort("date", DESCENDING).limit(limit)
        return [DailyAggregate(**_strip_id(doc)) async for doc in cursor]

    # ── 情绪与新闻 ───────────────────────────────────────

    async def insert_sentiment(self, score: SentimentScore) -> None:
        try:
            await self._db["sentiment_scores"].insert_one(score.model_dump())
        except Exception as exc:
            raise StoreError(f"sentiment_scores 写入失败: {exc}")

    async def latest_sentiment(
        self, symbol: str, window_start: datetime, window_end: datetime
    ) -> Optional[SentimentScore]:
        """窗口完全落在 [window_start, window_end] 内的最新一条情绪分"""
        doc = await self._db["sentiment_scores"].find_one(
            {
                "symbol": symbol,
                "window_start": {"$gte": window_start},
                "window_end": {"$lte": window_end},
            },
            sort=[("window_end", DESCENDING)],
        )
        return SentimentScore(**_strip_id(doc)) if doc else None

    async def insert_news_article(self, article: NewsArticle) -> None:
        try:
            await self._db["news_articles"].insert_one(article.model_dump())
        except Exception as exc:
            raise StoreError(f"news_articles 写入失败: {exc}")

    async def list_news_articles(self, symbol: str, start: datetime, end: datetime) -> List[NewsArticle]:
        cursor = self._db["news_articles"].find(
            {"symbol": symbol, "published_at": {"$gte": start, "$lte": end}}
        )
        return [NewsArticle(**_strip_id(doc)) async for doc in cursor]

    # ── 期权 / 机构资金 ──────────────────────────────────

    async def upsert_options(self, row: OptionsSummary) -> None:
        doc = row.model_dump()
        doc["date"] = _day(row.date)
        try:
            await self._db["options_summary"].update_one(
                {"symbol": row.symbol, "date": doc["date"]}, {"$set": doc}, upsert=True
            )
        except Exception as exc:
            raise StoreError(f"options_summary 写入失败: {exc}")

    async def latest_options(self, symbol: str, since: date) -> Optional[OptionsSummary]:
        doc = await self._db["options_summary"].find_one(
            {"symbol": symbol, "date": {"$gte": _day(since)}},
            sort=[("date", DESCENDING)],
        )
        return OptionsSummary(**_strip_id(doc)) if doc else None

    async def upsert_institutional(self, row: InstitutionalFlow) -> None:
        doc = row.model_dump()
        doc["date"] = _day(row.date)
        try:
            await self._db["institutional_flows"].update_one(
                {"symbol": row.symbol, "date": doc["date"]}, {"$set": doc}, upsert=True
            )
        except Exception as exc:
            raise StoreError(f"institutional_flows 写入失败: {exc}")

    async def latest_institutional(self, symbol: str, since: date) -> Optional[InstitutionalFlow]:
        doc = await self._db["institutional_flows"].find_one(
            {"symbol": symbol, "date": {"$gte": _day(since)}},
            sort=[("date", DESCENDING)],
        )
        return InstitutionalFlow(**_strip_id(doc)) if doc else None

    # ── 持仓与标的元数据 ─────────────────────────────────

    async def upsert_holding(self, holding: Holding) -> None:
        """按 (user_id, symbol) 覆盖写入一条持仓"""
        try:
            await self._db["user_portfolio"].update_one(
                {"user_id": holding.user_id, "symbol": holding.symbol},
                {"$set": holding.model_dump()},
                upsert=True,
            )
        except Exception as exc:
            raise StoreError(f"user_portfolio 写入失败: {exc}")

    async def list_holdings(self, user_id: str) -> List[Holding]:
        """按代码升序返回用户持仓"""
        cursor = self._db["user_portfolio"].find({"user_id": user_id}).sort("symbol", ASCENDING)
        return [Holding(**_strip_id(doc)) async for doc in cursor]

    async def get_instrument_meta(self, symbol: str) -> Optional[InstrumentMeta]:
        doc = await self._db["instrument_meta"].find_one({"symbol": symbol})
        return InstrumentMeta(**_strip_id(doc)) if doc else None

    # ── 限流事件 ─────────────────────────────────────────

    async def count_rate_events(self, bucket: str, identity: str, since: datetime) -> int:
        return await self._db["rate_gate"].count_documents(
            {"key": bucket, "ip": identity, "ts": {"$gte": since}}
        )

    async def insert_rate_event(self, bucket: str, identity: str, ts: datetime) -> None:
        await self._db["rate_gate"].insert_one({"key": bucket, "ip": identity, "ts": ts})

    async def delete_rate_events_before(self, cutoff: datetime) -> int:
        result = await self._db["rate_gate"].delete_many({"ts": {"$lt": cutoff}})
        return result.deleted_count
