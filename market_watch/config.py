"""
行情信号服务配置模块
支持从环境变量读取配置，自动检测 Docker 容器环境并启用服务发现

各层需要的配置通过不可变的配置对象（CachePolicy / RateLimitRule / ProviderSettings）
在进程启动时构建一次，再显式传入各层构造函数。
"""

import os
from functools import lru_cache
from typing import Dict, List, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# 全局 TTL 包络（秒），所有缓存写入都会被限制在该区间内
GLOBAL_TTL_MIN = 1
GLOBAL_TTL_MAX = 86400


def _is_docker() -> bool:
    """检测当前是否运行在 Docker 容器内"""
    return (
        os.path.exists("/.dockerenv")
        or os.environ.get("DOCKER_CONTAINER", "").lower() in ("1", "true", "yes")
    )


def _default_mongo_host() -> str:
    """Docker 环境使用服务名 'mongodb'，本地使用 'localhost'"""
    return "mongodb" if _is_docker() else "localhost"


def _default_redis_host() -> str:
    """Docker 环境使用服务名 'redis'，本地使用 'localhost'"""
    return "redis" if _is_docker() else "localhost"


def parse_rate_limit(rate_string: str) -> Tuple[int, int]:
    """
    解析 "60/minute"、"10/second" 形式的限流字符串

    Returns:
        (limit, window_seconds)
    """
    parts = rate_string.lower().split("/")
    if len(parts) != 2:
        raise ValueError(f"无效的限流格式: {rate_string}")

    limit = int(parts[0])
    unit = parts[1].strip()
    windows = {
        "second": 1, "sec": 1, "s": 1,
        "minute": 60, "min": 60, "m": 60,
        "hour": 3600, "hr": 3600, "h": 3600,
        "day": 86400, "d": 86400,
    }
    if unit not in windows:
        raise ValueError(f"未知的时间单位: {unit}")
    return limit, windows[unit]


# ── 各层不可变配置对象 ────────────────────────────────────

class TTLBounds(BaseModel):
    """单个操作的 TTL 默认值与上下界（秒）"""

    model_config = ConfigDict(frozen=True)

    default: int
    min: int
    max: int

    def clamp(self, ttl: int) -> int:
        return max(self.min, min(int(ttl), self.max))


class CachePolicy(BaseModel):
    """缓存策略：按操作名索引的 TTL 包络"""

    model_config = ConfigDict(frozen=True)

    bounds: Dict[str, TTLBounds]

    def ttl_for(self, operation: str, requested: int = None) -> int:
        """返回操作的有效 TTL（未指定时取默认值，再按操作包络裁剪）"""
        b = self.bounds.get(operation)
        if b is None:
            ttl = requested if requested is not None else GLOBAL_TTL_MAX
            return max(GLOBAL_TTL_MIN, min(int(ttl), GLOBAL_TTL_MAX))
        return b.clamp(b.default if requested is None else requested)


class RateLimitRule(BaseModel):
    """单个限流桶的配置"""

    model_config = ConfigDict(frozen=True)

    bucket: str
    limit: int
    window_seconds: int


class ProviderSettings(BaseModel):
    """上游数据提供商配置"""

    model_config = ConfigDict(frozen=True)

    timeout_seconds: float = 8.0
    user_agent: str = "Mozilla/5.0 (compatible; MarketWatchBot/1.0)"
    marketaux_api_key: str = ""
    newsapi_api_key: str = ""
    trusted_domains: Tuple[str, ...] = ()


class MarketWatchSettings(BaseSettings):
    """行情信号服务配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── 基础配置 ──────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8002)
    DEBUG: bool = Field(default=False)

    # ── MongoDB 配置（支持服务发现） ───────────────────────
    MONGODB_HOST: str = Field(default_factory=_default_mongo_host)
    MONGODB_PORT: int = Field(default=27017)
    MONGODB_USERNAME: str = Field(default="")
    MONGODB_PASSWORD: str = Field(default="")
    MONGODB_DATABASE: str = Field(default="market_watch")
    MONGODB_AUTH_SOURCE: str = Field(default="admin")
    MONGODB_ENABLED: bool = Field(default=True)
    MONGO_MAX_CONNECTIONS: int = Field(default=50)
    MONGO_MIN_CONNECTIONS: int = Field(default=5)
    MONGO_CONNECT_TIMEOUT_MS: int = Field(default=30000)
    MONGO_SOCKET_TIMEOUT_MS: int = Field(default=60000)
    MONGO_SERVER_SELECTION_TIMEOUT_MS: int = Field(default=5000)

    @property
    def MONGO_URI(self) -> str:
        if self.MONGODB_USERNAME and self.MONGODB_PASSWORD:
            return (
                f"mongodb://{self.MONGODB_USERNAME}:{self.MONGODB_PASSWORD}"
                f"@{self.MONGODB_HOST}:{self.MONGODB_PORT}"
                f"/{self.MONGODB_DATABASE}?authSource={self.MONGODB_AUTH_SOURCE}"
            )
        return f"mongodb://{self.MONGODB_HOST}:{self.MONGODB_PORT}/{self.MONGODB_DATABASE}"

    # ── Redis 配置（支持服务发现） ─────────────────────────
    REDIS_HOST: str = Field(default_factory=_default_redis_host)
    REDIS_PORT: int = Field(default=6379)
    REDIS_PASSWORD: str = Field(default="")
    REDIS_DB: int = Field(default=0)
    REDIS_ENABLED: bool = Field(default=True)
    REDIS_MAX_CONNECTIONS: int = Field(default=20)

    @property
    def REDIS_URL(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # ── 数据源配置 ─────────────────────────────────────────
    MARKETAUX_API_KEY: str = Field(default="")
    NEWSAPI_API_KEY: str = Field(default="")
    PROVIDER_TIMEOUT_SECONDS: float = Field(default=8.0)
    TRUSTED_NEWS_DOMAINS: List[str] = Field(
        default_factory=lambda: [
            "reuters.com", "apnews.com", "wsj.com", "ft.com",
            "cnbc.com", "marketwatch.com", "investors.com",
        ]
    )

    # ── 缓存配置（秒） ─────────────────────────────────────
    QUOTE_CACHE_TTL: int = Field(default=15)
    QUOTE_CACHE_TTL_MIN: int = Field(default=5)
    QUOTE_CACHE_TTL_MAX: int = Field(default=300)
    HISTORY_DAILY_CACHE_TTL: int = Field(default=21600)
    HISTORY_WEEKLY_CACHE_TTL: int = Field(default=3600)
    HISTORY_CACHE_TTL_MIN: int = Field(default=60)
    HISTORY_CACHE_TTL_MAX: int = Field(default=86400)
    NEWS_CACHE_TTL: int = Field(default=300)
    NEWS_CACHE_TTL_MIN: int = Field(default=30)
    NEWS_CACHE_TTL_MAX: int = Field(default=3600)
    CACHE_DIR: str = Field(default="./cache")        # 文件缓存目录

    # ── 限流配置（"次数/时间单位"） ────────────────────────
    RATE_LIMIT_ENABLED: bool = Field(default=True)
    RATE_LIMIT_QUOTE: str = Field(default="120/minute")
    RATE_LIMIT_HISTORY: str = Field(default="60/minute")
    RATE_LIMIT_NEWS: str = Field(default="60/minute")
    RATE_LIMIT_NEWS_SENTIMENT: str = Field(default="60/minute")
    RATE_LIMIT_SIGNALS: str = Field(default="60/minute")
    RATE_LIMIT_INSIGHT: str = Field(default="30/minute")
    RATE_LIMIT_CLEANUP_PROBABILITY: float = Field(default=0.02)
    RATE_LIMIT_RETENTION_HOURS: int = Field(default=24)

    # ── 信号配置 ──────────────────────────────────────────
    SENTIMENT_LOOKBACK_HOURS: int = Field(default=72)
    OPTIONS_FALLBACK_DAYS: int = Field(default=7)
    INSTITUTIONAL_FALLBACK_DAYS: int = Field(default=10)

    # ── 日志配置 ──────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")

    # ── 配置对象构建 ──────────────────────────────────────

    def cache_policy(self) -> CachePolicy:
        history_bounds = dict(min=self.HISTORY_CACHE_TTL_MIN, max=self.HISTORY_CACHE_TTL_MAX)
        return CachePolicy(bounds={
            "quote": TTLBounds(
                default=self.QUOTE_CACHE_TTL,
                min=self.QUOTE_CACHE_TTL_MIN,
                max=self.QUOTE_CACHE_TTL_MAX,
            ),
            "history_1d": TTLBounds(default=self.HISTORY_DAILY_CACHE_TTL, **history_bounds),
            "history_1wk": TTLBounds(default=self.HISTORY_WEEKLY_CACHE_TTL, **history_bounds),
            "news": TTLBounds(
                default=self.NEWS_CACHE_TTL,
                min=self.NEWS_CACHE_TTL_MIN,
                max=self.NEWS_CACHE_TTL_MAX,
            ),
        })

    def rate_rule(self, bucket: str) -> RateLimitRule:
        raw = {
            "quote": self.RATE_LIMIT_QUOTE,
            "history": self.RATE_LIMIT_HISTORY,
            "news": self.RATE_LIMIT_NEWS,
            "news_sentiment": self.RATE_LIMIT_NEWS_SENTIMENT,
            "insight": self.RATE_LIMIT_INSIGHT,
        }.get(bucket, self.RATE_LIMIT_SIGNALS)
        limit, window = parse_rate_limit(raw)
        return RateLimitRule(bucket=bucket, limit=limit, window_seconds=window)

    def provider_settings(self) -> ProviderSettings:
        return ProviderSettings(
            timeout_seconds=self.PROVIDER_TIMEOUT_SECONDS,
            marketaux_api_key=self.MARKETAUX_API_KEY,
            newsapi_api_key=self.NEWSAPI_API_KEY,
            trusted_domains=tuple(self.TRUSTED_NEWS_DOMAINS),
        )


@lru_cache
def get_settings() -> MarketWatchSettings:
    """获取全局配置（单例）"""
    return MarketWatchSettings()


settings = get_settings()
