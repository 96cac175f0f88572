"""
限流层 – 按 (bucket, 客户端) 计数的滑动窗口

每次调用重新统计 [now - window, now] 内的事件数：
  count >= limit  → 拒绝，retry_after = window
  否则            → 记录一条事件并放行
放行后以约 2% 的概率顺带清理 24 小时前的事件。
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Optional

from market_watch.config import RateLimitRule, settings
from market_watch.errors import RateLimited

logger = logging.getLogger(__name__)


def get_client_ip(headers: Mapping[str, str]) -> str:
    """客户端标识：X-Forwarded-For 第一个地址 → X-Real-IP → "unknown" """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return headers.get("x-real-ip") or "unknown"


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class Admission:
    allowed: bool
    retry_after: int = 0
    remaining: int = 0
    recorded: bool = True


class RateLimiter:
    """
    滑动窗口限流器

    store 需提供 count_rate_events / insert_rate_event / delete_rate_events_before
    （MarketRepository 即满足）。时钟与随机源可注入，便于测试。
    """

    def __init__(
        self,
        store,
        clock: Callable[[], datetime] = _utcnow,
        rng: Callable[[], float] = random.random,
        cleanup_probability: float = None,
        retention_hours: int = None,
    ):
        self._store = store
        self._clock = clock
        self._rng = rng
        self._cleanup_probability = (
            settings.RATE_LIMIT_CLEANUP_PROBABILITY if cleanup_probability is None else cleanup_probability
        )
        self._retention = timedelta(
            hours=settings.RATE_LIMIT_RETENTION_HOURS if retention_hours is None else retention_hours
        )

    async def admit(self, bucket: str, identity: str, limit: int, window_seconds: int) -> Admission:
        now = self._clock()
        since = now - timedelta(seconds=window_seconds)

        try:
            count = await self._store.count_rate_events(bucket, identity, since)
        except Exception as exc:
            logger.warning(f"限流计数失败（按 0 处理）: bucket={bucket} {exc}")
            count = 0

        if count >= limit:
            logger.info(f"限流拒绝: bucket={bucket} id={identity} count={count}/{limit}")
            return Admission(allowed=False, retry_after=window_seconds, remaining=0)

        recorded = True
        try:
            await self._store.insert_rate_event(bucket, identity, now)
        except Exception as exc:
            logger.warning(f"限流事件写入失败: bucket={bucket} {exc}")
            recorded = False

        if self._rng() < self._cleanup_probability:
            await self._cleanup(now)

        return Admission(
            allowed=True,
            retry_after=0,
            remaining=max(0, limit - count - 1),
            recorded=recorded,
        )

    async def require(self, rule: RateLimitRule, identity: str) -> Admission:
        """放行则返回 Admission，拒绝时抛出 RateLimited"""
        admission = await self.admit(rule.bucket, identity, rule.limit, rule.window_seconds)
        if not admission.allowed:
            raise RateLimited(rule.bucket, rule.limit, rule.window_seconds, admission.retry_after)
        return admission

    async def _cleanup(self, now: datetime) -> None:
        cutoff = now - self._retention
        try:
            deleted = await self._store.delete_rate_events_before(cutoff)
            logger.debug(f"限流事件清理: 删除 {deleted} 条 {cutoff.isoformat()} 之前的记录")
        except Exception as exc:
            logger.warning(f"限流事件清理失败: {exc}")
