"""
路由公共依赖
  - 路径中的证券代码规范化与校验
  - 按操作分桶的客户端限流
"""

import logging
from typing import Callable, Optional

from fastapi import Depends, Request, Response

from market_watch import db
from market_watch.config import settings
from market_watch.errors import StoreError
from market_watch.layers.rate_limit import RateLimiter, get_client_ip
from market_watch.symbols import validate_symbol

logger = logging.getLogger(__name__)


async def symbol_path(symbol: str) -> str:
    """路径参数 {symbol} → 规范化后的代码，非法时抛出 ValidationError"""
    return validate_symbol(symbol)


def get_rate_limiter() -> Optional[RateLimiter]:
    """限流未启用或 MongoDB 不可用时返回 None（不限流）"""
    if not settings.RATE_LIMIT_ENABLED:
        return None
    try:
        return RateLimiter(db.get_repository())
    except StoreError:
        logger.debug("MongoDB 不可用，本次请求跳过限流")
        return None


def rate_limit(bucket: str) -> Callable:
    """生成指定限流桶的依赖，放行时写入 X-RateLimit-Remaining 响应头"""

    async def _dependency(
        request: Request,
        response: Response,
        limiter: Optional[RateLimiter] = Depends(get_rate_limiter),
    ) -> None:
        if limiter is None:
            return
        admission = await limiter.require(settings.rate_rule(bucket), get_client_ip(request.headers))
        response.headers["X-RateLimit-Remaining"] = str(admission.remaining)

    return _dependency
