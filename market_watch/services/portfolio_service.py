"""
持仓服务
user_portfolio 集合的写入与列表，按 (user_id, symbol) 唯一
"""

import logging
from typing import Any, Callable, Dict, Optional

from market_watch.db import MarketRepository, get_repository
from market_watch.errors import ValidationError
from market_watch.models.records import Holding, HoldingInput
from market_watch.symbols import validate_symbol

logger = logging.getLogger(__name__)


def _user(user_id: str) -> str:
    user = (user_id or "").strip()
    if not user:
        raise ValidationError("Missing user")
    return user


class PortfolioService:

    def __init__(self, repository_getter: Callable[[], MarketRepository] = get_repository):
        self._repo = repository_getter

    async def add_holding(self, user_id: str, body: HoldingInput) -> Dict[str, Any]:
        """同一用户同一代码重复写入时覆盖 shares / cost_basis"""
        holding = Holding(
            user_id=_user(user_id),
            symbol=validate_symbol(body.symbol),
            shares=body.shares,
            cost_basis=body.cost_basis,
        )
        await self._repo().upsert_holding(holding)
        logger.info(f"持仓写入: {holding.user_id} {holding.symbol} shares={holding.shares}")
        return {"upserted": holding.model_dump()}

    async def list_holdings(self, user_id: str) -> Dict[str, Any]:
        user = _user(user_id)
        holdings = await self._repo().list_holdings(user)
        return {
            "user": user,
            "count": len(holdings),
            "holdings": [h.model_dump(exclude={"user_id"}) for h in holdings],
        }


# ── 模块级别单例 ──────────────────────────────────────────
_portfolio_service: Optional[PortfolioService] = None


def get_portfolio_service() -> PortfolioService:
    global _portfolio_service
    if _portfolio_service is None:
        _portfolio_service = PortfolioService()
    return _portfolio_service
