"""
证券代码规范化与参数校验（边界层使用）

核心层假定收到的代码已满足 ^[A-Z][A-Z0-9.]{0,15}$
"""

import re
from typing import Any, List

from market_watch.errors import ValidationError

_SYMBOL_RE = re.compile(r"^[A-Z][A-Z0-9.]{0,15}$")
_WEIRD_WS_RE = re.compile("[\u00a0\u200b-\u200d\ufeff]")

# 指数代码 → 可交易 ETF
_INDEX_ALIASES = {
    # S&P 500
    "GSPC": "SPY", "INX": "SPY", "SPX": "SPY", "US500": "SPY",
    # Nasdaq 100
    "NDX": "QQQ", "IXNDX": "QQQ", "NAS100": "QQQ", "US100": "QQQ",
    # Dow Jones
    "DJI": "DIA", "DJIA": "DIA",
    # Russell 2000
    "RUT": "IWM", "RTY": "IWM",
    # Nasdaq Composite（以 QQQ 近似）
    "IXIC": "QQQ",
}


def _strip_weird_whitespace(s: str) -> str:
    return _WEIRD_WS_RE.sub(" ", s).strip()


def normalize_symbol(raw: str) -> str:
    """大写、去除 ^ / . 前缀、连字符转点号、指数映射到 ETF"""
    s = _strip_weird_whitespace((raw or "").upper())
    if s.startswith("^") or s.startswith("."):
        s = s[1:]
    s = s.replace("-", ".")
    return _INDEX_ALIASES.get(s, s)


def validate_symbol(raw: str) -> str:
    s = normalize_symbol(raw)
    if not _SYMBOL_RE.match(s):
        raise ValidationError(f"Bad symbol: {raw}")
    return s


def validate_symbols(raw: str, max_count: int = 25) -> List[str]:
    """校验逗号分隔的代码列表"""
    items = [_strip_weird_whitespace(x) for x in (raw or "").split(",")]
    items = [x for x in items if x]
    if not items:
        raise ValidationError("Missing symbols")
    if len(items) > max_count:
        raise ValidationError("Too many symbols")
    return [validate_symbol(item) for item in items]


def validate_int(raw: Any, default: int, lo: int, hi: int) -> int:
    """整数参数校验：缺省取默认值，超出区间报错"""
    if raw is None or raw == "":
        return default
    try:
        n = int(float(raw))
    except (TypeError, ValueError, OverflowError):
        raise ValidationError("Bad number")
    if n < lo or n > hi:
        raise ValidationError("Out of range")
    return n
