"""
统一异常体系

  ValidationError   → 参数非法（边界层处理，不会进入核心）
  UpstreamError     → 单个上游提供商失败（由 ProviderChain 吞掉并收集）
  ChainExhausted    → 提供商链全部失败，携带每个提供商的失败详情
  RateLimited       → 限流拒绝，携带 retry_after
  StoreError        → 持久化存储读写失败
"""

from typing import Any, Dict, List, Optional


class MarketWatchError(Exception):
    """所有业务异常的基类"""

    status_code: int = 500
    stage: str = "internal"

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        self.message = message or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.message, "stage": self.stage}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(MarketWatchError):
    status_code = 400
    stage = "validate"


# ── 上游提供商失败 ────────────────────────────────────────

class UpstreamError(MarketWatchError):
    """单个提供商的一次失败尝试"""

    status_code = 502
    stage = "upstream"
    kind = "upstream_error"

    def __init__(self, provider: str, message: str = "", details: Optional[Dict[str, Any]] = None):
        self.provider = provider
        super().__init__(message or self.kind, details)

    def to_dict(self) -> Dict[str, Any]:
        body = {"provider": self.provider, "kind": self.kind, "error": self.message}
        if self.details:
            body.update(self.details)
        return body


class NoKey(UpstreamError):
    kind = "no_key"


class HTTPStatusFailure(UpstreamError):
    kind = "http_error"

    def __init__(self, provider: str, status: int, message: str = ""):
        self.status = status
        super().__init__(provider, message or f"status {status}", {"status": status})


class EmptyResult(UpstreamError):
    kind = "empty_result"


class ParseFailure(UpstreamError):
    kind = "parse_error"


class UpstreamTimeout(UpstreamError):
    kind = "timeout"


class ChainExhausted(MarketWatchError):
    """链上所有提供商均失败"""

    status_code = 502
    stage = "providers_failed"

    def __init__(self, resource: str, failures: List[UpstreamError]):
        self.resource = resource
        self.failures = list(failures)
        super().__init__(
            f"{resource}: 所有数据提供商均失败",
            {"failures": [f.to_dict() for f in self.failures]},
        )

    @property
    def all_empty(self) -> bool:
        """所有失败都只是"无数据"或"未配置 key"时为 True"""
        return bool(self.failures) and all(isinstance(f, (EmptyResult, NoKey)) for f in self.failures)


# ── 其他 ─────────────────────────────────────────────────

class RateLimited(MarketWatchError):
    status_code = 429
    stage = "rate_limited"

    def __init__(self, bucket: str, limit: int, window_seconds: int, retry_after: int):
        self.bucket = bucket
        self.limit = limit
        self.window_seconds = window_seconds
        self.retry_after = retry_after
        super().__init__(
            "rate_limited",
            {
                "key": bucket,
                "limit": limit,
                "window_sec": window_seconds,
                "retry_after_sec": retry_after,
            },
        )


class StoreError(MarketWatchError):
    status_code = 503
    stage = "store"
