"""
Layer 2 – 缓存层
按新鲜度判定的读穿缓存，后端优先级：Redis（内存） → MongoDB live_cache（持久化） → 文件（本地）

条目 {key, value, stored_at, ttl_seconds} 在 now < stored_at + ttl_seconds 时为新鲜；
过期条目不会被主动删除，只在读取时被视为未命中。
"""

import hashlib
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from market_watch.config import GLOBAL_TTL_MAX, GLOBAL_TTL_MIN, settings
from market_watch.db import get_mongo_db, get_redis
from market_watch.errors import StoreError

logger = logging.getLogger(__name__)


def make_key(operation: str, **params: Any) -> str:
    """
    生成确定性的缓存指纹

    参数按名称排序后拼接为 k=v，过长时以 md5 压缩：
        make_key("history", symbol="AAPL", range="1y") -> "history:range=1y:symbol=AAPL"
    """
    parts = [f"{k}={params[k]}" for k in sorted(params) if params[k] is not None]
    raw = ":".join([operation] + parts)
    if len(raw) > 200:
        raw = operation + ":" + hashlib.md5(raw.encode()).hexdigest()
    return raw


def clamp_ttl(ttl: int) -> int:
    return max(GLOBAL_TTL_MIN, min(int(ttl), GLOBAL_TTL_MAX))


@dataclass(frozen=True)
class CacheHit:
    value: Any
    stored_at: float
    ttl_seconds: int
    backend: str


# ── 缓存后端 ─────────────────────────────────────────────

class RedisBackend:
    name = "redis"

    def __init__(self, client_getter: Callable = get_redis):
        self._client_getter = client_getter

    def available(self) -> bool:
        return self._client_getter() is not None

    async def read(self, key: str) -> Optional[Dict[str, Any]]:
        raw = await self._client_getter().get(key)
        return json.loads(raw) if raw else None

    async def write(self, key: str, entry: Dict[str, Any]) -> None:
        payload = json.dumps(entry, ensure_ascii=False, default=str)
        # Redis 过期时间与 TTL 一致，只影响内存占用，不影响新鲜度判定
        await self._client_getter().set(key, payload, ex=entry["ttl_seconds"])


class MongoBackend:
    name = "mongodb"
    collection = "live_cache"

    def __init__(self, db_getter: Callable = get_mongo_db):
        self._db_getter = db_getter

    def available(self) -> bool:
        return self._db_getter() is not None

    async def read(self, key: str) -> Optional[Dict[str, Any]]:
        doc = await self._db_getter()[self.collection].find_one({"key": key})
        if not doc:
            return None
        return {"value": doc.get("value"), "stored_at": doc["stored_at"], "ttl_seconds": doc["ttl_seconds"]}

    async def write(self, key: str, entry: Dict[str, Any]) -> None:
        await self._db_getter()[self.collection].update_one(
            {"key": key},
            {"$set": {"key": key, **entry}},
            upsert=True,
        )


class FileBackend:
    name = "file"

    def __init__(self, directory: str = None):
        self._dir = directory or settings.CACHE_DIR

    def available(self) -> bool:
        return True

    def _path(self, key: str) -> str:
        safe = key.replace(":", "_").replace("/", "_")
        return os.path.join(self._dir, f"{safe}.json")

    async def read(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(key)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)

    async def write(self, key: str, entry: Dict[str, Any]) -> None:
        os.makedirs(self._dir, exist_ok=True)
        with open(self._path(key), "w", encoding="utf-8") as fh:
            json.dump(entry, fh, ensure_ascii=False, default=str)


# ── TTL 缓存 ─────────────────────────────────────────────

class TTLCache:
    """多级 TTL 缓存，get 返回第一个新鲜命中，put 写入第一个接受写入的后端"""

    def __init__(self, backends: List[Any] = None, clock: Callable[[], float] = time.time):
        self._backends = backends if backends is not None else [
            RedisBackend(), MongoBackend(), FileBackend()
        ]
        self._clock = clock

    def _is_fresh(self, entry: Dict[str, Any]) -> bool:
        return self._clock() < float(entry["stored_at"]) + int(entry["ttl_seconds"])

    async def get(self, key: str) -> Optional[CacheHit]:
        for backend in self._backends:
            if not backend.available():
                continue
            try:
                entry = await backend.read(key)
            except Exception as exc:
                logger.debug(f"{backend.name} 缓存读取失败: {exc}")
                continue
            if entry is None:
                continue
            if self._is_fresh(entry):
                logger.debug(f"缓存命中（{backend.name}）: {key}")
                return CacheHit(
                    value=entry.get("value"),
                    stored_at=float(entry["stored_at"]),
                    ttl_seconds=int(entry["ttl_seconds"]),
                    backend=backend.name,
                )
            logger.debug(f"缓存已过期（{backend.name}）: {key}")
        return None

    async def put(self, key: str, value: Any, ttl: int) -> str:
        """写入缓存，返回接受写入的后端名；全部失败时抛出 StoreError"""
        entry = {"value": value, "stored_at": self._clock(), "ttl_seconds": clamp_ttl(ttl)}
        errors = []
        for backend in self._backends:
            if not backend.available():
                continue
            try:
                await backend.write(key, entry)
            except Exception as exc:
                logger.debug(f"{backend.name} 缓存写入失败: {exc}")
                errors.append(f"{backend.name}: {exc}")
                continue
            logger.debug(f"缓存写入（{backend.name}）: {key} ttl={entry['ttl_seconds']}s")
            return backend.name
        raise StoreError(f"缓存写入失败: {key}", {"backends": errors})


# ── 模块级别单例 ──────────────────────────────────────────
_cache: Optional[TTLCache] = None


def get_cache() -> TTLCache:
    global _cache
    if _cache is None:
        _cache = TTLCache()
    return _cache
