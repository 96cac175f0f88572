"""健康检查路由"""

import time

from fastapi import APIRouter

from market_watch import __version__, db

router = APIRouter(tags=["健康检查"])


@router.get("/health")
async def health():
    """服务健康检查"""
    db_health = await db.check_health()
    return {
        "success": True,
        "data": {
            "status": "ok",
            "version": __version__,
            "timestamp": int(time.time()),
            "service": "MarketWatch",
            "databases": db_health,
        },
        "message": "服务运行正常",
    }


@router.get("/healthz")
async def healthz():
    """Kubernetes liveness probe"""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz():
    """Kubernetes readiness probe：MongoDB 可用时才算就绪"""
    return {"ready": db.get_mongo_db() is not None}
