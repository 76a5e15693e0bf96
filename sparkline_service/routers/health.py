"""健康检查路由"""

import time

from fastapi import APIRouter, Depends

from sparkline_service import __version__
from sparkline_service.services.sparkline_service import SparklineService, get_sparkline_service

router = APIRouter(tags=["健康检查"])


@router.get("/health")
async def health(svc: SparklineService = Depends(get_sparkline_service)):
    """服务健康检查；持久化后端不可用时服务以纯内存模式继续运行"""
    return {
        "success": True,
        "data": {
            "status": "ok",
            "version": __version__,
            "timestamp": int(time.time()),
            "service": "Sparkline Cache Service",
            "store": {
                "ready": svc.is_cache_ready,
                "backend": svc.persistent.backend,
            },
            "refresh_monitor": svc.monitor.is_running,
        },
        "message": "服务运行正常",
    }


@router.get("/healthz")
async def healthz():
    """Kubernetes liveness probe"""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(svc: SparklineService = Depends(get_sparkline_service)):
    """Kubernetes readiness probe"""
    return {"ready": svc.monitor.is_running}
