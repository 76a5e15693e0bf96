"""
缓存管理路由
GET  /api/cache/stats     - 缓存统计
POST /api/cache/clear     - 清空两级缓存
"""

from fastapi import APIRouter, Depends

from sparkline_service.models.api import ApiResponse
from sparkline_service.services.sparkline_service import SparklineService, get_sparkline_service

router = APIRouter(prefix="/api/cache", tags=["缓存管理"])


@router.get("/stats", response_model=ApiResponse)
async def cache_stats(svc: SparklineService = Depends(get_sparkline_service)):
    """内存 / 持久化两级缓存与拉取队列的统计信息"""
    return ApiResponse.ok(data=await svc.cache_stats())


@router.post("/clear", response_model=ApiResponse)
async def clear_cache(svc: SparklineService = Depends(get_sparkline_service)):
    await svc.clear_cache()
    return ApiResponse.ok(message="Sparkline 缓存已清空")
