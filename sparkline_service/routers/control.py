"""
拉取控制路由
POST   /api/visibility             - 设置当前可见品种（优先拉取）
DELETE /api/visibility             - 视图销毁，清空队列
POST   /api/fetching/pause|resume  - 建议性暂停 / 恢复后台拉取
POST   /api/lifecycle/foreground|background - 应用前后台切换
"""

from fastapi import APIRouter, Depends

from sparkline_service.models.api import ApiResponse, SymbolsRequest
from sparkline_service.services.sparkline_service import SparklineService, get_sparkline_service

router = APIRouter(prefix="/api", tags=["拉取控制"])


@router.post("/visibility", response_model=ApiResponse)
async def set_visible(body: SymbolsRequest, svc: SparklineService = Depends(get_sparkline_service)):
    prioritized = svc.set_visible_items(body.symbols, body.market_type)
    return ApiResponse.ok(
        data={"prioritized": [k.render() for k in prioritized]},
        message=f"优先拉取 {len(prioritized)} 个可见品种",
    )


@router.delete("/visibility", response_model=ApiResponse)
async def clear_visible(svc: SparklineService = Depends(get_sparkline_service)):
    removed = svc.clear_visibility()
    return ApiResponse.ok(data={"removed": len(removed)})


@router.post("/fetching/pause", response_model=ApiResponse)
async def pause(svc: SparklineService = Depends(get_sparkline_service)):
    svc.pause_fetching()
    return ApiResponse.ok(message="后台拉取已暂停")


@router.post("/fetching/resume", response_model=ApiResponse)
async def resume(svc: SparklineService = Depends(get_sparkline_service)):
    svc.resume_fetching()
    return ApiResponse.ok(message="后台拉取已恢复")


@router.post("/lifecycle/foreground", response_model=ApiResponse)
async def foreground(svc: SparklineService = Depends(get_sparkline_service)):
    refreshed = svc.on_foreground()
    return ApiResponse.ok(data={"refreshed": refreshed, "refresh_trigger": svc.refresh_trigger})


@router.post("/lifecycle/background", response_model=ApiResponse)
async def background(svc: SparklineService = Depends(get_sparkline_service)):
    svc.on_background()
    return ApiResponse.ok()
