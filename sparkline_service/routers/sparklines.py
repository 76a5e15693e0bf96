"""
Sparkline 数据路由
GET  /api/sparklines/{market_type}/{symbol}  - 读取走势（?live=true 合并实时价）
POST /api/sparklines/prefetch                - 后台预热
POST /api/sparklines/hydrate                 - 冷启动从持久化缓存批量预热
PUT  /api/sparklines/prices                  - 更新实时价格表
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from sparkline_service.models.api import (
    ApiResponse,
    HydrateRequest,
    MarketType,
    PriceUpdateRequest,
    SymbolsRequest,
)
from sparkline_service.models.sparkline import CacheKey
from sparkline_service.services.sparkline_service import SparklineService, get_sparkline_service

router = APIRouter(prefix="/api/sparklines", tags=["Sparkline"])


@router.get("/{market_type}/{symbol:path}", response_model=ApiResponse)
async def get_sparkline(
    market_type: MarketType,
    symbol: str,
    live: bool = Query(default=False, description="是否追加实时价格点"),
    price_key: Optional[str] = Query(default=None, description="实时价格表查询键，默认同 symbol"),
    svc: SparklineService = Depends(get_sparkline_service),
):
    """
    非阻塞读取：缓存不新鲜时返回旧数据（或空），并在后台触发刷新。
    symbol 可带 dex 前缀，如 `xyz:NVDA`。
    """
    if live:
        series = svc.get_live_sparkline(symbol, market_type, price_key=price_key)
    else:
        series = svc.get_sparkline_data(symbol, market_type)
    return ApiResponse.ok(
        data={
            "key": CacheKey(market_type=market_type, symbol=symbol).render(),
            "sparkline": series.model_dump() if series is not None else None,
            "cache_version": svc.cache_version,
            "refresh_trigger": svc.refresh_trigger,
        },
        message="命中" if series is not None else "暂无数据，已在后台拉取",
    )


@router.post("/prefetch", response_model=ApiResponse)
async def prefetch(body: SymbolsRequest, svc: SparklineService = Depends(get_sparkline_service)):
    """尽力预热：已新鲜、已排队、拉取中或本轮已认领的品种被跳过"""
    queued = svc.prefetch_sparklines(body.symbols, body.market_type)
    return ApiResponse.ok(data={"queued": queued}, message=f"已排队 {queued} 个品种")


@router.post("/hydrate", response_model=ApiResponse)
async def hydrate(body: HydrateRequest, svc: SparklineService = Depends(get_sparkline_service)):
    keys = [CacheKey(market_type=i.market_type, symbol=i.symbol) for i in body.items]
    hydrated = await svc.hydrate_from_cache(keys)
    return ApiResponse.ok(
        data={"requested": len(keys), "hydrated": hydrated, "cache_version": svc.cache_version},
        message=f"预热 {hydrated}/{len(keys)} 条",
    )


@router.put("/prices", response_model=ApiResponse)
async def update_prices(body: PriceUpdateRequest, svc: SparklineService = Depends(get_sparkline_service)):
    svc.price_feed.update(body.prices)
    return ApiResponse.ok(data={"updated": len(body.prices)})
