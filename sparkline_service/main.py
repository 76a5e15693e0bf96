"""
Sparkline 缓存服务
独立 FastAPI 应用程序入口

启动方式:
    uvicorn sparkline_service.main:app --host 0.0.0.0 --port 8002
    python -m sparkline_service.main
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sparkline_service import __version__
from sparkline_service.config import settings
from sparkline_service.layers.acquisition import CandleClient
from sparkline_service.routers import cache, control, health, sparklines
from sparkline_service.services.sparkline_service import SparklineService

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── 生命周期管理 ──────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用启动/关闭生命周期钩子"""
    logger.info("=" * 60)
    logger.info(f"🚀 Sparkline Cache Service v{__version__} 启动中")
    logger.info(f"   上游接口  : {settings.CANDLE_API_URL}")
    logger.info(f"   持久化后端: {settings.STORE_BACKEND}")
    logger.info("=" * 60)

    client = CandleClient(settings)
    # 现货列表加载失败不阻断启动，现货按展示代码直接请求
    try:
        await client.refresh_spot_markets()
    except Exception as exc:
        logger.warning(f"⚠️ 现货市场列表加载失败: {exc}")

    service = SparklineService(
        fetcher=client,
        cfg=settings,
        resolve_coin=lambda key: client.resolve(key.market_type, key.symbol),
    )
    app.state.sparkline_service = service
    await service.start()

    if service.is_cache_ready:
        logger.info(f"✅ 持久化缓存就绪（{service.persistent.backend}）")
    else:
        logger.warning("⚠️ 持久化缓存不可用，降级为纯内存模式")

    yield

    logger.info("🔄 Sparkline 服务正在关闭...")
    await service.dispose()
    await client.aclose()
    logger.info("✅ Sparkline 服务已关闭")


# ── 应用实例 ──────────────────────────────────────────────
app = FastAPI(
    title="Sparkline 缓存服务",
    description=(
        "行情列表迷你走势图（24 小时 / 15 分钟 K 线收盘价）缓存与后台拉取服务：\n"
        "- 🗄️ 两级缓存（内存 LRU → MongoDB / Redis / 文件）\n"
        "- 📦 批量拉取队列（单飞去重、分块并发、429 指数退避）\n"
        "- 👀 可见行优先拉取\n"
        "- ⏱️ 定时与回到前台时的过期刷新\n"
        "- 📈 实时价格合成点\n\n"
        "**分层架构**\n"
        "```\n"
        "Acquisition Layer  ← 从上游拉取历史 K 线\n"
        "Processing Layer   ← K 线清洗、收盘价序列\n"
        "Cache Layer        ← 内存 / 持久化两级缓存\n"
        "Orchestration      ← 队列、可见性、过期巡检\n"
        "```"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS 中间件 ───────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── 请求计时中间件 ─────────────────────────────────────────
@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
    return response


# ── 全局异常处理 ──────────────────────────────────────────
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"未处理的异常: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "内部服务错误", "message": str(exc)},
    )


# ── 注册路由 ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(sparklines.router)
app.include_router(control.router)
app.include_router(cache.router)


# ── 根路由 ───────────────────────────────────────────────
@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "Sparkline Cache Service",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "sparkline_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
