"""
Sparkline 数据服务
整合内存缓存、持久化缓存、批量拉取、可见性调整与过期巡检，
对外提供面向界面层的统一接口。所有可变状态都是本实例的字段，
通过 start() / dispose() 管理生命周期，测试可构造相互隔离的实例。
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, MutableMapping, Optional, Set

from fastapi import Request

from sparkline_service.clock import Clock, SystemClock
from sparkline_service.config import SparklineSettings, settings as default_settings
from sparkline_service.layers.acquisition import CandleFetcher
from sparkline_service.layers.background import BackgroundTasks
from sparkline_service.layers.live_merge import merge_live_price
from sparkline_service.layers.memory_cache import MemoryCache
from sparkline_service.layers.orchestrator import FetchOrchestrator, FetchState
from sparkline_service.layers.persistent_cache import PersistentCache
from sparkline_service.layers.retry import RetryPolicy
from sparkline_service.layers.staleness import StalenessMonitor
from sparkline_service.layers.store import open_store
from sparkline_service.layers.visibility import VisibilityPrioritizer
from sparkline_service.models.sparkline import CacheKey, LiveSparkline, SparklineSeries

logger = logging.getLogger(__name__)


class SparklineService:
    """Sparkline 缓存与后台拉取服务"""

    def __init__(
        self,
        fetcher: CandleFetcher,
        cfg: Optional[SparklineSettings] = None,
        clock: Optional[Clock] = None,
        store_opener: Optional[Callable[[], Awaitable[Any]]] = None,
        resolve_coin: Optional[Callable[[CacheKey], str]] = None,
        price_feed: Optional[MutableMapping[str, str]] = None,
    ):
        self._cfg = cfg or default_settings
        self._clock = clock or SystemClock()
        self.price_feed: MutableMapping[str, str] = price_feed if price_feed is not None else {}

        self.persistent = PersistentCache(
            store_opener or (lambda: open_store(self._cfg)),
            self._clock,
            ttl_ms=self._cfg.PERSISTENT_TTL_MS,
            max_entries=self._cfg.MAX_PERSISTENT_ENTRIES,
        )
        self.memory = MemoryCache(
            self._clock,
            ttl_ms=self._cfg.MEMORY_TTL_MS,
            max_entries=self._cfg.MAX_MEMORY_ENTRIES,
            on_write=self.persistent.schedule_set,
        )
        self.orchestrator = FetchOrchestrator(
            fetcher,
            self.memory,
            RetryPolicy(
                self._clock,
                max_retries=self._cfg.MAX_RETRIES,
                initial_delay_ms=self._cfg.INITIAL_RETRY_DELAY_MS,
            ),
            self._clock,
            batch_size=self._cfg.BATCH_SIZE,
            max_parallel_batches=self._cfg.MAX_PARALLEL_BATCHES,
            batch_delay_ms=self._cfg.BATCH_DELAY_MS,
            drain_tick_ms=self._cfg.DRAIN_TICK_MS,
            window_ms=self._cfg.SPARKLINE_WINDOW_MS,
            interval=self._cfg.CANDLE_INTERVAL,
            resolve_coin=resolve_coin,
        )
        self.visibility = VisibilityPrioritizer(self.orchestrator, self.memory)
        self.monitor = StalenessMonitor(
            self._clock, self._cfg.REFRESH_INTERVAL_MS, self._invalidate
        )
        self._hydrating: Set[CacheKey] = set()
        self._tasks = BackgroundTasks("sparkline-service")

    # ── 生命周期 ──────────────────────────────────────────

    async def start(self) -> None:
        await self.persistent.init()
        self.monitor.start()
        logger.info(
            f"Sparkline 服务已启动（持久化后端: {self.persistent.backend or '无'}，"
            f"内存 TTL {self._cfg.MEMORY_TTL_MS}ms，持久化 TTL {self._cfg.PERSISTENT_TTL_MS}ms）"
        )

    async def dispose(self) -> None:
        await self.monitor.stop()
        await self._tasks.cancel_all()
        await self.orchestrator.dispose()
        await self.persistent.close()
        logger.info("Sparkline 服务已关闭")

    # ── 状态 ─────────────────────────────────────────────

    @property
    def cache_version(self) -> int:
        return self.orchestrator.cache_version

    @property
    def refresh_trigger(self) -> int:
        return self.monitor.refresh_trigger

    @property
    def is_cache_ready(self) -> bool:
        return self.persistent.is_ready

    def subscribe(self, listener: Callable[[int], None]) -> Callable[[], None]:
        return self.orchestrator.subscribe(listener)

    @staticmethod
    def key(symbol: str, market_type: str) -> CacheKey:
        return CacheKey(market_type=market_type, symbol=symbol)

    # ── 读取 ─────────────────────────────────────────────

    def get_sparkline_data(self, symbol: str, market_type: str) -> Optional[SparklineSeries]:
        """
        同步、非阻塞读取

        内存新鲜时直接返回；否则先返回已有的旧数据（没有则 None），
        并在后台查询持久化层，仍不新鲜时排队拉取。
        """
        key = self.key(symbol, market_type)
        entry = self.memory.get(key)
        if entry is not None and entry.is_fresh(self._clock.now_ms()):
            return entry.series

        if key not in self._hydrating and self.orchestrator.state_of(key) is FetchState.IDLE:
            self._hydrating.add(key)
            if self._tasks.spawn(self._hydrate_single(key), f"hydrate {key}") is None:
                self._hydrating.discard(key)

        return entry.series if entry is not None else None

    async def _hydrate_single(self, key: CacheKey) -> None:
        try:
            cached = await self.persistent.get_with_staleness(key)
            # 内存中已有条目时它不会比本进程写入的持久化记录更旧
            if cached is not None and key not in self.memory:
                self.memory.hydrate(key, cached.series, self._memory_expiry(cached.series))
                self.orchestrator.bump_version()
            if not self.memory.is_fresh(key) and self.orchestrator.enqueue(key):
                self.orchestrator.schedule_drain()
        finally:
            self._hydrating.discard(key)

    def _memory_expiry(self, series: SparklineSeries) -> int:
        # 预热条目沿用原始写入时间计算新鲜度，旧记录会被立即重新排队
        return series.last_updated + self.memory.ttl_ms

    def get_live_sparkline(
        self,
        symbol: str,
        market_type: str,
        price_key: Optional[str] = None,
    ) -> Optional[LiveSparkline]:
        base = self.get_sparkline_data(symbol, market_type)
        live_price = self.price_feed.get(price_key or symbol)
        return merge_live_price(base, live_price, self._clock.now_ms())

    # ── 预取与预热 ────────────────────────────────────────

    def prefetch_sparklines(self, symbols: Iterable[str], market_type: str) -> int:
        return self.orchestrator.prefetch(self.key(s, market_type) for s in symbols)

    async def hydrate_from_cache(self, items: Iterable[CacheKey]) -> int:
        """冷启动：一次批量读取持久化层预热内存，随后把仍不新鲜的项重新排队"""
        keys = list(dict.fromkeys(items))
        if not keys:
            return 0
        cached = await self.persistent.bulk_get(keys)
        hydrated = 0
        for key in keys:
            series = cached.get(key.render())
            if series is None:
                continue
            if key not in self.memory:
                self.memory.hydrate(key, series, self._memory_expiry(series))
                hydrated += 1
        if hydrated:
            self.orchestrator.bump_version()
            logger.info(f"从持久化缓存预热 {hydrated}/{len(keys)} 条 Sparkline")

        queued = sum(1 for key in keys if self.orchestrator.enqueue(key))
        if queued:
            self.orchestrator.schedule_drain()
        return hydrated

    # ── 可见性 ───────────────────────────────────────────

    def set_visible_items(self, symbols: Iterable[str], market_type: str) -> List[CacheKey]:
        return self.visibility.set_visible_items(self.key(s, market_type) for s in symbols)

    def clear_visibility(self) -> List[CacheKey]:
        return self.visibility.clear_visibility()

    # ── 拉取控制 ──────────────────────────────────────────

    def pause_fetching(self) -> None:
        """建议性暂停：已在拉取中的请求不会被中止"""
        self.orchestrator.pause()

    def resume_fetching(self) -> None:
        self.orchestrator.resume()

    # ── 应用前后台切换 ────────────────────────────────────

    def on_foreground(self) -> bool:
        return self.monitor.on_foreground()

    def on_background(self) -> None:
        logger.debug("应用进入后台")

    def _invalidate(self) -> None:
        self.orchestrator.clear_claims()
        self.memory.invalidate_all()

    # ── 缓存管理 ──────────────────────────────────────────

    async def clear_cache(self) -> None:
        self.memory.clear()
        await self.persistent.clear()
        self.orchestrator.clear_claims()
        self.orchestrator.bump_version()

    async def cache_stats(self) -> Dict[str, Any]:
        return {
            "memory": {
                "entries": len(self.memory),
                "max_entries": self.memory.max_entries,
                "ttl_ms": self.memory.ttl_ms,
            },
            "persistent": {
                "ready": self.persistent.is_ready,
                "backend": self.persistent.backend,
                "max_entries": self.persistent.max_entries,
                "ttl_ms": self.persistent.ttl_ms,
                **await self.persistent.stats(),
            },
            "queue": {
                "queued": len(self.orchestrator.queue),
                "in_flight": len(self.orchestrator.in_flight),
                "claimed": len(self.orchestrator.claimed),
                "paused": self.orchestrator.is_paused,
            },
            "cache_version": self.cache_version,
            "refresh_trigger": self.refresh_trigger,
        }


def get_sparkline_service(request: Request) -> SparklineService:
    """FastAPI 依赖：取出应用生命周期内创建的服务实例"""
    return request.app.state.sparkline_service
