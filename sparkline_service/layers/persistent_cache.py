"""
Layer 2b – 持久化缓存
跨进程重启保留的 Sparkline 记录，TTL 比内存层长，仅用于冷启动预热。

所有操作均"软失败"：任何 I/O 异常都被吞掉并视为未命中，
子系统随之退化为纯内存缓存，存储错误绝不向上传播。
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sparkline_service.clock import Clock
from sparkline_service.layers.background import BackgroundTasks
from sparkline_service.models.sparkline import (
    CacheKey,
    PersistentRecord,
    SparklineSeries,
    StaleRead,
)

logger = logging.getLogger(__name__)

StoreOpener = Callable[[], Awaitable[Any]]


class PersistentCache:
    def __init__(
        self,
        opener: StoreOpener,
        clock: Clock,
        ttl_ms: int,
        max_entries: int,
    ):
        self._opener = opener
        self._clock = clock
        self.ttl_ms = ttl_ms
        self.max_entries = max_entries
        self._store = None
        self._ready = False
        self._init_future: Optional[asyncio.Future] = None
        self._background = BackgroundTasks("persistent-cache")

    # ── 初始化 ────────────────────────────────────────────

    @property
    def is_ready(self) -> bool:
        return self._ready and self._store is not None

    @property
    def backend(self) -> Optional[str]:
        return getattr(self._store, "name", None) if self.is_ready else None

    def init(self) -> Awaitable[None]:
        """幂等：多次调用共享同一个初始化过程与就绪状态"""
        if self._init_future is None:
            self._init_future = asyncio.ensure_future(self._do_init())
        return self._init_future

    async def _do_init(self) -> None:
        try:
            self._store = await self._opener()
        except Exception as exc:
            logger.warning(f"⚠️ 持久化缓存初始化失败，降级为纯内存模式: {exc}")
            self._store = None
        self._ready = self._store is not None
        if self._ready:
            self._background.spawn(self.evict_expired(), "evict-expired")

    async def close(self) -> None:
        await self._background.wait()
        store, self._store = self._store, None
        self._ready = False
        self._init_future = None
        if store is not None:
            try:
                await store.close()
            except Exception as exc:
                logger.debug(f"持久化存储关闭失败: {exc}")

    # ── 读取 ─────────────────────────────────────────────

    def _is_fresh(self, record: PersistentRecord, now_ms: int) -> bool:
        return now_ms < record.last_fetched_ts + self.ttl_ms

    async def get(self, key: CacheKey) -> Optional[SparklineSeries]:
        """读取未过期的记录；过期记录不在此处删除，交给后台清理"""
        if not self.is_ready:
            return None
        try:
            record = await self._store.get(key)
        except Exception as exc:
            logger.debug(f"持久化缓存读取失败 {key}: {exc}")
            return None
        if record is None or not self._is_fresh(record, self._clock.now_ms()):
            return None
        return record.to_series()

    async def get_with_staleness(self, key: CacheKey) -> Optional[StaleRead]:
        """不按新鲜度过滤，由调用方决定是否先展示旧数据再刷新"""
        if not self.is_ready:
            return None
        try:
            record = await self._store.get(key)
        except Exception as exc:
            logger.debug(f"持久化缓存读取失败 {key}: {exc}")
            return None
        if record is None:
            return None
        return StaleRead(
            series=record.to_series(),
            is_stale=not self._is_fresh(record, self._clock.now_ms()),
        )

    async def bulk_get(self, keys: List[CacheKey]) -> Dict[str, SparklineSeries]:
        """一次往返批量读取，跳过过期记录；结果以 "<market_type>:<symbol>" 为键"""
        result: Dict[str, SparklineSeries] = {}
        if not self.is_ready or not keys:
            return result
        try:
            records = await self._store.bulk_get(keys)
        except Exception as exc:
            logger.debug(f"持久化缓存批量读取失败: {exc}")
            return result
        now = self._clock.now_ms()
        for record in records:
            if self._is_fresh(record, now):
                result[record.key.render()] = record.to_series()
        return result

    # ── 写入 ─────────────────────────────────────────────

    async def set(self, key: CacheKey, series: SparklineSeries) -> None:
        if not self.is_ready:
            return
        record = PersistentRecord.from_series(key, series, self._clock.now_ms())
        try:
            await self._store.upsert(record)
        except Exception as exc:
            logger.debug(f"持久化缓存写入失败 {key}: {exc}")
            return
        self._background.spawn(self.evict_over_capacity(), "evict-over-capacity")

    def schedule_set(self, key: CacheKey, series: SparklineSeries) -> None:
        """后台写入，永不阻塞调用方"""
        if self.is_ready:
            self._background.spawn(self.set(key, series), f"set {key}")

    # ── 淘汰 ─────────────────────────────────────────────

    async def evict_expired(self) -> int:
        """删除超过 TTL 的记录（硬截止，与容量淘汰无关）"""
        if not self.is_ready:
            return 0
        cutoff = self._clock.now_ms() - self.ttl_ms
        try:
            removed = await self._store.delete_older_than(cutoff)
        except Exception as exc:
            logger.debug(f"过期记录清理失败: {exc}")
            return 0
        if removed:
            logger.info(f"持久化缓存清理过期记录 {removed} 条")
        return removed

    async def evict_over_capacity(self) -> int:
        """超出容量时按 last_fetched_ts 从旧到新删除，直到回到上限"""
        if not self.is_ready:
            return 0
        try:
            total = await self._store.count()
            if total <= self.max_entries:
                return 0
            return await self._store.delete_oldest(total - self.max_entries)
        except Exception as exc:
            logger.debug(f"容量淘汰失败: {exc}")
            return 0

    async def clear(self) -> None:
        if not self.is_ready:
            return
        try:
            await self._store.clear()
        except Exception as exc:
            logger.debug(f"持久化缓存清空失败: {exc}")

    async def stats(self) -> Dict[str, Any]:
        empty = {"total_entries": 0, "total_size_bytes": 0, "oldest_entry": None, "newest_entry": None}
        if not self.is_ready:
            return empty
        try:
            return await self._store.stats()
        except Exception as exc:
            logger.debug(f"持久化缓存统计失败: {exc}")
            return empty

    async def flush(self) -> None:
        """等待所有后台写入与清理完成"""
        await self._background.wait()
