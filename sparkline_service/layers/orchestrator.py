"""
批量拉取编排器（Batch Queue）

每个 CacheKey 的状态：IDLE → QUEUED → FETCHING → IDLE（成功或失败都回到 IDLE）

- enqueue   : 去重入队；正在拉取、已在队列中或内存新鲜时为空操作
- drain     : 单实例运行；按 BATCH_SIZE 切块，最多 MAX_PARALLEL_BATCHES 块并发，
              块内逐项并发，组与组之间间隔 BATCH_DELAY_MS
- fetch_one : 经重试策略拉取最近 24 小时 15 分钟 K 线，写入两级缓存并递增版本号

队列、claimed 集合与 in-flight 集合会被多条调用路径修改（预取、冷启动预热、
可见性变化、定时刷新）。单线程事件循环下不存在数据竞争，正确性依赖于
每个修改方在动作前检查同一组守卫集合。
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Iterable, List, Optional, Set

from sparkline_service.clock import Clock
from sparkline_service.layers.acquisition import CandleFetcher
from sparkline_service.layers.background import BackgroundTasks
from sparkline_service.layers.memory_cache import MemoryCache
from sparkline_service.layers.processing import candles_to_series
from sparkline_service.layers.retry import RetryPolicy
from sparkline_service.models.sparkline import CacheKey

logger = logging.getLogger(__name__)

VersionListener = Callable[[int], None]


class FetchState(str, Enum):
    IDLE = "idle"
    QUEUED = "queued"
    FETCHING = "fetching"


class FetchOrchestrator:
    def __init__(
        self,
        fetcher: CandleFetcher,
        memory: MemoryCache,
        retry: RetryPolicy,
        clock: Clock,
        *,
        batch_size: int = 12,
        max_parallel_batches: int = 2,
        batch_delay_ms: int = 250,
        drain_tick_ms: int = 50,
        window_ms: int = 24 * 60 * 60 * 1000,
        interval: str = "15m",
        resolve_coin: Optional[Callable[[CacheKey], str]] = None,
    ):
        self._fetcher = fetcher
        self._memory = memory
        self._retry = retry
        self._clock = clock
        self.batch_size = batch_size
        self.max_parallel_batches = max_parallel_batches
        self.batch_delay_ms = batch_delay_ms
        self.drain_tick_ms = drain_tick_ms
        self.window_ms = window_ms
        self.interval = interval
        self._resolve_coin = resolve_coin or (lambda key: key.symbol)

        self._queue: List[CacheKey] = []
        self._in_flight: Set[CacheKey] = set()
        # 已从队首取出、等待本组开始的键
        self._dispatched: Set[CacheKey] = set()
        self._claimed: Set[CacheKey] = set()
        self._tasks = BackgroundTasks("orchestrator")
        self._drain_task: Optional[asyncio.Task] = None
        self._draining = False
        self._paused = False

        self.cache_version = 0
        self._listeners: List[VersionListener] = []

    # ── 状态查询 ──────────────────────────────────────────

    def state_of(self, key: CacheKey) -> FetchState:
        if key in self._in_flight or key in self._dispatched:
            return FetchState.FETCHING
        if key in self._queue:
            return FetchState.QUEUED
        return FetchState.IDLE

    @property
    def queue(self) -> List[CacheKey]:
        return list(self._queue)

    @property
    def in_flight(self) -> Set[CacheKey]:
        return set(self._in_flight)

    @property
    def claimed(self) -> Set[CacheKey]:
        return set(self._claimed)

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_draining(self) -> bool:
        return self._draining

    # ── 版本号 ────────────────────────────────────────────

    def bump_version(self) -> int:
        self.cache_version += 1
        for listener in list(self._listeners):
            try:
                listener(self.cache_version)
            except Exception as exc:
                logger.warning(f"版本监听回调异常: {exc}")
        return self.cache_version

    def subscribe(self, listener: VersionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ── 队列操作 ──────────────────────────────────────────

    def _is_pending(self, key: CacheKey) -> bool:
        return key in self._in_flight or key in self._dispatched or key in self._queue

    def enqueue(self, key: CacheKey) -> bool:
        if self._is_pending(key) or self._memory.is_fresh(key):
            return False
        self._queue.append(key)
        self._claimed.add(key)
        return True

    def prefetch(self, keys: Iterable[CacheKey]) -> int:
        """尽力预热：本轮会话已认领过的键不再重复入队"""
        added = 0
        for key in keys:
            if key in self._claimed:
                continue
            if self._memory.is_fresh(key):
                self._claimed.add(key)
                continue
            if self.enqueue(key):
                added += 1
        if added:
            self.schedule_drain()
        return added

    def push_front(self, keys: Iterable[CacheKey]) -> List[CacheKey]:
        """按给定顺序把未新鲜、未在拉取中的键放到队首（已在队列中的会被前移）"""
        front: List[CacheKey] = []
        for key in dict.fromkeys(keys):
            if key in self._in_flight or key in self._dispatched or self._memory.is_fresh(key):
                continue
            front.append(key)
        if front:
            moved = set(front)
            self._queue = front + [k for k in self._queue if k not in moved]
            self._claimed.update(front)
        return front

    def remove_queued(self, predicate: Callable[[CacheKey], bool]) -> List[CacheKey]:
        """取消尚未开始的排队项；已在拉取中的不受影响"""
        removed = [k for k in self._queue if predicate(k)]
        if removed:
            self._queue = [k for k in self._queue if not predicate(k)]
        return removed

    def clear_queue(self) -> List[CacheKey]:
        removed, self._queue = self._queue, []
        return removed

    def release_claim(self, key: CacheKey) -> None:
        self._claimed.discard(key)

    def clear_claims(self) -> None:
        self._claimed.clear()

    # ── 调度 ─────────────────────────────────────────────

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False
        self.schedule_drain()

    def schedule_drain(self, force: bool = False) -> None:
        """延迟一个短 tick 后执行 drain；已有待执行的 drain 时不重复调度"""
        if self._paused or not self._queue:
            return
        if not force and self._drain_task is not None and not self._drain_task.done():
            return
        self._drain_task = self._tasks.spawn(self._deferred_drain(), "drain")

    async def _deferred_drain(self) -> None:
        await self._clock.sleep(self.drain_tick_ms)
        await self.drain()

    async def drain(self) -> None:
        if self._draining:
            return
        self._draining = True
        try:
            await self._drain_pass()
        finally:
            self._draining = False
        if self._queue and not self._paused:
            self.schedule_drain(force=True)

    async def _drain_pass(self) -> None:
        # 每组至多 MAX_PARALLEL_BATCHES 块，同时在拉取的键不超过 group_size
        group_size = self.batch_size * self.max_parallel_batches
        while self._queue and not self._paused:
            # 每组开始时才从队首取出，使优先级调整与取消对未开始的工作生效
            group, self._queue = self._queue[:group_size], self._queue[group_size:]
            self._dispatched.update(group)
            chunks = [group[i:i + self.batch_size] for i in range(0, len(group), self.batch_size)]
            logger.debug(f"开始处理 {len(group)} 项，分 {len(chunks)} 块，剩余 {len(self._queue)} 项")
            await asyncio.gather(*(self._run_chunk(chunk) for chunk in chunks))
            if self._queue and not self._paused:
                await self._clock.sleep(self.batch_delay_ms)

    async def _run_chunk(self, chunk: List[CacheKey]) -> None:
        try:
            results = await asyncio.gather(
                *(self._fetch_dispatched(key) for key in chunk), return_exceptions=True
            )
        finally:
            self._dispatched.difference_update(chunk)
        for key, result in zip(chunk, results):
            if isinstance(result, BaseException):
                logger.warning(f"Sparkline 拉取失败 {key}: {result!r}")

    # ── 单项拉取 ──────────────────────────────────────────

    async def _fetch_dispatched(self, key: CacheKey) -> bool:
        self._dispatched.discard(key)
        return await self.fetch_one(key)

    async def fetch_one(self, key: CacheKey) -> bool:
        """
        拉取单个键

        成功（至少 2 根 K 线）时写入两级缓存并递增版本号，返回 True；
        数据不足时释放认领并返回 False；其他异常释放认领后继续抛出。
        """
        if key in self._in_flight or self._memory.is_fresh(key):
            return False
        self._in_flight.add(key)
        try:
            end = self._clock.now_ms()
            coin = self._resolve_coin(key)
            raw = await self._retry.run(
                lambda: self._fetcher.fetch_candles(coin, self.interval, end - self.window_ms, end)
            )
            series = candles_to_series(raw, self._clock.now_ms())
            if series is None:
                self._claimed.discard(key)
                logger.debug(f"K 线数量不足，放弃写入: {key}")
                return False
            self._memory.set(key, series)
            self.bump_version()
            return True
        except Exception:
            self._claimed.discard(key)
            raise
        finally:
            self._in_flight.discard(key)

    # ── 生命周期 ──────────────────────────────────────────

    async def wait_idle(self) -> None:
        """等待已调度的 drain（及其后续 drain）全部结束"""
        await self._tasks.wait()

    async def dispose(self) -> None:
        self._paused = True
        self._queue = []
        await self._tasks.cancel_all()
        self._dispatched.clear()
        self._drain_task = None
