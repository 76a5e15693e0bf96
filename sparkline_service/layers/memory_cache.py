"""
Layer 2a – 内存缓存
(market_type, symbol) → MemoryEntry 的有界映射：短 TTL，按写入先后做 LRU 淘汰。
最快的读取路径，读操作不产生任何副作用。
"""

import logging
from collections import OrderedDict
from typing import Callable, Iterator, Optional

from sparkline_service.clock import Clock
from sparkline_service.models.sparkline import CacheKey, MemoryEntry, SparklineSeries

logger = logging.getLogger(__name__)

PersistHook = Callable[[CacheKey, SparklineSeries], None]


class MemoryCache:
    def __init__(
        self,
        clock: Clock,
        ttl_ms: int,
        max_entries: int,
        on_write: Optional[PersistHook] = None,
    ):
        self._clock = clock
        self.ttl_ms = ttl_ms
        self.max_entries = max_entries
        self._on_write = on_write
        # 有序字典的顺序即写入先后：最前为最久未写入
        self._entries: "OrderedDict[CacheKey, MemoryEntry]" = OrderedDict()

    def get(self, key: CacheKey) -> Optional[MemoryEntry]:
        return self._entries.get(key)

    def is_fresh(self, key: CacheKey) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.is_fresh(self._clock.now_ms())

    def set(self, key: CacheKey, series: SparklineSeries) -> MemoryEntry:
        """写入（或覆盖）条目，刷新过期时间，并在后台写穿到持久化层"""
        entry = self._store(key, series, self._clock.now_ms() + self.ttl_ms)
        if self._on_write is not None:
            self._on_write(key, series)
        return entry

    def hydrate(self, key: CacheKey, series: SparklineSeries, expires_at: int) -> MemoryEntry:
        """从持久化层预热：不回写持久化层，过期时间由调用方给出"""
        return self._store(key, series, expires_at)

    def _store(self, key: CacheKey, series: SparklineSeries, expires_at: int) -> MemoryEntry:
        if key not in self._entries and len(self._entries) >= self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"内存缓存已满，淘汰: {evicted}")
        self._entries.pop(key, None)
        entry = MemoryEntry(series=series, expires_at=expires_at)
        self._entries[key] = entry
        return entry

    def invalidate_all(self) -> None:
        """将所有条目标记为过期但保留数据，界面在后台刷新期间继续显示旧值"""
        expired_at = self._clock.now_ms() - 1
        for key, entry in list(self._entries.items()):
            self._entries[key] = entry.model_copy(update={"expires_at": expired_at})
        logger.debug(f"内存缓存已全部失效，共 {len(self._entries)} 条")

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> Iterator[CacheKey]:
        return iter(list(self._entries.keys()))

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
