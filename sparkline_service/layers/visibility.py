"""
可见性优先级调整
根据当前屏幕上可见的品种重排编排器队列：可见项插到队首，
滚出屏幕的可见性排队项在开始前被取消（已在拉取中的不会中止）。
"""

import logging
from typing import Iterable, List, Set

from sparkline_service.layers.memory_cache import MemoryCache
from sparkline_service.layers.orchestrator import FetchOrchestrator
from sparkline_service.models.sparkline import CacheKey

logger = logging.getLogger(__name__)


class VisibilityPrioritizer:
    def __init__(self, orchestrator: FetchOrchestrator, memory: MemoryCache):
        self._orchestrator = orchestrator
        self._memory = memory
        self._visible: List[CacheKey] = []
        # 由可见性调整插入队列的键；普通预取入队的键不归此处管理
        self._owned: Set[CacheKey] = set()

    @property
    def visible(self) -> List[CacheKey]:
        return list(self._visible)

    def set_visible_items(self, keys: Iterable[CacheKey]) -> List[CacheKey]:
        """返回本次被提到队首的键"""
        visible = list(dict.fromkeys(keys))
        visible_set = set(visible)

        dropped = self._orchestrator.remove_queued(
            lambda k: k in self._owned and k not in visible_set
        )
        for key in dropped:
            self._orchestrator.release_claim(key)
        if dropped:
            logger.debug(f"取消 {len(dropped)} 个已滚出屏幕的排队项")

        prioritized = self._orchestrator.push_front(visible)
        self._owned = (self._owned & visible_set) | set(prioritized)
        self._visible = visible
        self._orchestrator.schedule_drain()
        return prioritized

    def clear_visibility(self) -> List[CacheKey]:
        """视图即将销毁：释放未缓存排队项的认领，并清空队列"""
        removed = self._orchestrator.clear_queue()
        for key in removed:
            if key not in self._memory:
                self._orchestrator.release_claim(key)
        self._visible = []
        self._owned = set()
        return removed
