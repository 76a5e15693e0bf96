"""
过期巡检
定时（默认 15 分钟）以及应用回到前台时触发失效：清空本轮认领标记、
使内存缓存全部过期，并递增 refresh_trigger 供界面重新发起可见行预取。
"""

import asyncio
import logging
from typing import Callable, Optional

from sparkline_service.clock import Clock

logger = logging.getLogger(__name__)


class StalenessMonitor:
    def __init__(self, clock: Clock, interval_ms: int, on_refresh: Callable[[], None]):
        self._clock = clock
        self.interval_ms = interval_ms
        self._on_refresh = on_refresh
        self.refresh_trigger = 0
        self.last_refresh_at = clock.now_ms()
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self.last_refresh_at = self._clock.now_ms()
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        while True:
            due = self.last_refresh_at + self.interval_ms
            now = self._clock.now_ms()
            if now < due:
                await self._clock.sleep(due - now)
                continue
            self.refresh()

    def refresh(self) -> int:
        try:
            self._on_refresh()
        except Exception as exc:
            logger.warning(f"过期刷新回调异常: {exc}")
        self.refresh_trigger += 1
        self.last_refresh_at = self._clock.now_ms()
        logger.debug(f"Sparkline 缓存已失效，refresh_trigger={self.refresh_trigger}")
        return self.refresh_trigger

    def on_foreground(self) -> bool:
        """回到前台：距上次刷新已超过一个周期则立即刷新"""
        if self._clock.now_ms() - self.last_refresh_at >= self.interval_ms:
            self.refresh()
            return True
        return False
