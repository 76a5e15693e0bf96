"""
后台任务组
用于"发出即不管"的异步工作（持久化写入、淘汰清理、延迟调度），
持有任务引用直至完成，并为每个任务提供独立的异常边界。
"""

import asyncio
import logging
from typing import Awaitable, Optional, Set

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """跟踪后台任务；任务异常只记录日志，永不向调用方传播"""

    def __init__(self, name: str):
        self._name = name
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable, label: str = "") -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # 没有运行中的事件循环（同步调用路径），直接丢弃
            logger.debug(f"[{self._name}] 无事件循环，跳过后台任务 {label}")
            coro.close()
            return None
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(t, label))
        return task

    def _on_done(self, task: asyncio.Task, label: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug(f"[{self._name}] 后台任务 {label} 失败: {exc!r}")

    def __len__(self) -> int:
        return len(self._tasks)

    async def wait(self) -> None:
        """等待当前所有后台任务结束（包括等待期间新派生的任务）"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
