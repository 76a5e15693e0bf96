"""时钟抽象：所有时间均为整数毫秒，测试中可替换为手动推进的假时钟"""

import asyncio
import time
from typing import Protocol


class Clock(Protocol):
    def now_ms(self) -> int:
        ...

    async def sleep(self, ms: int) -> None:
        ...


class SystemClock:
    """基于系统时间与 asyncio 事件循环的默认时钟"""

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    async def sleep(self, ms: int) -> None:
        await asyncio.sleep(max(ms, 0) / 1000)
