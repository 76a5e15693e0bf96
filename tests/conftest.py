"""
测试公共设施
  - FakeClock   : 手动推进的时钟，替换真实时间
  - FakeFetcher : 进程内的上游 K 线接口替身
  - MemoryStore : 内存版持久化存储，接口与 store.py 中的后端一致
"""

import asyncio
import os
import sys
from typing import Dict, List, Optional

# 确保项目根目录在 sys.path
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from sparkline_service.models.sparkline import CacheKey, PersistentRecord  # noqa: E402

T0 = 1_700_000_000_000
MINUTE_MS = 60 * 1000
CANDLE_MS = 15 * MINUTE_MS


async def settle(rounds: int = 50) -> None:
    """让出事件循环若干轮，使已就绪的任务跑完"""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeClock:
    """
    auto_advance=True 时 sleep 立即把时间推进相应毫秒；
    否则 sleep 挂起，直到 advance() 越过其截止时间。
    两种模式都记录每次请求的等待时长。
    """

    def __init__(self, start_ms: int = T0, auto_advance: bool = False):
        self.now = start_ms
        self.auto_advance = auto_advance
        self.sleeps: List[int] = []
        self._sleepers: List[tuple] = []

    def now_ms(self) -> int:
        return self.now

    async def sleep(self, ms: int) -> None:
        self.sleeps.append(ms)
        if self.auto_advance:
            self.now += max(ms, 0)
            await asyncio.sleep(0)
            return
        fut = asyncio.get_running_loop().create_future()
        self._sleepers.append((self.now + max(ms, 0), fut))
        await fut

    async def advance(self, ms: int) -> None:
        """推进时间并按截止先后唤醒到期的 sleep"""
        target = self.now + ms
        while True:
            await settle()
            self._sleepers = [s for s in self._sleepers if not s[1].done()]
            due = [s for s in self._sleepers if s[0] <= target]
            if not due:
                break
            deadline, fut = min(due, key=lambda s: s[0])
            self._sleepers.remove((deadline, fut))
            self.now = max(self.now, deadline)
            fut.set_result(None)
        self.now = target
        await settle()


def make_candles(n: int = 96, start: int = T0 - 24 * 60 * MINUTE_MS, closes: Optional[List[float]] = None):
    """上游格式的 K 线，价格字段为字符串"""
    closes = closes if closes is not None else [100.0 + i for i in range(n)]
    return [
        {
            "t": start + i * CANDLE_MS,
            "T": start + (i + 1) * CANDLE_MS - 1,
            "s": "BTC",
            "i": "15m",
            "o": str(c),
            "h": str(c + 1),
            "l": str(c - 1),
            "c": str(c),
            "v": "10.5",
            "n": 42,
        }
        for i, c in enumerate(closes)
    ]


class FakeFetcher:
    """记录调用顺序；可按 coin 指定返回数据、依次抛出的异常，或用 gate 阻塞请求"""

    def __init__(self, default=None):
        self.default = default if default is not None else make_candles()
        self.candles: Dict[str, list] = {}
        self.errors: Dict[str, List[Exception]] = {}
        self.calls: List[str] = []
        self.gate: Optional[asyncio.Event] = None

    async def fetch_candles(self, symbol: str, interval: str, start_time: int, end_time: int):
        self.calls.append(symbol)
        if self.gate is not None:
            await self.gate.wait()
        errors = self.errors.get(symbol)
        if errors:
            raise errors.pop(0)
        return self.candles.get(symbol, self.default)


class MemoryStore:
    name = "memory"

    def __init__(self, fail: bool = False):
        self.records: Dict[str, PersistentRecord] = {}
        self.fail = fail
        self.closed = False

    def _check(self):
        if self.fail:
            raise ConnectionError("store offline")

    async def open(self) -> None:
        self._check()

    async def close(self) -> None:
        self.closed = True

    async def get(self, key: CacheKey):
        self._check()
        return self.records.get(key.render())

    async def bulk_get(self, keys):
        self._check()
        return [self.records[k.render()] for k in keys if k.render() in self.records]

    async def upsert(self, record: PersistentRecord) -> None:
        self._check()
        self.records[record.key.render()] = record

    async def delete_older_than(self, cutoff_ms: int) -> int:
        self._check()
        stale = [k for k, r in self.records.items() if r.last_fetched_ts < cutoff_ms]
        for k in stale:
            del self.records[k]
        return len(stale)

    async def delete_oldest(self, n: int) -> int:
        self._check()
        oldest = sorted(self.records.values(), key=lambda r: r.last_fetched_ts)[:max(n, 0)]
        for r in oldest:
            del self.records[r.key.render()]
        return len(oldest)

    async def count(self) -> int:
        self._check()
        return len(self.records)

    async def clear(self) -> None:
        self._check()
        self.records.clear()

    async def stats(self):
        self._check()
        stamps = [r.last_fetched_ts for r in self.records.values()]
        return {
            "total_entries": len(stamps),
            "total_size_bytes": sum(len(r.model_dump_json()) for r in self.records.values()),
            "oldest_entry": min(stamps) if stamps else None,
            "newest_entry": max(stamps) if stamps else None,
        }


def opener_for(store):
    async def _open():
        await store.open()
        return store
    return _open
