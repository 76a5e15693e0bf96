"""
限流重试策略
只在上游返回限流信号（HTTP 429）时按指数退避重试，其他异常立即抛出。
第 n 次重试前等待 INITIAL_DELAY_MS * 2^(n-1)：默认 1s、2s、4s。
"""

import logging
from typing import Awaitable, Callable, TypeVar

import httpx

from sparkline_service.clock import Clock

logger = logging.getLogger(__name__)

T = TypeVar("T")

HTTP_TOO_MANY_REQUESTS = 429


class RateLimitError(Exception):
    """上游接口限流"""

    status_code = HTTP_TOO_MANY_REQUESTS


def is_rate_limit_error(exc: BaseException) -> bool:
    if isinstance(exc, RateLimitError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == HTTP_TOO_MANY_REQUESTS
    for attr in ("status", "status_code"):
        if getattr(exc, attr, None) == HTTP_TOO_MANY_REQUESTS:
            return True
    return "429" in str(exc)


class RetryPolicy:
    def __init__(self, clock: Clock, max_retries: int = 3, initial_delay_ms: int = 1000):
        self._clock = clock
        self.max_retries = max_retries
        self.initial_delay_ms = initial_delay_ms

    def delay_for(self, retry: int) -> int:
        """第 retry 次重试（从 1 开始）前的等待毫秒数"""
        return self.initial_delay_ms * 2 ** (retry - 1)

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        retry = 0
        while True:
            try:
                return await fn()
            except Exception as exc:
                if not is_rate_limit_error(exc) or retry >= self.max_retries:
                    if retry:
                        logger.warning(f"限流重试 {retry} 次后仍失败: {exc}")
                    raise
                retry += 1
                delay = self.delay_for(retry)
                logger.debug(f"上游限流，{delay}ms 后第 {retry} 次重试")
                await self._clock.sleep(delay)
