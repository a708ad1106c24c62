"""
RateLimiter：会话级 token bucket（monotonic 时钟）。
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable


class RateLimiter:
    """
    Token bucket。

    参数：
    - rate_per_minute：每分钟补充的 token 数
    - burst：桶容量（初始满）
    - clock/sleep：可注入（测试用）
    """

    def __init__(
        self,
        rate_per_minute: float,
        *,
        burst: int = 10,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """创建限流器。"""

        if float(rate_per_minute) <= 0:
            raise ValueError("rate_per_minute must be > 0")
        self.rate_per_sec = float(rate_per_minute) / 60.0
        self.burst = max(1, int(burst))
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(self.burst)
        self._updated = clock()

    def _refill(self) -> None:
        """按流逝时间补充 token。"""

        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._updated = now
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate_per_sec)

    @property
    def tokens(self) -> float:
        """当前可用 token 数。"""

        self._refill()
        return self._tokens

    def retry_after(self) -> float:
        """距离下一个 token 可用的秒数（当前可用时为 0）。"""

        self._refill()
        if self._tokens >= 1.0:
            return 0.0
        return (1.0 - self._tokens) / self.rate_per_sec

    def try_acquire(self) -> bool:
        """非阻塞地获取一个 token。"""

        self._refill()
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return True
        return False

    async def acquire(self) -> None:
        """获取一个 token；不足时等待（挂起点）。"""

        while not self.try_acquire():
            await self._sleep(self.retry_after())


__all__ = ["RateLimiter"]
