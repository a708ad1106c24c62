"""
CancellationController：会话级协作式取消与 deadline 跟踪。

约束：
- 每个会话一个取消标志 + 一个 deadline（monotonic 时间戳），不受 wall-clock 调整影响；
- 取消从不抢占：只在检查点（推理调用前、批次派发前、批次等待之间）生效；
- 取消来源决定终态：用户取消 → `cancelled`，deadline 耗尽 → `timed_out`。
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

T = TypeVar("T")

TRIGGER_CANCELLED = "cancelled"
TRIGGER_TIMED_OUT = "timed_out"


class CancellationController:
    """
    单会话取消控制器。

    字段：
    - max_wall_time_sec：总 wall time 预算（None 表示不限制）
    - grace_sec：触发后给在途 tool calls 的宽限期
    - clock：monotonic 时钟（测试可注入）

    说明：
    - `cancel()` 可在任意线程/协程调用（仅设置标志并唤醒等待者）；
    - deadline 在 `arm()` 时确定（会话开始运行时），未 arm 时只响应显式取消。
    """

    def __init__(
        self,
        *,
        max_wall_time_sec: Optional[float] = None,
        grace_sec: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """创建控制器。参数见类注释。"""

        self.max_wall_time_sec = float(max_wall_time_sec) if max_wall_time_sec is not None else None
        self.grace_sec = max(0.0, float(grace_sec))
        self._clock = clock
        self._cancel_requested = False
        self._deadline: Optional[float] = None
        self._event: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def arm(self) -> None:
        """启动 deadline 计时，并绑定当前事件循环（在会话 task 内调用）。"""

        if self.max_wall_time_sec is not None and self._deadline is None:
            self._deadline = self._clock() + self.max_wall_time_sec
        self._loop = asyncio.get_running_loop()
        self._event = asyncio.Event()
        if self._cancel_requested:
            self._event.set()

    @property
    def deadline(self) -> Optional[float]:
        """monotonic deadline（未 arm 或未配置时为 None）。"""

        return self._deadline

    @property
    def cancel_requested(self) -> bool:
        """是否已请求取消。"""

        return self._cancel_requested

    def cancel(self) -> None:
        """设置取消标志并立即返回（幂等）。"""

        self._cancel_requested = True
        event, loop = self._event, self._loop
        if event is None or loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            event.set()
        elif not loop.is_closed():
            loop.call_soon_threadsafe(event.set)

    def remaining(self) -> Optional[float]:
        """距离 deadline 的剩余秒数（可能为负；未配置返回 None）。"""

        if self._deadline is None:
            return None
        return self._deadline - self._clock()

    def deadline_exceeded(self) -> bool:
        """deadline 是否已耗尽。"""

        rem = self.remaining()
        return rem is not None and rem <= 0

    def check(self) -> Optional[str]:
        """
        检查点：返回触发来源。

        返回：
        - None：未触发
        - "cancelled"：用户取消（优先于超时）
        - "timed_out"：deadline 耗尽
        """

        if self._cancel_requested:
            return TRIGGER_CANCELLED
        if self.deadline_exceeded():
            return TRIGGER_TIMED_OUT
        return None

    async def wait_triggered(self) -> str:
        """等待直到取消或 deadline 触发，返回触发来源。"""

        if self._event is None:
            self.arm()
        assert self._event is not None
        while True:
            trigger = self.check()
            if trigger is not None:
                return trigger
            rem = self.remaining()
            try:
                if rem is None:
                    await self._event.wait()
                else:
                    await asyncio.wait_for(self._event.wait(), timeout=max(0.0, rem))
            except asyncio.TimeoutError:
                continue

    async def race(self, aw: Awaitable[T]) -> Tuple[Optional[T], Optional[str]]:
        """
        让一个 awaitable 与取消触发竞争。

        返回：
        - (result, None)：awaitable 先完成
        - (None, trigger)：先触发取消/超时；awaitable 对应的 task 会被取消并回收

        说明：
        - awaitable 抛出的异常原样向上传播。
        """

        trigger = self.check()
        if trigger is not None:
            if asyncio.iscoroutine(aw):
                aw.close()
            return None, trigger

        work = asyncio.ensure_future(aw)
        watcher = asyncio.ensure_future(self.wait_triggered())
        try:
            done, _pending = await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
            if work in done:
                return work.result(), None
            work.cancel()
            await asyncio.gather(work, return_exceptions=True)
            return None, watcher.result()
        finally:
            for t in (work, watcher):
                if not t.done():
                    t.cancel()
            await asyncio.gather(watcher, return_exceptions=True)


__all__ = ["CancellationController", "TRIGGER_CANCELLED", "TRIGGER_TIMED_OUT"]
