"""
Tool Dispatcher：执行一个 tool call 批次（全局 worker pool + 超时 + 重试）。

约束：
- 全局 WorkerPool 由所有会话共享，按到达顺序（FIFO）准入；排队超过 `queue_wait_timeout_sec` → `timed_out`；
- 单次尝试超时（`call_timeout_sec`）→ `timed_out`，不重试；
- `ToolTransientError` 按指数退避 + 抖动重试（优先 `retry_after_ms`），最多 `max_retries` 次额外尝试；
- `ToolFatalError` 不重试；provider 抛出的 `PermissionDenied` → failed（kind=permission_denied）；
- 其它异常 → failed（kind=internal_error），并记录日志；
- `independent=False` 的调用按请求顺序串行执行（一条链），独立调用与之并发；
- detach 后在途调用继续在后台执行完毕（不抢占），但结果不再上报。
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, List, Optional, Sequence, Set

from agent_orchestrator.core.contracts import ErrorInfo, ToolCall, ToolCallStatus
from agent_orchestrator.core.errors import (
    ErrorKind,
    OrchestratorError,
    ToolTransientError,
    classify_exception,
)
from agent_orchestrator.core.utils import now_rfc3339
from agent_orchestrator.tools.protocol import ToolProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Transient 错误的重试策略。

    字段：
    - max_retries：额外尝试次数（总尝试数 = 1 + max_retries）
    - base_delay_sec/cap_delay_sec：指数退避的基数与上限
    - jitter_ratio：抖动比例（0~1）
    """

    max_retries: int = 2
    base_delay_sec: float = 0.5
    cap_delay_sec: float = 8.0
    jitter_ratio: float = 0.1

    def delay_for(self, attempt: int, retry_after_ms: Optional[int] = None) -> float:
        """
        计算第 `attempt` 次重试前的等待秒数（attempt 从 0 开始）。

        说明：
        - `retry_after_ms` 存在时直接使用（不加抖动）；
        - 否则 `base * 2**attempt`，加上 `[0, base*jitter_ratio]` 的抖动，并受上限约束。
        """

        if retry_after_ms is not None:
            return max(0.0, retry_after_ms / 1000.0)
        ratio = min(1.0, max(0.0, float(self.jitter_ratio)))
        base = min(self.cap_delay_sec, self.base_delay_sec * (2**attempt))
        jitter = random.uniform(0.0, base * ratio)
        return min(self.cap_delay_sec, base + jitter)


class WorkerPool:
    """
    全局 worker pool：限制同时执行的 tool call 数量。

    说明：
    - 显式 FIFO 等待队列：空闲 worker 总是交给最早到达的等待者，新到达者不得插队；
    - `acquire(timeout)` 超时返回 False（调用方负责把 call 标记为 timed_out）。
    """

    def __init__(self, capacity: int = 8) -> None:
        """创建容量为 `capacity` 的 pool。"""

        if int(capacity) < 1:
            raise ValueError("worker pool capacity must be >= 1")
        self._capacity = int(capacity)
        self._in_use = 0
        self._waiters: Deque["asyncio.Future[None]"] = deque()

    @property
    def capacity(self) -> int:
        """pool 容量。"""

        return self._capacity

    @property
    def in_use(self) -> int:
        """当前占用的 worker 数。"""

        return self._in_use

    async def acquire(self, timeout: Optional[float] = None) -> bool:
        """申请一个 worker；`timeout` 秒内未获准入返回 False。"""

        if self._in_use < self._capacity and not self._waiters:
            self._in_use += 1
            return True

        fut: "asyncio.Future[None]" = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            if timeout is None:
                await fut
            else:
                await asyncio.wait_for(fut, timeout=max(0.0, float(timeout)))
        except asyncio.TimeoutError:
            # 超时与交接同时发生时，已交接的 worker 归本调用。
            return fut.done() and not fut.cancelled()
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                self.release()
            raise
        finally:
            if fut in self._waiters:
                self._waiters.remove(fut)
        return True

    def release(self) -> None:
        """归还一个 worker。"""

        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                # 直接交接给队首等待者，占用数不变。
                fut.set_result(None)
                return
        self._in_use -= 1

    @property
    def waiting(self) -> int:
        """排队等待准入的调用数。"""

        return sum(1 for f in self._waiters if not f.done())


class DispatchHandle:
    """
    一个已启动批次的句柄（供 Step Scheduler 做 barrier wait 与宽限期处理）。

    说明：
    - 结果按完成顺序经 `next_completed()` 逐个取出；
    - `detach()` 之后不再上报任何结果，返回尚未上报的调用。
    """

    def __init__(self, calls: Sequence[ToolCall]) -> None:
        """创建句柄；任务由 `ToolDispatcher.start` 挂载。"""

        self.calls: List[ToolCall] = list(calls)
        self._queue: "asyncio.Queue[ToolCall]" = asyncio.Queue()
        self._reported: List[ToolCall] = []
        self._remaining = len(self.calls)
        self._detached = False

    @property
    def detached(self) -> bool:
        """是否已 detach。"""

        return self._detached

    @property
    def pending(self) -> int:
        """尚未上报的调用数。"""

        return self._remaining

    def _report(self, call: ToolCall) -> None:
        """内部：任务完成时投递结果（detach 后丢弃）。"""

        if self._detached:
            return
        self._queue.put_nowait(call)

    async def next_completed(self, timeout: Optional[float] = None) -> Optional[ToolCall]:
        """
        取下一个完成的调用。

        返回：
        - ToolCall：按完成顺序的下一个结果
        - None：全部已上报、已 detach，或在 `timeout` 秒内没有新结果
        """

        if self._remaining <= 0 or self._detached:
            return None
        try:
            if timeout is None:
                call = await self._queue.get()
            else:
                call = await asyncio.wait_for(self._queue.get(), timeout=max(0.0, float(timeout)))
        except asyncio.TimeoutError:
            return None
        self._remaining -= 1
        self._reported.append(call)
        return call

    async def wait(self, timeout: Optional[float] = None) -> List[ToolCall]:
        """等待剩余调用完成（最多 `timeout` 秒），返回本次取到的调用（完成顺序）。"""

        loop = asyncio.get_running_loop()
        deadline = loop.time() + float(timeout) if timeout is not None else None
        out: List[ToolCall] = []
        while self._remaining > 0 and not self._detached:
            rem = None if deadline is None else deadline - loop.time()
            if rem is not None and rem <= 0:
                break
            call = await self.next_completed(timeout=rem)
            if call is None:
                break
            out.append(call)
        return out

    def detach(self) -> List[ToolCall]:
        """停止上报结果；返回尚未上报的调用（它们在后台继续执行）。"""

        self._detached = True
        reported = {c.id for c in self._reported}
        return [c for c in self.calls if c.id not in reported]


class ToolDispatcher:
    """
    Tool Dispatcher。

    参数：
    - provider：ToolProvider 协作方
    - pool：全局 WorkerPool（为空时按 `max_concurrency` 创建）
    - call_timeout_sec：单次尝试硬超时（None 表示不限制）
    - queue_wait_timeout_sec：worker 准入等待上限（None 表示不限制）
    - retry：transient 重试策略
    - sleep：退避等待函数（测试可注入）
    """

    def __init__(
        self,
        provider: ToolProvider,
        *,
        pool: Optional[WorkerPool] = None,
        max_concurrency: int = 8,
        call_timeout_sec: Optional[float] = None,
        queue_wait_timeout_sec: Optional[float] = None,
        retry: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """创建 dispatcher。参数见类注释。"""

        self._provider = provider
        self._pool = pool
        self._max_concurrency = int(max_concurrency)
        self._call_timeout_sec = float(call_timeout_sec) if call_timeout_sec is not None else None
        self._queue_wait_timeout_sec = float(queue_wait_timeout_sec) if queue_wait_timeout_sec is not None else None
        self._retry = retry or RetryPolicy()
        self._sleep = sleep
        self._inflight: Set["asyncio.Task[Any]"] = set()

    @property
    def pool(self) -> WorkerPool:
        """全局 WorkerPool（首次访问时在当前事件循环内创建）。"""

        if self._pool is None:
            self._pool = WorkerPool(self._max_concurrency)
        return self._pool

    @property
    def inflight(self) -> int:
        """仍在运行的后台任务数（包括已 detach 的批次）。"""

        return len(self._inflight)

    def start(self, calls: Sequence[ToolCall]) -> DispatchHandle:
        """
        启动一个批次并立即返回句柄。

        说明：
        - 独立调用各自一个 task；
        - 非独立调用合并为一条串行链（按请求顺序）。
        """

        handle = DispatchHandle(calls)
        chain: List[ToolCall] = []
        for call in handle.calls:
            if call.independent:
                self._spawn(self._run_one(call, handle))
            else:
                chain.append(call)
        if chain:
            self._spawn(self._run_chain(chain, handle))
        return handle

    async def dispatch(self, calls: Sequence[ToolCall]) -> List[ToolCall]:
        """执行整个批次，按完成顺序返回全部已 resolve 的调用。"""

        handle = self.start(calls)
        return await handle.wait()

    def reject(self, call: ToolCall, error: OrchestratorError) -> ToolCall:
        """不派发，直接把调用 resolve 为 failed（治理拒绝等）。"""

        call.error = ErrorInfo.from_session_error(classify_exception(error))
        call.status = ToolCallStatus.FAILED
        return call

    async def drain(self, timeout: Optional[float] = None) -> None:
        """等待后台任务结束；超时后取消剩余任务。"""

        tasks = list(self._inflight)
        if not tasks:
            return
        _done, pending = await asyncio.wait(tasks, timeout=timeout)
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        """内部：创建后台 task 并保持引用直到完成。"""

        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _run_one(self, call: ToolCall, handle: DispatchHandle) -> None:
        """内部：执行一个独立调用并上报。"""

        await self._execute(call, handle)
        if call.status.is_terminal:
            handle._report(call)

    async def _run_chain(self, chain: List[ToolCall], handle: DispatchHandle) -> None:
        """内部：串行执行非独立调用链（detach 后不再启动新调用）。"""

        for call in chain:
            if handle.detached:
                return
            await self._execute(call, handle)
            if call.status.is_terminal:
                handle._report(call)

    def _resolve_error(self, call: ToolCall, status: ToolCallStatus, exc: BaseException) -> None:
        """内部：写入失败结果。"""

        call.error = ErrorInfo.from_session_error(classify_exception(exc))
        call.status = status

    async def _execute(self, call: ToolCall, handle: DispatchHandle) -> None:
        """
        内部：执行单个调用（准入 → 尝试/重试 → resolve）。

        说明：
        - 批次已 detach 且尚未获得 worker 的调用直接放弃（保持 queued）。
        """

        t0 = time.monotonic()
        admitted = await self.pool.acquire(timeout=self._queue_wait_timeout_sec)
        if not admitted:
            call.error = ErrorInfo(
                kind=ErrorKind.TIMEOUT.value,
                message="timed out waiting for a tool worker",
                details={"phase": "queue", "queue_wait_timeout_sec": self._queue_wait_timeout_sec},
            )
            call.status = ToolCallStatus.TIMED_OUT
            call.duration_ms = int((time.monotonic() - t0) * 1000)
            return
        try:
            if handle.detached:
                return
            call.status = ToolCallStatus.RUNNING
            call.started_at = now_rfc3339()
            await self._attempt_loop(call)
        finally:
            self.pool.release()
            call.duration_ms = int((time.monotonic() - t0) * 1000)

    async def _attempt_loop(self, call: ToolCall) -> None:
        """内部：执行尝试与重试，直到调用 resolve。"""

        retry_index = 0
        while True:
            call.attempts += 1
            try:
                aw = self._provider.execute(call.tool_name, dict(call.arguments), self._call_timeout_sec)
                if self._call_timeout_sec is not None:
                    result = await asyncio.wait_for(aw, timeout=self._call_timeout_sec)
                else:
                    result = await aw
            except asyncio.TimeoutError:
                call.error = ErrorInfo(
                    kind=ErrorKind.TIMEOUT.value,
                    message=f"tool call exceeded {self._call_timeout_sec}s",
                    details={"phase": "execute", "tool": call.tool_name},
                )
                call.status = ToolCallStatus.TIMED_OUT
                return
            except ToolTransientError as e:
                if retry_index >= self._retry.max_retries:
                    self._resolve_error(call, ToolCallStatus.FAILED, e)
                    return
                delay = self._retry.delay_for(retry_index, e.retry_after_ms)
                logger.info(
                    "Transient failure for tool %r (call %s, attempt %d); retrying in %.3fs",
                    call.tool_name,
                    call.id,
                    call.attempts,
                    delay,
                )
                retry_index += 1
                await self._sleep(delay)
                continue
            except OrchestratorError as e:
                self._resolve_error(call, ToolCallStatus.FAILED, e)
                return
            except Exception as e:
                logger.exception("Tool provider raised unexpected error for %r (call %s)", call.tool_name, call.id)
                self._resolve_error(call, ToolCallStatus.FAILED, e)
                return
            call.result = result
            call.status = ToolCallStatus.SUCCEEDED
            return


__all__ = ["DispatchHandle", "RetryPolicy", "ToolDispatcher", "WorkerPool"]
