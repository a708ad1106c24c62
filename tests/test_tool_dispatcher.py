from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional

from agent_orchestrator.core.contracts import ToolCall, ToolCallStatus
from agent_orchestrator.core.errors import PermissionDenied, ToolFatalError, ToolTransientError
from agent_orchestrator.tools.dispatcher import RetryPolicy, ToolDispatcher, WorkerPool


class _ScriptedProvider:
    """按工具名执行预设行为的 provider。"""

    def __init__(self) -> None:
        self.calls: List[str] = []
        self.active = 0
        self.max_active = 0
        self.transient_failures: Dict[str, int] = {}
        self.order: List[str] = []

    async def execute(self, tool_name: str, args: Dict[str, Any], timeout: Optional[float]) -> Any:
        self.calls.append(tool_name)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            delay = float(args.get("sleep", 0))
            if delay:
                await asyncio.sleep(delay)
            self.order.append(str(args.get("tag", tool_name)))
            if tool_name == "flaky":
                left = self.transient_failures.get(tool_name, 0)
                if left > 0:
                    self.transient_failures[tool_name] = left - 1
                    raise ToolTransientError("try again", retry_after_ms=args.get("retry_after_ms"))
                return {"ok": True}
            if tool_name == "always_transient":
                raise ToolTransientError("down")
            if tool_name == "fatal":
                raise ToolFatalError("bad args")
            if tool_name == "denied":
                raise PermissionDenied("sandbox denied")
            if tool_name == "crash":
                raise RuntimeError("unexpected")
            return {"echo": args.get("tag")}
        finally:
            self.active -= 1


def _call(call_id: str, tool_name: str, *, independent: bool = True, **args: Any) -> ToolCall:
    return ToolCall(
        id=call_id, batch_id="b1", session_id="s1", tool_name=tool_name, arguments=args, independent=independent
    )


def _dispatcher(provider: _ScriptedProvider, **kwargs: Any) -> ToolDispatcher:
    sleeps: List[float] = kwargs.pop("sleeps", [])

    async def _fake_sleep(sec: float) -> None:
        sleeps.append(sec)

    kwargs.setdefault("retry", RetryPolicy(max_retries=2, base_delay_sec=0.5, jitter_ratio=0.0))
    return ToolDispatcher(provider, sleep=_fake_sleep, **kwargs)


class TestRetryPolicy:
    def test_exponential_backoff_is_capped(self) -> None:
        p = RetryPolicy(base_delay_sec=1.0, cap_delay_sec=3.0, jitter_ratio=0.0)
        assert [p.delay_for(i) for i in range(4)] == [1.0, 2.0, 3.0, 3.0]

    def test_retry_after_overrides_backoff(self) -> None:
        p = RetryPolicy(base_delay_sec=1.0)
        assert p.delay_for(3, retry_after_ms=250) == 0.25

    def test_jitter_stays_within_ratio(self) -> None:
        p = RetryPolicy(base_delay_sec=1.0, cap_delay_sec=100.0, jitter_ratio=0.1)
        for _ in range(50):
            d = p.delay_for(0)
            assert 1.0 <= d <= 1.1


class TestDispatchOutcomes:
    def test_success_and_fatal_in_one_batch(self) -> None:
        provider = _ScriptedProvider()
        d = _dispatcher(provider)
        calls = [_call("c1", "echo", tag="a"), _call("c2", "fatal"), _call("c3", "echo", tag="c")]

        resolved = asyncio.run(d.dispatch(calls))

        by_id = {c.id: c for c in resolved}
        assert len(resolved) == 3
        assert by_id["c1"].status == ToolCallStatus.SUCCEEDED
        assert by_id["c1"].result == {"echo": "a"}
        assert by_id["c2"].status == ToolCallStatus.FAILED
        assert by_id["c2"].error is not None and by_id["c2"].error.kind == "tool_fatal_error"
        assert by_id["c2"].attempts == 1
        assert by_id["c3"].status == ToolCallStatus.SUCCEEDED

    def test_transient_failure_is_retried_then_succeeds(self) -> None:
        provider = _ScriptedProvider()
        provider.transient_failures["flaky"] = 2
        sleeps: List[float] = []
        d = _dispatcher(provider, sleeps=sleeps)

        [call] = asyncio.run(d.dispatch([_call("c1", "flaky")]))

        assert call.status == ToolCallStatus.SUCCEEDED
        assert call.attempts == 3
        assert sleeps == [0.5, 1.0]

    def test_retry_after_is_used_as_delay(self) -> None:
        provider = _ScriptedProvider()
        provider.transient_failures["flaky"] = 1
        sleeps: List[float] = []
        d = _dispatcher(provider, sleeps=sleeps)

        asyncio.run(d.dispatch([_call("c1", "flaky", retry_after_ms=1200)]))

        assert sleeps == [1.2]

    def test_retries_exhausted_fails_with_transient_kind(self) -> None:
        provider = _ScriptedProvider()
        d = _dispatcher(provider, retry=RetryPolicy(max_retries=1, jitter_ratio=0.0))

        [call] = asyncio.run(d.dispatch([_call("c1", "always_transient")]))

        assert call.status == ToolCallStatus.FAILED
        assert call.attempts == 2
        assert call.error is not None and call.error.kind == "tool_transient_error"

    def test_provider_permission_denied_is_failed_call(self) -> None:
        provider = _ScriptedProvider()
        [call] = asyncio.run(_dispatcher(provider).dispatch([_call("c1", "denied")]))
        assert call.status == ToolCallStatus.FAILED
        assert call.error is not None and call.error.kind == "permission_denied"

    def test_unexpected_exception_is_internal_error(self) -> None:
        provider = _ScriptedProvider()
        [call] = asyncio.run(_dispatcher(provider).dispatch([_call("c1", "crash")]))
        assert call.status == ToolCallStatus.FAILED
        assert call.error is not None and call.error.kind == "internal_error"

    def test_per_call_timeout_is_not_retried(self) -> None:
        provider = _ScriptedProvider()
        d = _dispatcher(provider, call_timeout_sec=0.05)

        [call] = asyncio.run(d.dispatch([_call("c1", "echo", sleep=5)]))

        assert call.status == ToolCallStatus.TIMED_OUT
        assert call.attempts == 1
        assert call.error is not None and call.error.details["phase"] == "execute"

    def test_reject_resolves_without_dispatch(self) -> None:
        provider = _ScriptedProvider()
        d = _dispatcher(provider)
        call = d.reject(_call("c1", "echo"), PermissionDenied("tier"))
        assert call.status == ToolCallStatus.FAILED
        assert provider.calls == []


class TestConcurrency:
    def test_pool_bounds_concurrency(self) -> None:
        provider = _ScriptedProvider()
        d = _dispatcher(provider, max_concurrency=2)
        calls = [_call(f"c{i}", "echo", sleep=0.05, tag=str(i)) for i in range(6)]

        resolved = asyncio.run(d.dispatch(calls))

        assert len(resolved) == 6
        assert provider.max_active == 2

    def test_independent_calls_run_concurrently(self) -> None:
        provider = _ScriptedProvider()
        d = _dispatcher(provider, max_concurrency=8)
        calls = [_call(f"c{i}", "echo", sleep=0.2) for i in range(4)]

        started = time.monotonic()
        asyncio.run(d.dispatch(calls))
        assert time.monotonic() - started < 0.7

    def test_dependent_calls_run_serially_in_order(self) -> None:
        provider = _ScriptedProvider()
        d = _dispatcher(provider, max_concurrency=8)
        calls = [
            _call("c1", "echo", independent=False, sleep=0.05, tag="first"),
            _call("c2", "echo", independent=False, tag="second"),
            _call("c3", "echo", independent=False, tag="third"),
        ]

        asyncio.run(d.dispatch(calls))

        assert provider.order == ["first", "second", "third"]
        assert provider.max_active == 1

    def test_queue_wait_timeout_marks_timed_out(self) -> None:
        async def _run() -> List[ToolCall]:
            pool = WorkerPool(1)
            provider = _ScriptedProvider()
            d = _dispatcher(provider, pool=pool, queue_wait_timeout_sec=0.05)
            return await d.dispatch([_call("c1", "echo", sleep=0.3), _call("c2", "echo")])

        resolved = {c.id: c for c in asyncio.run(_run())}
        assert resolved["c1"].status == ToolCallStatus.SUCCEEDED
        assert resolved["c2"].status == ToolCallStatus.TIMED_OUT
        assert resolved["c2"].error is not None and resolved["c2"].error.details["phase"] == "queue"


class TestHandle:
    def test_results_arrive_in_completion_order(self) -> None:
        async def _run() -> List[str]:
            d = _dispatcher(_ScriptedProvider())
            handle = d.start([_call("slow", "echo", sleep=0.2), _call("fast", "echo", sleep=0.01)])
            out = []
            while handle.pending:
                call = await handle.next_completed()
                assert call is not None
                out.append(call.id)
            return out

        assert asyncio.run(_run()) == ["fast", "slow"]

    def test_detach_stops_reporting_and_returns_unreported(self) -> None:
        async def _run():  # type: ignore[no-untyped-def]
            d = _dispatcher(_ScriptedProvider())
            handle = d.start([_call("quick", "echo"), _call("slow", "echo", sleep=5)])
            got = await handle.wait(timeout=0.3)
            detached = handle.detach()
            after = await handle.next_completed(timeout=0.01)
            await d.drain(timeout=0.01)
            return [c.id for c in got], [c.id for c in detached], after, d.inflight

        got, detached, after, inflight = asyncio.run(_run())
        assert got == ["quick"]
        assert detached == ["slow"]
        assert after is None
        assert inflight == 0


class TestWorkerPoolFairness:
    def test_admission_is_fifo_across_dispatchers_sharing_a_pool(self) -> None:
        provider = _ScriptedProvider()

        async def _run() -> None:
            pool = WorkerPool(1)
            first = _dispatcher(provider, pool=pool)
            second = _dispatcher(provider, pool=pool)
            handles = []
            for i in range(10):
                d = first if i % 2 == 0 else second
                handles.append(d.start([_call(f"c{i}", "echo", sleep=0.01, tag=str(i))]))
            for h in handles:
                await h.wait()

        asyncio.run(_run())
        assert provider.order == [str(i) for i in range(10)]
        assert provider.max_active == 1

    def test_released_worker_is_handed_to_queued_waiter(self) -> None:
        async def _run():  # type: ignore[no-untyped-def]
            pool = WorkerPool(1)
            order: List[str] = []
            assert await pool.acquire() is True

            async def _waiter(tag: str) -> None:
                await pool.acquire()
                order.append(tag)
                await asyncio.sleep(0)
                pool.release()

            queued = asyncio.ensure_future(_waiter("queued"))
            await asyncio.sleep(0)
            assert pool.waiting == 1
            pool.release()
            handed_off = (pool.in_use, pool.waiting)
            late = asyncio.ensure_future(_waiter("late"))
            await asyncio.gather(queued, late)
            return order, handed_off, pool.in_use, pool.waiting

        order, handed_off, in_use, waiting = asyncio.run(_run())
        assert order == ["queued", "late"]
        assert handed_off == (1, 0)
        assert in_use == 0 and waiting == 0

    def test_timed_out_and_cancelled_waiters_do_not_leak_workers(self) -> None:
        async def _run():  # type: ignore[no-untyped-def]
            pool = WorkerPool(1)
            await pool.acquire()
            timed_out = await pool.acquire(timeout=0.01)
            task = asyncio.ensure_future(pool.acquire())
            await asyncio.sleep(0)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            pool.release()
            return timed_out, pool.in_use, pool.waiting, await pool.acquire(timeout=0)

        timed_out, in_use, waiting, reacquired = asyncio.run(_run())
        assert timed_out is False
        assert in_use == 0 and waiting == 0
        assert reacquired is True
