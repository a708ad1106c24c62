from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional

import pytest

from agent_orchestrator.context.assembler import ContextAssembler
from agent_orchestrator.core.contracts import SessionStatus, StepKind, StreamEvent
from agent_orchestrator.core.errors import Conflict, NotFound, PermissionDenied, ValidationError
from agent_orchestrator.core.session_manager import SessionManager, SessionSettings
from agent_orchestrator.governance.filter import GovernanceFilter
from agent_orchestrator.governance.policy import TierPolicy, TierPolicyService
from agent_orchestrator.reasoning.protocol import FinalAnswer, ReasoningContext, ToolCallBatch, ToolCallRequest
from agent_orchestrator.reasoning.scripted import ScriptedReasoner
from agent_orchestrator.state.event_log import EventLog
from agent_orchestrator.state.event_store import InMemoryEventStore, JsonlEventStore
from agent_orchestrator.state.session_store import FileSessionStore, InMemorySessionStore
from agent_orchestrator.core.errors import ToolFatalError
from agent_orchestrator.tools.dispatcher import RetryPolicy, ToolDispatcher
from agent_orchestrator.tools.registry import ToolRegistry


def _registry() -> ToolRegistry:
    registry = ToolRegistry()

    @registry.tool
    async def echo(text: str = "") -> Dict[str, Any]:
        """Echo the text back."""
        await asyncio.sleep(0.01)
        return {"echo": text}

    @registry.tool
    async def broken() -> None:
        """Always fails with a fatal error."""
        raise ToolFatalError("broken on purpose")

    @registry.tool
    async def slow(seconds: float = 10.0) -> str:
        """Sleep for a while."""
        await asyncio.sleep(seconds)
        return "finally"

    @registry.tool
    async def locked() -> None:
        """Always rejected by the sandbox."""
        raise PermissionDenied("sandbox refused")

    return registry


def _manager(
    reasoner: Any,
    *,
    settings: Optional[SessionSettings] = None,
    tiers: Optional[Dict[str, TierPolicy]] = None,
    event_log: Optional[EventLog] = None,
    session_store: Any = None,
) -> SessionManager:
    dispatcher = ToolDispatcher(_registry(), max_concurrency=8, call_timeout_sec=30, retry=RetryPolicy(max_retries=0))
    return SessionManager(
        reasoner=reasoner,
        dispatcher=dispatcher,
        event_log=event_log or EventLog(InMemoryEventStore()),
        session_store=session_store or InMemorySessionStore(),
        governance=GovernanceFilter(TierPolicyService(tiers or {"default": TierPolicy()})),
        assembler=ContextAssembler(keep_last_steps=4),
        settings=settings or SessionSettings(),
    )


def _batch(*calls: ToolCallRequest) -> ToolCallBatch:
    return ToolCallBatch(calls=list(calls))


async def _run_to_end(manager: SessionManager, goal: str = "g", **kwargs: Any):  # type: ignore[no-untyped-def]
    session = manager.create("agent-1", goal, **kwargs)
    await manager.start(session.id)
    final = await manager.wait(session.id, timeout=10)
    return final, manager.steps(session.id), manager.event_log.history(session.id)


def _assert_gap_free(steps, events: List[StreamEvent]) -> None:  # type: ignore[no-untyped-def]
    assert [s.index for s in steps] == list(range(len(steps)))
    assert [e.sequence for e in events] == list(range(1, len(events) + 1))
    assert [e.terminal for e in events].count(True) == 1
    assert events[-1].terminal is True


class TestNoOpScenario:
    def test_final_answer_completes_with_one_message_and_done(self) -> None:
        manager = _manager(ScriptedReasoner(["done"]))
        final, steps, events = asyncio.run(_run_to_end(manager, goal="no-op"))

        assert final.status == SessionStatus.COMPLETED
        assert final.output == "done"
        assert final.ended_at is not None
        kinds = [s.kind for s in steps]
        assert kinds == [StepKind.MESSAGE, StepKind.REASONING, StepKind.MESSAGE, StepKind.DONE]
        assert steps[0].payload == {"role": "goal", "content": "no-op"}
        assistant = [s for s in steps if s.kind == StepKind.MESSAGE and s.payload["role"] == "assistant"]
        assert len(assistant) == 1 and kinds.count(StepKind.DONE) == 1
        assert [e.type.value for e in events] == ["message", "step", "message", "done"]
        assert events[-1].data["output"] == "done"
        assert events[-1].data["session_id"] == final.id
        _assert_gap_free(steps, events)

    def test_deltas_are_streamed_as_message_events(self) -> None:
        manager = _manager(ScriptedReasoner([FinalAnswer(text="hello world", deltas=["hello ", "world"])]))
        final, steps, events = asyncio.run(_run_to_end(manager))

        deltas = [e.data["delta"] for e in events if e.type.value == "message" and "delta" in e.data]
        assert deltas == ["hello ", "world"]
        assert final.output == "hello world"
        assert steps[2].payload["delta_count"] == 2


class TestToolBatches:
    def test_one_fatal_call_in_batch_is_not_session_fatal(self) -> None:
        reasoner = ScriptedReasoner(
            [
                _batch(
                    ToolCallRequest(tool_name="echo", arguments={"text": "a"}),
                    ToolCallRequest(tool_name="broken"),
                    ToolCallRequest(tool_name="echo", arguments={"text": "c"}),
                ),
                "all done",
            ]
        )
        manager = _manager(reasoner)
        final, steps, events = asyncio.run(_run_to_end(manager))

        results = [s for s in steps if s.kind == StepKind.TOOL_RESULT]
        assert len(results) == 3
        assert sorted(r.payload["status"] for r in results) == ["failed", "succeeded", "succeeded"]
        assert final.status == SessionStatus.COMPLETED
        assert len(reasoner.calls) == 2
        _assert_gap_free(steps, events)

    def test_tool_results_reach_the_next_reasoning_context(self) -> None:
        seen: List[List[Dict[str, Any]]] = []

        def _second(ctx: ReasoningContext) -> str:
            seen.append(ctx.entries)
            return "ok"

        reasoner = ScriptedReasoner([_batch(ToolCallRequest(tool_name="echo", arguments={"text": "zz"})), _second])
        manager = _manager(reasoner)
        asyncio.run(_run_to_end(manager))

        kinds = [e["kind"] for e in seen[0]]
        assert kinds == ["message", "reasoning", "tool_call", "tool_result"]
        assert seen[0][-1]["payload"]["result"] == {"echo": "zz"}

    def test_unknown_tool_is_recorded_as_failed_result(self) -> None:
        manager = _manager(ScriptedReasoner([_batch(ToolCallRequest(tool_name="nope")), "fine"]))
        final, steps, _events = asyncio.run(_run_to_end(manager))
        [result] = [s for s in steps if s.kind == StepKind.TOOL_RESULT]
        assert result.payload["error"]["kind"] == "tool_fatal_error"
        assert final.status == SessionStatus.COMPLETED


class TestStepLimit:
    def test_max_steps_three_fails_after_exactly_three_iterations(self) -> None:
        reasoner = ScriptedReasoner([_batch(ToolCallRequest(tool_name="echo"))], repeat_last=True)
        manager = _manager(reasoner, settings=SessionSettings(max_steps=3))
        final, steps, events = asyncio.run(_run_to_end(manager))

        assert final.status == SessionStatus.FAILED
        assert final.error is not None and final.error.kind == "step_limit_exceeded"
        assert len(reasoner.calls) == 3
        assert len([s for s in steps if s.kind == StepKind.REASONING]) == 3
        assert steps[-1].kind == StepKind.ERROR
        assert events[-1].type.value == "error"
        assert events[-1].data["error_kind"] == "step_limit_exceeded"
        _assert_gap_free(steps, events)


class TestReasoningFailures:
    def test_malformed_reasoning_output_fails_as_internal_error(self) -> None:
        manager = _manager(ScriptedReasoner([{"type": "gibberish"}]))
        final, steps, events = asyncio.run(_run_to_end(manager))
        assert final.status == SessionStatus.FAILED
        assert final.error is not None and final.error.kind == "internal_error"
        _assert_gap_free(steps, events)


class TestGovernance:
    def test_create_denied_for_agent_outside_tier(self) -> None:
        manager = _manager(ScriptedReasoner(["x"]), tiers={"default": TierPolicy(allow=["agent:other"])})
        with pytest.raises(PermissionDenied):
            manager.create("agent-1", "g")
        assert manager.list() == []

    def test_create_validation(self) -> None:
        manager = _manager(ScriptedReasoner(["x"]))
        with pytest.raises(ValidationError):
            manager.create("", "g")
        with pytest.raises(ValidationError):
            manager.create("a", "   ")
        with pytest.raises(ValidationError):
            manager.create("a", "g", ["not", "a", "dict"])  # type: ignore[arg-type]

    def test_denied_tool_is_recorded_and_session_continues(self) -> None:
        tiers = {"default": TierPolicy(allow=["agent:*", "tool:echo"])}
        reasoner = ScriptedReasoner(
            [_batch(ToolCallRequest(tool_name="echo"), ToolCallRequest(tool_name="slow")), "ok"]
        )
        manager = _manager(reasoner, tiers=tiers)
        final, steps, _events = asyncio.run(_run_to_end(manager))

        results = {s.payload["tool_name"]: s.payload for s in steps if s.kind == StepKind.TOOL_RESULT}
        assert results["slow"]["error"]["kind"] == "permission_denied"
        assert results["echo"]["ok"] is True
        assert final.status == SessionStatus.COMPLETED

    def test_denied_tool_is_fatal_in_strict_mode(self) -> None:
        tiers = {"default": TierPolicy(allow=["agent:*", "tool:echo"])}
        reasoner = ScriptedReasoner([_batch(ToolCallRequest(tool_name="slow")), "never"])
        manager = _manager(reasoner, tiers=tiers, settings=SessionSettings(strict_permissions=True))
        final, steps, events = asyncio.run(_run_to_end(manager))

        assert final.status == SessionStatus.FAILED
        assert final.error is not None and final.error.kind == "permission_denied"
        assert len(reasoner.calls) == 1
        _assert_gap_free(steps, events)

    def test_provider_denial_in_strict_mode_detaches_siblings(self) -> None:
        reasoner = ScriptedReasoner(
            [_batch(ToolCallRequest(tool_name="slow", arguments={"seconds": 10}), ToolCallRequest(tool_name="locked")), "never"]
        )
        manager = _manager(reasoner, settings=SessionSettings(strict_permissions=True))

        async def _run():  # type: ignore[no-untyped-def]
            t0 = time.monotonic()
            final, steps, events = await _run_to_end(manager)
            return final, steps, events, time.monotonic() - t0

        final, steps, events, elapsed = asyncio.run(_run())

        assert final.status == SessionStatus.FAILED
        assert final.error is not None and final.error.kind == "permission_denied"
        assert elapsed < 1.0
        assert len(reasoner.calls) == 1
        slow_id = next(s.payload["call_id"] for s in steps if s.kind == StepKind.TOOL_CALL and s.payload["tool_name"] == "slow")
        assert events[-1].data["error_kind"] == "permission_denied"
        assert slow_id in events[-1].data["details"]["detached_call_ids"]
        results = [s.payload["tool_name"] for s in steps if s.kind == StepKind.TOOL_RESULT]
        assert results == ["locked"]
        _assert_gap_free(steps, events)


class TestCancellation:
    def test_cancel_with_grace_discards_slow_result(self) -> None:
        reasoner = ScriptedReasoner([_batch(ToolCallRequest(tool_name="slow", arguments={"seconds": 10}))])
        manager = _manager(reasoner, settings=SessionSettings(cancel_grace_sec=2))

        async def _run():  # type: ignore[no-untyped-def]
            session = manager.create("agent-1", "g")
            await manager.start(session.id)
            while not any(s.kind == StepKind.TOOL_CALL for s in manager.steps(session.id)):
                await asyncio.sleep(0.01)
            await asyncio.sleep(0.05)
            t0 = time.monotonic()
            manager.cancel(session.id)
            final = await manager.wait(session.id, timeout=10)
            elapsed = time.monotonic() - t0
            return final, elapsed, manager.steps(session.id), manager.event_log.history(session.id)

        final, elapsed, steps, events = asyncio.run(_run())

        assert final.status == SessionStatus.CANCELLED
        assert final.cancel_requested is True
        assert 1.5 <= elapsed < 3.0
        assert not any(s.kind == StepKind.TOOL_RESULT for s in steps)
        assert not any(e.type.value == "tool_result" for e in events)
        assert events[-1].data["error_kind"] == "cancelled"
        assert events[-1].data["details"]["detached_call_ids"]
        _assert_gap_free(steps, events)

    def test_cancel_is_idempotent_conflict_after_terminal(self) -> None:
        manager = _manager(ScriptedReasoner(["done"]))

        async def _run():  # type: ignore[no-untyped-def]
            final, _steps, _events = await _run_to_end(manager)
            with pytest.raises(Conflict):
                manager.cancel(final.id)
            with pytest.raises(Conflict):
                manager.cancel(final.id)
            return manager.get(final.id)

        after = asyncio.run(_run())
        assert after.status == SessionStatus.COMPLETED

    def test_cancel_before_start_finalizes_at_first_checkpoint(self) -> None:
        reasoner = ScriptedReasoner(["never"])
        manager = _manager(reasoner)

        async def _run():  # type: ignore[no-untyped-def]
            session = manager.create("agent-1", "g")
            manager.cancel(session.id)
            await manager.start(session.id)
            return await manager.wait(session.id, timeout=5)

        final = asyncio.run(_run())
        assert final.status == SessionStatus.CANCELLED
        assert reasoner.calls == []

    def test_wall_time_deadline_yields_timed_out(self) -> None:
        reasoner = ScriptedReasoner([_batch(ToolCallRequest(tool_name="slow", arguments={"seconds": 10}))])
        manager = _manager(reasoner, settings=SessionSettings(max_wall_time_sec=0.2, cancel_grace_sec=0.1))

        async def _run():  # type: ignore[no-untyped-def]
            final, _steps, events = await _run_to_end(manager)
            return final, events

        final, events = asyncio.run(_run())
        assert final.status == SessionStatus.TIMED_OUT
        assert final.error is not None and final.error.kind == "timeout"
        assert events[-1].data["status"] == "timed_out"

    def test_unknown_session(self) -> None:
        manager = _manager(ScriptedReasoner([]))
        with pytest.raises(NotFound):
            manager.cancel("sess_missing")
        with pytest.raises(NotFound):
            manager.get("sess_missing")


class TestLifecycle:
    def test_start_twice_conflicts(self) -> None:
        manager = _manager(ScriptedReasoner(["done"]))

        async def _run() -> None:
            session = manager.create("agent-1", "g")
            await manager.start(session.id)
            with pytest.raises(Conflict):
                await manager.start(session.id)
            await manager.wait(session.id, timeout=5)

        asyncio.run(_run())

    def test_list_filters(self) -> None:
        manager = _manager(ScriptedReasoner(["done"], repeat_last=True))

        async def _run() -> None:
            a = manager.create("agent-a", "g")
            manager.create("agent-b", "g")
            await manager.start(a.id)
            await manager.wait(a.id, timeout=5)

        asyncio.run(_run())
        assert [s.agent_id for s in manager.list(status=SessionStatus.COMPLETED)] == ["agent-a"]
        assert [s.agent_id for s in manager.list(status=SessionStatus.PENDING)] == ["agent-b"]
        assert [s.agent_id for s in manager.list(agent_id="agent-b")] == ["agent-b"]
        assert len(manager.list(limit=1)) == 1

    def test_shutdown_cancels_running_sessions(self) -> None:
        reasoner = ScriptedReasoner([_batch(ToolCallRequest(tool_name="slow", arguments={"seconds": 10}))])
        manager = _manager(reasoner, settings=SessionSettings(cancel_grace_sec=0.1))

        async def _run():  # type: ignore[no-untyped-def]
            session = manager.create("agent-1", "g")
            await manager.start(session.id)
            await asyncio.sleep(0.1)
            await manager.shutdown(drain_timeout=0.1)
            await asyncio.sleep(0)
            return manager.get(session.id), manager.dispatcher.inflight

        final, inflight = asyncio.run(_run())
        assert final.status == SessionStatus.CANCELLED
        assert inflight == 0

    def test_jsonl_backed_session_persists_everything(self, tmp_path) -> None:  # type: ignore[no-untyped-def]
        store = JsonlEventStore(tmp_path)
        reasoner = ScriptedReasoner([_batch(ToolCallRequest(tool_name="echo", arguments={"text": "x"})), "done"])
        manager = _manager(reasoner, event_log=EventLog(store), session_store=FileSessionStore(tmp_path))
        final, steps, events = asyncio.run(_run_to_end(manager))
        store.close()

        reopened = JsonlEventStore(tmp_path)
        assert [s.index for s in reopened.load_steps(final.id)] == [s.index for s in steps]
        assert [e.sequence for e in reopened.load_log(final.id)] == [e.sequence for e in events]
        snapshot = FileSessionStore(tmp_path).load(final.id)
        assert snapshot is not None and snapshot.status == SessionStatus.COMPLETED
        assert snapshot.current_step == steps[-1].index
        reopened.close()


class TestSubscription:
    def test_live_subscription_and_resume_equivalence(self) -> None:
        reasoner = ScriptedReasoner(
            [_batch(ToolCallRequest(tool_name="echo", arguments={"text": "1"}), ToolCallRequest(tool_name="echo")), "done"]
        )
        manager = _manager(reasoner)

        async def _run():  # type: ignore[no-untyped-def]
            session = manager.create("agent-1", "g")
            live: List[int] = []

            async def _consume() -> None:
                async for ev in manager.subscribe(session.id, 0):
                    live.append(ev.sequence)

            consumer = asyncio.ensure_future(_consume())
            await asyncio.sleep(0)
            await manager.start(session.id)
            await manager.wait(session.id, timeout=5)
            await asyncio.wait_for(consumer, timeout=5)

            resumed = {}
            for cursor in range(0, len(live) + 1):
                resumed[cursor] = [ev.sequence async for ev in manager.subscribe(session.id, cursor)]
            return live, resumed

        live, resumed = asyncio.run(_run())
        assert live == list(range(1, len(live) + 1))
        for cursor, seqs in resumed.items():
            assert seqs == live[cursor:]


class _BlockingReasoner:
    """同步 `infer`：阻塞 `seconds` 秒后给出 final answer。"""

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        self.calls = 0

    def infer(self, context: ReasoningContext) -> FinalAnswer:
        self.calls += 1
        time.sleep(self.seconds)
        return FinalAnswer(text="slow answer")


class _DoneStepFailsStore(InMemoryEventStore):
    """写 done Step 时抛出 I/O 错误的事件存储。"""

    def append_step(self, step) -> None:  # type: ignore[no-untyped-def]
        if step.kind == StepKind.DONE:
            raise OSError("disk full")
        super().append_step(step)


class TestSyncReasoner:
    def test_blocking_reasoner_does_not_stall_event_loop(self) -> None:
        manager = _manager(_BlockingReasoner(0.5))

        async def _run():  # type: ignore[no-untyped-def]
            ticks = 0
            stop = asyncio.Event()

            async def _ticker() -> None:
                nonlocal ticks
                while not stop.is_set():
                    await asyncio.sleep(0.05)
                    ticks += 1

            ticker = asyncio.ensure_future(_ticker())
            final, _steps, _events = await _run_to_end(manager)
            stop.set()
            await ticker
            return final, ticks

        final, ticks = asyncio.run(_run())
        assert final.status == SessionStatus.COMPLETED
        assert final.output == "slow answer"
        assert ticks >= 5

    def test_cancel_during_blocking_reasoner_is_prompt(self) -> None:
        reasoner = _BlockingReasoner(1.0)
        manager = _manager(reasoner)

        async def _run():  # type: ignore[no-untyped-def]
            session = manager.create("agent-1", "g")
            await manager.start(session.id)
            await asyncio.sleep(0.1)
            t0 = time.monotonic()
            manager.cancel(session.id)
            final = await manager.wait(session.id, timeout=5)
            return final, time.monotonic() - t0, manager.steps(session.id)

        final, elapsed, steps = asyncio.run(_run())
        assert final.status == SessionStatus.CANCELLED
        assert elapsed < 0.8
        assert final.output is None
        assert not any(s.kind == StepKind.REASONING for s in steps)


class TestFinalizationFailure:
    def test_failed_done_step_fails_session_and_closes_stream(self) -> None:
        manager = _manager(ScriptedReasoner(["done"]), event_log=EventLog(_DoneStepFailsStore()))

        async def _run():  # type: ignore[no-untyped-def]
            session = manager.create("agent-1", "g")
            live: List[str] = []

            async def _consume() -> None:
                async for ev in manager.subscribe(session.id, 0):
                    live.append(ev.type.value)

            consumer = asyncio.ensure_future(_consume())
            await asyncio.sleep(0)
            await manager.start(session.id)
            final = await manager.wait(session.id, timeout=5)
            await asyncio.wait_for(consumer, timeout=5)
            return final, manager.get(session.id), live, manager.steps(session.id), manager.event_log.history(session.id)

        final, snapshot, live, steps, events = asyncio.run(_run())

        assert final.status == SessionStatus.FAILED
        assert snapshot.status == SessionStatus.FAILED
        assert final.error is not None and final.error.kind == "internal_error"
        assert final.output is None
        assert events[-1].type.value == "error" and events[-1].terminal is True
        assert live[-1] == "error"
        assert not any(e.type.value == "done" for e in events)
        assert steps[-1].kind == StepKind.ERROR
        _assert_gap_free(steps, events)


class TestRuntimeRelease:
    def test_finished_sessions_release_runtime_handles(self) -> None:
        manager = _manager(ScriptedReasoner(["done"], repeat_last=True))

        async def _run():  # type: ignore[no-untyped-def]
            ids: List[str] = []
            for _ in range(5):
                session = manager.create("agent-1", "g")
                await manager.start(session.id)
                ids.append(session.id)
            waiting = manager.create("agent-1", "later")
            for sid in ids:
                await manager.wait(sid, timeout=5)
            await asyncio.sleep(0)
            tracked = manager.tracked_sessions

            with pytest.raises(Conflict):
                await manager.start(ids[0])
            with pytest.raises(Conflict):
                manager.cancel(ids[0])
            again = await manager.wait(ids[0], timeout=1)
            return ids, waiting, tracked, again

        ids, waiting, tracked, again = asyncio.run(_run())
        assert tracked == 1
        assert manager.tracked_sessions == 1
        assert again.status == SessionStatus.COMPLETED
        assert all(manager.get(sid).status == SessionStatus.COMPLETED for sid in ids)
        assert manager.get(waiting.id).status == SessionStatus.PENDING
