"""
Step Scheduler：单个会话的执行循环（状态机）。

状态：
- INIT → REASONING → (TOOL_DISPATCH → TOOL_WAIT → REASONING)* → FINALIZING → DONE
- ERROR / CANCELLED / TIMED_OUT：可从任意非终态到达

每轮：
1) 检查取消/超时；
2) 消耗一次推理预算（耗尽 → step_limit_exceeded）；
3) Context Assembler 组装有界上下文；
4) 调用推理协作方（与取消触发竞争）并解析输出；
5) final answer → message/done Step；tool batch → 治理检查 → 限流 → 派发 → barrier wait；
6) 结果按完成顺序追加为 tool_result Step，回到 1)。

Step → 事件映射：
- reasoning → `step`；tool_call → `tool_call`；tool_result → `tool_result`
- message → `message`（final answer 每个 delta 一个事件）
- error → `error`（终态）；done → `done`（终态，含 session_id/output）
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from agent_orchestrator.context.assembler import ContextAssembler
from agent_orchestrator.core.cancellation import TRIGGER_CANCELLED, CancellationController
from agent_orchestrator.core.contracts import (
    ErrorInfo,
    Session,
    SessionStatus,
    Step,
    StepKind,
    StreamEventType,
    ToolCall,
    TrustContext,
)
from agent_orchestrator.core.errors import (
    ErrorKind,
    InternalError,
    OrchestratorError,
    PermissionDenied,
    SessionCancelled,
    SessionTimeout,
    StepLimitExceeded,
    classify_exception,
)
from agent_orchestrator.core.loop_controller import LoopController
from agent_orchestrator.core.utils import new_id, now_rfc3339
from agent_orchestrator.governance.filter import GovernanceFilter, tool_capability
from agent_orchestrator.governance.rate_limit import RateLimiter
from agent_orchestrator.reasoning.protocol import (
    FinalAnswer,
    Reasoner,
    ReasoningContext,
    ToolCallBatch,
    parse_reasoning_output,
)
from agent_orchestrator.state.event_log import EventLog
from agent_orchestrator.tools.dispatcher import DispatchHandle, ToolDispatcher

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    """调度器状态。"""

    INIT = "init"
    REASONING = "reasoning"
    TOOL_DISPATCH = "tool_dispatch"
    TOOL_WAIT = "tool_wait"
    FINALIZING = "finalizing"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


_STEP_EVENT_TYPES: Dict[StepKind, StreamEventType] = {
    StepKind.REASONING: StreamEventType.STEP,
    StepKind.TOOL_CALL: StreamEventType.TOOL_CALL,
    StepKind.TOOL_RESULT: StreamEventType.TOOL_RESULT,
    StepKind.MESSAGE: StreamEventType.MESSAGE,
    StepKind.ERROR: StreamEventType.ERROR,
    StepKind.DONE: StreamEventType.DONE,
}

_TERMINAL_STATES: Dict[SessionStatus, SchedulerState] = {
    SessionStatus.FAILED: SchedulerState.ERROR,
    SessionStatus.CANCELLED: SchedulerState.CANCELLED,
    SessionStatus.TIMED_OUT: SchedulerState.TIMED_OUT,
}


class StepScheduler:
    """
    单会话 Step Scheduler。

    参数：
    - session：已处于 running 的会话（由 SessionManager 迁移）
    - trust_context：会话创建时解析的 TrustContext
    - reasoner/dispatcher/event_log/assembler/governance/cancellation：协作组件
    - max_steps：推理迭代上限
    - context_budget：上下文字符预算
    - strict_permissions：中途 permission_denied 是否致命
    - rate_limiter：可选；会话级 tool call 限流
    - tool_specs：可选；传给推理协作方的工具说明
    - on_update：会话快照变化时回调（用于持久化）
    """

    def __init__(
        self,
        *,
        session: Session,
        trust_context: TrustContext,
        reasoner: Reasoner,
        dispatcher: ToolDispatcher,
        event_log: EventLog,
        assembler: ContextAssembler,
        governance: GovernanceFilter,
        cancellation: CancellationController,
        max_steps: int = 25,
        context_budget: int = 24_000,
        strict_permissions: bool = False,
        rate_limiter: Optional[RateLimiter] = None,
        tool_specs: Optional[List[Dict[str, Any]]] = None,
        on_update: Optional[Callable[[Session], None]] = None,
    ) -> None:
        """创建调度器。参数见类注释。"""

        self.session = session
        self._trust = trust_context
        self._reasoner = reasoner
        self._dispatcher = dispatcher
        self._log = event_log
        self._assembler = assembler
        self._governance = governance
        self._cancel = cancellation
        self._loop = LoopController(max_steps=int(max_steps))
        self._budget = int(context_budget)
        self._strict = bool(strict_permissions)
        self._limiter = rate_limiter
        self._tool_specs = list(tool_specs or [])
        self._on_update = on_update
        self._steps: List[Step] = list(event_log.store.load_steps(session.id))
        self._detached: List[str] = []
        self.state = SchedulerState.INIT

    @property
    def steps(self) -> List[Step]:
        """已追加的 Step（副本）。"""

        return list(self._steps)

    @property
    def iterations(self) -> int:
        """已执行的推理迭代次数。"""

        return self._loop.iterations

    # ----------------------------
    # persistence + events
    # ----------------------------

    def _sync(self) -> None:
        """推送会话快照给持久化回调。"""

        if self._on_update is not None:
            self._on_update(self.session)

    def _append_step(self, kind: StepKind, payload: Dict[str, Any]) -> Step:
        """追加 Step（index 连续）并更新会话的 current_step。"""

        step = Step(
            session_id=self.session.id,
            index=len(self._steps),
            kind=kind,
            payload=payload,
            timestamp=now_rfc3339(),
        )
        self._log.store.append_step(step)
        self._steps.append(step)
        self.session.current_step = step.index
        return step

    def _record(self, kind: StepKind, payload: Dict[str, Any], *, terminal: bool = False) -> Step:
        """追加 Step 并产出一个对应事件。"""

        step = self._append_step(kind, payload)
        data: Dict[str, Any] = {"step_index": step.index}
        if kind == StepKind.REASONING:
            data["kind"] = kind.value
        data.update(payload)
        self._log.append(self.session.id, _STEP_EVENT_TYPES[kind], data, terminal=terminal)
        return step

    # ----------------------------
    # main loop
    # ----------------------------

    async def run(self) -> Session:
        """
        执行会话直到终态并返回会话快照。

        说明：
        - 编排器自身的会话级错误（例如 step_limit_exceeded）→ failed；
        - 其它异常视为 internal_error：记录日志并 failed；
        - 若本 task 被取消（服务关闭），先以 cancelled 终结再继续传播 CancelledError。
        """

        self._cancel.arm()
        try:
            await self._run_loop()
        except asyncio.CancelledError:
            self._terminate(SessionStatus.CANCELLED, SessionCancelled("session task cancelled"))
            raise
        except InternalError as e:
            logger.exception("Session %s failed with internal error", self.session.id)
            self._terminate(SessionStatus.FAILED, e)
        except OrchestratorError as e:
            self._terminate(SessionStatus.FAILED, e)
        except Exception as e:
            logger.exception("Session %s failed with unexpected error", self.session.id)
            self._terminate(SessionStatus.FAILED, e)
        return self.session

    async def _run_loop(self) -> None:
        """内部：推理/派发循环。"""

        if not self._steps:
            self._record(StepKind.MESSAGE, {"role": "goal", "content": self.session.goal})
            self._sync()

        while True:
            trigger = self._cancel.check()
            if trigger is not None:
                self._finalize_trigger(trigger)
                return

            if not self._loop.try_consume_iteration():
                raise StepLimitExceeded(
                    f"max_steps exceeded ({self._loop.max_steps})",
                    details={"max_steps": self._loop.max_steps},
                )

            self.state = SchedulerState.REASONING
            assembled = await self._assembler.build(self._steps, self._budget)
            ctx = ReasoningContext(
                session_id=self.session.id,
                agent_id=self.session.agent_id,
                goal=self.session.goal,
                context=dict(self.session.context),
                iteration=self._loop.iterations,
                entries=assembled.entries(),
                tools=list(self._tool_specs),
            )
            raw, trigger = await self._cancel.race(self._infer(ctx))
            if trigger is not None:
                self._finalize_trigger(trigger)
                return

            decision = parse_reasoning_output(raw)
            context_info: Dict[str, Any] = {"steps": len(self._steps), "size": assembled.size}
            if assembled.summarized_range is not None:
                context_info["summarized_range"] = list(assembled.summarized_range)

            if isinstance(decision, FinalAnswer):
                self._record(
                    StepKind.REASONING,
                    {"iteration": self._loop.iterations, "decision": "final_answer", "context": context_info},
                )
                self._finish(decision)
                return

            trigger = await self._run_batch(decision, context_info)
            if trigger is not None:
                self._finalize_trigger(trigger)
                return

    async def _infer(self, ctx: ReasoningContext) -> Any:
        """
        内部：调用推理协作方（兼容同步/异步实现）。

        说明：
        - 同步 `infer` 通过 `asyncio.to_thread` 执行，不阻塞事件循环；
        - 被取消时线程内调用继续跑完，结果丢弃。
        """

        infer = self._reasoner.infer
        if inspect.iscoroutinefunction(infer):
            result = await infer(ctx)
        else:
            result = await asyncio.to_thread(infer, ctx)
        if inspect.isawaitable(result):
            result = await result
        return result

    # ----------------------------
    # tool batch
    # ----------------------------

    async def _run_batch(self, batch: ToolCallBatch, context_info: Dict[str, Any]) -> Optional[str]:
        """
        内部：执行一个 tool batch（治理 → 限流 → 派发 → barrier wait）。

        返回：
        - None：批次完成，继续下一轮推理
        - trigger：期间触发了取消/超时
        """

        self.state = SchedulerState.TOOL_DISPATCH
        batch_id = self._loop.next_batch_id(self.session.id)
        calls = [
            ToolCall(
                id=req.call_id or new_id("call"),
                batch_id=batch_id,
                session_id=self.session.id,
                tool_name=req.tool_name,
                arguments=dict(req.arguments),
                independent=req.independent,
            )
            for req in batch.calls
        ]
        self._record(
            StepKind.REASONING,
            {
                "iteration": self._loop.iterations,
                "decision": "tool_calls",
                "batch_id": batch_id,
                "call_ids": [c.id for c in calls],
                "context": context_info,
            },
        )
        for call in calls:
            self._record(
                StepKind.TOOL_CALL,
                {
                    "call_id": call.id,
                    "batch_id": batch_id,
                    "tool_name": call.tool_name,
                    "arguments": dict(call.arguments),
                    "independent": call.independent,
                },
            )
        self._sync()

        allowed: List[ToolCall] = []
        for call in calls:
            capability = tool_capability(call.tool_name)
            decision = self._governance.check(self._trust, capability)
            if decision.allowed:
                allowed.append(call)
                continue
            err = PermissionDenied(
                decision.reason or "permission denied",
                retry_after_ms=decision.retry_after_ms,
                details={"capability": capability, "trust_tier": self._trust.trust_tier, "call_id": call.id},
            )
            self._dispatcher.reject(call, err)
            self._record(StepKind.TOOL_RESULT, call.result_payload())
            if self._strict:
                raise err

        if self._limiter is not None:
            for _call in allowed:
                _ok, trigger = await self._cancel.race(self._limiter.acquire())
                if trigger is not None:
                    return trigger

        trigger = self._cancel.check()
        if trigger is not None or not allowed:
            return trigger

        handle = self._dispatcher.start(allowed)
        self.state = SchedulerState.TOOL_WAIT
        while handle.pending > 0:
            call, trigger = await self._cancel.race(handle.next_completed())
            if trigger is not None:
                await self._drain_on_trigger(handle)
                return trigger
            if call is None:
                break
            self._record(StepKind.TOOL_RESULT, call.result_payload())
            if self._strict and call.error is not None and call.error.kind == ErrorKind.PERMISSION_DENIED.value:
                self._detached = [c.id for c in handle.detach()]
                raise PermissionDenied(
                    call.error.message,
                    retry_after_ms=call.error.retry_after_ms,
                    details={"call_id": call.id, "tool": call.tool_name, "detached_call_ids": list(self._detached)},
                )
        self._sync()
        return None

    async def _drain_on_trigger(self, handle: DispatchHandle) -> None:
        """内部：取消/超时后给在途调用宽限期；之后 detach 并丢弃其结果。"""

        for call in await handle.wait(timeout=self._cancel.grace_sec):
            self._record(StepKind.TOOL_RESULT, call.result_payload())
        self._detached = [c.id for c in handle.detach()]
        if self._detached:
            logger.info(
                "Session %s detached %d in-flight tool call(s) after grace period",
                self.session.id,
                len(self._detached),
            )

    # ----------------------------
    # finalization
    # ----------------------------

    def _finish(self, answer: FinalAnswer) -> None:
        """内部：final answer → message Step（逐 delta 推送）→ done Step。"""

        self.state = SchedulerState.FINALIZING
        deltas = [d for d in answer.deltas if d] or [answer.text]
        step = self._append_step(
            StepKind.MESSAGE, {"role": "assistant", "content": answer.text, "delta_count": len(deltas)}
        )
        for delta in deltas:
            self._log.append(
                self.session.id,
                StreamEventType.MESSAGE,
                {"step_index": step.index, "role": "assistant", "delta": delta},
            )

        # done Step 与终态事件写入成功后才迁移到 completed。
        done = self._append_step(StepKind.DONE, {"output": answer.text})
        self._log.append(
            self.session.id,
            StreamEventType.DONE,
            {"step_index": done.index, "session_id": self.session.id, "output": answer.text},
            terminal=True,
        )
        self.session.output = answer.text
        self.session.transition(SessionStatus.COMPLETED)
        self.session.ended_at = now_rfc3339()
        self._sync()
        self.state = SchedulerState.DONE

    def _finalize_trigger(self, trigger: str) -> None:
        """内部：按触发来源终结（cancelled / timed_out）。"""

        details = {"detached_call_ids": list(self._detached)} if self._detached else None
        if trigger == TRIGGER_CANCELLED:
            self._terminate(SessionStatus.CANCELLED, SessionCancelled("session cancelled", details=details))
        else:
            self._terminate(
                SessionStatus.TIMED_OUT,
                SessionTimeout("session deadline exceeded", details=details),
            )

    def _terminate(self, status: SessionStatus, exc: BaseException) -> None:
        """
        内部：以非成功终态结束会话，并写入终态 error Step/事件。

        说明：
        - 会话已处于终态时不做任何事（例如 done 之后 task 才被取消）；
        - 先落会话快照；error Step 写入失败时仍写终态事件，保证订阅流关闭。
        """

        if self.session.is_terminal:
            return
        err = classify_exception(exc)
        self.session.error = ErrorInfo.from_session_error(err)
        self.session.transition(status)
        self.session.ended_at = now_rfc3339()
        payload = err.to_payload()
        payload["status"] = status.value
        self._sync()
        data: Dict[str, Any] = dict(payload)
        if self._steps:
            try:
                step = self._append_step(StepKind.ERROR, payload)
                data = {"step_index": step.index, **payload}
            except Exception:
                logger.exception("Session %s: failed to record terminal error step", self.session.id)
        self._log.append(self.session.id, StreamEventType.ERROR, data, terminal=True)
        self.state = _TERMINAL_STATES[status]
        logger.debug("Session %s finalized as %s (%s)", self.session.id, status.value, err.error_kind.value)


__all__ = ["SchedulerState", "StepScheduler"]
