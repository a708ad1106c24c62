"""
Session Manager：会话的创建、启动、取消与查询。

约束：
- 每个会话一个 Step Scheduler task；会话之间无共享的可变状态（Tool Dispatcher 的 worker pool 除外）；
- `cancel()` 只设置取消标志并立即返回（协作式取消）；
- 查询只读取 SessionStore 中的快照。
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from agent_orchestrator.context.assembler import ContextAssembler
from agent_orchestrator.core.cancellation import CancellationController
from agent_orchestrator.core.contracts import Session, SessionStatus, Step, StreamEvent, TrustContext
from agent_orchestrator.core.errors import Conflict, NotFound, ValidationError
from agent_orchestrator.core.scheduler import StepScheduler
from agent_orchestrator.core.utils import new_id, now_rfc3339, rfc3339_after
from agent_orchestrator.governance.filter import GovernanceFilter, agent_capability
from agent_orchestrator.reasoning.protocol import Reasoner
from agent_orchestrator.state.event_log import EventLog
from agent_orchestrator.state.session_store import SessionStore
from agent_orchestrator.tools.dispatcher import ToolDispatcher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionSettings:
    """
    会话运行参数（由配置映射而来）。

    字段：
    - max_steps/max_wall_time_sec/cancel_grace_sec/strict_permissions：见 `RunConfig`
    - context_budget：Context Assembler 字符预算
    - tool_specs：传给推理协作方的工具说明
    """

    max_steps: int = 25
    max_wall_time_sec: Optional[float] = None
    cancel_grace_sec: float = 5.0
    strict_permissions: bool = False
    context_budget: int = 24_000
    tool_specs: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class _Runtime:
    """单会话运行时句柄（internal）。"""

    trust_context: TrustContext
    cancellation: CancellationController
    task: Optional["asyncio.Task[Session]"] = None
    scheduler: Optional[StepScheduler] = None


class SessionManager:
    """
    Session Manager。

    参数：
    - reasoner：推理协作方
    - dispatcher：Tool Dispatcher（全局 worker pool 由所有会话共享）
    - event_log：EventLog（Step/事件持久化 + 订阅）
    - session_store：Session 快照存储
    - governance：Governance Filter
    - assembler：Context Assembler
    - settings：会话运行参数
    """

    def __init__(
        self,
        *,
        reasoner: Reasoner,
        dispatcher: ToolDispatcher,
        event_log: EventLog,
        session_store: SessionStore,
        governance: GovernanceFilter,
        assembler: Optional[ContextAssembler] = None,
        settings: Optional[SessionSettings] = None,
    ) -> None:
        """创建 manager。参数见类注释。"""

        self.reasoner = reasoner
        self.dispatcher = dispatcher
        self.event_log = event_log
        self.session_store = session_store
        self.governance = governance
        self.assembler = assembler or ContextAssembler()
        self.settings = settings or SessionSettings()
        self._lock = threading.RLock()
        self._runtimes: Dict[str, _Runtime] = {}

    # ----------------------------
    # lifecycle
    # ----------------------------

    def create(
        self,
        agent_id: str,
        goal: str,
        context: Optional[Dict[str, Any]] = None,
        *,
        trust_tier: Optional[str] = None,
    ) -> Session:
        """
        创建会话（pending）。

        异常：
        - ValidationError：agent_id/goal 为空或 context 不是 dict
        - PermissionDenied：trust tier 不允许执行该 agent
        """

        if not isinstance(agent_id, str) or not agent_id.strip():
            raise ValidationError("agent_id must be a non-empty string")
        if not isinstance(goal, str) or not goal.strip():
            raise ValidationError("goal must be a non-empty string")
        if context is not None and not isinstance(context, dict):
            raise ValidationError("context must be an object")

        trust_context = self.governance.resolve_trust_context(trust_tier)
        self.governance.enforce(trust_context, agent_capability(agent_id))

        session = Session(
            id=new_id("sess"),
            agent_id=agent_id,
            goal=goal,
            context=dict(context or {}),
            trust_tier=trust_context.trust_tier,
            created_at=now_rfc3339(),
        )
        runtime = _Runtime(
            trust_context=trust_context,
            cancellation=CancellationController(
                max_wall_time_sec=self.settings.max_wall_time_sec,
                grace_sec=self.settings.cancel_grace_sec,
            ),
        )
        with self._lock:
            self._runtimes[session.id] = runtime
        self.session_store.save(session)
        logger.debug("Created session %s for agent %s (tier %s)", session.id, agent_id, trust_context.trust_tier)
        return session

    async def start(self, session_id: str) -> Session:
        """
        启动会话：pending → running，并创建唯一的 Step Scheduler task。

        异常：
        - NotFound：会话不存在（或不属于本进程）
        - Conflict：会话不处于 pending
        """

        session = self._load(session_id)
        if session.status != SessionStatus.PENDING:
            raise Conflict(
                f"session is not pending: {session.status.value}",
                details={"session_id": session_id, "status": session.status.value},
            )
        runtime = self._runtime(session_id)
        with self._lock:
            if runtime.task is not None:
                raise Conflict(
                    "session already started",
                    details={"session_id": session_id, "status": session.status.value},
                )
            session.transition(SessionStatus.RUNNING)
            session.started_at = now_rfc3339()
            if self.settings.max_wall_time_sec is not None:
                session.deadline = rfc3339_after(self.settings.max_wall_time_sec)
            session.cancel_requested = runtime.cancellation.cancel_requested
            self.session_store.save(session)

            scheduler = StepScheduler(
                session=session,
                trust_context=runtime.trust_context,
                reasoner=self.reasoner,
                dispatcher=self.dispatcher,
                event_log=self.event_log,
                assembler=self.assembler,
                governance=self.governance,
                cancellation=runtime.cancellation,
                max_steps=self.settings.max_steps,
                context_budget=self.settings.context_budget,
                strict_permissions=self.settings.strict_permissions,
                rate_limiter=self.governance.rate_limiter_for(runtime.trust_context),
                tool_specs=self.settings.tool_specs,
                on_update=self.session_store.save,
            )
            runtime.scheduler = scheduler
            runtime.task = asyncio.ensure_future(scheduler.run())
            runtime.task.add_done_callback(lambda t, sid=session_id: self._on_task_done(sid, t))
        return session.model_copy(deep=True)

    def _on_task_done(self, session_id: str, task: "asyncio.Task[Session]") -> None:
        """调度 task 结束：释放运行时句柄与摘要缓存；意外异常记录日志。"""

        with self._lock:
            self._runtimes.pop(session_id, None)
        self.assembler.forget(session_id)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Scheduler task for session %s crashed", session_id, exc_info=exc)

    def cancel(self, session_id: str) -> Session:
        """
        请求取消（立即返回）。

        异常：
        - NotFound：会话不存在
        - Conflict：会话已处于终态
        """

        session = self._load(session_id)
        if session.is_terminal:
            raise Conflict(
                f"session already terminal: {session.status.value}",
                details={"session_id": session_id, "status": session.status.value},
            )
        runtime = self._runtime(session_id)
        runtime.cancellation.cancel()
        session.cancel_requested = True
        # 运行中的会话由调度器持有同一个 Session 对象，标志同步写回。
        if runtime.scheduler is not None and not runtime.scheduler.session.is_terminal:
            runtime.scheduler.session.cancel_requested = True
            self.session_store.save(runtime.scheduler.session)
        elif runtime.scheduler is None:
            self.session_store.save(session)
        logger.info("Cancellation requested for session %s", session_id)
        return self._load(session_id)

    # ----------------------------
    # queries
    # ----------------------------

    def get(self, session_id: str) -> Session:
        """读取会话快照（NotFound）。"""

        return self._load(session_id)

    def list(
        self,
        *,
        status: Optional[SessionStatus] = None,
        agent_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Session]:
        """按条件列出会话快照（创建时间升序）。"""

        out = []
        for s in self.session_store.list():
            if status is not None and s.status != SessionStatus(status):
                continue
            if agent_id is not None and s.agent_id != agent_id:
                continue
            out.append(s)
        if limit is not None:
            out = out[: max(0, int(limit))]
        return out

    @property
    def tracked_sessions(self) -> int:
        """本进程仍持有运行时句柄的会话数（pending + running）。"""

        with self._lock:
            return len(self._runtimes)

    def steps(self, session_id: str) -> List[Step]:
        """返回会话的全部 Step。"""

        self._load(session_id)
        return self.event_log.store.load_steps(session_id)

    async def subscribe(self, session_id: str, from_sequence: int = 0) -> AsyncIterator[StreamEvent]:
        """订阅会话事件（回放 sequence > from_sequence 的历史 + live）。"""

        self._load(session_id)
        async for event in self.event_log.subscribe(session_id, from_sequence):
            yield event

    async def wait(self, session_id: str, timeout: Optional[float] = None) -> Session:
        """等待会话进入终态并返回快照（超时抛 `asyncio.TimeoutError`）。"""

        self._load(session_id)
        runtime = self._runtimes.get(session_id)
        if runtime is not None and runtime.task is not None:
            await asyncio.wait_for(asyncio.shield(runtime.task), timeout=timeout)
        return self._load(session_id)

    async def shutdown(self, *, drain_timeout: Optional[float] = None) -> None:
        """
        关闭：协作式取消所有运行中的会话并等待其结束，然后回收后台 tool 任务。

        参数：
        - drain_timeout：等待后台 tool 任务的上限（默认使用 cancel_grace_sec）
        """

        with self._lock:
            runtimes = list(self._runtimes.values())
        tasks = []
        for rt in runtimes:
            if rt.task is not None and not rt.task.done():
                rt.cancellation.cancel()
                tasks.append(rt.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        timeout = self.settings.cancel_grace_sec if drain_timeout is None else drain_timeout
        await self.dispatcher.drain(timeout=timeout)

    # ----------------------------
    # internals
    # ----------------------------

    def _load(self, session_id: str) -> Session:
        """读取快照，不存在抛 NotFound。"""

        session = self.session_store.load(session_id)
        if session is None:
            raise NotFound(f"session not found: {session_id}", details={"session_id": session_id})
        return session

    def _runtime(self, session_id: str) -> _Runtime:
        """返回本进程内的运行时句柄（不存在视为 NotFound）。"""

        with self._lock:
            rt = self._runtimes.get(session_id)
        if rt is None:
            raise NotFound(
                f"session is not managed by this process: {session_id}", details={"session_id": session_id}
            )
        return rt


__all__ = ["SessionManager", "SessionSettings"]
