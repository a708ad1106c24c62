"""
核心契约（Core Contracts）：Session / Step / ToolCall / StreamEvent / TrustContext。

说明：
- Session 状态只允许 pending → running → {completed|failed|cancelled|timed_out}，终态不可再迁移；
- Step 与 StreamEvent 为不可变记录（frozen），一经追加不得修改；
- ToolCall 由 Step Scheduler 创建，仅由 Tool Dispatcher 修改。
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from agent_orchestrator.core.errors import Conflict, SessionError


class SessionStatus(str, Enum):
    """会话状态。"""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        """是否为终态。"""

        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED, SessionStatus.TIMED_OUT}
)

_ALLOWED_TRANSITIONS: Dict[SessionStatus, frozenset] = {
    SessionStatus.PENDING: frozenset({SessionStatus.RUNNING}),
    SessionStatus.RUNNING: _TERMINAL_STATUSES,
}


class StepKind(str, Enum):
    """Step 类型。"""

    REASONING = "reasoning"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    MESSAGE = "message"
    ERROR = "error"
    DONE = "done"


class ToolCallStatus(str, Enum):
    """ToolCall 状态（succeeded/failed/timed_out 为终态）。"""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        """是否已 resolve。"""

        return self in (ToolCallStatus.SUCCEEDED, ToolCallStatus.FAILED, ToolCallStatus.TIMED_OUT)


class StreamEventType(str, Enum):
    """对外事件类型（wire 枚举）。"""

    MESSAGE = "message"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    STEP = "step"
    ERROR = "error"
    DONE = "done"


class ErrorInfo(BaseModel):
    """
    统一错误结构（放入 Session.error / ToolCall.error / 事件 payload）。

    字段：
    - kind：稳定错误分类（`ErrorKind` 的值）
    - message：面向开发者的错误说明（避免包含密钥）
    - retryable：是否建议重试
    - retry_after_ms：可选；建议等待毫秒数
    - details：结构化上下文
    """

    model_config = ConfigDict(extra="forbid")

    kind: str
    message: str
    retryable: bool = False
    retry_after_ms: Optional[int] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_session_error(cls, err: SessionError) -> "ErrorInfo":
        """从 `SessionError` 构造。"""

        return cls(
            kind=err.error_kind.value,
            message=err.message,
            retryable=err.retryable,
            retry_after_ms=err.retry_after_ms,
            details=dict(err.details),
        )


class RateLimits(BaseModel):
    """会话级限流（token bucket）。`tool_calls_per_minute=None` 表示不限流。"""

    model_config = ConfigDict(extra="forbid", frozen=True)

    tool_calls_per_minute: Optional[float] = Field(default=None, gt=0)
    burst: int = Field(default=10, ge=1)


class TrustContext(BaseModel):
    """
    TrustContext：会话创建时由治理协作方提供，会话生命周期内不可变。

    字段：
    - trust_tier：调用方已验证的权限等级
    - allowed_capabilities：允许的 capability 模式（fnmatch）；为空表示完全交给 TrustService 决策
    - rate_limits：限流参数
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    trust_tier: str
    allowed_capabilities: List[str] = Field(default_factory=list)
    rate_limits: RateLimits = Field(default_factory=RateLimits)


class Session(BaseModel):
    """
    Session：一次完整的 agent 运行（goal → 终态结果）。

    注意：
    - `status` 只能通过 `transition()` 修改；
    - `deadline` 仅用于展示（RFC3339），真正的超时判断使用 monotonic clock。
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    id: str
    agent_id: str
    goal: str
    context: Dict[str, Any] = Field(default_factory=dict)
    trust_tier: str = "default"
    status: SessionStatus = SessionStatus.PENDING
    created_at: str
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    output: Optional[str] = None
    error: Optional[ErrorInfo] = None
    current_step: int = 0
    cancel_requested: bool = False
    deadline: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        """是否已进入终态。"""

        return self.status.is_terminal

    def transition(self, to: SessionStatus) -> None:
        """
        迁移会话状态。

        异常：
        - Conflict：迁移不合法（包括任何离开终态的迁移）
        """

        allowed = _ALLOWED_TRANSITIONS.get(self.status, frozenset())
        if to not in allowed:
            raise Conflict(
                f"illegal session transition: {self.status.value} -> {SessionStatus(to).value}",
                details={"session_id": self.id, "from": self.status.value, "to": SessionStatus(to).value},
            )
        self.status = to


class Step(BaseModel):
    """Step：调度器活动的一条持久记录（不可变）。"""

    model_config = ConfigDict(extra="forbid", frozen=True)

    session_id: str
    index: int = Field(ge=0)
    kind: StepKind
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: str


class ToolCall(BaseModel):
    """
    ToolCall：一次外部能力调用。

    字段：
    - id/batch_id：调用 id 与所属批次
    - independent：由推理输出标注（调度器从不推断）；False 表示需要与同批其它非独立调用串行执行
    - status/result/error：由 Dispatcher 写入
    - attempts：实际尝试次数（包含重试）
    - started_at/duration_ms：首次开始时间与总耗时
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    id: str
    batch_id: str
    session_id: str
    tool_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    independent: bool = True
    status: ToolCallStatus = ToolCallStatus.QUEUED
    result: Optional[Any] = None
    error: Optional[ErrorInfo] = None
    attempts: int = 0
    started_at: Optional[str] = None
    duration_ms: int = Field(default=0, ge=0)

    def result_payload(self) -> Dict[str, Any]:
        """生成 tool_result Step/事件使用的 payload（成功与失败统一形状）。"""

        out: Dict[str, Any] = {
            "call_id": self.id,
            "batch_id": self.batch_id,
            "tool_name": self.tool_name,
            "status": self.status.value,
            "ok": self.status == ToolCallStatus.SUCCEEDED,
            "attempts": int(self.attempts),
            "duration_ms": int(self.duration_ms),
        }
        if self.status == ToolCallStatus.SUCCEEDED:
            out["result"] = self.result
        if self.error is not None:
            out["error"] = self.error.model_dump(exclude_none=True)
        return out


class StreamEvent(BaseModel):
    """
    StreamEvent：对订阅者推送的事件（每会话全局递增、无空洞、从 1 开始）。

    wire 形状：`{sequence, type, data, terminal}`（见 `to_wire`）。
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    session_id: str
    sequence: int = Field(ge=1)
    type: StreamEventType
    data: Dict[str, Any] = Field(default_factory=dict)
    terminal: bool = False
    timestamp: str

    def to_wire(self) -> Dict[str, Any]:
        """返回对外 wire 形状（不含内部字段）。"""

        return {"sequence": self.sequence, "type": self.type.value, "data": dict(self.data), "terminal": self.terminal}

    def to_json(self) -> str:
        """序列化为 JSON 字符串（持久化形状，含 session_id/timestamp）。"""

        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw_json: str) -> "StreamEvent":
        """从 JSON 字符串反序列化。"""

        return cls.model_validate_json(raw_json)


__all__ = [
    "ErrorInfo",
    "RateLimits",
    "Session",
    "SessionStatus",
    "Step",
    "StepKind",
    "StreamEvent",
    "StreamEventType",
    "ToolCall",
    "ToolCallStatus",
    "TrustContext",
]
