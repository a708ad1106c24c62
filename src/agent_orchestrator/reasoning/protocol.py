"""
推理协作方协议：Reasoner / ReasoningContext / 推理输出。

约定：
- 推理调用为请求/响应模式：`infer(context)` 返回一个完整的决策（可同步返回，也可返回 awaitable）；
- 决策只有两种：`FinalAnswer`（结束会话）或 `ToolCallBatch`（请求一批 tool calls）；
- 每个 tool call 的 `independent` 由推理输出显式标注，调度器从不推断。

dict 形态（便于对接 JSON 输出的推理服务）：
- `{"type": "final_answer", "text": "...", "deltas": ["...", ...]}`
- `{"type": "tool_calls", "calls": [{"tool_name": "...", "arguments": {...}, "independent": true}]}`
- 纯字符串视为 final answer。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Optional, Protocol, Union, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from agent_orchestrator.core.errors import ReasoningProtocolError


class FinalAnswer(BaseModel):
    """
    最终答复。

    字段：
    - text：完整答复文本（写入 Session.output）
    - deltas：可选；分段文本（每段一个 message 事件）；为空时以完整文本推送一次
    """

    model_config = ConfigDict(extra="forbid")

    text: str
    deltas: List[str] = Field(default_factory=list)


class ToolCallRequest(BaseModel):
    """推理请求的单个 tool call。"""

    model_config = ConfigDict(extra="forbid")

    tool_name: str = Field(min_length=1)
    arguments: Dict[str, Any] = Field(default_factory=dict)
    independent: bool = True
    call_id: Optional[str] = None


class ToolCallBatch(BaseModel):
    """一批 tool calls（至少一个）。"""

    model_config = ConfigDict(extra="forbid")

    calls: List[ToolCallRequest] = Field(min_length=1)


ReasoningOutput = Union[FinalAnswer, ToolCallBatch]


@dataclass(frozen=True)
class ReasoningContext:
    """
    传给推理协作方的上下文。

    字段：
    - session_id/agent_id/goal/context：会话信息
    - iteration：本次是第几次推理（从 1 开始）
    - entries：Context Assembler 组装出的有序条目（Step 或摘要）
    - tools：可选；可用工具的 spec（JSON 形状）
    """

    session_id: str
    agent_id: str
    goal: str
    context: Dict[str, Any] = field(default_factory=dict)
    iteration: int = 1
    entries: List[Dict[str, Any]] = field(default_factory=list)
    tools: List[Dict[str, Any]] = field(default_factory=list)


@runtime_checkable
class Reasoner(Protocol):
    """推理协作方。"""

    def infer(self, context: ReasoningContext) -> Union[Any, Awaitable[Any]]:
        """返回 `FinalAnswer | ToolCallBatch`（或等价 dict/str），可为 awaitable。"""

        ...


def parse_reasoning_output(raw: Any) -> ReasoningOutput:
    """
    把推理协作方的原始输出解析为 `FinalAnswer | ToolCallBatch`。

    异常：
    - ReasoningProtocolError：输出形态无法识别或字段不合法
    """

    if isinstance(raw, (FinalAnswer, ToolCallBatch)):
        return raw
    if isinstance(raw, str):
        return FinalAnswer(text=raw)
    if not isinstance(raw, dict):
        raise ReasoningProtocolError(
            "reasoner returned an unsupported output type", details={"output_type": type(raw).__name__}
        )

    obj = dict(raw)
    kind = obj.pop("type", None)
    if kind is None:
        kind = "tool_calls" if "calls" in obj else "final_answer" if "text" in obj else None
    try:
        if kind == "final_answer":
            return FinalAnswer.model_validate(obj)
        if kind == "tool_calls":
            return ToolCallBatch.model_validate(obj)
    except PydanticValidationError as e:
        raise ReasoningProtocolError(
            f"invalid {kind} output from reasoner",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e
    raise ReasoningProtocolError("reasoner output has unknown type", details={"type": kind})


__all__ = [
    "FinalAnswer",
    "Reasoner",
    "ReasoningContext",
    "ReasoningOutput",
    "ToolCallBatch",
    "ToolCallRequest",
    "parse_reasoning_output",
]
