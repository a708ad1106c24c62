"""
编排器错误分类（异常类型 + 稳定 error_kind）。

说明：
- 异常用于模块间传递“错误层级”语义；对外（事件/HTTP）统一映射为稳定的 `error_kind` 字符串。
- 工具级错误（transient/fatal）在 Tool Dispatcher 内部就地恢复，作为 tool_result 内容回注；
  会话级错误终止 loop，并产出一条终态 `error` 事件。
- 编排器不做会话级自动重试：失败的会话需要调用方重新创建。
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """稳定错误分类（机器可消费）。"""

    VALIDATION_ERROR = "validation_error"
    PERMISSION_DENIED = "permission_denied"
    TOOL_TRANSIENT_ERROR = "tool_transient_error"
    TOOL_FATAL_ERROR = "tool_fatal_error"
    STEP_LIMIT_EXCEEDED = "step_limit_exceeded"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    INTERNAL_ERROR = "internal_error"

    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    SUBSCRIBER_DISCONNECTED = "subscriber_disconnected"


class OrchestratorError(Exception):
    """
    编排器错误基类。

    字段：
    - kind：稳定分类（子类固定）
    - message：可读错误消息（不得包含 secrets）
    - details：结构化上下文（必须可 JSON 序列化）
    - retryable：是否建议调用方重试
    """

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR
    retryable: bool = False

    def __init__(self, message: str = "", *, details: Optional[Dict[str, Any]] = None) -> None:
        """创建错误。

        参数：
        - `message`：英文错误消息
        - `details`：结构化补充信息
        """

        super().__init__(message)
        self.message = str(message or self.kind.value)
        self.details: Dict[str, Any] = dict(details or {})

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.kind.value}: {self.message}"


class ValidationError(OrchestratorError):
    """请求格式错误（立即返回，不可重试）。"""

    kind = ErrorKind.VALIDATION_ERROR


class PermissionDenied(OrchestratorError):
    """
    治理拒绝（trust tier / capability / 限流）。

    说明：
    - 会话创建时为致命错误；
    - 会话中途的单次 tool call 被拒绝时只记录为失败的 ToolCall（strict 模式除外）。
    """

    kind = ErrorKind.PERMISSION_DENIED

    def __init__(
        self,
        message: str = "permission denied",
        *,
        retry_after_ms: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """创建 `PermissionDenied`；`retry_after_ms` 为可选的建议等待时间。"""

        super().__init__(message, details=details)
        self.retry_after_ms = int(retry_after_ms) if retry_after_ms is not None else None


class NotFound(OrchestratorError):
    """会话不存在。"""

    kind = ErrorKind.NOT_FOUND


class Conflict(OrchestratorError):
    """状态冲突（例如对终态会话 cancel、对非 pending 会话 start）。"""

    kind = ErrorKind.CONFLICT


class ToolTransientError(OrchestratorError):
    """工具临时失败（网络/5xx 等），按策略重试。"""

    kind = ErrorKind.TOOL_TRANSIENT_ERROR
    retryable = True

    def __init__(
        self,
        message: str = "transient tool failure",
        *,
        retry_after_ms: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """创建 `ToolTransientError`；`retry_after_ms` 优先于指数退避。"""

        super().__init__(message, details=details)
        self.retry_after_ms = int(retry_after_ms) if retry_after_ms is not None else None


class ToolFatalError(OrchestratorError):
    """工具不可重试失败（参数校验等），作为内容回注，会话继续。"""

    kind = ErrorKind.TOOL_FATAL_ERROR


class StepLimitExceeded(OrchestratorError):
    """推理迭代次数超过 max_steps（致命）。"""

    kind = ErrorKind.STEP_LIMIT_EXCEEDED


class SessionTimeout(OrchestratorError):
    """会话级 deadline 耗尽（→ timed_out，区别于用户取消）。"""

    kind = ErrorKind.TIMEOUT


class SessionCancelled(OrchestratorError):
    """用户发起的取消（→ cancelled）。"""

    kind = ErrorKind.CANCELLED


class InternalError(OrchestratorError):
    """意外错误：会话失败，必须记录日志，不得静默丢弃。"""

    kind = ErrorKind.INTERNAL_ERROR


class ReasoningProtocolError(InternalError):
    """推理协作方返回了无法解析的输出。"""


class SubscriberDisconnected(OrchestratorError):
    """订阅者缓冲溢出被断开（可用最后的 sequence 重新订阅）。"""

    kind = ErrorKind.SUBSCRIBER_DISCONNECTED
    retryable = True


@dataclass(frozen=True)
class SessionError:
    """
    SessionError：结构化会话错误（用于生成稳定的终态 `error` 事件 payload）。

    字段：
    - error_kind：稳定分类
    - message：可读错误消息
    - retryable：是否建议上层重试（会话本身不会自动重试）
    - retry_after_ms：可选；建议的重试等待毫秒数
    - details：可选；结构化上下文（必须可 JSON 序列化）
    """

    error_kind: ErrorKind
    message: str
    retryable: bool = False
    retry_after_ms: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        """转换为事件 payload dict（稳定字段名）。"""

        out: Dict[str, Any] = {
            "error_kind": str(self.error_kind.value),
            "message": str(self.message or ""),
            "retryable": bool(self.retryable),
        }
        if self.retry_after_ms is not None:
            out["retry_after_ms"] = int(self.retry_after_ms)
        if self.details:
            out["details"] = dict(self.details)
        return out


def _jsonable_details(details: Dict[str, Any]) -> Dict[str, Any]:
    """确保 details 可 JSON 序列化；不可序列化的值降级为 `repr`。"""

    out: Dict[str, Any] = {}
    for k, v in (details or {}).items():
        try:
            json.dumps(v)
            out[str(k)] = v
        except (TypeError, ValueError):
            out[str(k)] = repr(v)
    return out


def classify_exception(exc: BaseException) -> SessionError:
    """
    将任意异常映射为结构化 SessionError。

    约束：
    - 编排器自身的异常保留其 kind；
    - 其它异常一律归为 `internal_error`（调用方负责记录日志）；
    - message 尽量简洁，超长截断。
    """

    if isinstance(exc, OrchestratorError):
        retry_after_ms = getattr(exc, "retry_after_ms", None)
        return SessionError(
            error_kind=exc.kind,
            message=exc.message,
            retryable=bool(exc.retryable),
            retry_after_ms=retry_after_ms,
            details=_jsonable_details(exc.details),
        )

    msg = str(exc) or type(exc).__name__
    if len(msg) > 800:
        msg = msg[:800] + "...<truncated>"
    return SessionError(
        error_kind=ErrorKind.INTERNAL_ERROR,
        message=msg,
        retryable=False,
        details={"exception_type": type(exc).__name__},
    )


__all__ = [
    "Conflict",
    "ErrorKind",
    "InternalError",
    "NotFound",
    "OrchestratorError",
    "PermissionDenied",
    "ReasoningProtocolError",
    "SessionCancelled",
    "SessionError",
    "SessionTimeout",
    "StepLimitExceeded",
    "SubscriberDisconnected",
    "ToolFatalError",
    "ToolTransientError",
    "ValidationError",
    "classify_exception",
]
