"""
Tool 协议（ToolSpec / ToolProvider）。

本模块只定义编排器需要的最小协议：
- ToolSpec：注册表条目（JSON schema 形状的参数说明，供推理协作方参考）
- ToolProvider：工具执行协作方（沙箱与资源限制由其负责）

错误约定：
- `ToolTransientError`：可重试（网络/5xx）
- `ToolFatalError`：不可重试（参数校验等）
- `PermissionDenied`：执行侧拒绝（例如沙箱拒绝）
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field


class ToolSpec(BaseModel):
    """
    Tool 注册信息。

    字段：
    - name：工具名（全局唯一，稳定）
    - description：工具说明
    - parameters：JSON Schema（object schema）
    - idempotent：可选；提示该 tool 是否幂等（用于审计）
    """

    model_config = ConfigDict(extra="forbid")

    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)
    idempotent: Optional[bool] = None


@runtime_checkable
class ToolProvider(Protocol):
    """工具执行协作方。"""

    async def execute(self, tool_name: str, args: Dict[str, Any], timeout: Optional[float]) -> Any:
        """
        执行一次工具调用并返回结果（必须可 JSON 序列化）。

        参数：
        - `tool_name`：工具名
        - `args`：参数 dict
        - `timeout`：建议超时秒数（Dispatcher 另有硬超时）
        """

        ...


__all__ = ["ToolProvider", "ToolSpec"]
