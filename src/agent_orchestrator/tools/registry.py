"""
ToolRegistry：进程内工具注册表（ToolProvider 实现）。

本模块提供：
- 注册：`register/get_spec/list_specs`，以及 `@registry.tool` 装饰器（由函数签名生成参数 schema）
- 执行：`execute(tool_name, args, timeout)`；同步 handler 通过 `asyncio.to_thread` 执行，避免阻塞事件循环

错误约定：
- 未注册的工具、参数校验失败 → `ToolFatalError`
- handler 抛出的 `ToolTransientError/ToolFatalError/PermissionDenied` 原样透传
- 其它异常 → `ToolFatalError`（带异常类型；不做重试）
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ValidationError as PydanticValidationError, create_model

from agent_orchestrator.core.errors import OrchestratorError, ToolFatalError, ValidationError
from agent_orchestrator.tools.protocol import ToolSpec

logger = logging.getLogger(__name__)

ToolHandler = Callable[..., Any]


class ToolRegistry:
    """
    工具注册表。

    说明：
    - handler 签名为 `handler(**args)`，可为同步或 async 函数；
    - 通过装饰器注册的工具会先用 pydantic 模型校验参数。
    """

    def __init__(self) -> None:
        """创建空注册表。"""

        self._tools: Dict[str, Tuple[ToolSpec, ToolHandler, Optional[type[BaseModel]]]] = {}

    def register(
        self,
        spec: ToolSpec,
        handler: ToolHandler,
        *,
        override: bool = False,
        args_model: Optional[type[BaseModel]] = None,
    ) -> None:
        """
        注册一个 `ToolSpec + handler`。

        异常：
        - ValidationError：spec.name 为空、handler 不可调用，或重复注册且未指定 override
        """

        if not isinstance(spec.name, str) or not spec.name.strip():
            raise ValidationError("tool spec.name must be a non-empty string")
        if not callable(handler):
            raise ValidationError("handler must be callable")
        if spec.name in self._tools and not override:
            raise ValidationError(f"duplicate tool registration: {spec.name}", details={"tool": spec.name})
        self._tools[spec.name] = (spec, handler, args_model)

    def tool(self, func=None, *, name: Optional[str] = None, description: Optional[str] = None):  # type: ignore[no-untyped-def]
        """注册自定义 tool（decorator）。"""

        def _register(f):  # type: ignore[no-untyped-def]
            """把一个 Python 函数注册为 tool：生成参数模型与 schema。"""

            tool_name = name or f.__name__
            tool_desc = description or (f.__doc__ or "").strip() or f"custom tool: {tool_name}"
            fields: Dict[str, Any] = {}
            for param_name, param in inspect.signature(f, eval_str=True).parameters.items():
                ann = param.annotation
                if ann is inspect.Parameter.empty:
                    ann = Any
                default = param.default if param.default is not inspect.Parameter.empty else ...
                fields[param_name] = (ann, default)
            Model: type[BaseModel] = create_model(f"_{tool_name}_Args", **fields)  # type: ignore[call-overload]
            schema = Model.model_json_schema()
            parameters = {
                "type": "object",
                "properties": schema.get("properties", {}),
                "required": schema.get("required", []),
                "additionalProperties": False,
            }
            self.register(ToolSpec(name=tool_name, description=tool_desc, parameters=parameters), f, args_model=Model)
            return f

        if func is None:
            return _register
        return _register(func)

    def get_spec(self, tool_name: str) -> Optional[ToolSpec]:
        """返回已注册工具的 spec（不存在返回 None）。"""

        entry = self._tools.get(tool_name)
        return entry[0] if entry is not None else None

    def list_specs(self) -> List[ToolSpec]:
        """按注册顺序返回全部 spec。"""

        return [spec for spec, _h, _m in self._tools.values()]

    async def execute(self, tool_name: str, args: Dict[str, Any], timeout: Optional[float]) -> Any:
        """执行工具（ToolProvider 协议）。`timeout` 由 Dispatcher 强制，这里不重复计时。"""

        entry = self._tools.get(tool_name)
        if entry is None:
            raise ToolFatalError(f"tool not found: {tool_name}", details={"tool": tool_name, "reason": "not_found"})
        _spec, handler, args_model = entry

        call_args = dict(args or {})
        if args_model is not None:
            try:
                call_args = args_model.model_validate(call_args).model_dump()
            except PydanticValidationError as e:
                raise ToolFatalError(
                    f"invalid arguments for tool {tool_name}",
                    details={"tool": tool_name, "reason": "validation", "errors": e.errors(include_url=False)},
                ) from e

        try:
            if inspect.iscoroutinefunction(handler):
                return await handler(**call_args)
            return await asyncio.to_thread(handler, **call_args)
        except OrchestratorError:
            raise
        except TypeError as e:
            raise ToolFatalError(f"invalid arguments for tool {tool_name}: {e}", details={"tool": tool_name}) from e
        except Exception as e:
            logger.warning("Tool handler %r raised %s", tool_name, type(e).__name__, exc_info=True)
            raise ToolFatalError(
                f"tool {tool_name} failed: {e}",
                details={"tool": tool_name, "exception_type": type(e).__name__},
            ) from e


__all__ = ["ToolHandler", "ToolRegistry"]
