"""
ScriptedReasoner（离线回归夹具）。

用途：
- 在不依赖真实模型的情况下，回归 Step Scheduler 的编排逻辑（推理 → tool batch → 回注 → 继续）。
"""

from __future__ import annotations

import inspect
from typing import Any, Callable, List, Sequence, Union

from agent_orchestrator.core.errors import ReasoningProtocolError
from agent_orchestrator.reasoning.protocol import ReasoningContext

ScriptItem = Union[Any, Callable[[ReasoningContext], Any]]


class ScriptedReasoner:
    """
    用脚本化输出模拟推理协作方。

    说明：
    - 每次 `infer(...)` 消耗一个条目；条目可以是输出本身，也可以是 `callable(context)`（可为 async）；
    - `repeat_last=True` 时脚本耗尽后重复最后一个条目，否则抛 `ReasoningProtocolError`；
    - `calls` 记录每次收到的 ReasoningContext（便于断言）。
    """

    def __init__(self, outputs: Sequence[ScriptItem], *, repeat_last: bool = False) -> None:
        """
        创建一个可预测的 reasoner。

        参数：
        - `outputs`：预设的输出序列
        - `repeat_last`：耗尽后是否重复最后一个条目
        """

        self._outputs = list(outputs)
        self._idx = 0
        self.repeat_last = bool(repeat_last)
        self.calls: List[ReasoningContext] = []

    async def infer(self, context: ReasoningContext) -> Any:
        """返回下一个脚本输出。"""

        self.calls.append(context)
        if self._idx >= len(self._outputs):
            if not (self.repeat_last and self._outputs):
                raise ReasoningProtocolError("scripted reasoner exhausted", details={"calls": len(self.calls)})
            item = self._outputs[-1]
        else:
            item = self._outputs[self._idx]
            self._idx += 1

        if callable(item):
            item = item(context)
            if inspect.isawaitable(item):
                item = await item
        return item


__all__ = ["ScriptItem", "ScriptedReasoner"]
