"""
Summarizer：把一段 Step 压缩成一段摘要文本的协作方。

默认实现 `TranscriptSummarizer` 不调用模型：把 Step 渲染为裁剪后的转录文本，
每个 Step 与整体长度都受字符上限约束（保留首尾，中间用省略号替代）。
"""

from __future__ import annotations

import json
from typing import Any, Awaitable, Dict, List, Protocol, Union, runtime_checkable

from agent_orchestrator.core.contracts import Step, StepKind

SUMMARY_PREFIX = "[context summary]"


@runtime_checkable
class Summarizer(Protocol):
    """摘要协作方（可同步返回 str，也可返回 awaitable）。"""

    def summarize(self, steps: List[Step], budget: int) -> Union[str, Awaitable[str]]:
        """
        将 `steps` 压缩为不超过 `budget` 字符的摘要。

        参数：
        - steps：被压缩的连续 Step（按 index 升序）
        - budget：摘要允许的最大字符数
        """

        ...


def _clip_text_middle(text: str, *, max_chars: int) -> str:
    """
    将文本裁剪到不超过 max_chars，并尽量保留首尾两端（中间用省略号替代）。

    参数：
    - text：原始文本
    - max_chars：最大字符数
    """

    s = str(text or "")
    if len(s) <= int(max_chars):
        return s
    if max_chars <= 50:
        return s[: max(0, max_chars - 3)] + "..."
    head = max_chars // 3
    tail = max_chars - head - 5
    return s[:head] + "\n...\n" + s[-tail:]


def _render_step(step: Step, *, max_chars: int) -> str:
    """渲染单个 Step 为一行转录。"""

    p: Dict[str, Any] = dict(step.payload)
    if step.kind == StepKind.MESSAGE:
        body = f"{p.get('role', '')}: {p.get('content', '')}"
    elif step.kind == StepKind.TOOL_CALL:
        body = f"call {p.get('tool_name')} {json.dumps(p.get('arguments', {}), ensure_ascii=False, default=str)}"
    elif step.kind == StepKind.TOOL_RESULT:
        outcome = p.get("result") if p.get("ok") else (p.get("error") or {}).get("kind")
        body = f"result {p.get('tool_name')} [{p.get('status')}] {json.dumps(outcome, ensure_ascii=False, default=str)}"
    else:
        body = json.dumps(p, ensure_ascii=False, default=str)
    return f"#{step.index} {step.kind.value}: " + _clip_text_middle(body, max_chars=max_chars)


class TranscriptSummarizer:
    """
    默认摘要器（无模型）。

    参数：
    - per_step_chars：单个 Step 渲染后的最大字符数
    """

    def __init__(self, *, per_step_chars: int = 400) -> None:
        """创建摘要器。"""

        self.per_step_chars = int(per_step_chars)

    def summarize(self, steps: List[Step], budget: int) -> str:
        """渲染裁剪后的转录文本（总长度不超过 budget）。"""

        if not steps:
            return ""
        lines = [f"{SUMMARY_PREFIX} steps {steps[0].index}..{steps[-1].index}"]
        lines.extend(_render_step(s, max_chars=self.per_step_chars) for s in steps)
        return _clip_text_middle("\n".join(lines), max_chars=max(1, int(budget)))


__all__ = ["SUMMARY_PREFIX", "Summarizer", "TranscriptSummarizer"]
