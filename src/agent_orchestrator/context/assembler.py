"""
Context Assembler：从会话 Step 历史构造有界的推理上下文。

规则：
- step 0（goal）与最近 K 个 Step（`keep_last_steps`）始终原样保留；
- 全部 Step 的大小（payload 的 JSON 字符数）不超过 budget 时，原样返回全部 Step；
- 否则中间区间替换为 Summarizer 生成的一段摘要；
- 摘要按其覆盖的 index 区间缓存，区间变化时才重新生成。
"""

from __future__ import annotations

import inspect
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from agent_orchestrator.context.summarizer import Summarizer, TranscriptSummarizer
from agent_orchestrator.core.contracts import Step

logger = logging.getLogger(__name__)

_MIN_SUMMARY_CHARS = 200


def step_size(step: Step) -> int:
    """Step 的大小度量：payload 的 JSON 字符数。"""

    return len(json.dumps(step.payload, ensure_ascii=False, default=str, separators=(",", ":")))


@dataclass
class AssembledContext:
    """
    组装结果。

    字段：
    - head：保留的开头 Step（step 0）
    - summary：中间区间的摘要（无压缩时为 None）
    - summarized_range：摘要覆盖的 index 闭区间
    - tail：原样保留的其它 Step
    - size：组装后的大小（字符数）
    """

    head: List[Step] = field(default_factory=list)
    summary: Optional[str] = None
    summarized_range: Optional[Tuple[int, int]] = None
    tail: List[Step] = field(default_factory=list)
    size: int = 0

    @property
    def steps(self) -> List[Step]:
        """原样保留的 Step（按 index 升序）。"""

        return list(self.head) + list(self.tail)

    def entries(self) -> List[Dict[str, Any]]:
        """渲染为推理协作方可直接消费的有序条目列表。"""

        out: List[Dict[str, Any]] = [
            {"index": s.index, "kind": s.kind.value, "payload": dict(s.payload)} for s in self.head
        ]
        if self.summary is not None and self.summarized_range is not None:
            lo, hi = self.summarized_range
            out.append({"kind": "summary", "covers": [lo, hi], "text": self.summary})
        out.extend({"index": s.index, "kind": s.kind.value, "payload": dict(s.payload)} for s in self.tail)
        return out


class ContextAssembler:
    """
    Context Assembler。

    参数：
    - summarizer：摘要协作方（默认 `TranscriptSummarizer`）
    - keep_last_steps：原样保留的最近 Step 数（K）
    """

    def __init__(self, summarizer: Optional[Summarizer] = None, *, keep_last_steps: int = 8) -> None:
        """创建 assembler。"""

        self.summarizer: Summarizer = summarizer or TranscriptSummarizer()
        self.keep_last_steps = max(0, int(keep_last_steps))
        self._lock = threading.Lock()
        self._cache: Dict[str, Tuple[Tuple[int, int], str]] = {}
        self.summaries_generated = 0

    async def build(self, steps: List[Step], budget: int) -> AssembledContext:
        """
        组装上下文。

        参数：
        - steps：会话全部 Step（index 升序）
        - budget：字符预算
        """

        ordered = sorted(steps, key=lambda s: s.index)
        sizes = [step_size(s) for s in ordered]
        total = sum(sizes)
        if total <= int(budget) or len(ordered) <= 1 + self.keep_last_steps:
            return AssembledContext(head=ordered[:1], tail=ordered[1:], size=total)

        head = ordered[:1]
        tail = ordered[len(ordered) - self.keep_last_steps :] if self.keep_last_steps else []
        middle = ordered[1 : len(ordered) - len(tail)]
        covered = (middle[0].index, middle[-1].index)
        fixed = sizes[0] + sum(sizes[len(ordered) - len(tail) :])
        summary_budget = max(_MIN_SUMMARY_CHARS, int(budget) - fixed)

        summary = await self._summary_for(ordered[0].session_id, middle, covered, summary_budget)
        return AssembledContext(
            head=head,
            summary=summary,
            summarized_range=covered,
            tail=tail,
            size=fixed + len(summary),
        )

    async def _summary_for(self, session_id: str, middle: List[Step], covered: Tuple[int, int], budget: int) -> str:
        """内部：返回区间摘要（命中缓存直接返回）。"""

        with self._lock:
            cached = self._cache.get(session_id)
        if cached is not None and cached[0] == covered:
            return cached[1]

        result = self.summarizer.summarize(list(middle), budget)
        if inspect.isawaitable(result):
            result = await result
        summary = str(result or "")
        self.summaries_generated += 1
        logger.debug("Summarized steps %d..%d of session %s (%d chars)", covered[0], covered[1], session_id, len(summary))
        with self._lock:
            self._cache[session_id] = (covered, summary)
        return summary

    def forget(self, session_id: str) -> None:
        """丢弃会话的摘要缓存（会话结束时调用）。"""

        with self._lock:
            self._cache.pop(session_id, None)


__all__ = ["AssembledContext", "ContextAssembler", "step_size"]
