"""
Reasoning：推理协作方协议与离线脚本化实现。
"""

from __future__ import annotations

from agent_orchestrator.reasoning.protocol import (
    FinalAnswer,
    Reasoner,
    ReasoningContext,
    ReasoningOutput,
    ToolCallBatch,
    ToolCallRequest,
    parse_reasoning_output,
)
from agent_orchestrator.reasoning.scripted import ScriptedReasoner

__all__ = [
    "FinalAnswer",
    "Reasoner",
    "ReasoningContext",
    "ReasoningOutput",
    "ScriptedReasoner",
    "ToolCallBatch",
    "ToolCallRequest",
    "parse_reasoning_output",
]
