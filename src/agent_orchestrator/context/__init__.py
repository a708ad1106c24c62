"""
Context：有界推理上下文的组装与摘要。
"""

from __future__ import annotations

from agent_orchestrator.context.assembler import AssembledContext, ContextAssembler, step_size
from agent_orchestrator.context.summarizer import Summarizer, TranscriptSummarizer

__all__ = ["AssembledContext", "ContextAssembler", "Summarizer", "TranscriptSummarizer", "step_size"]
