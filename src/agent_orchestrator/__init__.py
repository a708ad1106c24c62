"""
Agent Orchestrator（Python）。

说明：
- 会话执行编排：推理 → 工具批次并发派发 → 结果回注，直到最终答案或终态；
- 每个会话一条有序、可续传的事件流（回放 + live）；
- 当前已包含：
  - 核心契约（Session/Step/ToolCall/StreamEvent）与错误分类
  - Step Scheduler（步数上限、墙钟超时、协作式取消与宽限期）
  - Tool Dispatcher（worker pool、超时、指数退避重试）
  - EventLog（durable store + 有界订阅者缓冲）
  - Context Assembler（预算内上下文 + 摘要缓存）
  - Governance（trust tier、capability 检查、限流）
  - 配置加载器（YAML overlay + pydantic 校验）、HTTP API（FastAPI + SSE）、CLI
"""

from __future__ import annotations

from agent_orchestrator.bootstrap import build_session_manager, resolve_effective_config
from agent_orchestrator.config.loader import OrchestratorConfig, load_config
from agent_orchestrator.core.contracts import Session, SessionStatus, Step, StepKind, StreamEvent, ToolCall
from agent_orchestrator.core.errors import OrchestratorError
from agent_orchestrator.core.session_manager import SessionManager, SessionSettings
from agent_orchestrator.reasoning.protocol import FinalAnswer, ToolCallBatch, ToolCallRequest
from agent_orchestrator.reasoning.scripted import ScriptedReasoner
from agent_orchestrator.tools.registry import ToolRegistry

__all__ = [
    "FinalAnswer",
    "OrchestratorConfig",
    "OrchestratorError",
    "ScriptedReasoner",
    "Session",
    "SessionManager",
    "SessionSettings",
    "SessionStatus",
    "Step",
    "StepKind",
    "StreamEvent",
    "ToolCall",
    "ToolCallBatch",
    "ToolCallRequest",
    "ToolRegistry",
    "__version__",
    "build_session_manager",
    "load_config",
    "resolve_effective_config",
]

__version__ = "0.1.0"
