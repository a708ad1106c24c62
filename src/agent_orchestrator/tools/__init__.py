"""
Tools：工具注册、执行协作方与 Tool Dispatcher。
"""

from __future__ import annotations

from agent_orchestrator.tools.dispatcher import DispatchHandle, RetryPolicy, ToolDispatcher, WorkerPool
from agent_orchestrator.tools.http_provider import HttpToolProvider
from agent_orchestrator.tools.protocol import ToolProvider, ToolSpec
from agent_orchestrator.tools.registry import ToolRegistry

__all__ = [
    "DispatchHandle",
    "HttpToolProvider",
    "RetryPolicy",
    "ToolDispatcher",
    "ToolProvider",
    "ToolRegistry",
    "ToolSpec",
    "WorkerPool",
]
