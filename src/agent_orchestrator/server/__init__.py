"""
Server：FastAPI HTTP API 与 SSE 编码。
"""

from __future__ import annotations

from agent_orchestrator.server.app import API_PREFIX, create_app

__all__ = ["API_PREFIX", "create_app"]
