"""
CLI 入口（`agent-orchestrator`）。
"""
