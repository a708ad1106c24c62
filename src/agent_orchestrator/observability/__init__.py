"""
Observability：离线会话指标。
"""

from __future__ import annotations

from agent_orchestrator.observability.session_metrics import compute_session_metrics, compute_session_metrics_from_file

__all__ = ["compute_session_metrics", "compute_session_metrics_from_file"]
