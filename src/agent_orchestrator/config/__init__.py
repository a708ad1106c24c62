"""
Config：YAML overlays + pydantic schema。
"""

from __future__ import annotations

from agent_orchestrator.config.defaults import load_default_config_dict
from agent_orchestrator.config.loader import OrchestratorConfig, load_config, load_config_dicts

__all__ = ["OrchestratorConfig", "load_config", "load_config_dicts", "load_default_config_dict"]
