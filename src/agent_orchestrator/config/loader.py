"""
配置加载器（YAML）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）；
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误与误配置被静默吞掉）。

默认配置：`agent_orchestrator/assets/default.yaml`（见 `agent_orchestrator.config.defaults`）。
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

from agent_orchestrator.governance.policy import TierPolicy


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class RunConfig(BaseModel):
    """
    会话运行参数。

    字段：
    - max_steps：推理迭代上限（超过 → step_limit_exceeded）
    - max_wall_time_sec：会话总 wall time 预算（None 表示不限制）
    - cancel_grace_sec：取消/超时后给在途 tool calls 的宽限期
    - strict_permissions：为 True 时，会话中途的 permission_denied 直接使会话失败
    """

    model_config = ConfigDict(extra="forbid")

    max_steps: int = Field(default=25, ge=1)
    max_wall_time_sec: Optional[float] = Field(default=None, gt=0)
    cancel_grace_sec: float = Field(default=5.0, ge=0)
    strict_permissions: bool = False


class ToolsConfig(BaseModel):
    """Tool Dispatcher 参数。"""

    model_config = ConfigDict(extra="forbid")

    class Retry(BaseModel):
        """
        Transient 错误重试参数。

        说明：
        - max_retries 为额外尝试次数（总尝试数 = 1 + max_retries）；
        - base/cap/jitter 只影响“无 retry_after_ms”时的指数退避计算。
        """

        model_config = ConfigDict(extra="forbid")

        max_retries: int = Field(default=2, ge=0)
        base_delay_sec: float = Field(default=0.5, ge=0)
        cap_delay_sec: float = Field(default=8.0, ge=0)
        jitter_ratio: float = Field(default=0.1, ge=0.0, le=1.0)

    class Http(BaseModel):
        """HttpToolProvider 参数（base_url 为空表示不启用）。"""

        model_config = ConfigDict(extra="forbid")

        base_url: Optional[str] = None
        timeout_sec: float = Field(default=30.0, gt=0)
        headers: Dict[str, str] = Field(default_factory=dict)

    max_concurrency: int = Field(default=8, ge=1)
    call_timeout_sec: Optional[float] = Field(default=60.0, gt=0)
    queue_wait_timeout_sec: Optional[float] = Field(default=None, gt=0)
    retry: Retry = Field(default_factory=Retry)
    http: Http = Field(default_factory=Http)


class StreamConfig(BaseModel):
    """订阅者缓冲参数。"""

    model_config = ConfigDict(extra="forbid")

    subscriber_buffer_events: int = Field(default=1000, ge=1)
    subscriber_buffer_bytes: int = Field(default=4 * 1024 * 1024, ge=1024)


class ContextConfig(BaseModel):
    """Context Assembler 参数。"""

    model_config = ConfigDict(extra="forbid")

    budget_chars: int = Field(default=24_000, ge=200)
    keep_last_steps: int = Field(default=8, ge=0)
    summary_step_chars: int = Field(default=400, ge=50)


class GovernanceConfig(BaseModel):
    """治理参数（tier 名 → 策略）。"""

    model_config = ConfigDict(extra="forbid")

    default_tier: str = "default"
    tiers: Dict[str, TierPolicy] = Field(default_factory=lambda: {"default": TierPolicy()})


class StorageConfig(BaseModel):
    """持久化后端。"""

    model_config = ConfigDict(extra="forbid")

    backend: Literal["memory", "jsonl"] = "memory"
    root_dir: str = ".agent_orchestrator/sessions"


class ServerConfig(BaseModel):
    """HTTP 服务参数。"""

    model_config = ConfigDict(extra="forbid")

    host: str = "127.0.0.1"
    port: int = Field(default=8000, ge=1, le=65535)


class OrchestratorConfig(BaseModel):
    """配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    run: RunConfig = Field(default_factory=RunConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    governance: GovernanceConfig = Field(default_factory=GovernanceConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise FileNotFoundError(f"config file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config root must be a mapping(dict): {path}")
    return data


def load_config_dicts(config_dicts: List[Dict[str, Any]]) -> OrchestratorConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `OrchestratorConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return OrchestratorConfig.model_validate(merged)


def load_config(config_paths: List[Path]) -> OrchestratorConfig:
    """
    加载并合并多个配置文件，返回校验后的 `OrchestratorConfig`。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    """

    overlays: List[Dict[str, Any]] = []
    for path in config_paths:
        overlays.append(_load_yaml_file(Path(path)))
    return load_config_dicts(overlays)


__all__ = [
    "ContextConfig",
    "GovernanceConfig",
    "OrchestratorConfig",
    "RunConfig",
    "ServerConfig",
    "StorageConfig",
    "StreamConfig",
    "ToolsConfig",
    "load_config",
    "load_config_dicts",
]
