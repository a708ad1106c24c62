"""
Bootstrap Layer（配置发现/来源追踪/组件装配）。

设计目标：
- 保持核心组件无隐式 I/O：SessionManager 不会自动发现 overlays；
- 提供可选 bootstrap 入口：HTTP 服务与 CLI 复用同一套配置解析与装配逻辑。

overlay 发现规则（固定，顺序稳定）：
1) 默认 overlay：`<workspace_root>/config/orchestrator.yaml`
2) `AGENT_ORCHESTRATOR_CONFIG_PATHS`（逗号/分号分隔）
3) 调用方显式传入的路径
"""

from __future__ import annotations

import os
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import yaml

from agent_orchestrator.config.defaults import load_default_config_dict
from agent_orchestrator.config.loader import OrchestratorConfig, load_config_dicts
from agent_orchestrator.context.assembler import ContextAssembler
from agent_orchestrator.context.summarizer import Summarizer, TranscriptSummarizer
from agent_orchestrator.core.session_manager import SessionManager, SessionSettings
from agent_orchestrator.governance.filter import GovernanceFilter
from agent_orchestrator.governance.policy import TierPolicyService, TrustService
from agent_orchestrator.reasoning.protocol import Reasoner
from agent_orchestrator.state.event_log import EventHook, EventLog
from agent_orchestrator.state.event_store import EventStore, InMemoryEventStore, JsonlEventStore
from agent_orchestrator.state.session_store import FileSessionStore, InMemorySessionStore, SessionStore
from agent_orchestrator.tools.dispatcher import RetryPolicy, ToolDispatcher
from agent_orchestrator.tools.http_provider import HttpToolProvider
from agent_orchestrator.tools.protocol import ToolProvider
from agent_orchestrator.tools.registry import ToolRegistry

CONFIG_PATHS_ENV = "AGENT_ORCHESTRATOR_CONFIG_PATHS"


def _get_env_nonempty(key: str, *, env: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """读取 env 并返回非空白字符串（否则视为未设置）。"""

    v = (env if env is not None else os.environ).get(key)
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _split_paths(raw: str) -> List[str]:
    """将逗号/分号分隔的路径串切分为片段列表（去空白与空项，保序）。"""

    parts: List[str] = []
    for chunk in raw.replace(";", ",").split(","):
        s = chunk.strip()
        if s:
            parts.append(s)
    return parts


def discover_overlay_paths(
    *,
    workspace_root: Path,
    env: Optional[Mapping[str, str]] = None,
    extra_paths: Sequence[Path] = (),
) -> List[Path]:
    """按固定顺序发现 overlay 路径（按 canonical path 去重，保序）。"""

    ws = Path(workspace_root).resolve()
    overlays: List[Path] = []

    default_overlay = (ws / "config" / "orchestrator.yaml").resolve()
    if default_overlay.exists():
        overlays.append(default_overlay)

    raw = _get_env_nonempty(CONFIG_PATHS_ENV, env=env) or ""
    candidates = [Path(p) for p in _split_paths(raw)] + [Path(p) for p in extra_paths]
    for p in candidates:
        pp = p.expanduser()
        pp = (ws / pp).resolve() if not pp.is_absolute() else pp.resolve()
        overlays.append(pp)

    seen: set = set()
    uniq: List[Path] = []
    for p in overlays:
        if p in seen:
            continue
        seen.add(p)
        uniq.append(p)
    return uniq


def _record_leaf_sources(value: Any, *, prefix: str, sources: Dict[str, str], label: str) -> None:
    """递归记录 mapping 的叶子字段来源（dotted path → 来源标签）。"""

    if isinstance(value, Mapping):
        for k, v in value.items():
            path = f"{prefix}.{k}" if prefix else str(k)
            _record_leaf_sources(v, prefix=path, sources=sources, label=label)
        return
    sources[prefix] = label


def _deep_merge_with_sources(
    base: Dict[str, Any],
    overlay: Mapping[str, Any],
    *,
    sources: Dict[str, str],
    label: str,
    prefix: str = "",
) -> None:
    """将 overlay 深度合并到 base，并同步写入叶子字段来源。"""

    for key, overlay_value in overlay.items():
        k = str(key)
        path = f"{prefix}.{k}" if prefix else k
        if k in base and isinstance(base[k], dict) and isinstance(overlay_value, Mapping):
            _deep_merge_with_sources(base[k], overlay_value, sources=sources, label=label, prefix=path)
            continue
        base[k] = deepcopy(overlay_value)
        _record_leaf_sources(overlay_value, prefix=path, sources=sources, label=label)


def _load_yaml_mapping(path: Path) -> Dict[str, Any]:
    """
    读取 YAML 文件并确保根节点是 mapping(dict)。

    异常：
    - ValueError：文件不存在或根节点不是 mapping
    """

    if not path.exists():
        raise ValueError(f"overlay config not found: {path}")
    obj = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(obj, dict):
        raise ValueError(f"overlay config root must be a mapping(dict): {path}")
    return obj


@dataclass(frozen=True)
class ResolvedConfig:
    """
    bootstrap 解析后的有效配置（含来源追踪）。

    字段：
    - config：校验后的 OrchestratorConfig
    - overlay_paths：参与合并的 overlay 文件（字符串化）
    - sources：叶子字段来源（`embedded_default` 或 `overlay:<path>`）
    """

    config: OrchestratorConfig
    overlay_paths: List[str]
    sources: Dict[str, str]


def resolve_effective_config(
    *,
    workspace_root: Path,
    config_paths: Sequence[Path] = (),
    env: Optional[Mapping[str, str]] = None,
) -> ResolvedConfig:
    """解析有效配置（embedded default < 默认 overlay < env overlays < 显式 overlays）。"""

    overlay_paths = discover_overlay_paths(workspace_root=workspace_root, env=env, extra_paths=config_paths)
    entries: List[Tuple[str, Dict[str, Any]]] = [("embedded_default", load_default_config_dict())]
    for p in overlay_paths:
        entries.append((f"overlay:{p}", _load_yaml_mapping(p)))

    merged: Dict[str, Any] = {}
    sources: Dict[str, str] = {}
    for label, d in entries:
        _deep_merge_with_sources(merged, d, sources=sources, label=label)

    cfg = load_config_dicts([d for _, d in entries])
    return ResolvedConfig(config=cfg, overlay_paths=[str(p) for p in overlay_paths], sources=sources)


def build_stores(config: OrchestratorConfig, *, workspace_root: Path) -> Tuple[EventStore, SessionStore]:
    """按 `storage.backend` 创建 EventStore 与 SessionStore。"""

    if config.storage.backend == "jsonl":
        root = Path(config.storage.root_dir)
        if not root.is_absolute():
            root = Path(workspace_root).resolve() / root
        return JsonlEventStore(root), FileSessionStore(root)
    return InMemoryEventStore(), InMemorySessionStore()


def build_tool_provider(config: OrchestratorConfig, tool_provider: Optional[ToolProvider] = None) -> ToolProvider:
    """选择 ToolProvider：显式传入优先，其次 `tools.http.base_url`，否则空注册表。"""

    if tool_provider is not None:
        return tool_provider
    http = config.tools.http
    if http.base_url:
        return HttpToolProvider(http.base_url, headers=dict(http.headers), timeout_sec=http.timeout_sec)
    return ToolRegistry()


def build_session_manager(
    config: OrchestratorConfig,
    *,
    reasoner: Reasoner,
    tool_provider: Optional[ToolProvider] = None,
    trust_service: Optional[TrustService] = None,
    summarizer: Optional[Summarizer] = None,
    hooks: Sequence[EventHook] = (),
    workspace_root: Optional[Path] = None,
) -> SessionManager:
    """
    按配置装配 SessionManager。

    参数：
    - reasoner：推理协作方（必填）
    - tool_provider：可选；未提供时见 `build_tool_provider`
    - trust_service：可选；默认使用配置中的 tier 策略
    - summarizer：可选；默认 TranscriptSummarizer
    - hooks：EventLog 可观测性 hooks
    """

    ws = Path(workspace_root) if workspace_root is not None else Path.cwd()
    event_store, session_store = build_stores(config, workspace_root=ws)
    provider = build_tool_provider(config, tool_provider)

    retry_cfg = config.tools.retry
    dispatcher = ToolDispatcher(
        provider,
        max_concurrency=config.tools.max_concurrency,
        call_timeout_sec=config.tools.call_timeout_sec,
        queue_wait_timeout_sec=config.tools.queue_wait_timeout_sec,
        retry=RetryPolicy(
            max_retries=retry_cfg.max_retries,
            base_delay_sec=retry_cfg.base_delay_sec,
            cap_delay_sec=retry_cfg.cap_delay_sec,
            jitter_ratio=retry_cfg.jitter_ratio,
        ),
    )
    event_log = EventLog(
        event_store,
        hooks=hooks,
        subscriber_buffer_events=config.stream.subscriber_buffer_events,
        subscriber_buffer_bytes=config.stream.subscriber_buffer_bytes,
    )
    governance = GovernanceFilter(
        trust_service or TierPolicyService(config.governance.tiers),
        default_tier=config.governance.default_tier,
    )
    assembler = ContextAssembler(
        summarizer or TranscriptSummarizer(per_step_chars=config.context.summary_step_chars),
        keep_last_steps=config.context.keep_last_steps,
    )
    tool_specs = [s.model_dump() for s in provider.list_specs()] if isinstance(provider, ToolRegistry) else []
    settings = SessionSettings(
        max_steps=config.run.max_steps,
        max_wall_time_sec=config.run.max_wall_time_sec,
        cancel_grace_sec=config.run.cancel_grace_sec,
        strict_permissions=config.run.strict_permissions,
        context_budget=config.context.budget_chars,
        tool_specs=tool_specs,
    )
    return SessionManager(
        reasoner=reasoner,
        dispatcher=dispatcher,
        event_log=event_log,
        session_store=session_store,
        governance=governance,
        assembler=assembler,
        settings=settings,
    )


__all__ = [
    "CONFIG_PATHS_ENV",
    "ResolvedConfig",
    "build_session_manager",
    "build_stores",
    "build_tool_provider",
    "discover_overlay_paths",
    "resolve_effective_config",
]
