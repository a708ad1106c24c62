"""
TrustService：按 trust tier 判定 capability 是否允许（治理协作方）。

默认实现 `TierPolicyService` 从配置读取各 tier 的 allow/deny 模式（fnmatch）：
- deny 命中 → 拒绝（deny 优先）
- allow 命中 → 允许
- 都不命中 → 拒绝
- 未知 tier → 拒绝

capability 命名：`agent:<agent_id>`、`tool:<tool_name>`。
"""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from agent_orchestrator.core.contracts import RateLimits, TrustContext


@dataclass(frozen=True)
class GovernanceDecision:
    """
    治理决策。

    字段：
    - allowed：是否允许
    - reason：决策原因（面向审计）
    - retry_after_ms：可选；拒绝时建议的重试等待
    - matched_rule：可选；命中的规则
    """

    allowed: bool
    reason: str = ""
    retry_after_ms: Optional[int] = None
    matched_rule: Optional[str] = None


@runtime_checkable
class TrustService(Protocol):
    """治理协作方协议。"""

    def check(self, trust_tier: str, capability: str) -> GovernanceDecision:
        """判定 `trust_tier` 是否可使用 `capability`。"""

        ...


class TierPolicy(BaseModel):
    """
    单个 trust tier 的策略。

    字段：
    - allow/deny：capability 模式（fnmatch）；deny 优先
    - allowed_capabilities：写入 TrustContext 的本地白名单（为空表示完全交给 TrustService）
    - rate_limits：会话级 tool call 限流
    """

    model_config = ConfigDict(extra="forbid")

    allow: List[str] = Field(default_factory=lambda: ["*"])
    deny: List[str] = Field(default_factory=list)
    allowed_capabilities: List[str] = Field(default_factory=list)
    rate_limits: RateLimits = Field(default_factory=RateLimits)


def _first_match(patterns: List[str], capability: str) -> Optional[str]:
    """返回第一个命中的模式（未命中返回 None）。"""

    for pat in patterns:
        if fnmatch.fnmatchcase(capability, pat):
            return pat
    return None


class TierPolicyService:
    """
    基于配置的 TrustService。

    参数：
    - tiers：tier 名 → TierPolicy
    """

    def __init__(self, tiers: Dict[str, TierPolicy]) -> None:
        """创建服务。"""

        self.tiers: Dict[str, TierPolicy] = dict(tiers)

    def check(self, trust_tier: str, capability: str) -> GovernanceDecision:
        """按 deny → allow 顺序判定。"""

        policy = self.tiers.get(trust_tier)
        if policy is None:
            return GovernanceDecision(allowed=False, reason=f"unknown trust tier: {trust_tier}")
        hit = _first_match(policy.deny, capability)
        if hit is not None:
            return GovernanceDecision(allowed=False, reason=f"{capability} denied for tier {trust_tier}", matched_rule=hit)
        hit = _first_match(policy.allow, capability)
        if hit is not None:
            return GovernanceDecision(allowed=True, reason="allowed", matched_rule=hit)
        return GovernanceDecision(allowed=False, reason=f"{capability} not allowed for tier {trust_tier}")

    def trust_context(self, trust_tier: str) -> Optional[TrustContext]:
        """返回 tier 对应的 TrustContext（未知 tier 返回 None）。"""

        policy = self.tiers.get(trust_tier)
        if policy is None:
            return None
        return TrustContext(
            trust_tier=trust_tier,
            allowed_capabilities=list(policy.allowed_capabilities),
            rate_limits=policy.rate_limits,
        )


__all__ = ["GovernanceDecision", "TierPolicy", "TierPolicyService", "TrustService"]
