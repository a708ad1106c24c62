"""
Governance Filter：在会话创建与每次 tool call 前执行 trust tier / capability 检查。

说明：
- TrustContext 在会话创建时解析，生命周期内不可变；
- `allowed_capabilities` 非空时先做本地白名单检查，命中后再交给 TrustService；
- TrustService 抛出的异常不在此吞掉（由上层按 internal_error 处理）。
"""

from __future__ import annotations

import fnmatch
import logging
from typing import Optional

from agent_orchestrator.core.contracts import TrustContext
from agent_orchestrator.core.errors import PermissionDenied
from agent_orchestrator.governance.policy import GovernanceDecision, TrustService
from agent_orchestrator.governance.rate_limit import RateLimiter

logger = logging.getLogger(__name__)


def agent_capability(agent_id: str) -> str:
    """会话创建使用的 capability。"""

    return f"agent:{agent_id}"


def tool_capability(tool_name: str) -> str:
    """tool call 使用的 capability。"""

    return f"tool:{tool_name}"


class GovernanceFilter:
    """
    Governance Filter。

    参数：
    - trust_service：TrustService 协作方
    - default_tier：请求未指定 trust tier 时使用
    """

    def __init__(self, trust_service: TrustService, *, default_tier: str = "default") -> None:
        """创建 filter。"""

        self._trust = trust_service
        self.default_tier = str(default_tier)

    def resolve_trust_context(self, trust_tier: Optional[str] = None) -> TrustContext:
        """
        解析 TrustContext。

        说明：
        - TrustService 提供 `trust_context(tier)` 时使用其结果；
        - 否则返回只含 tier 的默认 TrustContext（全部决策交给 TrustService）。

        异常：
        - PermissionDenied：TrustService 不认识该 tier
        """

        tier = str(trust_tier or self.default_tier)
        resolver = getattr(self._trust, "trust_context", None)
        if callable(resolver):
            ctx = resolver(tier)
            if ctx is None:
                raise PermissionDenied(f"unknown trust tier: {tier}", details={"trust_tier": tier})
            return ctx
        return TrustContext(trust_tier=tier)

    def check(self, trust_context: TrustContext, capability: str) -> GovernanceDecision:
        """判定 capability 是否允许。"""

        allowed = trust_context.allowed_capabilities
        if allowed and not any(fnmatch.fnmatchcase(capability, pat) for pat in allowed):
            decision = GovernanceDecision(
                allowed=False, reason=f"{capability} is not in the session's allowed capabilities"
            )
        else:
            decision = self._trust.check(trust_context.trust_tier, capability)
            if isinstance(decision, bool):
                decision = GovernanceDecision(allowed=decision, reason="allowed" if decision else "denied")
        if not decision.allowed:
            logger.info("Governance denied %s for tier %s: %s", capability, trust_context.trust_tier, decision.reason)
        return decision

    def enforce(self, trust_context: TrustContext, capability: str) -> None:
        """检查并在拒绝时抛出 `PermissionDenied`。"""

        decision = self.check(trust_context, capability)
        if not decision.allowed:
            raise PermissionDenied(
                decision.reason or "permission denied",
                retry_after_ms=decision.retry_after_ms,
                details={"capability": capability, "trust_tier": trust_context.trust_tier},
            )

    @staticmethod
    def rate_limiter_for(trust_context: TrustContext) -> Optional[RateLimiter]:
        """为会话创建限流器（未配置限流返回 None）。"""

        limits = trust_context.rate_limits
        if limits.tool_calls_per_minute is None:
            return None
        return RateLimiter(limits.tool_calls_per_minute, burst=limits.burst)


__all__ = ["GovernanceFilter", "agent_capability", "tool_capability"]
