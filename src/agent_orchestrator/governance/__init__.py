"""
Governance：trust tier 解析、capability 检查与限流。
"""

from __future__ import annotations

from agent_orchestrator.governance.filter import GovernanceFilter, agent_capability, tool_capability
from agent_orchestrator.governance.policy import GovernanceDecision, TierPolicy, TierPolicyService, TrustService
from agent_orchestrator.governance.rate_limit import RateLimiter

__all__ = [
    "GovernanceDecision",
    "GovernanceFilter",
    "RateLimiter",
    "TierPolicy",
    "TierPolicyService",
    "TrustService",
    "agent_capability",
    "tool_capability",
]
