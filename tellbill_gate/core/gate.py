"""
Feature gate.

Single decision point for "can the current user do X right now".

Check Order:
1. Capability - is the feature in the user's plan at all
2. Usage limit - for counted actions, is there quota left
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .contracts import TokenProvider
from .ledger import check_limit
from .plans import USAGE_LIMITED_CAPABILITIES, Capability, Tier
from .resolver import CapabilityName, has_capability, minimum_tier_for, minimum_tier_for_unlimited

logger = logging.getLogger(__name__)


class DenialReason(Enum):
    """Why an action was denied."""
    FREE_LIMIT_REACHED = "free_limit_reached"
    FEATURE_NOT_IN_PLAN = "feature_not_in_plan"
    UNKNOWN_CAPABILITY = "unknown_capability"


@dataclass(frozen=True)
class AccessDecision:
    """Outcome of every gating check.

    remaining_usage is only meaningful for counted actions; None means
    unlimited (or not applicable).
    """
    allowed: bool
    reason: Optional[DenialReason] = None
    required_tier: Optional[Tier] = None
    remaining_usage: Optional[int] = None

    def __post_init__(self):
        """Reject inconsistently populated decisions."""
        if self.allowed and (self.reason is not None or self.required_tier is not None):
            raise ValueError("allowed decisions cannot carry a reason or required tier")
        if not self.allowed and self.reason is None:
            raise ValueError("denied decisions must carry a reason")
        if self.remaining_usage is not None and self.remaining_usage < 0:
            raise ValueError("remaining_usage cannot be negative")

    @property
    def message(self) -> str:
        """User-facing explanation, empty when allowed."""
        if self.allowed:
            return ""
        plan = self.required_tier.label.capitalize() if self.required_tier is not None else "a paid"
        if self.reason == DenialReason.FREE_LIMIT_REACHED:
            return f"You've used all your free uses. Upgrade to {plan} for unlimited access."
        if self.reason == DenialReason.FEATURE_NOT_IN_PLAN:
            return f"This feature requires the {plan} plan or higher."
        return "This feature is not available."


class AccessDenied(Exception):
    """Raised by FeatureGate.require when an action is denied."""
    def __init__(self, decision: AccessDecision):
        super().__init__(decision.message)
        self.decision = decision


class FeatureGate:
    """Combines capability resolution and usage limits behind one call.

    Queries are synchronous and read only the cached state, so they can be
    made on every render.
    """

    def __init__(self, state, ledger=None, token_provider: Optional[TokenProvider] = None):
        self.state = state
        self.ledger = ledger
        self.token_provider = token_provider

    @property
    def effective_tier(self) -> Tier:
        """Cached tier, or free when the user is not authenticated."""
        if self.token_provider is not None and not self.token_provider():
            return Tier.FREE
        return self.state.tier

    def can_perform(self, action: CapabilityName) -> AccessDecision:
        """Decide whether the current user may perform an action.

        Args:
            action: Capability enum member or its string name

        Returns:
            AccessDecision; business denials are returned, never raised
        """
        tier = self.effective_tier
        capability = action if isinstance(action, Capability) else Capability.parse(action)

        if capability is None:
            logger.warning("Gate check for unknown capability %r denied", action)
            return AccessDecision(
                allowed=False,
                reason=DenialReason.UNKNOWN_CAPABILITY,
                required_tier=minimum_tier_for(action),
            )

        if not has_capability(tier, capability):
            return AccessDecision(
                allowed=False,
                reason=DenialReason.FEATURE_NOT_IN_PLAN,
                required_tier=minimum_tier_for(capability),
            )

        metric = USAGE_LIMITED_CAPABILITIES.get(capability)
        if metric is None:
            return AccessDecision(allowed=True)

        usage = self.state.counters.get(metric)
        limit = check_limit(tier, metric, usage)
        if not limit.allowed:
            return AccessDecision(
                allowed=False,
                reason=DenialReason.FREE_LIMIT_REACHED,
                required_tier=minimum_tier_for_unlimited(metric),
                remaining_usage=0,
            )
        return AccessDecision(allowed=True, remaining_usage=limit.remaining)

    async def perform(self, action: CapabilityName, minutes_saved: int = 0) -> AccessDecision:
        """Check an action and, for counted actions, record its usage.

        The server has the last word: if it reports the limit reached the
        action is denied even when the local check passed.
        """
        decision = self.can_perform(action)
        if not decision.allowed:
            return decision

        capability = action if isinstance(action, Capability) else Capability.parse(action)
        metric = USAGE_LIMITED_CAPABILITIES.get(capability)
        if metric is None or self.ledger is None:
            return decision

        outcome = await self.ledger.record_usage(metric, minutes_saved)
        if not outcome.accepted:
            return AccessDecision(
                allowed=False,
                reason=DenialReason.FREE_LIMIT_REACHED,
                required_tier=minimum_tier_for_unlimited(metric),
                remaining_usage=0,
            )
        return AccessDecision(allowed=True, remaining_usage=outcome.remaining)

    def require(self, action: CapabilityName) -> AccessDecision:
        """Like can_perform, but raise AccessDenied when denied.

        Raises:
            AccessDenied: If the action is not permitted
        """
        decision = self.can_perform(action)
        if not decision.allowed:
            raise AccessDenied(decision)
        return decision
