"""
Entitlement to tier mapping.

Maps the active entitlement identifiers reported by the subscription SDK
to exactly one tier. Highest tier wins.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, Iterable, Optional

from .plans import Tier

# Known entitlement identifiers. team_plan is the pre-rename enterprise id.
ENTITLEMENT_TIERS = {
    "solo": Tier.SOLO,
    "solo_plan": Tier.SOLO,
    "professional": Tier.PROFESSIONAL,
    "professional_plan": Tier.PROFESSIONAL,
    "enterprise": Tier.ENTERPRISE,
    "enterprise_plan": Tier.ENTERPRISE,
    "team_plan": Tier.ENTERPRISE,
}


@dataclass(frozen=True)
class EntitlementRecord:
    """Subscription state as reported by the third-party SDK."""
    active: FrozenSet[str] = field(default_factory=frozenset)
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    auto_renew: bool = False
    product_id: Optional[str] = None

    def __post_init__(self):
        """Normalize the active set and validate the period."""
        object.__setattr__(self, "active", frozenset(self.active))
        if (self.period_start is not None and self.period_end is not None
                and self.period_start > self.period_end):
            raise ValueError("period_start must be before period_end")

    def is_active(self, now: Optional[datetime] = None) -> bool:
        """True unless the period has ended."""
        if self.period_end is None:
            return True
        return self.period_end > (now or datetime.now())


def tier_for_entitlement(identifier: str) -> Tier:
    """Map one entitlement identifier to a tier; unknown ids are free."""
    if not isinstance(identifier, str):
        return Tier.FREE
    return ENTITLEMENT_TIERS.get(identifier.strip().lower(), Tier.FREE)


def resolve_tier(entitlements: Iterable[str]) -> Tier:
    """Resolve a set of active entitlements to a single tier.

    Pure function of the set: the highest mapped tier wins regardless of
    iteration order, and an empty set is the free tier.
    """
    return max((tier_for_entitlement(e) for e in entitlements), default=Tier.FREE)


def tier_for_product_id(product_id: str) -> Tier:
    """Best-effort tier from a store product id.

    Used only when the SDK reports a purchase without a mapped entitlement.
    """
    normalized = (product_id or "").lower()
    if "enterprise" in normalized or "team" in normalized:
        return Tier.ENTERPRISE
    if "professional" in normalized or "pro" in normalized:
        return Tier.PROFESSIONAL
    return Tier.SOLO


def tier_for_record(record: EntitlementRecord, now: Optional[datetime] = None) -> Tier:
    """Resolve a full entitlement record, honoring its expiry."""
    if not record.is_active(now):
        return Tier.FREE
    if record.active:
        return resolve_tier(record.active)
    if record.product_id:
        return tier_for_product_id(record.product_id)
    return Tier.FREE
