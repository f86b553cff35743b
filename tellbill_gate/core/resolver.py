"""
Capability resolution.

Pure lookups against the plan capability table. Unknown capability names
fail closed.
"""

import logging
from typing import List, Union

from .plans import Capability, Tier, UsageMetric, capabilities_for

logger = logging.getLogger(__name__)

CapabilityName = Union[Capability, str]


def _coerce(capability: CapabilityName):
    if isinstance(capability, Capability):
        return capability
    return Capability.parse(capability)


def has_capability(tier: Tier, capability: CapabilityName) -> bool:
    """Check whether a tier includes a capability.

    Args:
        tier: Subscription tier to check
        capability: Capability enum member or its string name

    Returns:
        True if the tier grants the capability. Unknown names return False
        rather than raising, so a typo never grants access.
    """
    resolved = _coerce(capability)
    if resolved is None:
        logger.warning("Unknown capability requested: %r", capability)
        return False
    return resolved in capabilities_for(tier).features


def minimum_tier_for(capability: CapabilityName) -> Tier:
    """Return the lowest tier that grants a capability.

    Scans tiers in ascending order; relies on the table being monotonic.
    If no tier grants it, that is a table misconfiguration: it is logged
    and the highest tier is returned.
    """
    resolved = _coerce(capability)
    if resolved is not None:
        for tier in sorted(Tier):
            if resolved in capabilities_for(tier).features:
                return tier
    logger.error("No tier grants capability %r; defaulting to %s", capability, Tier.ENTERPRISE)
    return Tier.ENTERPRISE


def minimum_tier_for_unlimited(metric: UsageMetric) -> Tier:
    """Return the lowest tier with no limit on a usage metric."""
    for tier in sorted(Tier):
        if capabilities_for(tier).limit_for(metric) is None:
            return tier
    logger.error("No tier has unlimited %s; defaulting to %s", metric.value, Tier.ENTERPRISE)
    return Tier.ENTERPRISE


def upgrade_path(tier: Tier, capability: CapabilityName) -> List[Tier]:
    """Tiers above `tier` that grant a capability, ascending.

    Empty when the current tier already has it or nothing grants it.
    """
    if has_capability(tier, capability):
        return []
    return [t for t in sorted(Tier) if t > tier and has_capability(t, capability)]
