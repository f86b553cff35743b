"""
Plan capability table.

Single static source of truth for what each subscription tier includes.
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Dict, FrozenSet, Optional


class Tier(IntEnum):
    """Subscription tiers, totally ordered from cheapest to most expensive."""
    FREE = 0
    SOLO = 1
    PROFESSIONAL = 2
    ENTERPRISE = 3

    @property
    def label(self) -> str:
        """Lowercase wire/display label ("free", "solo", ...)."""
        return self.name.lower()

    def __str__(self) -> str:
        return self.label

    @classmethod
    def parse(cls, value: str) -> "Tier":
        """Parse a tier label.

        Accepts the four labels case-insensitively and the legacy "none"
        label, which older clients used for the free tier.

        Raises:
            ValueError: If the label is not a known tier
        """
        if not isinstance(value, str):
            raise ValueError(f"Tier label must be a string, got {type(value).__name__}")
        normalized = value.strip().lower()
        if normalized == "none":
            return cls.FREE
        for tier in cls:
            if tier.label == normalized:
                return tier
        raise ValueError(f"Unknown tier: {value}")


class Capability(Enum):
    """Closed set of capability identifiers gated by tier."""
    VOICE_RECORDING = "voice_recording"
    INVOICE_CREATION = "invoice_creation"
    EMAIL_INVOICE_DELIVERY = "email_invoice_delivery"
    PROJECT_MANAGEMENT = "project_management"
    RECEIPT_SCANNING = "receipt_scanning"
    PAYMENT_TRACKING = "payment_tracking"
    SCOPE_PROOF = "scope_proof"
    CLIENT_APPROVALS = "client_approvals"
    PHOTO_PROOF = "photo_proof"
    APPROVAL_REMINDERS = "approval_reminders"
    ADVANCED_ANALYTICS = "advanced_analytics"
    API_ACCESS = "api_access"
    CUSTOM_BRANDING = "custom_branding"
    DEDICATED_SUPPORT = "dedicated_support"
    TEAM_MANAGEMENT = "team_management"

    @classmethod
    def parse(cls, name: str) -> Optional["Capability"]:
        """Return the capability for a name, or None if it is not known."""
        if not isinstance(name, str):
            return None
        try:
            return cls(name.strip().lower())
        except ValueError:
            return None


class UsageMetric(Enum):
    """Counters tracked by the usage ledger."""
    VOICE_RECORDINGS = "voice_recordings"
    INVOICES = "invoices"


# Capabilities whose use consumes a metric
USAGE_LIMITED_CAPABILITIES: Dict[Capability, UsageMetric] = {
    Capability.VOICE_RECORDING: UsageMetric.VOICE_RECORDINGS,
    Capability.INVOICE_CREATION: UsageMetric.INVOICES,
}

# Free tier is capped per metric, lifetime
FREE_TIER_LIMIT = 3


@dataclass(frozen=True)
class CapabilityMatrix:
    """Limits and feature flags for one tier.

    Numeric limits are non-negative integers; None means unlimited.
    """
    voice_recordings_allowed: Optional[int]
    invoices_allowed: Optional[int]
    projects_allowed: Optional[int]
    features: FrozenSet[Capability]

    def __post_init__(self):
        """Validate limits are non-negative."""
        for name in ("voice_recordings_allowed", "invoices_allowed", "projects_allowed"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} cannot be negative")

    def limit_for(self, metric: UsageMetric) -> Optional[int]:
        """Numeric limit for a ledger metric (None = unlimited)."""
        if metric == UsageMetric.VOICE_RECORDINGS:
            return self.voice_recordings_allowed
        return self.invoices_allowed

    def flags(self) -> Dict[str, bool]:
        """Boolean flag record keyed by capability name."""
        return {cap.value: cap in self.features for cap in Capability}


_FREE_FEATURES = frozenset({
    Capability.VOICE_RECORDING,
    Capability.INVOICE_CREATION,
    Capability.EMAIL_INVOICE_DELIVERY,
})

_SOLO_FEATURES = _FREE_FEATURES | {
    Capability.PROJECT_MANAGEMENT,
    Capability.RECEIPT_SCANNING,
    Capability.PAYMENT_TRACKING,
}

_PROFESSIONAL_FEATURES = _SOLO_FEATURES | {
    Capability.SCOPE_PROOF,
    Capability.CLIENT_APPROVALS,
    Capability.PHOTO_PROOF,
    Capability.APPROVAL_REMINDERS,
}

_ENTERPRISE_FEATURES = _PROFESSIONAL_FEATURES | {
    Capability.ADVANCED_ANALYTICS,
    Capability.API_ACCESS,
    Capability.CUSTOM_BRANDING,
    Capability.DEDICATED_SUPPORT,
    Capability.TEAM_MANAGEMENT,
}

# Fixed capability table - new features are added here and only here
CAPABILITY_TABLE: Dict[Tier, CapabilityMatrix] = {
    Tier.FREE: CapabilityMatrix(
        voice_recordings_allowed=FREE_TIER_LIMIT,
        invoices_allowed=FREE_TIER_LIMIT,
        projects_allowed=0,
        features=_FREE_FEATURES,
    ),
    Tier.SOLO: CapabilityMatrix(
        voice_recordings_allowed=None,
        invoices_allowed=None,
        projects_allowed=None,
        features=frozenset(_SOLO_FEATURES),
    ),
    Tier.PROFESSIONAL: CapabilityMatrix(
        voice_recordings_allowed=None,
        invoices_allowed=None,
        projects_allowed=None,
        features=frozenset(_PROFESSIONAL_FEATURES),
    ),
    Tier.ENTERPRISE: CapabilityMatrix(
        voice_recordings_allowed=None,
        invoices_allowed=None,
        projects_allowed=None,
        features=frozenset(_ENTERPRISE_FEATURES),
    ),
}


def _limit_not_lower(higher: Optional[int], lower: Optional[int]) -> bool:
    if higher is None:
        return True
    if lower is None:
        return False
    return higher >= lower


def validate_capability_table(table: Dict[Tier, CapabilityMatrix]) -> None:
    """Check a capability table covers every tier and is monotonic.

    Every feature granted at a tier must be granted at every higher tier,
    and numeric limits must never decrease (unlimited is the maximum).

    Args:
        table: Mapping of tier to capability matrix

    Raises:
        ValueError: If a tier is missing or monotonicity is violated
    """
    missing = [tier.label for tier in Tier if tier not in table]
    if missing:
        raise ValueError(f"Capability table missing tiers: {missing}")

    tiers = sorted(Tier)
    for lower, higher in zip(tiers, tiers[1:]):
        lost = table[lower].features - table[higher].features
        if lost:
            names = sorted(cap.value for cap in lost)
            raise ValueError(f"{higher.label} drops features granted at {lower.label}: {names}")
        for name in ("voice_recordings_allowed", "invoices_allowed", "projects_allowed"):
            if not _limit_not_lower(getattr(table[higher], name), getattr(table[lower], name)):
                raise ValueError(f"{name} decreases from {lower.label} to {higher.label}")


validate_capability_table(CAPABILITY_TABLE)


def capabilities_for(tier: Tier) -> CapabilityMatrix:
    """Return the capability matrix for a tier.

    Total over the Tier enum; the same immutable object is returned on
    every call.
    """
    return CAPABILITY_TABLE[Tier(tier)]
