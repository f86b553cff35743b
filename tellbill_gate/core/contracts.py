"""
Contracts between the gating core and its collaborators.

Value types exchanged with the backend, the exceptions its clients raise,
and the protocols the ledger and synchronizer depend on.
"""

from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Set, runtime_checkable

from .plans import Tier, UsageMetric

# Supplies the bearer credential; None means not authenticated
TokenProvider = Callable[[], Optional[str]]


@dataclass(frozen=True)
class UsageCounters:
    """Per-user usage counters. Negative values are clamped to zero."""
    voice_recordings_used: int = 0
    invoices_created: int = 0

    def __post_init__(self):
        object.__setattr__(self, "voice_recordings_used", max(0, int(self.voice_recordings_used)))
        object.__setattr__(self, "invoices_created", max(0, int(self.invoices_created)))

    def get(self, metric: UsageMetric) -> int:
        if metric == UsageMetric.VOICE_RECORDINGS:
            return self.voice_recordings_used
        return self.invoices_created

    def incremented(self, metric: UsageMetric, amount: int = 1) -> "UsageCounters":
        """Return a copy with one metric increased by `amount`."""
        if metric == UsageMetric.VOICE_RECORDINGS:
            return UsageCounters(self.voice_recordings_used + amount, self.invoices_created)
        return UsageCounters(self.voice_recordings_used, self.invoices_created + amount)


@dataclass(frozen=True)
class UsageReport:
    """Authoritative counters returned by the usage endpoint."""
    counters: UsageCounters
    plan: Optional[Tier] = None
    remaining_uses: Optional[int] = None


@dataclass(frozen=True)
class VerificationResult:
    """Backend verdict on a subscription receipt."""
    plan: Tier
    status: str

    @property
    def effective_tier(self) -> Tier:
        """Tier to apply; anything but an active subscription is free."""
        if self.status.lower() in ("active", "trialing"):
            return self.plan
        return Tier.FREE


class BackendUnavailable(Exception):
    """Raised when the backend cannot give an answer (network, 5xx, bad body)."""


class LimitReached(Exception):
    """Raised when the usage endpoint answers 429.

    Carries the authoritative counters so callers can still sync them.
    report is None when the body had no usable counters; the refusal
    still stands.
    """
    def __init__(
        self,
        message: str,
        report: Optional[UsageReport] = None,
        plan: Optional[Tier] = None,
    ):
        super().__init__(message)
        self.report = report
        self.plan = plan if plan is not None or report is None else report.plan


@runtime_checkable
class UsageReporter(Protocol):
    """Reports completed actions to the authoritative usage API."""

    async def increment_usage(
        self, token: str, metric: UsageMetric, minutes_saved: int = 0
    ) -> UsageReport:
        ...


@runtime_checkable
class PurchaseVerifier(Protocol):
    """Verifies subscription receipts server-side."""

    async def verify_purchase(self, token: str, receipt: str) -> VerificationResult:
        ...


@runtime_checkable
class SubscriptionSource(Protocol):
    """Third-party subscription SDK. Its answers are hints, never authority."""

    async def is_ready(self) -> bool:
        ...

    async def get_active_entitlements(self) -> Set[str]:
        ...

    async def get_receipt(self) -> Optional[str]:
        ...
