"""
Usage ledger.

Tracks consumption against free-tier limits and reconciles the local
shadow counters with the authoritative server.

Reconciliation policy:
1. Server answer available - replace the shadow entirely (server wins)
2. Server says limit reached - replace the shadow, deny the action
3. Server unreachable or no credential - add one optimistic pending
   increment and let the user continue
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from .contracts import (
    BackendUnavailable,
    LimitReached,
    TokenProvider,
    UsageCounters,
    UsageReport,
    UsageReporter,
)
from .plans import Tier, UsageMetric, capabilities_for
from tellbill_gate.storage.models import UsageEventRecord, UsageEventSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LimitCheck:
    """Result of a limit check. remaining is None when unlimited."""
    allowed: bool
    remaining: Optional[int]


@dataclass(frozen=True)
class UsageOutcome:
    """Result of recording one usage action."""
    counters: UsageCounters
    accepted: bool
    confirmed: bool
    remaining: Optional[int] = None
    plan: Optional[Tier] = None


def check_limit(tier: Tier, metric: UsageMetric, current_usage: int) -> LimitCheck:
    """Check current usage of a metric against the tier's limit.

    Args:
        tier: Subscription tier
        metric: Counted metric
        current_usage: Units already consumed

    Returns:
        LimitCheck; unlimited tiers are always allowed with remaining None,
        limited tiers allow while usage < limit and never report a negative
        remaining count.
    """
    limit = capabilities_for(tier).limit_for(metric)
    if limit is None:
        return LimitCheck(allowed=True, remaining=None)
    usage = max(0, int(current_usage))
    return LimitCheck(allowed=usage < limit, remaining=max(0, limit - usage))


class UsageLedger:
    """Owns the shadow usage counters on a SubscriptionState.

    The shadow is kept in two phases: the last server-confirmed counters
    and the optimistic increments made since then. Only the ledger writes
    the state's counters.
    """

    def __init__(
        self,
        state,
        reporter: Optional[UsageReporter],
        token_provider: TokenProvider,
        repository=None,
        account_id: str = "local",
    ):
        self.state = state
        self.reporter = reporter
        self.token_provider = token_provider
        self.repository = repository
        self.account_id = account_id
        self._confirmed = state.counters
        self._pending: Dict[UsageMetric, int] = {}

    @property
    def confirmed(self) -> UsageCounters:
        """Counters as last confirmed by the server (or cache)."""
        return self._confirmed

    @property
    def pending(self) -> Dict[UsageMetric, int]:
        """Optimistic increments not yet confirmed by the server."""
        return dict(self._pending)

    @property
    def shadow(self) -> UsageCounters:
        counters = self._confirmed
        for metric, amount in self._pending.items():
            counters = counters.incremented(metric, amount)
        return counters

    def check(self, tier: Tier, metric: UsageMetric) -> LimitCheck:
        """Check a metric against the current shadow counters."""
        return check_limit(tier, metric, self.shadow.get(metric))

    def load_cached(self) -> UsageCounters:
        """Restore the shadow from local storage, if anything is cached."""
        if self.repository is not None:
            try:
                cached = self.repository.load_counters(self.account_id)
            except Exception as e:
                logger.warning("Could not load cached counters: %s", e)
                return self.shadow
            if cached is not None:
                self._confirmed = cached
                self._pending = {}
                self.state.set_counters(self.shadow)
        return self.shadow

    def hydrate(self, counters: UsageCounters) -> UsageCounters:
        """Accept server counters fetched outside record_usage (login)."""
        self._confirm(counters)
        return self.shadow

    async def record_usage(self, metric: UsageMetric, minutes_saved: int = 0) -> UsageOutcome:
        """Record one completed action.

        Never raises for expected conditions: a limit-reached answer is
        returned with accepted=False, any failure to reach the server
        degrades to an optimistic local increment, and cache write errors
        are logged.

        Args:
            metric: Metric consumed by the action
            minutes_saved: Time saved, forwarded to the server for analytics

        Returns:
            UsageOutcome with the updated shadow counters
        """
        token = self.token_provider() if self.token_provider else None
        if not token or self.reporter is None:
            logger.info("No credential available; recording %s locally", metric.value)
            return self._record_optimistic(metric)

        try:
            report = await self.reporter.increment_usage(token, metric, minutes_saved)
        except LimitReached as e:
            logger.info("Server reports %s limit reached", metric.value)
            if e.report is not None:
                self._confirm(e.report.counters, metric, UsageEventSource.DENIED)
            else:
                self._publish(metric, UsageEventSource.DENIED)
            return UsageOutcome(
                counters=self.shadow,
                accepted=False,
                confirmed=e.report is not None,
                remaining=0,
                plan=e.plan,
            )
        except BackendUnavailable as e:
            logger.warning("Usage report failed, recording %s optimistically: %s", metric.value, e)
            return self._record_optimistic(metric)

        self._confirm(report.counters, metric, UsageEventSource.CONFIRMED)
        return UsageOutcome(
            counters=self.shadow,
            accepted=True,
            confirmed=True,
            remaining=self._remaining(report, metric),
            plan=report.plan,
        )

    def _remaining(self, report: UsageReport, metric: UsageMetric) -> Optional[int]:
        if report.remaining_uses is not None:
            return max(0, report.remaining_uses)
        tier = report.plan if report.plan is not None else self.state.tier
        return check_limit(tier, metric, report.counters.get(metric)).remaining

    def _record_optimistic(self, metric: UsageMetric) -> UsageOutcome:
        self._pending[metric] = self._pending.get(metric, 0) + 1
        shadow = self.shadow
        self._publish(metric, UsageEventSource.OPTIMISTIC)
        return UsageOutcome(
            counters=shadow,
            accepted=True,
            confirmed=False,
            remaining=check_limit(self.state.tier, metric, shadow.get(metric)).remaining,
        )

    def _confirm(
        self,
        counters: UsageCounters,
        metric: Optional[UsageMetric] = None,
        source: Optional[UsageEventSource] = None,
    ) -> None:
        self._confirmed = counters
        self._pending = {}
        self._publish(metric, source)

    def _publish(self, metric: Optional[UsageMetric], source: Optional[UsageEventSource]) -> None:
        shadow = self.shadow
        self.state.set_counters(shadow)
        if self.repository is None:
            return
        try:
            self.repository.save_counters(self.account_id, shadow)
            if metric is not None and source is not None:
                self.repository.insert_usage_event(UsageEventRecord(
                    timestamp=datetime.now(),
                    account_id=self.account_id,
                    metric=metric,
                    source=source,
                    voice_recordings_used=shadow.voice_recordings_used,
                    invoices_created=shadow.invoices_created,
                ))
        except Exception as e:
            logger.warning("Could not persist usage counters: %s", e)
