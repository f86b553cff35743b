"""
Shared subscription state.

Holds the cached tier and shadow usage counters. The tier is written only
by the entitlement synchronizer and the counters only by the usage ledger;
everything else reads and subscribes.
"""

import logging
from typing import Callable, List

from .contracts import UsageCounters
from .plans import Tier

logger = logging.getLogger(__name__)

Listener = Callable[["SubscriptionState"], None]


class SubscriptionState:
    """Cached tier and usage counters with change notification."""

    def __init__(self, tier: Tier = Tier.FREE, counters: UsageCounters = None):
        self._tier = Tier(tier)
        self._counters = counters or UsageCounters()
        self._listeners: List[Listener] = []

    @property
    def tier(self) -> Tier:
        return self._tier

    @property
    def counters(self) -> UsageCounters:
        return self._counters

    def set_tier(self, tier: Tier) -> bool:
        """Replace the cached tier. Returns True if it changed."""
        tier = Tier(tier)
        if tier == self._tier:
            return False
        logger.info("Tier changed: %s -> %s", self._tier, tier)
        self._tier = tier
        self._notify()
        return True

    def set_counters(self, counters: UsageCounters) -> bool:
        """Replace the shadow counters. Returns True if they changed."""
        if counters == self._counters:
            return False
        self._counters = counters
        self._notify()
        return True

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener and return a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                # A broken subscriber must not block state updates
                logger.exception("Subscription state listener failed")
