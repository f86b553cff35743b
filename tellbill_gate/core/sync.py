"""
Entitlement synchronization.

Keeps the cached tier in line with the third-party subscription SDK (a
fast hint) and the backend verification endpoint (authoritative).

Ordering: every push event and every backend request takes a new
generation number. A response is applied only if no newer request or event
started while it was in flight, so a straggling answer can never overwrite
a more recent purchase.

Failure policy: nothing here raises to the caller. Errors keep the
last-known-good tier, or the free tier when nothing is cached.
"""

import logging
from enum import Enum
from typing import Iterable, Optional

from tenacity import AsyncRetrying, stop_after_attempt, wait_fixed

from .contracts import BackendUnavailable, PurchaseVerifier, SubscriptionSource, TokenProvider
from .entitlements import resolve_tier
from .plans import Tier

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RETRY_DELAY = 0.5


class SyncState(Enum):
    """Lifecycle of the synchronizer. READY loops on every update."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


class SDKNotReady(Exception):
    """Raised while polling when the subscription SDK is not configured yet."""


class EntitlementSynchronizer:
    """Sole writer of the cached tier on a SubscriptionState."""

    def __init__(
        self,
        state,
        source: SubscriptionSource,
        verifier: Optional[PurchaseVerifier] = None,
        token_provider: Optional[TokenProvider] = None,
        repository=None,
        account_id: str = "local",
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if retry_delay < 0:
            raise ValueError("retry_delay cannot be negative")

        self.state = state
        self.source = source
        self.verifier = verifier
        self.token_provider = token_provider
        self.repository = repository
        self.account_id = account_id
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.sync_state = SyncState.UNINITIALIZED
        self._generation = 0
        self._verified_tier: Optional[Tier] = None

    @property
    def generation(self) -> int:
        return self._generation

    async def initialize(self) -> Tier:
        """Bring the synchronizer to READY.

        Restores the last-known-good tier, then polls the SDK with bounded
        retry. If the SDK never becomes ready the cached tier (or free) is
        kept so the app is never blocked.

        Returns:
            The tier in effect once READY
        """
        self.sync_state = SyncState.INITIALIZING
        self._restore_cached()
        generation = self._next_generation()

        try:
            await self._wait_until_ready()
            entitlements = set(await self.source.get_active_entitlements())
        except Exception as e:
            logger.warning(
                "Subscription SDK unavailable after %d attempts, keeping %s tier: %s",
                self.max_attempts, self.state.tier, e,
            )
            self.sync_state = SyncState.READY
            return self.state.tier

        self.sync_state = SyncState.READY
        if entitlements and self._is_current(generation):
            self._apply(resolve_tier(entitlements))
        return self.state.tier

    def handle_entitlements_changed(self, entitlements: Iterable[str]) -> Tier:
        """Push handler for SDK entitlement changes.

        Purchases, renewals, cancellations and expiries all arrive here.
        Any backend reconciliation still in flight becomes stale, and the
        event supersedes the last backend-verified tier.
        """
        self._next_generation()
        self._verified_tier = None
        return self._apply(resolve_tier(entitlements))

    async def refresh(self) -> Tier:
        """Re-read the SDK and reconcile with the backend (app foreground).

        A polled SDK hint never lowers a tier the backend has verified;
        only the backend itself or an SDK push event can do that.
        """
        if self.sync_state == SyncState.UNINITIALIZED:
            return await self.initialize()

        generation = self._next_generation()
        try:
            entitlements = set(await self.source.get_active_entitlements())
        except Exception as e:
            logger.warning("Could not read SDK entitlements, keeping %s tier: %s", self.state.tier, e)
        else:
            if self._is_current(generation):
                hint = resolve_tier(entitlements)
                if self._verified_tier is not None and hint < self._verified_tier:
                    logger.info("Ignoring SDK hint %s below verified %s tier", hint, self._verified_tier)
                    hint = self._verified_tier
                self._apply(hint)
        return await self.reconcile_with_backend()

    async def on_login(self) -> Tier:
        """Login trigger: same as a refresh, ending with backend verification."""
        return await self.refresh()

    async def reconcile_with_backend(self, receipt: Optional[str] = None) -> Tier:
        """Ask the backend to verify the purchase and adopt its answer.

        The backend overrides whatever the SDK suggested. Skipped when the
        user is not authenticated or there is no receipt to verify.

        Args:
            receipt: Subscription receipt; read from the SDK when omitted

        Returns:
            The tier in effect afterwards
        """
        token = self.token_provider() if self.token_provider else None
        if not token or self.verifier is None:
            logger.debug("Skipping backend verification: not authenticated")
            return self.state.tier

        generation = self._next_generation()
        if receipt is None:
            try:
                receipt = await self.source.get_receipt()
            except Exception as e:
                logger.warning("Could not read subscription receipt: %s", e)
                return self.state.tier
        if not receipt:
            logger.debug("Skipping backend verification: no receipt")
            return self.state.tier

        try:
            result = await self.verifier.verify_purchase(token, receipt)
        except BackendUnavailable as e:
            logger.warning("Purchase verification failed, keeping %s tier: %s", self.state.tier, e)
            return self.state.tier

        if not self._is_current(generation):
            logger.info("Discarding stale verification response (generation %d)", generation)
            return self.state.tier

        tier = result.effective_tier
        if tier != self.state.tier:
            logger.info("Backend verification overrides %s with %s", self.state.tier, tier)
        self._verified_tier = tier
        return self._apply(tier)

    async def _wait_until_ready(self) -> None:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.retry_delay),
            reraise=True,
        ):
            with attempt:
                if not await self.source.is_ready():
                    raise SDKNotReady("Subscription SDK not ready")

    def _restore_cached(self) -> None:
        if self.repository is None:
            return
        try:
            cached = self.repository.load_tier(self.account_id)
        except Exception as e:
            logger.warning("Could not load cached tier: %s", e)
            return
        if cached is not None:
            self.state.set_tier(cached)

    def _apply(self, tier: Tier) -> Tier:
        if self.state.set_tier(tier) and self.repository is not None:
            try:
                self.repository.save_tier(self.account_id, tier)
            except Exception as e:
                logger.warning("Could not persist tier %s: %s", tier, e)
        return self.state.tier

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation
