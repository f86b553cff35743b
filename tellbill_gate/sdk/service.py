"""
Plan gate service wiring.

Assembles state, ledger, synchronizer and gate from a GateConfig.
"""

from dataclasses import dataclass
from typing import Optional

from ..config.loader import GateConfig
from ..core.contracts import SubscriptionSource, TokenProvider
from ..core.gate import FeatureGate
from ..core.ledger import UsageLedger
from ..core.plans import Tier
from ..core.state import SubscriptionState
from ..core.sync import EntitlementSynchronizer
from ..storage.repository import StateRepository
from .backend_client import BackendClient


@dataclass
class PlanGateService:
    """All gating components for one signed-in account."""
    state: SubscriptionState
    ledger: UsageLedger
    synchronizer: EntitlementSynchronizer
    gate: FeatureGate

    async def start(self) -> Tier:
        """App start: restore cached counters and bring entitlements to READY."""
        self.ledger.load_cached()
        return await self.synchronizer.initialize()


def build_service(
    config: GateConfig,
    source: SubscriptionSource,
    token_provider: TokenProvider,
    account_id: str = "local",
    backend: Optional[BackendClient] = None,
    repository: Optional[StateRepository] = None,
) -> PlanGateService:
    """Create a PlanGateService wired to the configured backend and cache.

    Args:
        config: Validated gate configuration
        source: Third-party subscription SDK adapter
        token_provider: Returns the current bearer token or None
        account_id: Key for the local cache
        backend: Optional prebuilt backend client
        repository: Optional prebuilt repository

    Returns:
        PlanGateService (not yet started)
    """
    backend = backend or BackendClient(
        config.backend.base_url,
        timeout=config.backend.timeout_seconds,
    )
    repository = repository or StateRepository(config.storage.db_path)
    state = SubscriptionState()

    ledger = UsageLedger(
        state,
        reporter=backend,
        token_provider=token_provider,
        repository=repository,
        account_id=account_id,
    )
    synchronizer = EntitlementSynchronizer(
        state,
        source=source,
        verifier=backend,
        token_provider=token_provider,
        repository=repository,
        account_id=account_id,
        max_attempts=config.sdk.max_attempts,
        retry_delay=config.sdk.retry_delay_seconds,
    )
    gate = FeatureGate(state, ledger=ledger, token_provider=token_provider)
    return PlanGateService(state=state, ledger=ledger, synchronizer=synchronizer, gate=gate)
