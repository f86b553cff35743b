"""
TellBill backend client.

Thin async client for the usage and billing verification endpoints.
Every failure to get a usable answer surfaces as BackendUnavailable so
callers have exactly one error to degrade on.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from ..core.contracts import (
    BackendUnavailable,
    LimitReached,
    UsageCounters,
    UsageReport,
    VerificationResult,
)
from ..core.plans import Tier, UsageMetric

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0

# Action names the usage endpoint expects
ACTION_TYPES = {
    UsageMetric.VOICE_RECORDINGS: "voice_recording",
    UsageMetric.INVOICES: "invoice_generation",
}


def _parse_plan(value: Any) -> Optional[Tier]:
    if value is None:
        return None
    try:
        return Tier.parse(value)
    except ValueError:
        logger.warning("Backend returned unknown plan %r", value)
        return None


def parse_usage_report(data: Dict[str, Any]) -> UsageReport:
    """Build a UsageReport from an increment-usage response body.

    Raises:
        ValueError: If the counters are missing or not integers
    """
    if not isinstance(data, dict):
        raise ValueError("Usage response must be a JSON object")
    try:
        voice = int(data["voiceRecordingsUsed"])
        invoices = int(data.get("invoicesCreated") or 0)
    except (KeyError, TypeError, ValueError):
        raise ValueError("Usage response missing usage counters")

    remaining = data.get("remainingUses", data.get("remaining_uses"))
    return UsageReport(
        counters=UsageCounters(voice_recordings_used=voice, invoices_created=invoices),
        plan=_parse_plan(data.get("plan")),
        remaining_uses=int(remaining) if remaining is not None else None,
    )


def _limit_reached(response: httpx.Response) -> LimitReached:
    """Build the refusal for a 429, whatever its body looks like."""
    try:
        data = response.json()
    except ValueError:
        logger.warning("Limit response body is not JSON; denying without counters")
        return LimitReached("Usage limit reached")

    try:
        return LimitReached("Usage limit reached", parse_usage_report(data))
    except ValueError:
        logger.warning("Limit response has no usage counters; denying without counters")
    plan = _parse_plan(data.get("plan")) if isinstance(data, dict) else None
    return LimitReached("Usage limit reached", plan=plan)


class BackendClient:
    """Client for the TellBill backend API.

    Satisfies both the UsageReporter and PurchaseVerifier contracts.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the backend client.

        Args:
            base_url: API root, e.g. "https://api.tellbill.app"
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (used to stub the network)

        Raises:
            ValueError: If base_url is empty
        """
        if not base_url or not base_url.strip():
            raise ValueError("base_url is required and cannot be empty")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def _post(self, path: str, token: str, payload: Dict[str, Any]) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                return await client.post(f"{self.base_url}{path}", json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise BackendUnavailable(f"Timed out calling {path}") from e
        except httpx.HTTPError as e:
            raise BackendUnavailable(f"Could not reach {path}: {e}") from e

    async def increment_usage(
        self, token: str, metric: UsageMetric, minutes_saved: int = 0
    ) -> UsageReport:
        """Report one completed action.

        Returns:
            Authoritative counters after the increment

        Raises:
            LimitReached: On HTTP 429, with the counters from the body
                when it carries them
            BackendUnavailable: On any other failure
        """
        payload = {"actionType": ACTION_TYPES[metric], "minutesSaved": minutes_saved or 0}
        response = await self._post("/usage/increment", token, payload)

        if response.status_code == 429:
            raise _limit_reached(response)

        if not response.is_success:
            raise BackendUnavailable(f"Usage endpoint returned {response.status_code}")

        try:
            return parse_usage_report(response.json())
        except ValueError as e:
            raise BackendUnavailable(f"Malformed usage response: {e}") from e

    async def verify_purchase(self, token: str, receipt: str) -> VerificationResult:
        """Ask the backend to verify a subscription receipt.

        Raises:
            BackendUnavailable: On transport errors, non-2xx answers or
                a body without a known plan
        """
        response = await self._post("/billing/verify", token, {"subscriptionReceipt": receipt})
        if not response.is_success:
            raise BackendUnavailable(f"Verification endpoint returned {response.status_code}")

        try:
            data = response.json()
            plan = Tier.parse(data["plan"])
            status = str(data.get("status") or "inactive")
        except (KeyError, TypeError, ValueError) as e:
            raise BackendUnavailable(f"Malformed verification response: {e}") from e
        return VerificationResult(plan=plan, status=status)
