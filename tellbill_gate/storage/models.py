"""
Data models for storage layer.

Defines the records kept in the local subscription cache.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from tellbill_gate.core.plans import UsageMetric


class UsageEventSource(Enum):
    """Where the counters recorded with a usage event came from."""
    CONFIRMED = "confirmed"    # Server accepted and returned counters
    OPTIMISTIC = "optimistic"  # Server unreachable, local increment
    DENIED = "denied"          # Server refused: limit reached


@dataclass(frozen=True)
class UsageEventRecord:
    """Immutable record of one usage action and the counters after it.

    Append-only: rows are never updated or deleted.
    """
    timestamp: datetime
    account_id: str
    metric: UsageMetric
    source: UsageEventSource
    voice_recordings_used: int
    invoices_created: int
