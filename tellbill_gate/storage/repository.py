"""
Repository pattern for data access.

Persists the last-known-good tier and shadow counters for offline reads,
plus an append-only ledger of usage events.
"""

from datetime import datetime
from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import UsageEventRecord, UsageEventSource
from tellbill_gate.core.contracts import UsageCounters
from tellbill_gate.core.plans import Tier, UsageMetric


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the cache tables if they don't exist.

    cached_subscription holds one row per account. usage_event is an
    append-only ledger; no UPDATE or DELETE is ever issued against it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS cached_subscription (
                account_id TEXT PRIMARY KEY,
                tier TEXT,
                voice_recordings_used INTEGER,
                invoices_created INTEGER,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_event (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                account_id TEXT NOT NULL,
                metric TEXT NOT NULL,
                source TEXT NOT NULL,
                voice_recordings_used INTEGER NOT NULL,
                invoices_created INTEGER NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


class StateRepository:
    """Local cache of subscription state.

    Reads return None when nothing has been cached for an account, so
    callers can tell "never synced" apart from "free".
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, initialize: bool = True):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
            initialize: Create the schema if it is missing
        """
        self.db_path = db_path
        if initialize:
            initialize_schema(db_path)

    def save_tier(self, account_id: str, tier: Tier) -> None:
        """Store the last-known-good tier for an account."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO cached_subscription (account_id, tier, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(account_id) DO UPDATE SET
                    tier = excluded.tier,
                    updated_at = excluded.updated_at
            """, (account_id, Tier(tier).label, datetime.now().isoformat()))
            conn.commit()
        finally:
            conn.close()

    def load_tier(self, account_id: str) -> Optional[Tier]:
        """Return the cached tier, or None if none was stored."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT tier FROM cached_subscription WHERE account_id = ?",
                (account_id,)
            ).fetchone()
        finally:
            conn.close()
        if row is None or row[0] is None:
            return None
        return Tier.parse(row[0])

    def save_counters(self, account_id: str, counters: UsageCounters) -> None:
        """Store the shadow counters for an account."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO cached_subscription
                    (account_id, voice_recordings_used, invoices_created, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(account_id) DO UPDATE SET
                    voice_recordings_used = excluded.voice_recordings_used,
                    invoices_created = excluded.invoices_created,
                    updated_at = excluded.updated_at
            """, (
                account_id,
                counters.voice_recordings_used,
                counters.invoices_created,
                datetime.now().isoformat()
            ))
            conn.commit()
        finally:
            conn.close()

    def load_counters(self, account_id: str) -> Optional[UsageCounters]:
        """Return the cached counters, or None if none were stored."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT voice_recordings_used, invoices_created
                FROM cached_subscription WHERE account_id = ?
            """, (account_id,)).fetchone()
        finally:
            conn.close()
        if row is None or row[0] is None:
            return None
        return UsageCounters(voice_recordings_used=row[0], invoices_created=row[1])

    def insert_usage_event(self, event: UsageEventRecord) -> None:
        """Append a usage event to the ledger."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO usage_event
                (timestamp, account_id, metric, source,
                 voice_recordings_used, invoices_created)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                event.timestamp.isoformat(),
                event.account_id,
                event.metric.value,
                event.source.value,
                event.voice_recordings_used,
                event.invoices_created
            ))
            conn.commit()
        finally:
            conn.close()

    def fetch_recent_usage_events(
        self,
        account_id: Optional[str] = None,
        source: Optional[UsageEventSource] = None,
        limit: int = 100
    ) -> List[UsageEventRecord]:
        """Fetch recent usage events, newest first.

        Args:
            account_id: Optional filter for one account
            source: Optional filter for one event source
            limit: Maximum number of events to return

        Returns:
            List of usage events ordered by insertion (newest first)
        """
        conn = get_connection(self.db_path)
        try:
            query = """
                SELECT timestamp, account_id, metric, source,
                       voice_recordings_used, invoices_created
                FROM usage_event
            """
            params = []
            conditions = []

            if account_id:
                conditions.append("account_id = ?")
                params.append(account_id)
            if source is not None:
                conditions.append("source = ?")
                params.append(source.value)

            if conditions:
                query += " WHERE " + " AND ".join(conditions)

            query += " ORDER BY id DESC LIMIT ?"
            params.append(limit)

            cursor = conn.execute(query, params)
            events = []
            for row in cursor.fetchall():
                events.append(UsageEventRecord(
                    timestamp=datetime.fromisoformat(row[0]),
                    account_id=row[1],
                    metric=UsageMetric(row[2]),
                    source=UsageEventSource(row[3]),
                    voice_recordings_used=row[4],
                    invoices_created=row[5]
                ))
            return events
        finally:
            conn.close()


# Global repository instance
_default_repository: Optional[StateRepository] = None


def get_repository(db_path: str = DEFAULT_DB_PATH) -> StateRepository:
    """Get the shared repository instance, creating it on first use.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of StateRepository
    """
    global _default_repository
    if _default_repository is None or _default_repository.db_path != db_path:
        _default_repository = StateRepository(db_path)
    return _default_repository
