"""
Unit tests for storage layer.

Tests schema creation, the subscription cache and the usage event ledger.
"""

import os
import tempfile
from datetime import datetime

from tellbill_gate.core.contracts import UsageCounters
from tellbill_gate.core.plans import Tier, UsageMetric
from tellbill_gate.storage.db import get_connection
from tellbill_gate.storage.models import UsageEventRecord, UsageEventSource
from tellbill_gate.storage.repository import (
    StateRepository,
    get_repository,
    initialize_schema,
)


def make_event(minute=0, account_id="acct-1", metric=UsageMetric.INVOICES,
               source=UsageEventSource.CONFIRMED, voice=0, invoices=1):
    return UsageEventRecord(
        timestamp=datetime(2026, 1, 1, 12, minute, 0),
        account_id=account_id,
        metric=metric,
        source=source,
        voice_recordings_used=voice,
        invoices_created=invoices,
    )


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify both tables are created with the expected columns."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                tables = {
                    row[0] for row in conn.execute(
                        "SELECT name FROM sqlite_master WHERE type='table'"
                    ).fetchall()
                }
                assert {"cached_subscription", "usage_event"} <= tables

                columns = [col[1] for col in conn.execute("PRAGMA table_info(usage_event)").fetchall()]
                assert columns == [
                    'id', 'timestamp', 'account_id', 'metric', 'source',
                    'voice_recordings_used', 'invoices_created'
                ]
            finally:
                conn.close()

    def test_schema_creation_idempotent(self):
        """Verify initializing twice keeps existing data."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            repository = StateRepository(db_path)
            repository.save_tier("acct-1", Tier.SOLO)

            initialize_schema(db_path)

            assert repository.load_tier("acct-1") == Tier.SOLO


class TestSubscriptionCache:
    """Test the last-known-good cache."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.repository = StateRepository(os.path.join(self.temp_dir, "test.db"))

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_nothing_cached(self):
        """Test reads return None for unknown accounts."""
        assert self.repository.load_tier("nobody") is None
        assert self.repository.load_counters("nobody") is None

    def test_tier_round_trip(self):
        """Test the stored tier is read back."""
        self.repository.save_tier("acct-1", Tier.PROFESSIONAL)
        assert self.repository.load_tier("acct-1") == Tier.PROFESSIONAL

    def test_tier_overwritten(self):
        """Test a later save replaces the tier."""
        self.repository.save_tier("acct-1", Tier.ENTERPRISE)
        self.repository.save_tier("acct-1", Tier.FREE)
        assert self.repository.load_tier("acct-1") == Tier.FREE

    def test_tier_and_counters_independent(self):
        """Test saving counters does not clear the tier and vice versa."""
        self.repository.save_tier("acct-1", Tier.SOLO)
        self.repository.save_counters("acct-1", UsageCounters(2, 1))
        self.repository.save_tier("acct-1", Tier.PROFESSIONAL)

        assert self.repository.load_tier("acct-1") == Tier.PROFESSIONAL
        assert self.repository.load_counters("acct-1") == UsageCounters(2, 1)

    def test_counters_only_row_has_no_tier(self):
        """Test a row created by counters alone reports no cached tier."""
        self.repository.save_counters("acct-2", UsageCounters(1, 0))
        assert self.repository.load_tier("acct-2") is None

    def test_accounts_isolated(self):
        """Test accounts do not see each other's cache."""
        self.repository.save_tier("acct-1", Tier.ENTERPRISE)
        self.repository.save_tier("acct-2", Tier.SOLO)
        assert self.repository.load_tier("acct-1") == Tier.ENTERPRISE
        assert self.repository.load_tier("acct-2") == Tier.SOLO


class TestEventLedger:
    """Test usage event insertion and retrieval."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.repository = StateRepository(os.path.join(self.temp_dir, "test.db"))

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_insert_single_event(self):
        """Test inserting a single usage event."""
        self.repository.insert_usage_event(make_event(voice=2, invoices=3))

        events = self.repository.fetch_recent_usage_events()
        assert len(events) == 1
        assert events[0] == make_event(voice=2, invoices=3)

    def test_newest_first(self):
        """Test events come back in reverse insertion order."""
        for minute in range(3):
            self.repository.insert_usage_event(make_event(minute=minute))

        events = self.repository.fetch_recent_usage_events()
        assert [e.timestamp.minute for e in events] == [2, 1, 0]

    def test_filter_by_account_and_source(self):
        """Test filters combine."""
        self.repository.insert_usage_event(make_event(account_id="acct-1"))
        self.repository.insert_usage_event(
            make_event(account_id="acct-1", source=UsageEventSource.OPTIMISTIC)
        )
        self.repository.insert_usage_event(make_event(account_id="acct-2"))

        events = self.repository.fetch_recent_usage_events(
            account_id="acct-1", source=UsageEventSource.CONFIRMED
        )
        assert len(events) == 1
        assert events[0].account_id == "acct-1"
        assert events[0].source == UsageEventSource.CONFIRMED

    def test_limit(self):
        """Test fetching events with limit applied."""
        for minute in range(5):
            self.repository.insert_usage_event(make_event(minute=minute))
        assert len(self.repository.fetch_recent_usage_events(limit=3)) == 3

    def test_empty_database(self):
        """Test fetching events from empty database."""
        assert self.repository.fetch_recent_usage_events() == []


class TestAppendOnlyNature:
    """Test that the event ledger stays append-only."""

    def test_no_event_update_methods_exist(self):
        """Verify the repository exposes no way to rewrite events."""
        methods = [name for name in dir(StateRepository) if not name.startswith('_')]
        event_methods = {name for name in methods if 'event' in name}

        assert event_methods == {'insert_usage_event', 'fetch_recent_usage_events'}
        for name in methods:
            assert 'delete' not in name.lower()
            assert 'remove' not in name.lower()


class TestGetRepository:
    """Test the shared repository accessor."""

    def test_reused_for_same_path(self):
        """Test the same instance is returned for one path."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            assert get_repository(db_path) is get_repository(db_path)

    def test_recreated_for_new_path(self):
        """Test a different path yields a new instance."""
        with tempfile.TemporaryDirectory() as temp_dir:
            first = get_repository(os.path.join(temp_dir, "a.db"))
            second = get_repository(os.path.join(temp_dir, "b.db"))
            assert first is not second
            assert second.db_path.endswith("b.db")
