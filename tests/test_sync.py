"""
Tests for entitlement synchronization.

Covers SDK readiness polling, push updates, backend verification and
last-request-wins ordering.
"""

import asyncio
import os
import tempfile

import pytest

from tellbill_gate.core.contracts import BackendUnavailable, VerificationResult
from tellbill_gate.core.plans import Tier
from tellbill_gate.core.state import SubscriptionState
from tellbill_gate.core.sync import EntitlementSynchronizer, SyncState
from tellbill_gate.storage.repository import StateRepository


class FakeSource:
    """Subscription SDK stand-in."""

    def __init__(self, entitlements=(), ready_after=1, receipt="receipt-1", error=None):
        self.entitlements = set(entitlements)
        self.ready_after = ready_after
        self.receipt = receipt
        self.error = error
        self.ready_calls = 0

    async def is_ready(self):
        self.ready_calls += 1
        if self.error is not None:
            raise self.error
        return self.ready_after is not None and self.ready_calls >= self.ready_after

    async def get_active_entitlements(self):
        return set(self.entitlements)

    async def get_receipt(self):
        return self.receipt


class FakeVerifier:
    """Answers immediately with a fixed result or error."""

    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    async def verify_purchase(self, token, receipt):
        self.calls.append((token, receipt))
        if self.error is not None:
            raise self.error
        return self.result


class GatedVerifier:
    """Holds each verification until the test releases it."""

    def __init__(self, results):
        self.results = results
        self.gates = {}

    async def verify_purchase(self, token, receipt):
        gate = asyncio.Event()
        self.gates[receipt] = gate
        await gate.wait()
        return self.results[receipt]

    def release(self, receipt):
        self.gates[receipt].set()


def make_sync(source, verifier=None, token="token", repository=None, max_attempts=3):
    state = SubscriptionState()
    sync = EntitlementSynchronizer(
        state,
        source=source,
        verifier=verifier,
        token_provider=lambda: token,
        repository=repository,
        max_attempts=max_attempts,
        retry_delay=0,
    )
    return state, sync


class TestInitialize:
    """Test startup behavior."""

    def test_initial_state(self):
        """Test a new synchronizer is uninitialized and free."""
        state, sync = make_sync(FakeSource())
        assert sync.sync_state == SyncState.UNINITIALIZED
        assert state.tier == Tier.FREE

    def test_ready_with_entitlements(self):
        """Test entitlements are mapped once the SDK is ready."""
        state, sync = make_sync(FakeSource({"solo_plan", "enterprise_plan"}))

        tier = asyncio.run(sync.initialize())

        assert tier == Tier.ENTERPRISE
        assert state.tier == Tier.ENTERPRISE
        assert sync.sync_state == SyncState.READY

    def test_polls_until_ready(self):
        """Test the SDK is polled again while it is not ready."""
        source = FakeSource({"professional_plan"}, ready_after=3)
        state, sync = make_sync(source, max_attempts=3)

        asyncio.run(sync.initialize())

        assert source.ready_calls == 3
        assert state.tier == Tier.PROFESSIONAL

    def test_retry_exhaustion_fails_open_to_free(self):
        """Test a never-ready SDK leaves the user on free without raising."""
        source = FakeSource({"enterprise_plan"}, ready_after=None)
        state, sync = make_sync(source, max_attempts=4)

        tier = asyncio.run(sync.initialize())

        assert tier == Tier.FREE
        assert source.ready_calls == 4
        assert sync.sync_state == SyncState.READY

    def test_sdk_errors_fail_open(self):
        """Test SDK exceptions are absorbed."""
        state, sync = make_sync(FakeSource(error=RuntimeError("sdk crashed")))

        assert asyncio.run(sync.initialize()) == Tier.FREE
        assert sync.sync_state == SyncState.READY

    def test_invalid_retry_settings(self):
        """Test retry settings are validated."""
        with pytest.raises(ValueError, match="max_attempts"):
            EntitlementSynchronizer(SubscriptionState(), FakeSource(), max_attempts=0)
        with pytest.raises(ValueError, match="retry_delay"):
            EntitlementSynchronizer(SubscriptionState(), FakeSource(), retry_delay=-1)


class TestCachedTier:
    """Test last-known-good tier handling."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.repository = StateRepository(os.path.join(self.temp_dir, "test.db"))

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_failure_keeps_cached_tier(self):
        """Test SDK failure falls back to the cached tier, not free."""
        self.repository.save_tier("local", Tier.PROFESSIONAL)
        state, sync = make_sync(FakeSource(ready_after=None), repository=self.repository)

        assert asyncio.run(sync.initialize()) == Tier.PROFESSIONAL

    def test_empty_entitlements_keep_cached_tier(self):
        """Test an empty SDK answer at startup does not clear the cache."""
        self.repository.save_tier("local", Tier.SOLO)
        state, sync = make_sync(FakeSource(set()), repository=self.repository)

        assert asyncio.run(sync.initialize()) == Tier.SOLO

    def test_tier_changes_persisted(self):
        """Test tier changes are written for offline reads."""
        state, sync = make_sync(FakeSource({"solo_plan"}), repository=self.repository)

        asyncio.run(sync.initialize())
        sync.handle_entitlements_changed({"enterprise_plan"})

        assert self.repository.load_tier("local") == Tier.ENTERPRISE


class TestPushUpdates:
    """Test SDK push notifications."""

    def test_purchase_upgrades_immediately(self):
        """Test a purchase event changes the tier synchronously."""
        state, sync = make_sync(FakeSource())
        asyncio.run(sync.initialize())
        seen = []
        state.subscribe(lambda s: seen.append(s.tier))

        assert sync.handle_entitlements_changed({"professional_plan"}) == Tier.PROFESSIONAL
        assert seen == [Tier.PROFESSIONAL]

    def test_expiry_downgrades_to_free(self):
        """Test an empty entitlement set after expiry returns to free."""
        state, sync = make_sync(FakeSource({"solo_plan"}))
        asyncio.run(sync.initialize())

        assert sync.handle_entitlements_changed(set()) == Tier.FREE

    def test_unchanged_tier_does_not_notify(self):
        """Test re-sending the same entitlements is silent."""
        state, sync = make_sync(FakeSource({"solo_plan"}))
        asyncio.run(sync.initialize())
        seen = []
        state.subscribe(lambda s: seen.append(s.tier))

        sync.handle_entitlements_changed({"SOLO"})

        assert seen == []


class TestBackendReconciliation:
    """Test backend verification overrides."""

    def test_backend_overrides_sdk_hint(self):
        """Test the backend answer replaces the SDK-derived tier."""
        verifier = FakeVerifier(VerificationResult(plan=Tier.SOLO, status="active"))
        state, sync = make_sync(FakeSource({"enterprise_plan"}), verifier)
        asyncio.run(sync.initialize())
        assert state.tier == Tier.ENTERPRISE

        assert asyncio.run(sync.reconcile_with_backend()) == Tier.SOLO
        assert verifier.calls == [("token", "receipt-1")]

    def test_inactive_status_is_free(self):
        """Test a lapsed subscription verified server-side is free."""
        verifier = FakeVerifier(VerificationResult(plan=Tier.PROFESSIONAL, status="expired"))
        state, sync = make_sync(FakeSource({"professional_plan"}), verifier)
        asyncio.run(sync.initialize())

        assert asyncio.run(sync.reconcile_with_backend()) == Tier.FREE

    def test_backend_failure_keeps_tier(self):
        """Test verification errors keep the current tier."""
        verifier = FakeVerifier(error=BackendUnavailable("502"))
        state, sync = make_sync(FakeSource({"solo_plan"}), verifier)
        asyncio.run(sync.initialize())

        assert asyncio.run(sync.reconcile_with_backend()) == Tier.SOLO

    def test_skipped_without_token(self):
        """Test no verification is attempted when signed out."""
        verifier = FakeVerifier(VerificationResult(plan=Tier.FREE, status="inactive"))
        state, sync = make_sync(FakeSource({"solo_plan"}), verifier, token=None)
        asyncio.run(sync.initialize())

        assert asyncio.run(sync.reconcile_with_backend()) == Tier.SOLO
        assert verifier.calls == []

    def test_skipped_without_receipt(self):
        """Test no verification is attempted without a receipt."""
        verifier = FakeVerifier(VerificationResult(plan=Tier.FREE, status="inactive"))
        state, sync = make_sync(FakeSource({"solo_plan"}, receipt=None), verifier)
        asyncio.run(sync.initialize())

        asyncio.run(sync.reconcile_with_backend())

        assert verifier.calls == []
        assert state.tier == Tier.SOLO

    def test_on_login_rereads_sdk_then_verifies(self):
        """Test login refreshes entitlements and lets the backend decide."""
        source = FakeSource({"solo_plan"})
        verifier = FakeVerifier(VerificationResult(plan=Tier.PROFESSIONAL, status="active"))
        state, sync = make_sync(source, verifier)
        asyncio.run(sync.initialize())

        source.entitlements = {"professional_plan"}
        assert asyncio.run(sync.on_login()) == Tier.PROFESSIONAL
        assert len(verifier.calls) == 1

    def test_refresh_hint_cannot_undercut_verified_tier(self):
        """Test a stale SDK answer cannot drop a backend-verified tier when the backend is down."""
        source = FakeSource({"solo_plan"})
        verifier = FakeVerifier(VerificationResult(plan=Tier.PROFESSIONAL, status="active"))
        state, sync = make_sync(source, verifier)
        asyncio.run(sync.initialize())
        assert asyncio.run(sync.reconcile_with_backend()) == Tier.PROFESSIONAL

        source.entitlements = set()
        verifier.error = BackendUnavailable("offline")

        assert asyncio.run(sync.refresh()) == Tier.PROFESSIONAL

    def test_push_event_supersedes_verified_tier(self):
        """Test an SDK expiry event still downgrades after verification."""
        source = FakeSource({"professional_plan"})
        verifier = FakeVerifier(VerificationResult(plan=Tier.PROFESSIONAL, status="active"))
        state, sync = make_sync(source, verifier)
        asyncio.run(sync.initialize())
        asyncio.run(sync.reconcile_with_backend())

        sync.handle_entitlements_changed(set())
        source.entitlements = set()
        verifier.error = BackendUnavailable("offline")

        assert asyncio.run(sync.refresh()) == Tier.FREE

    def test_refresh_initializes_first(self):
        """Test a refresh before startup runs initialization."""
        state, sync = make_sync(FakeSource({"solo_plan"}))

        assert asyncio.run(sync.refresh()) == Tier.SOLO
        assert sync.sync_state == SyncState.READY


class TestOrdering:
    """Test last-request-wins handling of in-flight verification."""

    def test_push_event_beats_straggling_response(self):
        """Test a purchase during verification is not overwritten."""
        verifier = GatedVerifier({"old": VerificationResult(plan=Tier.FREE, status="inactive")})
        state, sync = make_sync(FakeSource(), verifier)

        async def scenario():
            await sync.initialize()
            task = asyncio.create_task(sync.reconcile_with_backend(receipt="old"))
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            sync.handle_entitlements_changed({"professional_plan"})
            verifier.release("old")
            return await task

        assert asyncio.run(scenario()) == Tier.PROFESSIONAL
        assert state.tier == Tier.PROFESSIONAL

    def test_later_request_wins_over_earlier_response(self):
        """Test an earlier request answering last is discarded."""
        verifier = GatedVerifier({
            "first": VerificationResult(plan=Tier.FREE, status="inactive"),
            "second": VerificationResult(plan=Tier.ENTERPRISE, status="active"),
        })
        state, sync = make_sync(FakeSource(), verifier)

        async def scenario():
            await sync.initialize()
            first = asyncio.create_task(sync.reconcile_with_backend(receipt="first"))
            await asyncio.sleep(0)
            second = asyncio.create_task(sync.reconcile_with_backend(receipt="second"))
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            verifier.release("second")
            await second
            verifier.release("first")
            await first

        asyncio.run(scenario())

        assert state.tier == Tier.ENTERPRISE
