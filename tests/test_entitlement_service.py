"""
Entitlement Service Tests
=========================

Persistence around the reconciler: revision checks, retries and the
ledger idempotency guard.
"""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from entitlement_core.core.errors import ConcurrentUpdateError, ProfileNotFoundError
from entitlement_core.core.product_catalog import FALLBACK_PRODUCT_MAPPINGS
from entitlement_core.models.ledger import LedgerEntryType
from entitlement_core.models.profile import SubscriptionStatus
from entitlement_core.services.entitlement_service import (
    MAX_WRITE_ATTEMPTS,
    EntitlementService,
    SQLEntitlementStore,
)
from entitlement_core.services.reconciler import (
    PurchaseGranted,
    ReconcileOutcome,
    SubscriptionCancelled,
    VerifiedPurchase,
)

from fakes import InMemoryEntitlementStore, make_snapshot

CATALOG = FALLBACK_PRODUCT_MAPPINGS


def _credits_purchase(transaction_id="GPA.5555"):
    return PurchaseGranted(VerifiedPurchase(
        product_id="timeless.credits.350",
        transaction_id=transaction_id,
        platform="android",
    ))


class TestApply:

    @pytest.mark.asyncio
    async def test_persists_outcome_and_ledger(self):
        snapshot = make_snapshot(credits=10)
        store = InMemoryEntitlementStore(snapshot)

        outcome = await EntitlementService(store).apply(snapshot.user_id, _credits_purchase(), CATALOG)

        assert not outcome.skipped
        saved = store.profiles[snapshot.user_id]
        assert saved.credits == 360
        assert saved.revision == 1
        assert [(uid, e.type) for uid, e in store.ledger] == [(snapshot.user_id, LedgerEntryType.PURCHASE)]

    @pytest.mark.asyncio
    async def test_replayed_purchase_grants_once(self):
        snapshot = make_snapshot()
        store = InMemoryEntitlementStore(snapshot)
        service = EntitlementService(store)

        await service.apply(snapshot.user_id, _credits_purchase(), CATALOG)
        second = await service.apply(snapshot.user_id, _credits_purchase(), CATALOG)

        assert second.skipped
        assert store.profiles[snapshot.user_id].credits == 350
        assert len(store.ledger) == 1

    @pytest.mark.asyncio
    async def test_stale_revision_is_retried(self):
        snapshot = make_snapshot()
        store = InMemoryEntitlementStore(snapshot)
        store.stale_saves = 1

        outcome = await EntitlementService(store).apply(snapshot.user_id, _credits_purchase(), CATALOG)

        assert not outcome.skipped
        assert store.save_calls == 2
        assert store.profiles[snapshot.user_id].credits == 350

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        snapshot = make_snapshot()
        store = InMemoryEntitlementStore(snapshot)
        store.stale_saves = MAX_WRITE_ATTEMPTS

        with pytest.raises(ConcurrentUpdateError):
            await EntitlementService(store).apply(snapshot.user_id, _credits_purchase(), CATALOG)
        assert store.ledger == []

    @pytest.mark.asyncio
    async def test_ledger_race_reported_as_duplicate(self):
        snapshot = make_snapshot()
        store = InMemoryEntitlementStore(snapshot)
        service = EntitlementService(store)
        await service.apply(snapshot.user_id, _credits_purchase(), CATALOG)

        # The pre-check misses the row that the unique index then rejects
        store.hide_ledger = True
        outcome = await service.apply(snapshot.user_id, _credits_purchase(), CATALOG)

        assert outcome.skipped
        assert outcome.reason == "duplicate"
        assert store.profiles[snapshot.user_id].credits == 350

    @pytest.mark.asyncio
    async def test_missing_profile(self):
        store = InMemoryEntitlementStore()
        with pytest.raises(ProfileNotFoundError):
            await EntitlementService(store).apply(uuid.uuid4(), SubscriptionCancelled(), CATALOG)

    @pytest.mark.asyncio
    async def test_state_only_transition_writes_no_ledger(self):
        snapshot = make_snapshot(
            plan="premium",
            subscription_status=SubscriptionStatus.ACTIVE,
            subscription_end_date=datetime.now(timezone.utc) + timedelta(days=5),
        )
        store = InMemoryEntitlementStore(snapshot)

        await EntitlementService(store).apply(snapshot.user_id, SubscriptionCancelled(), CATALOG)

        assert store.profiles[snapshot.user_id].subscription_status is SubscriptionStatus.CANCELLING
        assert store.ledger == []


class TestSQLEntitlementStore:
    """Statement-level checks against a mocked session."""

    @pytest.mark.asyncio
    async def test_save_returns_false_on_stale_revision(self):
        snapshot = make_snapshot()
        session = AsyncMock()
        session.add = MagicMock()
        session.begin_nested = MagicMock(return_value=AsyncMock())
        session.execute.return_value = MagicMock(rowcount=0)

        saved = await SQLEntitlementStore(session).save(snapshot, ReconcileOutcome(snapshot=snapshot))

        assert saved is False
        session.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_find_user_falls_back_to_ledger(self):
        user_id = uuid.uuid4()
        session = AsyncMock()
        no_profile = MagicMock()
        no_profile.scalar_one_or_none.return_value = None
        ledger_hit = MagicMock()
        ledger_hit.scalar_one_or_none.return_value = user_id
        session.execute.side_effect = [no_profile, ledger_hit]

        found = await SQLEntitlementStore(session).find_user_by_reference("GPA.7")

        assert found == user_id
        assert session.execute.call_count == 2
