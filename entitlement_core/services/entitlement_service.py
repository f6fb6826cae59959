"""
Entitlement Service
===================

Loads a user's entitlement snapshot, runs the reconciler and persists
the outcome.

Writes are optimistic: the profile row carries a ``revision`` counter
and the update only lands if the revision is unchanged since the read.
A stale write is retried from a fresh read. The ledger row is inserted
in the same savepoint as the profile update, so a unique-index
violation on ``reference_id`` rolls both back and is reported as a
duplicate.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional
import uuid

from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_core.config import settings
from entitlement_core.core.errors import ConcurrentUpdateError, ProfileNotFoundError
from entitlement_core.core.product_catalog import ProductCatalog
from entitlement_core.models.ledger import CreditTransaction, LedgerEntryType
from entitlement_core.models.profile import Profile, SubscriptionStatus
from entitlement_core.services.reconciler import (
    EntitlementEvent,
    EntitlementSnapshot,
    LedgerKey,
    ReconcileOutcome,
    idempotency_key,
    reconcile,
)

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 3


class DuplicateLedgerEntryError(Exception):
    """The ledger already holds a row for this reference."""


# =============================================================================
# Store
# =============================================================================

class EntitlementStore(ABC):
    """Persistence seam for profiles and the credit ledger."""

    @abstractmethod
    async def load_snapshot(self, user_id: uuid.UUID) -> Optional[EntitlementSnapshot]:
        ...

    @abstractmethod
    async def has_ledger_entry(self, key: LedgerKey) -> bool:
        ...

    @abstractmethod
    async def save(self, previous: EntitlementSnapshot, outcome: ReconcileOutcome) -> bool:
        """
        Persist ``outcome`` if the row is still at ``previous.revision``.

        Returns False on a stale revision. Raises
        :class:`DuplicateLedgerEntryError` if the ledger key already exists.
        """

    @abstractmethod
    async def find_user_by_reference(self, reference: str) -> Optional[uuid.UUID]:
        """User whose subscription or ledger carries ``reference``."""

    @abstractmethod
    async def lapsed_user_ids(self, now: datetime) -> list[uuid.UUID]:
        """
        Users whose cancelled subscription has run past its end date.

        Active subscriptions are left alone: a renewal can land after the
        end date, and only the storefront decides that one expired.
        """


def snapshot_from_profile(profile: Profile) -> EntitlementSnapshot:
    return EntitlementSnapshot(
        user_id=profile.user_id,
        plan=profile.plan,
        subscription_status=profile.subscription_status,
        subscription_end_date=profile.subscription_end_date,
        subscription_reference=profile.subscription_reference,
        credits=profile.credits,
        source=profile.source,
        revision=profile.revision,
    )


class SQLEntitlementStore(EntitlementStore):
    """PostgreSQL-backed store on an ``AsyncSession``."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def load_snapshot(self, user_id: uuid.UUID) -> Optional[EntitlementSnapshot]:
        result = await self.db.execute(
            select(Profile)
            .where(Profile.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        profile = result.scalar_one_or_none()
        return snapshot_from_profile(profile) if profile else None

    async def has_ledger_entry(self, key: LedgerKey) -> bool:
        type_clause = (
            CreditTransaction.type == LedgerEntryType.REFUND
            if key.is_refund
            else CreditTransaction.type != LedgerEntryType.REFUND
        )
        result = await self.db.execute(
            select(
                exists().where(
                    and_(CreditTransaction.reference_id == key.reference_id, type_clause)
                )
            )
        )
        return bool(result.scalar())

    async def save(self, previous: EntitlementSnapshot, outcome: ReconcileOutcome) -> bool:
        new = outcome.snapshot
        try:
            async with self.db.begin_nested():
                result = await self.db.execute(
                    update(Profile)
                    .where(
                        Profile.user_id == previous.user_id,
                        Profile.revision == previous.revision,
                    )
                    .values(
                        plan=new.plan,
                        subscription_status=new.subscription_status,
                        subscription_end_date=new.subscription_end_date,
                        subscription_reference=new.subscription_reference,
                        source=new.source,
                        credits=new.credits,
                        revision=Profile.revision + 1,
                        updated_at=datetime.now(timezone.utc),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    return False

                entry = outcome.ledger_entry
                if entry is not None:
                    self.db.add(CreditTransaction(
                        user_id=previous.user_id,
                        type=entry.type,
                        amount=entry.amount,
                        description=entry.description,
                        reference_id=entry.reference_id,
                    ))
                    await self.db.flush()
        except IntegrityError as exc:
            raise DuplicateLedgerEntryError(str(exc.orig)) from exc
        return True

    async def find_user_by_reference(self, reference: str) -> Optional[uuid.UUID]:
        result = await self.db.execute(
            select(Profile.user_id)
            .where(or_(
                Profile.subscription_reference == reference,
                Profile.subscription_reference.startswith(f"{reference}..", autoescape=True),
            ))
            .limit(1)
        )
        user_id = result.scalar_one_or_none()
        if user_id is not None:
            return user_id

        # Consumables never set subscription_reference; the grant row knows the user
        result = await self.db.execute(
            select(CreditTransaction.user_id)
            .where(
                CreditTransaction.reference_id == reference,
                CreditTransaction.type != LedgerEntryType.REFUND,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def lapsed_user_ids(self, now: datetime) -> list[uuid.UUID]:
        result = await self.db.execute(
            select(Profile.user_id).where(
                Profile.subscription_status == SubscriptionStatus.CANCELLING,
                Profile.subscription_end_date < now,
            )
        )
        return list(result.scalars().all())


# =============================================================================
# Service
# =============================================================================

class EntitlementService:
    """Applies entitlement events for one user with optimistic retries."""

    def __init__(self, store: EntitlementStore, free_plan: Optional[str] = None):
        self.store = store
        self.free_plan = free_plan or settings.FREE_PLAN

    async def get_snapshot(self, user_id: uuid.UUID) -> EntitlementSnapshot:
        snapshot = await self.store.load_snapshot(user_id)
        if snapshot is None:
            raise ProfileNotFoundError(f"Profile not found for user {user_id}")
        return snapshot

    async def apply(
        self,
        user_id: uuid.UUID,
        event: EntitlementEvent,
        catalog: ProductCatalog,
        now: Optional[datetime] = None,
    ) -> ReconcileOutcome:
        """
        Reconcile ``event`` for ``user_id`` and persist the result.

        Raises:
            ProfileNotFoundError: The user has no profile row.
            UnknownProductError: The event names an unmapped product.
            ConcurrentUpdateError: The row kept changing across every attempt.
        """
        key = idempotency_key(event)

        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            snapshot = await self.get_snapshot(user_id)
            recorded = {key} if key is not None and await self.store.has_ledger_entry(key) else set()

            outcome = reconcile(
                snapshot,
                event,
                catalog,
                recorded=recorded,
                free_plan=self.free_plan,
                now=now,
            )
            if outcome.skipped:
                logger.info(
                    "Reconcile skipped: user=%s event=%s reason=%s",
                    user_id,
                    type(event).__name__,
                    outcome.reason,
                )
                return outcome

            try:
                saved = await self.store.save(snapshot, outcome)
            except DuplicateLedgerEntryError:
                logger.info(
                    "Ledger reference already recorded: user=%s reference=%s",
                    user_id,
                    key.reference_id if key else None,
                )
                return ReconcileOutcome(snapshot=snapshot, skipped=True, reason="duplicate")

            if saved:
                entry = outcome.ledger_entry
                logger.info(
                    "Entitlement updated: user=%s event=%s status=%s plan=%s credits=%d ledger=%s",
                    user_id,
                    type(event).__name__,
                    outcome.snapshot.subscription_status.value,
                    outcome.snapshot.plan,
                    outcome.snapshot.credits,
                    entry.type.value if entry else None,
                )
                return outcome

            logger.info(
                "Stale profile revision, retrying: user=%s attempt=%d", user_id, attempt,
            )

        raise ConcurrentUpdateError(
            f"Profile {user_id} changed during {MAX_WRITE_ATTEMPTS} reconcile attempts"
        )
