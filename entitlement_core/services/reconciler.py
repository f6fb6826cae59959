"""
Entitlement Reconciler
======================

Pure state transition from the stored entitlement snapshot plus one
incoming event to the next snapshot and at most one ledger entry.

No I/O happens here. Callers load the snapshot, tell the reconciler
which ledger references already exist, and persist the outcome.

Idempotency:
    Every credit-bearing event carries a ledger key
    ``(reference_id, is_refund)``. If that key is already recorded the
    outcome is a skip: the snapshot is returned unchanged and no ledger
    entry is produced.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Container, NamedTuple, Optional, Union
import uuid

from entitlement_core.core.errors import UnknownProductError
from entitlement_core.core.product_catalog import ProductCatalog, ProductMapping
from entitlement_core.models.ledger import LedgerEntryType
from entitlement_core.models.profile import SubscriptionStatus


# =============================================================================
# Values
# =============================================================================

@dataclass(frozen=True)
class EntitlementSnapshot:
    """Entitlement fields of one profile row."""

    user_id: uuid.UUID
    plan: str
    subscription_status: SubscriptionStatus
    subscription_end_date: Optional[datetime]
    subscription_reference: Optional[str]
    credits: int
    source: Optional[str] = None
    revision: int = 0


@dataclass(frozen=True)
class VerifiedPurchase:
    """Normalized purchase record from a storefront."""

    product_id: str
    transaction_id: str
    original_transaction_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    raw_status: Optional[int] = None
    platform: Optional[str] = None


class LedgerKey(NamedTuple):
    """Idempotency key of a ledger row."""

    reference_id: str
    is_refund: bool


@dataclass(frozen=True)
class LedgerDelta:
    """Ledger row to append alongside the new snapshot."""

    type: LedgerEntryType
    amount: int
    reference_id: Optional[str]
    description: str

    @property
    def key(self) -> Optional[LedgerKey]:
        if self.reference_id is None:
            return None
        return LedgerKey(self.reference_id, self.type is LedgerEntryType.REFUND)


# =============================================================================
# Events (closed set)
# =============================================================================

@dataclass(frozen=True)
class PurchaseGranted:
    """A verified purchase or renewal; grants plan and/or credits."""

    purchase: VerifiedPurchase
    renewal: bool = False


@dataclass(frozen=True)
class PurchaseRestored:
    """Re-applies an active subscription without granting credits."""

    purchase: VerifiedPurchase


@dataclass(frozen=True)
class SubscriptionCancelled:
    """Auto-renew turned off; access continues until ``expires_at``."""

    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class SubscriptionExpired:
    pass


@dataclass(frozen=True)
class SubscriptionOnHold:
    """Account hold or grace period."""


@dataclass(frozen=True)
class SubscriptionPaused:
    pass


@dataclass(frozen=True)
class SubscriptionRevoked:
    pass


@dataclass(frozen=True)
class PurchaseVoided:
    """Refund or chargeback for ``order_id``; claws back every credit."""

    order_id: str


EntitlementEvent = Union[
    PurchaseGranted,
    PurchaseRestored,
    SubscriptionCancelled,
    SubscriptionExpired,
    SubscriptionOnHold,
    SubscriptionPaused,
    SubscriptionRevoked,
    PurchaseVoided,
]


@dataclass(frozen=True)
class ReconcileOutcome:
    """Result of one reconciliation."""

    snapshot: EntitlementSnapshot
    ledger_entry: Optional[LedgerDelta] = None
    skipped: bool = False
    reason: Optional[str] = None
    mapping: Optional[ProductMapping] = None


# =============================================================================
# Reconciliation
# =============================================================================

def idempotency_key(event: EntitlementEvent) -> Optional[LedgerKey]:
    """Ledger key guarding ``event``, or None for state-only transitions."""
    if isinstance(event, PurchaseGranted):
        return LedgerKey(event.purchase.transaction_id, False)
    if isinstance(event, PurchaseVoided):
        return LedgerKey(event.order_id, True)
    return None


def reconcile(
    snapshot: EntitlementSnapshot,
    event: EntitlementEvent,
    catalog: ProductCatalog,
    recorded: Container[LedgerKey] = frozenset(),
    free_plan: str = "free",
    now: Optional[datetime] = None,
) -> ReconcileOutcome:
    """
    Compute the next entitlement snapshot for ``event``.

    Args:
        snapshot: Current stored entitlement.
        event: Incoming purchase or lifecycle event.
        catalog: Product id to grant mapping.
        recorded: Ledger keys already present for this reference.
        free_plan: Plan assigned when access is withdrawn.
        now: Reference time for restore activity checks.

    Raises:
        UnknownProductError: A purchase names a product not in ``catalog``.
    """
    key = idempotency_key(event)
    if key is not None and key in recorded:
        return ReconcileOutcome(snapshot=snapshot, skipped=True, reason="duplicate")

    if isinstance(event, PurchaseGranted):
        return _grant(snapshot, event, _lookup(catalog, event.purchase.product_id))

    if isinstance(event, PurchaseRestored):
        return _restore(
            snapshot,
            event.purchase,
            _lookup(catalog, event.purchase.product_id),
            now or datetime.now(timezone.utc),
        )

    if isinstance(event, SubscriptionCancelled):
        return ReconcileOutcome(snapshot=replace(
            snapshot,
            subscription_status=SubscriptionStatus.CANCELLING,
            subscription_end_date=event.expires_at or snapshot.subscription_end_date,
        ))

    if isinstance(event, SubscriptionExpired):
        return ReconcileOutcome(snapshot=replace(
            snapshot,
            plan=free_plan,
            subscription_status=SubscriptionStatus.EXPIRED,
        ))

    if isinstance(event, SubscriptionOnHold):
        return ReconcileOutcome(snapshot=replace(
            snapshot,
            subscription_status=SubscriptionStatus.PAST_DUE,
        ))

    if isinstance(event, SubscriptionPaused):
        return ReconcileOutcome(snapshot=replace(
            snapshot,
            subscription_status=SubscriptionStatus.PAUSED,
        ))

    if isinstance(event, SubscriptionRevoked):
        return ReconcileOutcome(snapshot=replace(
            snapshot,
            plan=free_plan,
            subscription_status=SubscriptionStatus.REVOKED,
        ))

    if isinstance(event, PurchaseVoided):
        return ReconcileOutcome(
            snapshot=replace(
                snapshot,
                plan=free_plan,
                subscription_status=SubscriptionStatus.REFUNDED,
                credits=0,
            ),
            ledger_entry=LedgerDelta(
                type=LedgerEntryType.REFUND,
                amount=0,
                reference_id=event.order_id,
                description="Purchase refunded - credits revoked",
            ),
        )

    raise TypeError(f"Unhandled entitlement event: {event!r}")


def _lookup(catalog: ProductCatalog, product_id: str) -> ProductMapping:
    mapping = catalog.get(product_id)
    if mapping is None:
        raise UnknownProductError(product_id)
    return mapping


def _grant(
    snapshot: EntitlementSnapshot,
    event: PurchaseGranted,
    mapping: ProductMapping,
) -> ReconcileOutcome:
    purchase = event.purchase

    if not mapping.is_subscription:
        return ReconcileOutcome(
            snapshot=replace(snapshot, credits=snapshot.credits + mapping.credit_delta),
            ledger_entry=LedgerDelta(
                type=LedgerEntryType.PURCHASE,
                amount=mapping.credit_delta,
                reference_id=purchase.transaction_id,
                description=f"Purchased {mapping.credit_delta} credits",
            ),
            mapping=mapping,
        )

    renewal = event.renewal or snapshot.subscription_status is SubscriptionStatus.ACTIVE
    return ReconcileOutcome(
        snapshot=replace(
            snapshot,
            plan=mapping.plan,
            subscription_status=SubscriptionStatus.ACTIVE,
            subscription_end_date=purchase.expires_at,
            subscription_reference=purchase.transaction_id,
            source=purchase.platform or snapshot.source,
            credits=snapshot.credits + mapping.credit_delta,
        ),
        ledger_entry=LedgerDelta(
            type=LedgerEntryType.RENEWAL if renewal else LedgerEntryType.SUBSCRIPTION,
            amount=mapping.credit_delta,
            reference_id=purchase.transaction_id,
            description=(
                f"{'Renewed' if renewal else 'Subscribed to'} {mapping.plan} plan"
            ),
        ),
        mapping=mapping,
    )


def _restore(
    snapshot: EntitlementSnapshot,
    purchase: VerifiedPurchase,
    mapping: ProductMapping,
    now: datetime,
) -> ReconcileOutcome:
    if not mapping.is_subscription:
        return ReconcileOutcome(snapshot=snapshot, skipped=True, reason="not_a_subscription")
    if purchase.expires_at is None or purchase.expires_at <= now:
        return ReconcileOutcome(snapshot=snapshot, skipped=True, reason="not_active")

    return ReconcileOutcome(
        snapshot=replace(
            snapshot,
            plan=mapping.plan,
            subscription_status=SubscriptionStatus.ACTIVE,
            subscription_end_date=purchase.expires_at,
            subscription_reference=purchase.original_transaction_id or purchase.transaction_id,
            source=purchase.platform or snapshot.source,
        ),
        mapping=mapping,
    )
