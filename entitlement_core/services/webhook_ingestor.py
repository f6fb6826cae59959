"""
Webhook Ingestor
================

Google Play real-time developer notifications delivered through a
Pub/Sub push subscription.

Envelope::

    {"message": {"data": base64(JSON), "messageId": ..., "publishTime": ...},
     "subscription": ...}

The decoded JSON carries exactly one of ``subscriptionNotification``,
``oneTimeProductNotification``, ``voidedPurchaseNotification`` or
``testNotification``.

Only a malformed envelope is rejected (``EnvelopeDecodeError``). Every
other failure is logged and acknowledged, because Pub/Sub redelivers
anything that is not acknowledged and retrying cannot fix bad data.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Awaitable, Callable, Optional
import uuid

from entitlement_core.core.errors import (
    ConfigurationError,
    EnvelopeDecodeError,
    ProfileNotFoundError,
    ProviderError,
    UnknownProductError,
)
from entitlement_core.core.product_catalog import ProductCatalog
from entitlement_core.services.entitlement_service import EntitlementService
from entitlement_core.services.receipt_verifier import GooglePurchaseProof, ReceiptVerifier
from entitlement_core.services.reconciler import (
    EntitlementEvent,
    PurchaseGranted,
    PurchaseVoided,
    SubscriptionCancelled,
    SubscriptionExpired,
    SubscriptionOnHold,
    SubscriptionPaused,
    SubscriptionRevoked,
    VerifiedPurchase,
)
from entitlement_core.services.push import PushMessage
from entitlement_core.services.user_notifier import lifecycle_notice

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    TEST = "test"
    SUBSCRIPTION = "subscription_notification"
    ONE_TIME_PRODUCT = "one_time_product_notification"
    VOIDED_PURCHASE = "voided_purchase"


class SubscriptionNotificationType(IntEnum):
    RECOVERED = 1
    RENEWED = 2
    CANCELED = 3
    PURCHASED = 4
    ON_HOLD = 5
    IN_GRACE_PERIOD = 6
    RESTARTED = 7
    PRICE_CHANGE_CONFIRMED = 8
    DEFERRED = 9
    PAUSED = 10
    PAUSE_SCHEDULE_CHANGED = 11
    REVOKED = 12
    EXPIRED = 13
    PENDING_PURCHASE_CANCELED = 20


class OneTimeNotificationType(IntEnum):
    PURCHASED = 1
    CANCELED = 2


_ENVELOPE_KEYS = {
    "testNotification": NotificationKind.TEST,
    "subscriptionNotification": NotificationKind.SUBSCRIPTION,
    "oneTimeProductNotification": NotificationKind.ONE_TIME_PRODUCT,
    "voidedPurchaseNotification": NotificationKind.VOIDED_PURCHASE,
}


@dataclass(frozen=True)
class WebhookEvent:
    """A decoded notification; lives only for one ingestion."""

    kind: NotificationKind
    message_id: Optional[str]
    package_name: Optional[str]
    notification_type: Optional[int] = None
    purchase_token: Optional[str] = None
    product_id: Optional[str] = None
    order_id: Optional[str] = None


@dataclass(frozen=True)
class IngestResult:
    action: str
    user_id: Optional[uuid.UUID] = None
    # Sent by the caller once the transition is committed
    notice: Optional[PushMessage] = None


@dataclass(frozen=True)
class SubscriptionRecord:
    """Authoritative fields from the publisher API subscription resource."""

    order_id: Optional[str]
    expires_at: Optional[datetime]
    payment_state: Optional[int]
    account_id: Optional[str]


def _grant(event: WebhookEvent, record: SubscriptionRecord, renewal: bool = False) -> PurchaseGranted:
    return PurchaseGranted(
        VerifiedPurchase(
            product_id=event.product_id,
            transaction_id=record.order_id or event.purchase_token,
            expires_at=record.expires_at,
            raw_status=record.payment_state,
            platform="android",
        ),
        renewal=renewal,
    )


Transition = Callable[[WebhookEvent, SubscriptionRecord], EntitlementEvent]

# Every notification type is listed; None means acknowledge without a change
SUBSCRIPTION_TRANSITIONS: dict[SubscriptionNotificationType, Optional[Transition]] = {
    SubscriptionNotificationType.RECOVERED: _grant,
    SubscriptionNotificationType.RENEWED: lambda e, r: _grant(e, r, renewal=True),
    SubscriptionNotificationType.PURCHASED: _grant,
    SubscriptionNotificationType.RESTARTED: _grant,
    SubscriptionNotificationType.CANCELED: lambda e, r: SubscriptionCancelled(r.expires_at),
    SubscriptionNotificationType.EXPIRED: lambda e, r: SubscriptionExpired(),
    SubscriptionNotificationType.ON_HOLD: lambda e, r: SubscriptionOnHold(),
    SubscriptionNotificationType.IN_GRACE_PERIOD: lambda e, r: SubscriptionOnHold(),
    SubscriptionNotificationType.PAUSED: lambda e, r: SubscriptionPaused(),
    SubscriptionNotificationType.REVOKED: lambda e, r: SubscriptionRevoked(),
    SubscriptionNotificationType.PRICE_CHANGE_CONFIRMED: None,
    SubscriptionNotificationType.DEFERRED: None,
    SubscriptionNotificationType.PAUSE_SCHEDULE_CHANGED: None,
    SubscriptionNotificationType.PENDING_PURCHASE_CANCELED: None,
}


def decode_envelope(envelope: dict) -> WebhookEvent:
    """
    Decode a Pub/Sub push envelope.

    Raises:
        EnvelopeDecodeError: Missing data, bad base64/JSON, or no known
            notification key.
    """
    message = envelope.get("message") if isinstance(envelope, dict) else None
    if not isinstance(message, dict) or not message.get("data"):
        raise EnvelopeDecodeError("No data in message")
    if not isinstance(message["data"], str):
        raise EnvelopeDecodeError("Message data is not a base64 string")

    try:
        payload = json.loads(base64.b64decode(message["data"], validate=True))
    except (binascii.Error, TypeError, ValueError) as exc:
        raise EnvelopeDecodeError(f"Undecodable notification data: {exc}") from exc
    if not isinstance(payload, dict):
        raise EnvelopeDecodeError("Notification data is not an object")

    found = [key for key in _ENVELOPE_KEYS if key in payload]
    if len(found) != 1:
        raise EnvelopeDecodeError(f"Expected one notification, found {found or 'none'}")

    key = found[0]
    body = payload[key] or {}
    if not isinstance(body, dict):
        raise EnvelopeDecodeError(f"{key} is not an object")
    kind = _ENVELOPE_KEYS[key]
    return WebhookEvent(
        kind=kind,
        message_id=message.get("messageId") or message.get("message_id"),
        package_name=payload.get("packageName"),
        notification_type=body.get("notificationType"),
        purchase_token=body.get("purchaseToken"),
        product_id=body.get("subscriptionId") or body.get("sku"),
        order_id=body.get("orderId"),
    )


def _from_millis(value) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


CatalogLoader = Callable[[str], Awaitable[ProductCatalog]]


class WebhookIngestor:
    """Turns storefront notifications into entitlement transitions."""

    def __init__(
        self,
        entitlements: EntitlementService,
        verifier: ReceiptVerifier,
        catalog_loader: CatalogLoader,
    ):
        self.entitlements = entitlements
        self.verifier = verifier
        self.catalog_loader = catalog_loader

    async def ingest(self, envelope: dict) -> IngestResult:
        """
        Process one envelope.

        Raises:
            EnvelopeDecodeError: Only for malformed envelopes.
        """
        event = decode_envelope(envelope)
        logger.info(
            "Play notification: kind=%s type=%s message_id=%s",
            event.kind.value,
            event.notification_type,
            event.message_id,
        )

        try:
            if event.kind is NotificationKind.TEST:
                return IngestResult("test")
            if event.kind is NotificationKind.ONE_TIME_PRODUCT:
                return self._one_time(event)
            if event.kind is NotificationKind.VOIDED_PURCHASE:
                return await self._voided(event)
            if event.kind is NotificationKind.SUBSCRIPTION:
                return await self._subscription(event)
        except (ConfigurationError, ProviderError) as exc:
            logger.error("Play notification %s not processed: %s", event.message_id, exc)
            return IngestResult("failed")
        except UnknownProductError as exc:
            logger.warning("Play notification %s ignored: %s", event.message_id, exc)
            return IngestResult("unknown_product")
        except ProfileNotFoundError as exc:
            logger.warning("Play notification %s ignored: %s", event.message_id, exc)
            return IngestResult("user_not_found")
        except Exception:
            logger.exception("Play notification %s failed unexpectedly", event.message_id)
            return IngestResult("failed")

        raise TypeError(f"Unhandled notification kind: {event.kind}")

    # -------------------------------------------------------------------------
    # Kinds
    # -------------------------------------------------------------------------

    def _one_time(self, event: WebhookEvent) -> IngestResult:
        # Finalized through direct verification; recorded for observability only
        try:
            label = OneTimeNotificationType(event.notification_type).name
        except ValueError:
            label = str(event.notification_type)
        logger.info("One-time product notification: sku=%s type=%s", event.product_id, label)
        return IngestResult("one_time_acknowledged")

    async def _voided(self, event: WebhookEvent) -> IngestResult:
        if not event.order_id:
            logger.warning("Voided purchase without orderId, acknowledging")
            return IngestResult("ignored")

        user_id = await self.entitlements.store.find_user_by_reference(event.order_id)
        if user_id is None:
            logger.warning("No user for voided order %s", event.order_id)
            return IngestResult("user_not_found")

        outcome = await self.entitlements.apply(user_id, PurchaseVoided(event.order_id), {})
        return IngestResult("duplicate" if outcome.skipped else "refunded", user_id)

    async def _subscription(self, event: WebhookEvent) -> IngestResult:
        try:
            notification_type = SubscriptionNotificationType(event.notification_type)
        except ValueError:
            logger.warning("Unknown subscription notification type %s", event.notification_type)
            return IngestResult("ignored")

        transition = SUBSCRIPTION_TRANSITIONS[notification_type]
        if transition is None:
            logger.info("Subscription notification %s needs no change", notification_type.name)
            return IngestResult("ignored")

        if not (event.package_name and event.product_id and event.purchase_token):
            logger.warning("Subscription notification missing purchase coordinates")
            return IngestResult("ignored")

        record = await self._fetch_subscription(event)
        user_id = await self._resolve_user(record)
        if user_id is None:
            logger.warning(
                "No user for order %s / account %s", record.order_id, record.account_id,
            )
            return IngestResult("user_not_found")

        entitlement_event = transition(event, record)

        catalog = await self.catalog_loader("android")
        outcome = await self.entitlements.apply(user_id, entitlement_event, catalog)
        if outcome.skipped:
            return IngestResult("duplicate", user_id)

        return IngestResult(
            notification_type.name.lower(),
            user_id,
            notice=lifecycle_notice(entitlement_event, outcome),
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _fetch_subscription(self, event: WebhookEvent) -> SubscriptionRecord:
        access_token = await self.verifier.authenticator.get_access_token()
        data = await self.verifier.fetch_google_purchase(
            GooglePurchaseProof(
                package_name=event.package_name,
                product_id=event.product_id,
                purchase_token=event.purchase_token,
                is_subscription=True,
            ),
            access_token,
        )
        return SubscriptionRecord(
            order_id=data.get("orderId"),
            expires_at=_from_millis(data.get("expiryTimeMillis")),
            payment_state=data.get("paymentState"),
            account_id=data.get("obfuscatedExternalAccountId"),
        )

    async def _resolve_user(self, record: SubscriptionRecord) -> Optional[uuid.UUID]:
        store = self.entitlements.store
        if record.order_id:
            user_id = await store.find_user_by_reference(record.order_id)
            if user_id is not None:
                return user_id
            # Renewal orders extend the initial id as "<order>..N"
            base_order_id = record.order_id.split("..", 1)[0]
            if base_order_id != record.order_id:
                user_id = await store.find_user_by_reference(base_order_id)
                if user_id is not None:
                    return user_id

        if record.account_id:
            try:
                candidate = uuid.UUID(record.account_id)
            except ValueError:
                return None
            if await store.load_snapshot(candidate) is not None:
                return candidate
        return None
