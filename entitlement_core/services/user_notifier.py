"""
User Notifier
=============

Transactional push to every active device of a single user, plus the
notices sent after storefront-driven subscription transitions.

Delivery is best-effort: failures are logged and counted, and tokens the
messaging service rejects permanently are deactivated. Lifecycle notices
are delivered after the webhook transaction commits, in their own session.
"""

import logging
from typing import Optional
import uuid

from entitlement_core.db.session import get_session_factory
from entitlement_core.services.device_service import DeviceStore, SQLDeviceStore
from entitlement_core.services.push import PushClient, PushMessage
from entitlement_core.services.reconciler import (
    EntitlementEvent,
    PurchaseGranted,
    ReconcileOutcome,
    SubscriptionCancelled,
    SubscriptionExpired,
    SubscriptionOnHold,
    SubscriptionPaused,
    SubscriptionRevoked,
)

logger = logging.getLogger(__name__)


def lifecycle_notice(event: EntitlementEvent, outcome: ReconcileOutcome) -> Optional[PushMessage]:
    """Push content announcing ``outcome`` to the user, if any."""
    if outcome.skipped:
        return None

    if isinstance(event, PurchaseGranted):
        mapping = outcome.mapping
        plan = mapping.plan if mapping else outcome.snapshot.plan
        credits = mapping.credit_delta if mapping else 0
        return PushMessage(
            title="Subscription Renewed!" if event.renewal else "Subscription Activated!",
            body=f"Your {plan} plan is active. {credits} credits have been added.",
            data={"type": "subscription_renewed"},
            channel_id="subscription",
        )
    if isinstance(event, SubscriptionCancelled):
        return PushMessage(
            title="Subscription Update",
            body="Your subscription will cancel at the end of the billing period.",
            data={"type": "subscription_cancelling"},
            channel_id="subscription",
        )
    if isinstance(event, SubscriptionExpired):
        return PushMessage(
            title="Subscription Expired",
            body="Your subscription has expired. Renew to continue enjoying premium features.",
            data={"type": "subscription_expired"},
            channel_id="subscription",
        )
    if isinstance(event, SubscriptionOnHold):
        return PushMessage(
            title="Payment Issue",
            body="There was a problem renewing your subscription. Please update your payment method.",
            data={"type": "subscription_payment_failed"},
            channel_id="subscription",
        )
    if isinstance(event, SubscriptionPaused):
        return PushMessage(
            title="Subscription Paused",
            body="Your subscription has been paused.",
            data={"type": "subscription_paused"},
            channel_id="subscription",
        )
    if isinstance(event, SubscriptionRevoked):
        return PushMessage(
            title="Access Revoked",
            body="Your subscription access has been revoked.",
            data={"type": "subscription_revoked"},
            channel_id="subscription",
        )
    return None


class UserNotifier:
    """Sends a push to all active devices of one user."""

    def __init__(self, devices: DeviceStore, push: PushClient):
        self.devices = devices
        self.push = push

    async def notify(self, user_id: uuid.UUID, message: PushMessage) -> dict:
        """
        Deliver ``message`` to the user's active devices.

        Returns:
            ``{"sent", "failed", "deactivated"}`` counts.
        """
        devices = await self.devices.active_for_user(user_id)
        if not devices:
            logger.info("No active devices for user=%s", user_id)
            return {"sent": 0, "failed": 0, "deactivated": 0}

        results = await self.push.send_many([d.token for d in devices], message)
        dead = [r.token for r in results if r.is_permanent_failure]
        deactivated = await self.devices.deactivate(dead) if dead else 0

        sent = sum(1 for r in results if r.success)
        logger.info(
            "User push delivered: user=%s sent=%d failed=%d deactivated=%d",
            user_id,
            sent,
            len(results) - sent,
            deactivated,
        )
        return {"sent": sent, "failed": len(results) - sent, "deactivated": deactivated}


async def deliver_lifecycle_notice(user_id: uuid.UUID, message: PushMessage) -> None:
    """Send a lifecycle notice in its own database session; never raises."""
    session_factory = get_session_factory()
    async with session_factory() as session:
        try:
            await UserNotifier(SQLDeviceStore(session), PushClient()).notify(user_id, message)
            await session.commit()
        except Exception as exc:
            await session.rollback()
            logger.warning("Lifecycle push for user=%s failed: %s", user_id, exc)
