"""
Scheduled Jobs
==============

Background maintenance:
- Expire cancelled subscriptions whose end date passed without a storefront event
- Resume campaigns whose continuation was lost
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_core.config import settings
from entitlement_core.core.errors import ConcurrentUpdateError, ProfileNotFoundError
from entitlement_core.services.dispatcher import (
    CampaignStore,
    ContinuationScheduler,
    RedisContinuationScheduler,
    SQLCampaignStore,
)
from entitlement_core.services.entitlement_service import (
    EntitlementService,
    EntitlementStore,
    SQLEntitlementStore,
)
from entitlement_core.services.reconciler import SubscriptionExpired

logger = logging.getLogger(__name__)


class ScheduledJobService:
    """Service for scheduled background jobs."""

    def __init__(
        self,
        db: Optional[AsyncSession] = None,
        entitlement_store: Optional[EntitlementStore] = None,
        campaign_store: Optional[CampaignStore] = None,
        scheduler: Optional[ContinuationScheduler] = None,
    ):
        self.db = db
        self.entitlements = EntitlementService(entitlement_store or SQLEntitlementStore(db))
        self.campaigns = campaign_store or SQLCampaignStore(db)
        self.scheduler = scheduler or RedisContinuationScheduler()

    async def expire_lapsed_subscriptions(self, now: Optional[datetime] = None) -> dict:
        """
        Move cancelled subscriptions past their end date to expired.

        Returns:
            Summary of processed profiles
        """
        now = now or datetime.now(timezone.utc)
        user_ids = await self.entitlements.store.lapsed_user_ids(now)

        processed = 0
        errors = []
        for user_id in user_ids:
            try:
                await self.entitlements.apply(user_id, SubscriptionExpired(), {}, now=now)
                processed += 1
            except (ConcurrentUpdateError, ProfileNotFoundError) as exc:
                errors.append({"user_id": str(user_id), "error": str(exc)})

        if self.db is not None:
            await self.db.commit()

        logger.info("Expired %d lapsed subscriptions (%d errors)", processed, len(errors))
        return {
            "job": "expire_lapsed_subscriptions",
            "processed": processed,
            "errors": errors,
            "run_at": now.isoformat(),
        }

    async def resume_stalled_campaigns(self, now: Optional[datetime] = None) -> dict:
        """
        Re-enqueue processing campaigns with no progress for
        ``CAMPAIGN_STALL_MINUTES``, from their persisted cursor.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=settings.CAMPAIGN_STALL_MINUTES)
        stalled = await self.campaigns.stalled(cutoff)

        for campaign in stalled:
            await self.scheduler.schedule(campaign.id, campaign.cursor_offset)
            logger.warning(
                "Resuming stalled campaign %s from offset %d",
                campaign.id,
                campaign.cursor_offset,
            )

        return {
            "job": "resume_stalled_campaigns",
            "processed": len(stalled),
            "campaign_ids": [str(c.id) for c in stalled],
            "run_at": now.isoformat(),
        }


# Job runner functions (internal jobs endpoints or an external cron)

async def run_expire_lapsed_subscriptions(db: AsyncSession) -> dict:
    """Run lapsed subscription expiry."""
    service = ScheduledJobService(db)
    return await service.expire_lapsed_subscriptions()


async def run_resume_stalled_campaigns(db: AsyncSession) -> dict:
    """Run stalled campaign recovery."""
    service = ScheduledJobService(db)
    return await service.resume_stalled_campaigns()
