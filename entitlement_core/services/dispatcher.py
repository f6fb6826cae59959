"""
Notification Dispatcher
=======================

Sends a campaign to every matching active device in bounded batches.

State machine over ``Campaign.status``::

    pending -> processing -> completed | cancelled | failed

Each invocation processes at most ``max_batches`` batches. Progress
(counts and cursor) is checkpointed after every batch, so any later
invocation with the persisted offset resumes where the last one stopped.
When the batch budget runs out with devices left, a continuation is
handed to a :class:`ContinuationScheduler` (a Redis stream in
production) instead of re-invoking itself.

Cancellation is cooperative: the status is re-read before every batch
and sends already in flight are not aborted.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Sequence
import uuid

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_core.config import settings
from entitlement_core.core.errors import (
    CampaignNotFoundError,
    ConfigurationError,
    ProviderError,
)
from entitlement_core.models.campaign import (
    Campaign,
    CampaignLog,
    CampaignStatus,
    DeliveryStatus,
)
from entitlement_core.services.cache import get_redis
from entitlement_core.services.device_service import DeviceStore, SQLDeviceStore
from entitlement_core.services.push import PushClient, PushMessage

logger = logging.getLogger(__name__)

CONTINUATION_STREAM = "stream:campaigns:continue"

TERMINAL_STATUSES = (
    CampaignStatus.COMPLETED,
    CampaignStatus.CANCELLED,
    CampaignStatus.FAILED,
)


@dataclass(frozen=True)
class CampaignState:
    """Dispatcher view of a campaign row."""

    id: uuid.UUID
    title: str
    body: str
    image_url: Optional[str]
    target_device_type: str
    status: CampaignStatus
    total_recipients: int = 0
    sent_count: int = 0
    failed_count: int = 0
    cursor_offset: int = 0
    current_batch: int = 0
    last_error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


@dataclass(frozen=True)
class DispatchRecord:
    """One attempted delivery."""

    campaign_id: uuid.UUID
    user_id: uuid.UUID
    token: str
    device_type: Optional[str]
    outcome: DeliveryStatus
    error: Optional[str] = None


@dataclass(frozen=True)
class DispatchResult:
    campaign_id: uuid.UUID
    status: CampaignStatus
    sent_count: int
    failed_count: int
    next_offset: int
    batches_processed: int
    continuation_scheduled: bool = False
    error: Optional[str] = None


# =============================================================================
# Persistence and scheduling seams
# =============================================================================

class CampaignStore(ABC):
    """Persistence seam for campaigns and their delivery log."""

    @abstractmethod
    async def get(self, campaign_id: uuid.UUID) -> Optional[CampaignState]:
        ...

    @abstractmethod
    async def get_status(self, campaign_id: uuid.UUID) -> Optional[CampaignStatus]:
        """Current persisted status, bypassing any cached row."""

    @abstractmethod
    async def mark_started(self, campaign_id: uuid.UUID, total_recipients: int) -> None:
        ...

    @abstractmethod
    async def logged_tokens(self, campaign_id: uuid.UUID, tokens: Sequence[str]) -> set[str]:
        """Subset of ``tokens`` that already have a delivery record."""

    @abstractmethod
    async def record_deliveries(self, records: Sequence[DispatchRecord]) -> None:
        ...

    @abstractmethod
    async def save_progress(
        self,
        campaign_id: uuid.UUID,
        sent_count: int,
        failed_count: int,
        cursor_offset: int,
        current_batch: int,
    ) -> None:
        ...

    @abstractmethod
    async def mark_completed(self, campaign_id: uuid.UUID) -> None:
        ...

    @abstractmethod
    async def record_error(self, campaign_id: uuid.UUID, error: str) -> None:
        ...

    @abstractmethod
    async def cancel(self, campaign_id: uuid.UUID) -> bool:
        """Flip a pending/processing campaign to cancelled."""

    @abstractmethod
    async def stalled(self, older_than: datetime) -> list[CampaignState]:
        """Processing campaigns without progress since ``older_than``."""


class ContinuationScheduler(ABC):
    """Guarantees a later ``dispatch(campaign_id, offset)``."""

    @abstractmethod
    async def schedule(self, campaign_id: uuid.UUID, offset: int) -> None:
        ...


class RedisContinuationScheduler(ContinuationScheduler):
    """Appends continuations to the campaign continuation stream."""

    async def schedule(self, campaign_id: uuid.UUID, offset: int) -> None:
        client = await get_redis()
        await client.xadd(
            CONTINUATION_STREAM,
            {"campaign_id": str(campaign_id), "offset": str(offset)},
            maxlen=10000,
            approximate=True,
        )
        logger.info("Continuation scheduled: campaign=%s offset=%d", campaign_id, offset)


def _state_from_row(row: Campaign) -> CampaignState:
    return CampaignState(
        id=row.id,
        title=row.title,
        body=row.body,
        image_url=row.image_url,
        target_device_type=row.target_device_type,
        status=row.status,
        total_recipients=row.total_recipients,
        sent_count=row.sent_count,
        failed_count=row.failed_count,
        cursor_offset=row.cursor_offset,
        current_batch=row.current_batch,
        last_error=row.last_error,
        started_at=row.started_at,
        completed_at=row.completed_at,
    )


class SQLCampaignStore(CampaignStore):
    """
    PostgreSQL-backed campaign store.

    Every write commits immediately so each batch is a durable checkpoint.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _update(self, campaign_id: uuid.UUID, *criteria, **values) -> int:
        values.setdefault("updated_at", datetime.now(timezone.utc))
        result = await self.db.execute(
            update(Campaign)
            .where(Campaign.id == campaign_id, *criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount or 0

    async def get(self, campaign_id: uuid.UUID) -> Optional[CampaignState]:
        result = await self.db.execute(
            select(Campaign)
            .where(Campaign.id == campaign_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return _state_from_row(row) if row else None

    async def get_status(self, campaign_id: uuid.UUID) -> Optional[CampaignStatus]:
        result = await self.db.execute(
            select(Campaign.status).where(Campaign.id == campaign_id)
        )
        return result.scalar_one_or_none()

    async def mark_started(self, campaign_id: uuid.UUID, total_recipients: int) -> None:
        await self._update(
            campaign_id,
            status=CampaignStatus.PROCESSING,
            total_recipients=total_recipients,
            started_at=datetime.now(timezone.utc),
            last_error=None,
        )

    async def logged_tokens(self, campaign_id: uuid.UUID, tokens: Sequence[str]) -> set[str]:
        if not tokens:
            return set()
        result = await self.db.execute(
            select(CampaignLog.device_token).where(
                CampaignLog.campaign_id == campaign_id,
                CampaignLog.device_token.in_(list(tokens)),
            )
        )
        return set(result.scalars().all())

    async def record_deliveries(self, records: Sequence[DispatchRecord]) -> None:
        if not records:
            return
        now = datetime.now(timezone.utc)
        stmt = pg_insert(CampaignLog).values([
            {
                "id": uuid.uuid4(),
                "campaign_id": r.campaign_id,
                "user_id": r.user_id,
                "device_token": r.token,
                "device_type": r.device_type,
                "status": r.outcome,
                "error_message": r.error,
                "sent_at": now if r.outcome is DeliveryStatus.SENT else None,
            }
            for r in records
        ]).on_conflict_do_nothing(index_elements=["campaign_id", "device_token"])
        await self.db.execute(stmt)
        await self.db.commit()

    async def save_progress(
        self,
        campaign_id: uuid.UUID,
        sent_count: int,
        failed_count: int,
        cursor_offset: int,
        current_batch: int,
    ) -> None:
        await self._update(
            campaign_id,
            sent_count=sent_count,
            failed_count=failed_count,
            cursor_offset=cursor_offset,
            current_batch=current_batch,
        )

    async def mark_completed(self, campaign_id: uuid.UUID) -> None:
        await self._update(
            campaign_id,
            Campaign.status == CampaignStatus.PROCESSING,
            status=CampaignStatus.COMPLETED,
            completed_at=datetime.now(timezone.utc),
        )

    async def record_error(self, campaign_id: uuid.UUID, error: str) -> None:
        # The failed statement may have left the transaction aborted
        await self.db.rollback()
        await self._update(campaign_id, last_error=error[:2000])

    async def cancel(self, campaign_id: uuid.UUID) -> bool:
        updated = await self._update(
            campaign_id,
            Campaign.status.in_([CampaignStatus.PENDING, CampaignStatus.PROCESSING]),
            status=CampaignStatus.CANCELLED,
        )
        return updated > 0

    async def stalled(self, older_than: datetime) -> list[CampaignState]:
        result = await self.db.execute(
            select(Campaign).where(
                Campaign.status == CampaignStatus.PROCESSING,
                Campaign.updated_at < older_than,
            )
        )
        return [_state_from_row(row) for row in result.scalars().all()]


# =============================================================================
# Dispatcher
# =============================================================================

class NotificationDispatcher:
    """Runs campaigns in bounded, checkpointed batches."""

    def __init__(
        self,
        campaigns: CampaignStore,
        devices: DeviceStore,
        push: PushClient,
        scheduler: ContinuationScheduler,
        batch_size: Optional[int] = None,
        max_batches: Optional[int] = None,
        batch_pause: Optional[float] = None,
    ):
        self.campaigns = campaigns
        self.devices = devices
        self.push = push
        self.scheduler = scheduler
        self.batch_size = batch_size or settings.DISPATCH_BATCH_SIZE
        self.max_batches = max_batches or settings.DISPATCH_MAX_BATCHES_PER_RUN
        self.batch_pause = (
            settings.DISPATCH_BATCH_PAUSE_SECONDS if batch_pause is None else batch_pause
        )

    async def dispatch(self, campaign_id: uuid.UUID, resume_offset: int = 0) -> DispatchResult:
        """
        Run up to ``max_batches`` batches of ``campaign_id`` from ``resume_offset``.

        Raises:
            CampaignNotFoundError: No such campaign.
        """
        campaign = await self.campaigns.get(campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")

        if campaign.status in TERMINAL_STATUSES:
            logger.info("Campaign %s already %s, nothing to do", campaign_id, campaign.status.value)
            return self._result(campaign, campaign.status, resume_offset, 0)

        if campaign.status is CampaignStatus.PENDING:
            total = await self.devices.count_active(campaign.target_device_type)
            await self.campaigns.mark_started(campaign_id, total)
            logger.info(
                "Campaign %s started: target=%s recipients=%d",
                campaign_id,
                campaign.target_device_type,
                total,
            )

        message = PushMessage(
            title=campaign.title,
            body=campaign.body,
            image_url=campaign.image_url,
            data={"type": "marketing", "campaign_id": str(campaign_id)},
        )
        sent_count = campaign.sent_count
        failed_count = campaign.failed_count
        batch_number = campaign.current_batch
        offset = resume_offset

        for batches_done in range(self.max_batches):
            status = await self.campaigns.get_status(campaign_id)
            if status is CampaignStatus.CANCELLED:
                logger.info("Campaign %s cancelled before batch %d", campaign_id, batch_number + 1)
                return DispatchResult(
                    campaign_id, CampaignStatus.CANCELLED, sent_count, failed_count,
                    offset, batches_done,
                )

            try:
                page = await self.devices.page_active(
                    campaign.target_device_type, offset, self.batch_size,
                )
                if not page:
                    await self.campaigns.mark_completed(campaign_id)
                    logger.info(
                        "Campaign %s completed: sent=%d failed=%d",
                        campaign_id, sent_count, failed_count,
                    )
                    return DispatchResult(
                        campaign_id, CampaignStatus.COMPLETED, sent_count, failed_count,
                        offset, batches_done,
                    )

                already = await self.campaigns.logged_tokens(campaign_id, [d.token for d in page])
                pending = [d for d in page if d.token not in already]
                results = await self.push.send_many([d.token for d in pending], message)
            except (ConfigurationError, ProviderError, SQLAlchemyError) as exc:
                return await self._abort(campaign_id, exc, sent_count, failed_count, offset, batches_done)

            records = [
                DispatchRecord(
                    campaign_id=campaign_id,
                    user_id=device.user_id,
                    token=device.token,
                    device_type=device.device_type,
                    outcome=DeliveryStatus.SENT if result.success else DeliveryStatus.FAILED,
                    error=result.error,
                )
                for device, result in zip(pending, results)
            ]
            dead = {r.token for r in results if r.is_permanent_failure}

            try:
                await self.campaigns.record_deliveries(records)
                if dead:
                    await self.devices.deactivate(sorted(dead))

                batch_sent = sum(1 for r in results if r.success)
                sent_count += batch_sent
                failed_count += len(results) - batch_sent
                batch_number += 1
                # Deactivated devices drop out of the active ordering behind the cursor
                offset += len(page) - sum(1 for d in page if d.token in dead)

                await self.campaigns.save_progress(
                    campaign_id, sent_count, failed_count, offset, batch_number,
                )
            except SQLAlchemyError as exc:
                return await self._abort(campaign_id, exc, sent_count, failed_count, offset, batches_done)

            logger.info(
                "Campaign %s batch %d: sent=%d failed=%d deactivated=%d offset=%d",
                campaign_id,
                batch_number,
                batch_sent,
                len(results) - batch_sent,
                len(dead),
                offset,
            )

            if len(page) < self.batch_size:
                await self.campaigns.mark_completed(campaign_id)
                logger.info(
                    "Campaign %s completed: sent=%d failed=%d",
                    campaign_id, sent_count, failed_count,
                )
                return DispatchResult(
                    campaign_id, CampaignStatus.COMPLETED, sent_count, failed_count,
                    offset, batches_done + 1,
                )

            if self.batch_pause and batches_done + 1 < self.max_batches:
                await asyncio.sleep(self.batch_pause)

        await self.scheduler.schedule(campaign_id, offset)
        return DispatchResult(
            campaign_id, CampaignStatus.PROCESSING, sent_count, failed_count,
            offset, self.max_batches, continuation_scheduled=True,
        )

    async def cancel(self, campaign_id: uuid.UUID) -> bool:
        cancelled = await self.campaigns.cancel(campaign_id)
        logger.info("Campaign %s cancel requested: applied=%s", campaign_id, cancelled)
        return cancelled

    async def _abort(
        self,
        campaign_id: uuid.UUID,
        exc: Exception,
        sent_count: int,
        failed_count: int,
        offset: int,
        batches_done: int,
    ) -> DispatchResult:
        """Stop this run on a systemic failure; status stays processing."""
        logger.error("Campaign %s run aborted at offset %d: %s", campaign_id, offset, exc)
        try:
            await self.campaigns.record_error(campaign_id, str(exc))
        except SQLAlchemyError as store_exc:
            logger.error("Could not record error for campaign %s: %s", campaign_id, store_exc)
        return DispatchResult(
            campaign_id, CampaignStatus.PROCESSING, sent_count, failed_count,
            offset, batches_done, error=str(exc),
        )

    @staticmethod
    def _result(
        campaign: CampaignState,
        status: CampaignStatus,
        offset: int,
        batches: int,
    ) -> DispatchResult:
        return DispatchResult(
            campaign.id, status, campaign.sent_count, campaign.failed_count, offset, batches,
        )


def build_dispatcher(db: AsyncSession, **overrides) -> NotificationDispatcher:
    """Dispatcher wired to PostgreSQL, FCM and the Redis continuation stream."""
    return NotificationDispatcher(
        campaigns=SQLCampaignStore(db),
        devices=SQLDeviceStore(db),
        push=PushClient(),
        scheduler=RedisContinuationScheduler(),
        **overrides,
    )
