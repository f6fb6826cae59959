"""
Campaigns API Endpoints
=======================

Internal campaign control. Campaign rows are created by the admin
surface; these endpoints start, resume, cancel and inspect them.
"""

import logging
from typing import Annotated, Optional
import uuid

from fastapi import APIRouter, Depends

from entitlement_core.core.errors import (
    CampaignNotFoundError,
    ErrorCodes,
    NotFoundError,
)
from entitlement_core.dependencies import InternalCaller, get_dispatcher
from entitlement_core.schemas.campaign import (
    CampaignResponse,
    CancelCampaignResponse,
    DispatchRequest,
    DispatchResponse,
)
from entitlement_core.services.dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[InternalCaller])

Dispatcher = Annotated[NotificationDispatcher, Depends(get_dispatcher)]


def _not_found(campaign_id: uuid.UUID) -> NotFoundError:
    return NotFoundError(
        code=ErrorCodes.CAMPAIGN_NOT_FOUND,
        message=f"Campaign {campaign_id} not found",
    )


@router.post("/{campaign_id}/dispatch", response_model=DispatchResponse)
async def dispatch_campaign(
    campaign_id: uuid.UUID,
    dispatcher: Dispatcher,
    body: Optional[DispatchRequest] = None,
) -> DispatchResponse:
    """
    Run one bounded dispatch of the campaign.

    Starts at offset 0 or resumes from ``resumeOffset``. Remaining
    batches continue through the continuation worker.
    """
    offset = body.resume_offset if body else 0
    try:
        result = await dispatcher.dispatch(campaign_id, offset)
    except CampaignNotFoundError:
        raise _not_found(campaign_id)

    return DispatchResponse(
        campaign_id=result.campaign_id,
        status=result.status.value,
        sent_count=result.sent_count,
        failed_count=result.failed_count,
        next_offset=result.next_offset,
        batches_processed=result.batches_processed,
        continuation_scheduled=result.continuation_scheduled,
        error=result.error,
    )


@router.post("/{campaign_id}/cancel", response_model=CancelCampaignResponse)
async def cancel_campaign(campaign_id: uuid.UUID, dispatcher: Dispatcher) -> CancelCampaignResponse:
    """Request cancellation; observed before the next batch."""
    if await dispatcher.campaigns.get(campaign_id) is None:
        raise _not_found(campaign_id)
    cancelled = await dispatcher.cancel(campaign_id)
    return CancelCampaignResponse(campaign_id=campaign_id, cancelled=cancelled)


@router.get("/{campaign_id}", response_model=CampaignResponse)
async def get_campaign(campaign_id: uuid.UUID, dispatcher: Dispatcher) -> CampaignResponse:
    campaign = await dispatcher.campaigns.get(campaign_id)
    if campaign is None:
        raise _not_found(campaign_id)
    return CampaignResponse(
        id=campaign.id,
        title=campaign.title,
        status=campaign.status.value,
        target_device_type=campaign.target_device_type,
        total_recipients=campaign.total_recipients,
        sent_count=campaign.sent_count,
        failed_count=campaign.failed_count,
        cursor_offset=campaign.cursor_offset,
        current_batch=campaign.current_batch,
        last_error=campaign.last_error,
        started_at=campaign.started_at,
        completed_at=campaign.completed_at,
    )
