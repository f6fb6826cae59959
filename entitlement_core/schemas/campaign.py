"""
Campaign Schemas
================

Campaign control (dispatch, cancel, status) and single-user push.
"""

from datetime import datetime
from typing import Optional
import uuid

from pydantic import BaseModel, Field


class DispatchRequest(BaseModel):
    resume_offset: int = Field(default=0, alias="resumeOffset", ge=0)

    class Config:
        populate_by_name = True


class DispatchResponse(BaseModel):
    campaign_id: uuid.UUID = Field(alias="campaignId")
    status: str
    sent_count: int = Field(alias="sentCount")
    failed_count: int = Field(alias="failedCount")
    next_offset: int = Field(alias="nextOffset")
    batches_processed: int = Field(alias="batchesProcessed")
    continuation_scheduled: bool = Field(alias="continuationScheduled")
    error: Optional[str] = None

    class Config:
        populate_by_name = True


class CampaignResponse(BaseModel):
    id: uuid.UUID
    title: str
    status: str
    target_device_type: str = Field(alias="targetDeviceType")
    total_recipients: int = Field(alias="totalRecipients")
    sent_count: int = Field(alias="sentCount")
    failed_count: int = Field(alias="failedCount")
    cursor_offset: int = Field(alias="cursorOffset")
    current_batch: int = Field(alias="currentBatch")
    last_error: Optional[str] = Field(None, alias="lastError")
    started_at: Optional[datetime] = Field(None, alias="startedAt")
    completed_at: Optional[datetime] = Field(None, alias="completedAt")

    class Config:
        populate_by_name = True


class CancelCampaignResponse(BaseModel):
    campaign_id: uuid.UUID = Field(alias="campaignId")
    cancelled: bool

    class Config:
        populate_by_name = True


class UserPushRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    body: str = Field(min_length=1)
    image_url: Optional[str] = Field(None, alias="imageUrl")
    data: dict[str, str] = Field(default_factory=dict)

    class Config:
        populate_by_name = True


class UserPushResponse(BaseModel):
    sent: int
    failed: int
    deactivated: int
